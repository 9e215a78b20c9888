"""
Setup script for package installation
"""
from setuptools import setup, find_packages

setup(
    name="truck_command",
    version="0.1.0",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    python_requires=">=3.10,<3.14",
    install_requires=[
        "fastapi>=0.110",
        "uvicorn[standard]>=0.27",
        "pydantic[email]>=2.0",
        "sqlalchemy>=2.0",
        "alembic>=1.13",
        "psycopg2-binary>=2.9",
        "python-jose[cryptography]>=3.3",
        "bcrypt>=4.0",
        "python-multipart>=0.0.9",
        "httpx>=0.27",
        "stripe>=11.0",
        "python-dotenv>=1.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
        ],
    },
)
