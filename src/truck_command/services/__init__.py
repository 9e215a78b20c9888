"""
Service layer
Each domain service is constructed with a SQLAlchemy session and scopes every
query to the calling user.
"""
