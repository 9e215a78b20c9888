"""
Truck Command - back office API for trucking businesses
"""
__version__ = "0.1.0"
