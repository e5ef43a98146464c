"""
marketsync - ads and commerce platform data synchronization
"""
__version__ = "0.1.0"
