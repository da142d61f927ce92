"""
Gateway Usage: client-side cache and aggregation engine for gateway usage requests.
"""

__version__ = "0.1.0"
