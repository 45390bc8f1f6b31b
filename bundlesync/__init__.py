"""
bundlesync: versioned content package resolution, update and download engine.
"""

__version__ = "0.4.0"
