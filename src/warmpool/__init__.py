"""
Pool of pre-warmed worker processes served over a Unix socket.
"""

__version__ = "0.1.0"
