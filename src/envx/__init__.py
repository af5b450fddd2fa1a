"""
envx - versioned and tagged history of environment variables.
"""

__version__ = "0.1.0"
