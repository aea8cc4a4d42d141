"""Snapkeep - project backup and restore"""

__version__ = "1.0.0"
