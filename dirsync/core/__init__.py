"""
Core functionality for the directory synchronization engine.

This package contains configuration, provider configuration loading and the
error taxonomy shared by every component.
"""

from dirsync.core.config import settings

__all__ = [
    "settings",
]
