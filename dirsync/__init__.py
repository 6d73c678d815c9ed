"""
Directory Synchronization Engine - Source Package

This package ingests a hierarchical directory of users and groups from an
external identity service and keeps a downstream entity catalog consistent
with it, through full periodic resynchronization and incremental change events.
"""

__version__ = "1.0.0"

# Package-level imports for convenience
from dirsync.core.config import settings

__all__ = [
    "settings",
    "__version__",
]
