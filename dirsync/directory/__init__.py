"""
Directory access for the synchronization engine.

This package contains the raw directory records, the directory client
adapter, the token guard and the bounded fetch scheduler.
"""

from dirsync.directory.models import DirectoryUser, DirectoryGroup
from dirsync.directory.client import DirectoryClient, DirectoryCredentials, HttpDirectoryClient
from dirsync.directory.auth import TokenGuard, authenticate, credentials_from_config
from dirsync.directory.limiter import BoundedFetchScheduler

__all__ = [
    "DirectoryUser",
    "DirectoryGroup",
    "DirectoryClient",
    "DirectoryCredentials",
    "HttpDirectoryClient",
    "TokenGuard",
    "authenticate",
    "credentials_from_config",
    "BoundedFetchScheduler",
]
