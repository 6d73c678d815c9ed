"""
Synchronization of directory users and groups into the catalog.

The full read replaces the provider's entities; the reconciler applies
minimal deltas for single change events.
"""

from dirsync.sync.builder import (
    ParsedGroup,
    ParsedUser,
    build_entities,
    build_group_index,
    parse_group,
    parse_user,
    resolve_references,
)
from dirsync.sync.provider import DirectoryEntityProvider
from dirsync.sync.reader import (
    DirectorySession,
    ReadResult,
    get_all_group_members,
    get_all_groups,
    get_entities,
    open_session,
    process_groups_recursively,
    read_directory,
    traverse_groups,
)
from dirsync.sync.reconciler import IncrementalReconciler
from dirsync.sync.transformers import (
    TransformerRegistry,
    noop_group_transformer,
    noop_user_transformer,
    sanitize_email_transformer,
    transformer_registry,
)

__all__ = [
    "DirectoryEntityProvider",
    "DirectorySession",
    "IncrementalReconciler",
    "ParsedGroup",
    "ParsedUser",
    "ReadResult",
    "TransformerRegistry",
    "build_entities",
    "build_group_index",
    "get_all_group_members",
    "get_all_groups",
    "get_entities",
    "noop_group_transformer",
    "noop_user_transformer",
    "open_session",
    "parse_group",
    "parse_user",
    "process_groups_recursively",
    "read_directory",
    "resolve_references",
    "sanitize_email_transformer",
    "transformer_registry",
]
