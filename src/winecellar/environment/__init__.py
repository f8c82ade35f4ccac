"""
Environment layer - Filesystem state with side effects.

Handles the artifact cache, prefix state, locking and reconciliation.
"""

from .paths import (
    LATEST_ALIAS,
    CellarPaths,
    sanitize_name,
)
from .locks import (
    KeyedLock,
    SharedResourceGuard,
    atomic_write_text,
)
from .archive import (
    extract_archive,
    strip_single_root,
)
from .cache import (
    ArtifactCache,
    read_metadata,
)
from .prefix import (
    AppliedFixLog,
    EnvironmentHandle,
    InstallRecordStore,
    MountTable,
)
from .reconcile import (
    EnvironmentReconciler,
    ReconcileReport,
)
from .processes import (
    find_prefix_processes,
    sweep_prefix,
)

__all__ = [
    # Layout
    "LATEST_ALIAS",
    "CellarPaths",
    "sanitize_name",
    # Locking
    "KeyedLock",
    "SharedResourceGuard",
    "atomic_write_text",
    # Archives
    "extract_archive",
    "strip_single_root",
    # Cache
    "ArtifactCache",
    "read_metadata",
    # Prefix state
    "AppliedFixLog",
    "EnvironmentHandle",
    "InstallRecordStore",
    "MountTable",
    # Reconciliation
    "EnvironmentReconciler",
    "ReconcileReport",
    # Process sweep
    "find_prefix_processes",
    "sweep_prefix",
]
