"""
FileBlob Blob Storage Service

Emulates Azure Blob Storage block blobs on top of a local directory tree:
containers, staged blocks, block list commits, reads, deletes and listings.

Author: FileBlob Contributors
Date: 2025
"""

from .backend import (
    BlobPathConflictError,
    BlockBlobStore,
    MissingBlockError,
    StorageIOError,
)
from .models import BlobProperties
from .sandbox import (
    BlobAddress,
    InvalidSegmentError,
    OutsideRootError,
    PathSandbox,
    SandboxViolation,
)

__all__ = [
    "BlobAddress",
    "BlobPathConflictError",
    "BlobProperties",
    "BlockBlobStore",
    "InvalidSegmentError",
    "MissingBlockError",
    "OutsideRootError",
    "PathSandbox",
    "SandboxViolation",
    "StorageIOError",
]
