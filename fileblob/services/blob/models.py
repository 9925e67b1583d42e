"""
Blob Storage Models

Pydantic models for committed blob properties, block list entries and
byte ranges.

Author: FileBlob Contributors
Date: 2025
"""

import hashlib
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

_RANGE_PATTERN = re.compile(r"^\s*bytes\s*=\s*(\d*)\s*-\s*(\d*)\s*$", re.IGNORECASE)


class BlobType(str, Enum):
    """Blob type. Only block blobs are emulated."""
    BLOCK_BLOB = "BlockBlob"


class BlockListType(str, Enum):
    """Element names accepted in a Put Block List body."""
    COMMITTED = "Committed"
    UNCOMMITTED = "Uncommitted"
    LATEST = "Latest"


class BlobProperties(BaseModel):
    """
    Properties of a committed blob, derived from its file.

    The ETag is a digest of size and modification time, so it changes on
    every commit without storing anything beside the blob.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Sanitized blob name")
    content_length: int = Field(description="Blob size in bytes")
    last_modified: datetime = Field(description="Last modified timestamp")
    etag: str = Field(description="Entity tag for the blob")
    blob_type: BlobType = Field(default=BlobType.BLOCK_BLOB)

    @classmethod
    def from_stat(cls, name: str, size: int, mtime_ns: int) -> "BlobProperties":
        """Build properties from ``os.stat`` results."""
        digest = hashlib.md5(f"{size}:{mtime_ns}".encode("ascii")).hexdigest()
        return cls(
            name=name,
            content_length=size,
            last_modified=datetime.fromtimestamp(mtime_ns / 1e9, tz=timezone.utc),
            etag=f"0x{digest[:16].upper()}",
        )

    def to_headers(self) -> Dict[str, str]:
        """Convert properties to HTTP headers."""
        return {
            'ETag': f'"{self.etag}"',
            'Last-Modified': self.last_modified.strftime('%a, %d %b %Y %H:%M:%S GMT'),
            'Content-Length': str(self.content_length),
            'x-ms-blob-type': self.blob_type.value,
        }


class ByteRange(BaseModel):
    """Inclusive byte range of a blob read."""

    model_config = ConfigDict(frozen=True)

    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def content_range(self, total: int) -> str:
        return f"bytes {self.start}-{self.end}/{total}"

    @classmethod
    def parse(cls, header: Optional[str], size: int) -> Optional["ByteRange"]:
        """
        Parse a single ``bytes=`` range against a blob of ``size`` bytes.

        Returns None when no range was requested or the header is not a
        single byte range (the whole blob is then served).

        Raises:
            ValueError: If the range cannot be satisfied
        """
        if not header:
            return None

        match = _RANGE_PATTERN.match(header)
        if not match:
            return None

        first, last = match.groups()
        if not first and not last:
            return None

        if not first:
            # Suffix range: the last N bytes
            suffix = int(last)
            if suffix == 0 or size == 0:
                raise ValueError("Unsatisfiable suffix range")
            return cls(start=max(size - suffix, 0), end=size - 1)

        start = int(first)
        end = int(last) if last else size - 1
        if start >= size or end < start:
            raise ValueError("Unsatisfiable range")
        return cls(start=start, end=min(end, size - 1))
