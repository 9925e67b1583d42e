"""
Path sandbox for the blob file backend.

Every account, container, blob and block name that reaches the file system
passes through this module. Segments are reduced to an allow-listed
character set and every resulting path is checked, after symlink
resolution, to lie inside the storage root.

Layout under the root::

    <account>/<container>/<seg1>/.../<segN>                  committed blob
    <account>/.staging/<container>/<seg1>/.../<segN>/.blocks  staged blocks

Sanitized segments never start with a dot, so the dot-prefixed staging
names cannot collide with anything a caller is able to address.

Author: FileBlob Contributors
Date: 2025
"""

import os
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Tuple, Union

STAGING_DIR_NAME = ".staging"
BLOCKS_DIR_NAME = ".blocks"

_SEGMENT_DISALLOWED = re.compile(r"[^a-zA-Z0-9\-_.]")
_BLOCK_ID_DISALLOWED = re.compile(r"[^a-zA-Z0-9\-_]")
_BLOB_NAME_SEPARATORS = re.compile(r"[/\\]")


class SegmentLevel(str, Enum):
    """Namespace level a segment belongs to."""
    ACCOUNT = "account"
    CONTAINER = "container"
    BLOB = "blob"
    BLOCK = "block"


class SandboxViolation(Exception):
    """Base class for rejected caller-supplied paths.

    The offending raw input is not stored on the exception.
    """

    def __init__(self, message: str, level: SegmentLevel):
        self.message = message
        self.level = level
        super().__init__(message)


class InvalidSegmentError(SandboxViolation):
    """Raised when a segment is empty or has no allowed characters."""

    def __init__(self, level: SegmentLevel):
        super().__init__(f"Invalid {level.value} name", level)


class OutsideRootError(SandboxViolation):
    """Raised when a resolved path escapes the storage root."""

    def __init__(self, level: SegmentLevel):
        super().__init__(
            f"Resolved {level.value} path is outside of the storage root", level
        )


def sanitize_segment(raw: str, level: SegmentLevel = SegmentLevel.BLOB) -> str:
    """
    Reduce a path segment to ``[A-Za-z0-9-_.]``.

    A leading dot is replaced with an underscore so that no segment can name
    a hidden file, ``.`` or ``..``.

    Raises:
        InvalidSegmentError: If the input is blank or nothing survives
    """
    if raw is None or not raw.strip():
        raise InvalidSegmentError(level)

    safe = _SEGMENT_DISALLOWED.sub("", raw)
    if not safe.strip():
        raise InvalidSegmentError(level)

    if safe.startswith("."):
        safe = "_" + safe[1:]

    return safe


def sanitize_block_id(raw: str) -> str:
    """
    Reduce a block id to ``[A-Za-z0-9-_]``.

    Raises:
        InvalidSegmentError: If nothing survives
    """
    safe = _BLOCK_ID_DISALLOWED.sub("", raw or "")
    if not safe:
        raise InvalidSegmentError(SegmentLevel.BLOCK)
    return safe


def split_blob_name(name: str) -> Tuple[str, ...]:
    """Split a blob name on ``/`` and ``\\`` and sanitize every part."""
    if name is None:
        raise InvalidSegmentError(SegmentLevel.BLOB)
    return tuple(
        sanitize_segment(part, SegmentLevel.BLOB)
        for part in _BLOB_NAME_SEPARATORS.split(name)
    )


@dataclass(frozen=True)
class BlobAddress:
    """Fully sanitized, root-confined location of a blob and its staging area."""

    account: str
    container: str
    segments: Tuple[str, ...]
    container_dir: Path
    blob_path: Path
    staging_dir: Path
    sandbox: "PathSandbox"

    @property
    def name(self) -> str:
        """Sanitized blob name, ``/``-joined."""
        return "/".join(self.segments)

    @property
    def lock_key(self) -> Tuple[str, str, Tuple[str, ...]]:
        return (self.account, self.container, self.segments)

    def block_path(self, block_id: str) -> Path:
        """Location of a staged block, given the raw block id."""
        safe = sanitize_block_id(block_id)
        return self.sandbox.confine(self.staging_dir / safe, SegmentLevel.BLOCK)


class PathSandbox:
    """
    Maps account/container/blob names onto paths under a storage root.

    Sanitization and root confinement are applied independently: a path
    built only from sanitized segments is still canonicalized and checked
    against the canonical root before it is handed out.
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self._canonical_root = os.path.realpath(self.root)

    def confine(self, path: Union[str, Path], level: SegmentLevel) -> Path:
        """
        Return ``path`` if its canonical form lies inside the root.

        Raises:
            OutsideRootError: If the canonical form escapes the root
        """
        canonical = os.path.realpath(path)
        if canonical != self._canonical_root and not canonical.startswith(
            self._canonical_root + os.sep
        ):
            raise OutsideRootError(level)
        return Path(path)

    def resolve(self, *segments: str) -> Path:
        """Sanitize ``segments``, join them onto the root and confine the result."""
        safe = [sanitize_segment(segment) for segment in segments]
        return self.confine(self.root.joinpath(*safe), SegmentLevel.BLOB)

    def account_dir(self, account: str) -> Path:
        safe = sanitize_segment(account, SegmentLevel.ACCOUNT)
        return self.confine(self.root / safe, SegmentLevel.ACCOUNT)

    def account_staging_dir(self, account: str) -> Path:
        return self.confine(
            self.account_dir(account) / STAGING_DIR_NAME, SegmentLevel.ACCOUNT
        )

    def container_dir(self, account: str, container: str) -> Path:
        safe = sanitize_segment(container, SegmentLevel.CONTAINER)
        return self.confine(self.account_dir(account) / safe, SegmentLevel.CONTAINER)

    def container_staging_dir(self, account: str, container: str) -> Path:
        safe = sanitize_segment(container, SegmentLevel.CONTAINER)
        return self.confine(
            self.account_staging_dir(account) / safe, SegmentLevel.CONTAINER
        )

    def address(self, account: str, container: str, blob_name: str) -> BlobAddress:
        """
        Build the address of a blob.

        Raises:
            InvalidSegmentError: If any segment is empty after sanitization
            OutsideRootError: If any derived path escapes the root
        """
        safe_account = sanitize_segment(account, SegmentLevel.ACCOUNT)
        safe_container = sanitize_segment(container, SegmentLevel.CONTAINER)
        segments = split_blob_name(blob_name)

        container_dir = self.container_dir(safe_account, safe_container)
        blob_path = self.confine(container_dir.joinpath(*segments), SegmentLevel.BLOB)
        staging_dir = self.confine(
            self.container_staging_dir(safe_account, safe_container).joinpath(
                *segments, BLOCKS_DIR_NAME
            ),
            SegmentLevel.BLOB,
        )

        return BlobAddress(
            account=safe_account,
            container=safe_container,
            segments=segments,
            container_dir=container_dir,
            blob_path=blob_path,
            staging_dir=staging_dir,
            sandbox=self,
        )
