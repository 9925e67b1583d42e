"""
Blob Storage Backend

File-system storage backend for block blobs. Blocks are staged as separate
files and committed by concatenating them, in block list order, into a
temporary file that is atomically renamed over the blob.

Author: FileBlob Contributors
Date: 2025
"""

import asyncio
import contextvars
import functools
import logging
import os
import secrets
import shutil
import threading
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import AsyncIterable, BinaryIO, Dict, Hashable, Iterator, List, Optional, Union

from .models import BlobProperties
from .sandbox import BLOCKS_DIR_NAME, BlobAddress, PathSandbox

logger = logging.getLogger(__name__)

# Block id used for single-shot uploads
SINGLE_BLOCK_ID = "_singleblock"

COPY_BUFFER_SIZE = 1024 * 1024

BlockData = Union[bytes, AsyncIterable[bytes]]


class MissingBlockError(Exception):
    """Raised when a block list references a block that was never staged."""

    def __init__(self, block_id: str):
        self.block_id = block_id
        super().__init__(f"The specified block list references block '{block_id}' which is not staged")


class BlobPathConflictError(Exception):
    """Raised when a blob name needs a directory where a file exists, or vice versa."""
    pass


class StorageIOError(Exception):
    """Raised when the storage medium fails (disk full, permission denied, ...)."""

    def __init__(self, operation: str, error: OSError):
        self.operation = operation
        self.error = error
        super().__init__(f"Storage failure during {operation}: {error.strerror or error}")


@contextmanager
def _translate_os_errors(operation: str):
    """Map ``OSError`` raised by the file system onto storage exceptions."""
    try:
        yield
    except (NotADirectoryError, IsADirectoryError, FileExistsError) as e:
        raise BlobPathConflictError(
            "The blob name conflicts with an existing blob or virtual directory"
        ) from e
    except OSError as e:
        logger.error(f"Storage I/O failure during {operation}: {e}")
        raise StorageIOError(operation, e) from e


def _temp_path_for(target: Path) -> Path:
    """Dot-prefixed temporary file beside ``target``, on the same file system."""
    return target.parent / f".{target.name}.{os.getpid()}.{secrets.token_hex(8)}.tmp"


def _remove_tree(path: Path) -> bool:
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        return False
    return True


async def _run_in_thread(func, *args, on_cancel=None):
    """
    Run blocking file system work in the default executor.

    The calling task's context (request id) is carried into the worker. If
    the calling task is cancelled, ``on_cancel`` is invoked and the worker is
    still awaited before the cancellation propagates, so locks and files held
    by the caller are not released while the worker uses them.
    """
    loop = asyncio.get_running_loop()
    context = contextvars.copy_context()
    future = loop.run_in_executor(None, functools.partial(context.run, func, *args))
    try:
        return await asyncio.shield(future)
    except asyncio.CancelledError:
        if on_cancel is not None:
            on_cancel()
        await asyncio.wait({future})
        raise


async def _write_data(dest: BinaryIO, data: BlockData) -> int:
    if isinstance(data, (bytes, bytearray, memoryview)):
        await _run_in_thread(dest.write, data)
        return len(data)

    written = 0
    async for chunk in data:
        if chunk:
            await _run_in_thread(dest.write, chunk)
            written += len(chunk)
    return written


class _LockState:
    def __init__(self):
        self.condition = asyncio.Condition()
        self.readers = 0
        self.writer = False
        self.writers_waiting = 0
        self.refs = 0


class KeyedReadWriteLock:
    """
    Reader/writer locks keyed by an arbitrary hashable.

    Shared holders of one key run concurrently; an exclusive holder runs
    alone. Waiting writers block new readers. Entries are dropped as soon
    as nobody holds or waits for them.
    """

    def __init__(self):
        self._states: Dict[Hashable, _LockState] = {}

    def __len__(self) -> int:
        return len(self._states)

    def _checkout(self, key: Hashable) -> _LockState:
        state = self._states.get(key)
        if state is None:
            state = self._states[key] = _LockState()
        state.refs += 1
        return state

    def _checkin(self, key: Hashable, state: _LockState) -> None:
        state.refs -= 1
        if state.refs == 0:
            del self._states[key]

    @asynccontextmanager
    async def shared(self, key: Hashable):
        state = self._checkout(key)
        try:
            async with state.condition:
                await state.condition.wait_for(
                    lambda: not state.writer and state.writers_waiting == 0
                )
                state.readers += 1
            try:
                yield
            finally:
                async with state.condition:
                    state.readers -= 1
                    state.condition.notify_all()
        finally:
            self._checkin(key, state)

    @asynccontextmanager
    async def exclusive(self, key: Hashable):
        state = self._checkout(key)
        try:
            async with state.condition:
                state.writers_waiting += 1
                try:
                    await state.condition.wait_for(
                        lambda: not state.writer and state.readers == 0
                    )
                finally:
                    state.writers_waiting -= 1
                    state.condition.notify_all()
                state.writer = True
            try:
                yield
            finally:
                async with state.condition:
                    state.writer = False
                    state.condition.notify_all()
        finally:
            self._checkin(key, state)


class BlockBlobStore:
    """
    Block blob storage over a local directory tree.

    All caller-supplied names go through :class:`PathSandbox`. Staging of
    blocks holds a shared per-blob lock; commits and deletes of the same
    blob hold it exclusively, so a commit can never remove a staging
    directory that a concurrent stage is writing into. Reads take no lock:
    commits replace the blob with an atomic rename.
    """

    def __init__(self, root: Union[str, Path]):
        """
        Initialize the store.

        Args:
            root: Storage root directory, created if missing
        """
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.sandbox = PathSandbox(self.root)
        self._locks = KeyedReadWriteLock()
        logger.info(f"Using blob storage root: {self.root.resolve()}")

    @classmethod
    def from_config(cls, config) -> "BlockBlobStore":
        """Create a store from an ``EmulatorConfig``."""
        return cls(config.storage.root)

    # ============================================================================
    # Container Operations
    # ============================================================================

    def ensure_container(self, account: str, container: str) -> None:
        """Create the container directory if it does not exist."""
        path = self.sandbox.container_dir(account, container)
        with _translate_os_errors("create container"):
            path.mkdir(parents=True, exist_ok=True)

    def container_exists(self, account: str, container: str) -> bool:
        return self.sandbox.container_dir(account, container).is_dir()

    def delete_container(self, account: str, container: str) -> bool:
        """
        Delete a container with all its blobs and staged blocks.

        Returns:
            True if the container existed
        """
        path = self.sandbox.container_dir(account, container)
        staging = self.sandbox.container_staging_dir(account, container)
        with _translate_os_errors("delete container"):
            existed = _remove_tree(path)
            _remove_tree(staging)
        return existed

    # ============================================================================
    # Block Operations
    # ============================================================================

    async def stage_block(
        self,
        account: str,
        container: str,
        blob_name: str,
        block_id: str,
        data: BlockData,
    ) -> int:
        """
        Stage a block for a later commit, replacing a block with the same id.

        Args:
            account: Account name
            container: Container name
            blob_name: Blob name, may contain ``/``
            block_id: Decoded block id
            data: Block content, bytes or an async iterable of chunks

        Returns:
            Number of bytes staged
        """
        address = self.sandbox.address(account, container, blob_name)
        block_path = address.block_path(block_id)

        async with self._locks.shared(address.lock_key):
            return await self._stage_locked(address, block_path, data)

    async def _stage_locked(self, address: BlobAddress, block_path: Path, data: BlockData) -> int:
        temp_path = None
        try:
            with _translate_os_errors("stage block"):
                address.staging_dir.mkdir(parents=True, exist_ok=True)
                temp_path = _temp_path_for(block_path)
                with open(temp_path, "xb") as dest:
                    size = await _write_data(dest, data)
                os.replace(temp_path, block_path)
                temp_path = None
        finally:
            if temp_path is not None:
                temp_path.unlink(missing_ok=True)

        logger.debug(f"Staged block {block_path.name} ({size} bytes) for {address.container}/{address.name}")
        return size

    async def commit_blocks(
        self,
        account: str,
        container: str,
        blob_name: str,
        block_ids: List[str],
    ) -> BlobProperties:
        """
        Commit staged blocks, in the given order, as the content of a blob.

        The previous content of the blob stays visible until the new content
        is complete. On success the blob's staging directory is removed.

        Raises:
            MissingBlockError: If a referenced block was never staged
            BlobPathConflictError: If the blob name collides with a virtual directory
            StorageIOError: If the file system fails
        """
        address = self.sandbox.address(account, container, blob_name)
        block_paths = [address.block_path(block_id) for block_id in block_ids]

        async with self._locks.exclusive(address.lock_key):
            return await self._commit_locked(address, block_paths)

    async def _commit_locked(self, address: BlobAddress, block_paths: List[Path]) -> BlobProperties:
        abort = threading.Event()
        return await _run_in_thread(
            self._commit_files, address, block_paths, abort, on_cancel=abort.set
        )

    def _commit_files(
        self, address: BlobAddress, block_paths: List[Path], abort: threading.Event
    ) -> Optional[BlobProperties]:
        # Runs in a worker thread; returns None once ``abort`` is set
        for block_path in block_paths:
            if not block_path.is_file():
                raise MissingBlockError(block_path.name)

        with _translate_os_errors("commit block list"):
            address.container_dir.mkdir(parents=True, exist_ok=True)
            address.blob_path.parent.mkdir(parents=True, exist_ok=True)
            if address.blob_path.is_dir():
                raise IsADirectoryError(str(address.blob_path))

            temp_path = _temp_path_for(address.blob_path)
            try:
                with open(temp_path, "xb") as dest:
                    for block_path in block_paths:
                        if abort.is_set():
                            return None
                        try:
                            with open(block_path, "rb") as src:
                                shutil.copyfileobj(src, dest, COPY_BUFFER_SIZE)
                        except FileNotFoundError as e:
                            raise MissingBlockError(block_path.name) from e
                    dest.flush()
                    os.fsync(dest.fileno())
                if abort.is_set():
                    return None
                os.replace(temp_path, address.blob_path)
                temp_path = None
            finally:
                if temp_path is not None:
                    temp_path.unlink(missing_ok=True)

            _remove_tree(address.staging_dir)
            stat = address.blob_path.stat()

        logger.info(
            f"Committed {len(block_paths)} block(s) to {address.account}/{address.container}/{address.name} "
            f"({stat.st_size} bytes)"
        )
        return BlobProperties.from_stat(address.name, stat.st_size, stat.st_mtime_ns)

    async def put_blob(
        self,
        account: str,
        container: str,
        blob_name: str,
        data: BlockData,
    ) -> BlobProperties:
        """Single-shot upload: stage one implicit block and commit it alone."""
        address = self.sandbox.address(account, container, blob_name)
        block_path = address.block_path(SINGLE_BLOCK_ID)

        async with self._locks.exclusive(address.lock_key):
            await self._stage_locked(address, block_path, data)
            return await self._commit_locked(address, [block_path])

    # ============================================================================
    # Blob Operations
    # ============================================================================

    def get_blob(self, account: str, container: str, blob_name: str) -> Optional[BinaryIO]:
        """
        Open a committed blob for reading.

        Returns:
            Seekable binary file positioned at offset 0, or None if the blob
            does not exist. The caller closes it.
        """
        address = self.sandbox.address(account, container, blob_name)
        if not address.blob_path.is_file():
            return None
        try:
            return open(address.blob_path, "rb")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.error(f"Storage I/O failure during read blob: {e}")
            raise StorageIOError("read blob", e) from e

    def get_blob_properties(
        self, account: str, container: str, blob_name: str
    ) -> Optional[BlobProperties]:
        address = self.sandbox.address(account, container, blob_name)
        try:
            stat = address.blob_path.stat()
        except (FileNotFoundError, NotADirectoryError):
            return None
        if not address.blob_path.is_file():
            return None
        return BlobProperties.from_stat(address.name, stat.st_size, stat.st_mtime_ns)

    async def delete_blob(self, account: str, container: str, blob_name: str) -> bool:
        """
        Delete a blob and any blocks staged for it.

        Returns:
            True if the blob existed
        """
        address = self.sandbox.address(account, container, blob_name)

        async with self._locks.exclusive(address.lock_key):
            existed = await _run_in_thread(self._delete_files, address)

        if existed:
            logger.info(f"Deleted blob {address.account}/{address.container}/{address.name}")
        return existed

    @staticmethod
    def _delete_files(address: BlobAddress) -> bool:
        with _translate_os_errors("delete blob"):
            existed = address.blob_path.is_file()
            if existed:
                address.blob_path.unlink(missing_ok=True)
            _remove_tree(address.staging_dir)
        return existed

    def list_blobs(self, account: str, container: str) -> Iterator[str]:
        """
        Lazily enumerate committed blobs of a container.

        Names are relative to the container and ``/``-separated, in file
        system order. Dot-prefixed entries (commit temporaries) are skipped.
        """
        container_dir = self.sandbox.container_dir(account, container)
        return self._walk_blobs(container_dir)

    @staticmethod
    def _walk_blobs(container_dir: Path) -> Iterator[str]:
        if not container_dir.is_dir():
            return
        for dirpath, dirnames, filenames in os.walk(container_dir):
            dirnames[:] = [d for d in dirnames if not d.startswith(".")]
            for filename in filenames:
                if filename.startswith("."):
                    continue
                relative = os.path.relpath(os.path.join(dirpath, filename), container_dir)
                yield relative.replace(os.sep, "/")

    def purge_staging(self, account: str, container: Optional[str] = None) -> int:
        """
        Remove orphaned staged blocks of an account or one of its containers.

        Meant for operators while the emulator is idle; it takes no locks.

        Returns:
            Number of blob staging directories removed
        """
        if container is None:
            staging_root = self.sandbox.account_staging_dir(account)
        else:
            staging_root = self.sandbox.container_staging_dir(account, container)

        if not staging_root.is_dir():
            return 0

        with _translate_os_errors("purge staging"):
            count = sum(1 for _ in staging_root.rglob(BLOCKS_DIR_NAME))
            _remove_tree(staging_root)

        logger.info(f"Purged {count} staging director(ies) under {staging_root}")
        return count
