"""
Unit tests for the block blob file backend.

Tests block staging, block list commits, reads, deletes, listing,
staging purge and per-blob locking.

Author: FileBlob Contributors
Date: 2025
"""

import asyncio
import os
import shutil
import threading

import pytest

from fileblob.services.blob.backend import (
    SINGLE_BLOCK_ID,
    BlobPathConflictError,
    BlockBlobStore,
    KeyedReadWriteLock,
    MissingBlockError,
    StorageIOError,
)
from fileblob.services.blob.sandbox import (
    STAGING_DIR_NAME,
    InvalidSegmentError,
)

ACCOUNT = "devstoreaccount1"
CONTAINER = "photos"


@pytest.fixture
def store(tmp_path):
    """Create a store over a fresh root for each test."""
    return BlockBlobStore(tmp_path / "blob-root")


def read_blob(store, name, container=CONTAINER):
    stream = store.get_blob(ACCOUNT, container, name)
    assert stream is not None
    with stream:
        return stream.read()


async def chunks(*parts):
    for part in parts:
        yield part


class TestContainers:
    """Test container operations."""

    def test_root_created(self, tmp_path):
        root = tmp_path / "nested" / "root"
        BlockBlobStore(root)
        assert root.is_dir()

    def test_ensure_container_idempotent(self, store):
        store.ensure_container(ACCOUNT, CONTAINER)
        store.ensure_container(ACCOUNT, CONTAINER)
        assert store.container_exists(ACCOUNT, CONTAINER)

    def test_container_absent(self, store):
        assert not store.container_exists(ACCOUNT, "missing")

    @pytest.mark.asyncio
    async def test_delete_container_removes_blobs_and_staging(self, store):
        await store.put_blob(ACCOUNT, CONTAINER, "a.txt", b"a")
        await store.stage_block(ACCOUNT, CONTAINER, "b.txt", "blk", b"b")

        assert store.delete_container(ACCOUNT, CONTAINER) is True

        assert not store.container_exists(ACCOUNT, CONTAINER)
        assert not store.sandbox.container_staging_dir(ACCOUNT, CONTAINER).exists()

    def test_delete_absent_container_is_noop(self, store):
        assert store.delete_container(ACCOUNT, "missing") is False


class TestStageAndCommit:
    """Test the staged write protocol."""

    @pytest.mark.asyncio
    async def test_commit_concatenates_in_list_order(self, store):
        await store.stage_block(ACCOUNT, CONTAINER, "out.bin", "b2", b"world")
        await store.stage_block(ACCOUNT, CONTAINER, "out.bin", "b1", b"hello ")

        props = await store.commit_blocks(ACCOUNT, CONTAINER, "out.bin", ["b1", "b2"])

        assert read_blob(store, "out.bin") == b"hello world"
        assert props.content_length == 11
        assert props.name == "out.bin"

    @pytest.mark.asyncio
    async def test_block_may_repeat_in_list(self, store):
        await store.stage_block(ACCOUNT, CONTAINER, "rep", "x", b"ab")
        await store.commit_blocks(ACCOUNT, CONTAINER, "rep", ["x", "x", "x"])
        assert read_blob(store, "rep") == b"ababab"

    @pytest.mark.asyncio
    async def test_stage_returns_size(self, store):
        size = await store.stage_block(ACCOUNT, CONTAINER, "s", "b", chunks(b"ab", b"", b"cde"))
        assert size == 5

    @pytest.mark.asyncio
    async def test_restage_replaces_block(self, store):
        await store.stage_block(ACCOUNT, CONTAINER, "r", "b", b"old")
        await store.stage_block(ACCOUNT, CONTAINER, "r", "b", b"new")
        await store.commit_blocks(ACCOUNT, CONTAINER, "r", ["b"])
        assert read_blob(store, "r") == b"new"

    @pytest.mark.asyncio
    async def test_commit_creates_virtual_directories(self, store):
        await store.stage_block(ACCOUNT, CONTAINER, "2024/06/img.png", "b", b"png")
        await store.commit_blocks(ACCOUNT, CONTAINER, "2024/06/img.png", ["b"])

        path = store.root / ACCOUNT / CONTAINER / "2024" / "06" / "img.png"
        assert path.read_bytes() == b"png"

    @pytest.mark.asyncio
    async def test_commit_creates_container(self, store):
        await store.stage_block(ACCOUNT, "fresh", "x", "b", b"1")
        await store.commit_blocks(ACCOUNT, "fresh", "x", ["b"])
        assert store.container_exists(ACCOUNT, "fresh")

    @pytest.mark.asyncio
    async def test_commit_removes_staging(self, store):
        await store.stage_block(ACCOUNT, CONTAINER, "c", "b", b"1")
        address = store.sandbox.address(ACCOUNT, CONTAINER, "c")
        assert address.staging_dir.is_dir()

        await store.commit_blocks(ACCOUNT, CONTAINER, "c", ["b"])

        assert not address.staging_dir.exists()

    @pytest.mark.asyncio
    async def test_missing_block_leaves_previous_content(self, store):
        await store.put_blob(ACCOUNT, CONTAINER, "keep", b"original")
        await store.stage_block(ACCOUNT, CONTAINER, "keep", "b1", b"new")

        with pytest.raises(MissingBlockError) as exc_info:
            await store.commit_blocks(ACCOUNT, CONTAINER, "keep", ["b1", "nope"])

        assert exc_info.value.block_id == "nope"
        assert read_blob(store, "keep") == b"original"
        # The staged block survives the failed commit
        assert store.sandbox.address(ACCOUNT, CONTAINER, "keep").block_path("b1").is_file()

    @pytest.mark.asyncio
    async def test_missing_block_creates_nothing(self, store):
        with pytest.raises(MissingBlockError):
            await store.commit_blocks(ACCOUNT, CONTAINER, "ghost", ["b"])
        assert store.get_blob(ACCOUNT, CONTAINER, "ghost") is None

    @pytest.mark.asyncio
    async def test_empty_block_list_commits_empty_blob(self, store):
        props = await store.commit_blocks(ACCOUNT, CONTAINER, "empty", [])
        assert props.content_length == 0
        assert read_blob(store, "empty") == b""

    @pytest.mark.asyncio
    async def test_no_temporaries_left_behind(self, store):
        await store.stage_block(ACCOUNT, CONTAINER, "t", "b", b"data")
        await store.commit_blocks(ACCOUNT, CONTAINER, "t", ["b"])

        leftovers = [
            name
            for _, _, files in os.walk(store.root)
            for name in files
            if name.endswith(".tmp")
        ]
        assert leftovers == []

    @pytest.mark.asyncio
    async def test_invalid_block_id_rejected(self, store):
        with pytest.raises(InvalidSegmentError):
            await store.stage_block(ACCOUNT, CONTAINER, "b", "../..", b"x")

    @pytest.mark.asyncio
    async def test_blob_under_existing_blob_conflicts(self, store):
        await store.put_blob(ACCOUNT, CONTAINER, "a", b"file")
        with pytest.raises(BlobPathConflictError):
            await store.put_blob(ACCOUNT, CONTAINER, "a/b", b"nested")

    @pytest.mark.asyncio
    async def test_blob_over_virtual_directory_conflicts(self, store):
        await store.put_blob(ACCOUNT, CONTAINER, "dir/file", b"x")
        with pytest.raises(BlobPathConflictError):
            await store.put_blob(ACCOUNT, CONTAINER, "dir", b"y")
        assert read_blob(store, "dir/file") == b"x"

    @pytest.mark.asyncio
    async def test_storage_failure_wrapped(self, store, monkeypatch):
        def fail(*args, **kwargs):
            raise PermissionError(13, "Permission denied")

        monkeypatch.setattr("fileblob.services.blob.backend.shutil.copyfileobj", fail)
        await store.stage_block(ACCOUNT, CONTAINER, "p", "b", b"x")

        with pytest.raises(StorageIOError) as exc_info:
            await store.commit_blocks(ACCOUNT, CONTAINER, "p", ["b"])

        assert isinstance(exc_info.value.error, PermissionError)
        assert store.get_blob(ACCOUNT, CONTAINER, "p") is None


class TestPutBlob:
    """Test single-shot uploads."""

    @pytest.mark.asyncio
    async def test_put_blob_streamed(self, store):
        props = await store.put_blob(ACCOUNT, CONTAINER, "s.txt", chunks(b"a", b"b", b"c"))
        assert props.content_length == 3
        assert read_blob(store, "s.txt") == b"abc"

    @pytest.mark.asyncio
    async def test_put_blob_overwrites(self, store):
        await store.put_blob(ACCOUNT, CONTAINER, "o", b"one")
        await store.put_blob(ACCOUNT, CONTAINER, "o", b"two!")
        assert read_blob(store, "o") == b"two!"

    @pytest.mark.asyncio
    async def test_put_blob_leaves_no_staging(self, store):
        await store.put_blob(ACCOUNT, CONTAINER, "o", b"x")
        address = store.sandbox.address(ACCOUNT, CONTAINER, "o")
        assert not address.block_path(SINGLE_BLOCK_ID).exists()

    @pytest.mark.asyncio
    async def test_put_blob_discards_other_staged_blocks(self, store):
        await store.stage_block(ACCOUNT, CONTAINER, "o", "pending", b"p")
        await store.put_blob(ACCOUNT, CONTAINER, "o", b"x")

        with pytest.raises(MissingBlockError):
            await store.commit_blocks(ACCOUNT, CONTAINER, "o", ["pending"])


class TestReadAndDelete:
    """Test reads, properties and deletes."""

    @pytest.mark.asyncio
    async def test_get_blob_is_seekable(self, store):
        await store.put_blob(ACCOUNT, CONTAINER, "seek", b"0123456789")
        with store.get_blob(ACCOUNT, CONTAINER, "seek") as stream:
            stream.seek(4)
            assert stream.read(3) == b"456"

    def test_get_missing_blob(self, store):
        assert store.get_blob(ACCOUNT, CONTAINER, "missing") is None
        assert store.get_blob_properties(ACCOUNT, CONTAINER, "missing") is None

    @pytest.mark.asyncio
    async def test_virtual_directory_is_not_a_blob(self, store):
        await store.put_blob(ACCOUNT, CONTAINER, "dir/file", b"x")
        assert store.get_blob(ACCOUNT, CONTAINER, "dir") is None
        assert store.get_blob_properties(ACCOUNT, CONTAINER, "dir") is None

    @pytest.mark.asyncio
    async def test_properties(self, store):
        await store.put_blob(ACCOUNT, CONTAINER, "p", b"12345")
        props = store.get_blob_properties(ACCOUNT, CONTAINER, "p")

        assert props.content_length == 5
        assert props.etag.startswith("0x")
        assert props.last_modified.tzinfo is not None

    @pytest.mark.asyncio
    async def test_etag_changes_on_rewrite(self, store):
        first = await store.put_blob(ACCOUNT, CONTAINER, "e", b"1")
        second = await store.put_blob(ACCOUNT, CONTAINER, "e", b"22")
        assert first.etag != second.etag

    @pytest.mark.asyncio
    async def test_delete_blob(self, store):
        await store.put_blob(ACCOUNT, CONTAINER, "d", b"x")
        assert await store.delete_blob(ACCOUNT, CONTAINER, "d") is True
        assert store.get_blob(ACCOUNT, CONTAINER, "d") is None

    @pytest.mark.asyncio
    async def test_delete_missing_blob(self, store):
        assert await store.delete_blob(ACCOUNT, CONTAINER, "nothing") is False

    @pytest.mark.asyncio
    async def test_delete_blob_discards_staged_blocks(self, store):
        await store.stage_block(ACCOUNT, CONTAINER, "d", "b", b"x")
        await store.delete_blob(ACCOUNT, CONTAINER, "d")
        assert not store.sandbox.address(ACCOUNT, CONTAINER, "d").staging_dir.exists()


class TestListing:
    """Test blob enumeration."""

    @pytest.mark.asyncio
    async def test_list_committed_blobs(self, store):
        await store.put_blob(ACCOUNT, CONTAINER, "a.txt", b"a")
        await store.put_blob(ACCOUNT, CONTAINER, "dir/b.txt", b"b")
        await store.put_blob(ACCOUNT, CONTAINER, "dir/sub/c.txt", b"c")

        assert sorted(store.list_blobs(ACCOUNT, CONTAINER)) == [
            "a.txt",
            "dir/b.txt",
            "dir/sub/c.txt",
        ]

    @pytest.mark.asyncio
    async def test_list_excludes_staged_blocks(self, store):
        await store.put_blob(ACCOUNT, CONTAINER, "done", b"x")
        await store.stage_block(ACCOUNT, CONTAINER, "pending", "b", b"y")

        assert list(store.list_blobs(ACCOUNT, CONTAINER)) == ["done"]

    @pytest.mark.asyncio
    async def test_list_excludes_temporaries(self, store):
        await store.put_blob(ACCOUNT, CONTAINER, "done", b"x")
        container_dir = store.sandbox.container_dir(ACCOUNT, CONTAINER)
        (container_dir / ".done.123.abc.tmp").write_bytes(b"partial")

        assert list(store.list_blobs(ACCOUNT, CONTAINER)) == ["done"]

    def test_list_missing_container(self, store):
        assert list(store.list_blobs(ACCOUNT, "missing")) == []

    @pytest.mark.asyncio
    async def test_list_is_lazy(self, store):
        await store.put_blob(ACCOUNT, CONTAINER, "a", b"a")
        result = store.list_blobs(ACCOUNT, CONTAINER)
        assert not isinstance(result, list)
        assert next(iter(result)) == "a"

    @pytest.mark.asyncio
    async def test_containers_are_isolated(self, store):
        await store.put_blob(ACCOUNT, "one", "a", b"a")
        await store.put_blob(ACCOUNT, "two", "b", b"b")
        assert list(store.list_blobs(ACCOUNT, "one")) == ["a"]


class TestPurgeStaging:
    """Test the operator staging purge."""

    @pytest.mark.asyncio
    async def test_purge_container(self, store):
        await store.stage_block(ACCOUNT, CONTAINER, "a", "b", b"x")
        await store.stage_block(ACCOUNT, CONTAINER, "dir/b", "b", b"x")
        await store.stage_block(ACCOUNT, "other", "c", "b", b"x")

        assert store.purge_staging(ACCOUNT, CONTAINER) == 2
        assert store.sandbox.container_staging_dir(ACCOUNT, "other").is_dir()

    @pytest.mark.asyncio
    async def test_purge_account(self, store):
        await store.stage_block(ACCOUNT, CONTAINER, "a", "b", b"x")
        await store.stage_block(ACCOUNT, "other", "c", "b", b"x")

        assert store.purge_staging(ACCOUNT) == 2
        assert not (store.root / ACCOUNT / STAGING_DIR_NAME).exists()

    @pytest.mark.asyncio
    async def test_purge_keeps_committed_blobs(self, store):
        await store.put_blob(ACCOUNT, CONTAINER, "keep", b"x")
        await store.stage_block(ACCOUNT, CONTAINER, "orphan", "b", b"y")

        store.purge_staging(ACCOUNT)

        assert read_blob(store, "keep") == b"x"

    def test_purge_nothing(self, store):
        assert store.purge_staging(ACCOUNT) == 0


class TestConcurrency:
    """Test per-blob locking under concurrent requests."""

    @pytest.mark.asyncio
    async def test_concurrent_stages_then_commit(self, store):
        block_ids = [f"block{i:03d}" for i in range(20)]

        await asyncio.gather(*[
            store.stage_block(ACCOUNT, CONTAINER, "big", block_id, block_id.encode())
            for block_id in reversed(block_ids)
        ])
        await store.commit_blocks(ACCOUNT, CONTAINER, "big", block_ids)

        assert read_blob(store, "big") == b"".join(b.encode() for b in block_ids)

    @pytest.mark.asyncio
    async def test_commit_waits_for_inflight_stage(self, store):
        release = asyncio.Event()
        started = asyncio.Event()

        async def slow_body():
            yield b"first-"
            started.set()
            await release.wait()
            yield b"half"

        stage_task = asyncio.create_task(
            store.stage_block(ACCOUNT, CONTAINER, "race", "b1", slow_body())
        )
        await started.wait()

        commit_task = asyncio.create_task(
            store.commit_blocks(ACCOUNT, CONTAINER, "race", ["b1"])
        )
        await asyncio.sleep(0.01)
        assert not commit_task.done()

        release.set()
        await stage_task
        await commit_task

        assert read_blob(store, "race") == b"first-half"

    @pytest.mark.asyncio
    async def test_concurrent_commits_serialize(self, store):
        await store.stage_block(ACCOUNT, CONTAINER, "c", "a", b"A" * 1000)
        await store.stage_block(ACCOUNT, CONTAINER, "c", "b", b"B" * 1000)

        results = await asyncio.gather(
            store.commit_blocks(ACCOUNT, CONTAINER, "c", ["a", "b"]),
            store.commit_blocks(ACCOUNT, CONTAINER, "c", ["b", "a"]),
            return_exceptions=True,
        )

        # The second commit finds the staging directory consumed
        assert sum(isinstance(r, MissingBlockError) for r in results) == 1
        content = read_blob(store, "c")
        assert content in (b"A" * 1000 + b"B" * 1000, b"B" * 1000 + b"A" * 1000)

    @pytest.mark.asyncio
    async def test_commit_does_not_block_event_loop(self, store, monkeypatch):
        block = 4 * 1024 * 1024
        await store.stage_block(ACCOUNT, CONTAINER, "large.bin", "b1", b"a" * block)
        await store.stage_block(ACCOUNT, CONTAINER, "large.bin", "b2", b"b" * block)
        await store.put_blob(ACCOUNT, CONTAINER, "other.txt", b"unrelated")

        copying = threading.Event()
        released = threading.Event()
        waits = []
        copyfileobj = shutil.copyfileobj

        def gated_copy(src, dst, length=0):
            copying.set()
            waits.append(released.wait(timeout=5))
            copyfileobj(src, dst, length)

        monkeypatch.setattr("fileblob.services.blob.backend.shutil.copyfileobj", gated_copy)

        commit_task = asyncio.create_task(
            store.commit_blocks(ACCOUNT, CONTAINER, "large.bin", ["b1", "b2"])
        )
        while not copying.is_set():
            await asyncio.sleep(0.001)

        # The loop keeps serving while the commit copies
        assert read_blob(store, "other.txt") == b"unrelated"
        released.set()
        properties = await commit_task

        assert waits == [True, True]
        assert properties.content_length == 2 * block

    @pytest.mark.asyncio
    async def test_cancelled_commit_keeps_previous_blob(self, store, monkeypatch):
        await store.put_blob(ACCOUNT, CONTAINER, "doc", b"old")
        await store.stage_block(ACCOUNT, CONTAINER, "doc", "b1", b"new-1")
        await store.stage_block(ACCOUNT, CONTAINER, "doc", "b2", b"new-2")

        copying = threading.Event()
        released = threading.Event()
        copyfileobj = shutil.copyfileobj

        def gated_copy(src, dst, length=0):
            copying.set()
            released.wait(timeout=5)
            copyfileobj(src, dst, length)

        monkeypatch.setattr("fileblob.services.blob.backend.shutil.copyfileobj", gated_copy)

        commit_task = asyncio.create_task(
            store.commit_blocks(ACCOUNT, CONTAINER, "doc", ["b1", "b2"])
        )
        while not copying.is_set():
            await asyncio.sleep(0.001)

        commit_task.cancel()
        await asyncio.sleep(0.05)
        released.set()
        with pytest.raises(asyncio.CancelledError):
            await commit_task

        assert read_blob(store, "doc") == b"old"
        container_dir = store.root / ACCOUNT / CONTAINER
        assert sorted(p.name for p in container_dir.iterdir()) == ["doc"]
        assert len(store._locks) == 0

    @pytest.mark.asyncio
    async def test_locks_released(self, store):
        await store.put_blob(ACCOUNT, CONTAINER, "x", b"1")
        await store.stage_block(ACCOUNT, CONTAINER, "x", "b", b"2")
        await store.delete_blob(ACCOUNT, CONTAINER, "x")
        assert len(store._locks) == 0


class TestKeyedReadWriteLock:
    """Test the keyed reader/writer lock."""

    @pytest.mark.asyncio
    async def test_shared_holders_overlap(self):
        lock = KeyedReadWriteLock()
        inside = 0
        peak = 0

        async def reader():
            nonlocal inside, peak
            async with lock.shared("k"):
                inside += 1
                peak = max(peak, inside)
                await asyncio.sleep(0.01)
                inside -= 1

        await asyncio.gather(reader(), reader(), reader())
        assert peak == 3

    @pytest.mark.asyncio
    async def test_exclusive_runs_alone(self):
        lock = KeyedReadWriteLock()
        events = []

        async def writer(name):
            async with lock.exclusive("k"):
                events.append(f"{name}-in")
                await asyncio.sleep(0.01)
                events.append(f"{name}-out")

        await asyncio.gather(writer("a"), writer("b"))
        assert events in (
            ["a-in", "a-out", "b-in", "b-out"],
            ["b-in", "b-out", "a-in", "a-out"],
        )

    @pytest.mark.asyncio
    async def test_different_keys_independent(self):
        lock = KeyedReadWriteLock()
        async with lock.exclusive("a"):
            async with lock.exclusive("b"):
                assert len(lock) == 2
        assert len(lock) == 0

    @pytest.mark.asyncio
    async def test_waiting_writer_blocks_new_readers(self):
        lock = KeyedReadWriteLock()
        order = []
        first_in = asyncio.Event()
        release = asyncio.Event()

        async def first_reader():
            async with lock.shared("k"):
                first_in.set()
                await release.wait()
                order.append("reader1")

        async def writer():
            async with lock.exclusive("k"):
                order.append("writer")

        async def late_reader():
            async with lock.shared("k"):
                order.append("reader2")

        t1 = asyncio.create_task(first_reader())
        await first_in.wait()
        t2 = asyncio.create_task(writer())
        await asyncio.sleep(0)
        t3 = asyncio.create_task(late_reader())
        await asyncio.sleep(0.01)
        release.set()
        await asyncio.gather(t1, t2, t3)

        assert order == ["reader1", "writer", "reader2"]

    @pytest.mark.asyncio
    async def test_released_on_exception(self):
        lock = KeyedReadWriteLock()
        with pytest.raises(RuntimeError):
            async with lock.exclusive("k"):
                raise RuntimeError("boom")
        assert len(lock) == 0
        async with lock.shared("k"):
            pass
