"""
Tests for common/content_store.py

Tests cover:
- In-memory content store
- File content store persistence (blobs, pins, node id)
"""

import pytest

from vendor_marketplace.common.content_store import (
    FileContentStore,
    InMemoryContentStore,
    create_content_store,
)
from vendor_marketplace.common.crypto import compute_content_address


class TestInMemoryContentStore:
    """Test InMemoryContentStore"""

    @pytest.mark.asyncio
    async def test_put_and_get(self):
        """Test storing and retrieving content by address"""
        store = InMemoryContentStore()
        address = await store.put("hello")

        assert address == compute_content_address(b"hello")
        assert await store.get(address) == b"hello"

    @pytest.mark.asyncio
    async def test_get_missing(self):
        """Test retrieving unknown content"""
        store = InMemoryContentStore()

        assert await store.get("sha256:" + "0" * 64) is None

    @pytest.mark.asyncio
    async def test_pin(self):
        """Test pinning content"""
        store = InMemoryContentStore()
        pinned = await store.put(b"a", pin=True)
        unpinned = await store.put(b"b")

        assert await store.is_pinned(pinned)
        assert not await store.is_pinned(unpinned)

        await store.pin(unpinned)
        assert await store.is_pinned(unpinned)

    @pytest.mark.asyncio
    async def test_pin_missing(self):
        """Test pinning unknown content fails"""
        store = InMemoryContentStore()

        with pytest.raises(KeyError):
            await store.pin("sha256:" + "0" * 64)

    def test_node_id(self):
        """Test that each store gets its own node id"""
        assert InMemoryContentStore().node_id.startswith("memory-")
        assert InMemoryContentStore().node_id != InMemoryContentStore().node_id


class TestFileContentStore:
    """Test FileContentStore"""

    @pytest.mark.asyncio
    async def test_put_and_get(self, tmp_path):
        """Test storing content on disk"""
        store = FileContentStore(str(tmp_path))
        await store.start()

        address = await store.put("-----BEGIN PUBLIC KEY-----", pin=True)

        assert await store.get(address) == b"-----BEGIN PUBLIC KEY-----"
        assert (tmp_path / "blobs" / address.split(":", 1)[1]).exists()

    @pytest.mark.asyncio
    async def test_persists_across_instances(self, tmp_path):
        """Test that content, pins and node id survive a restart"""
        store = FileContentStore(str(tmp_path))
        await store.start()
        address = await store.put(b"data", pin=True)
        node_id = store.node_id
        await store.stop()

        reopened = FileContentStore(str(tmp_path))
        await reopened.start()

        assert reopened.node_id == node_id
        assert await reopened.get(address) == b"data"
        assert await reopened.is_pinned(address)

    @pytest.mark.asyncio
    async def test_get_invalid_address(self, tmp_path):
        """Test that malformed addresses never touch the filesystem"""
        store = FileContentStore(str(tmp_path))
        await store.start()

        assert await store.get("../../etc/passwd") is None
        assert await store.get("sha256:" + "0" * 64) is None

    def test_node_id_before_start(self, tmp_path):
        """Test node id is unavailable before start"""
        with pytest.raises(RuntimeError):
            FileContentStore(str(tmp_path)).node_id


def test_create_content_store(tmp_path):
    """Test content store factory"""
    assert isinstance(create_content_store(None), InMemoryContentStore)
    assert isinstance(create_content_store(str(tmp_path)), FileContentStore)
