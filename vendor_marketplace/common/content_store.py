"""
vendor_marketplace/common/content_store.py

コンテンツアドレス型ストレージ

保存したコンテンツは sha256 ベースのアドレスで取り出せる。
委任公開鍵とPoPRの保存・ピン留めに使用する。

- InMemoryContentStore: テスト・開発用
- FileContentStore: ディレクトリに永続化（ピン留め一覧も保存）
"""

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Set, Union

from vendor_marketplace.common.crypto import (
    CONTENT_ADDRESS_PREFIX,
    compute_content_address,
    is_content_address,
)
from vendor_marketplace.common.logger import get_logger

logger = get_logger(__name__)


class ContentStore(ABC):
    """コンテンツアドレス型ストレージのインターフェース"""

    @property
    @abstractmethod
    def node_id(self) -> str:
        """ストレージノードの識別子"""

    async def start(self):
        pass

    async def stop(self):
        pass

    @abstractmethod
    async def put(self, content: Union[bytes, str], pin: bool = False) -> str:
        """コンテンツを保存してアドレスを返す"""

    @abstractmethod
    async def get(self, address: str) -> Optional[bytes]:
        """アドレスからコンテンツを取得（存在しない場合はNone）"""

    @abstractmethod
    async def pin(self, address: str):
        """コンテンツをピン留め"""

    @abstractmethod
    async def is_pinned(self, address: str) -> bool:
        """ピン留め済みかどうか"""


def _to_bytes(content: Union[bytes, str]) -> bytes:
    return content.encode('utf-8') if isinstance(content, str) else content


class InMemoryContentStore(ContentStore):
    """インメモリのコンテンツストア"""

    def __init__(self):
        self._node_id = f"memory-{uuid.uuid4().hex[:12]}"
        self._blobs: Dict[str, bytes] = {}
        self._pins: Set[str] = set()

    @property
    def node_id(self) -> str:
        return self._node_id

    async def put(self, content: Union[bytes, str], pin: bool = False) -> str:
        data = _to_bytes(content)
        address = compute_content_address(data)
        self._blobs[address] = data
        if pin:
            self._pins.add(address)
        logger.debug(f"[ContentStore] Stored {len(data)} bytes at {address}")
        return address

    async def get(self, address: str) -> Optional[bytes]:
        return self._blobs.get(address)

    async def pin(self, address: str):
        if address not in self._blobs:
            raise KeyError(f"Content not found: {address}")
        self._pins.add(address)

    async def is_pinned(self, address: str) -> bool:
        return address in self._pins


class FileContentStore(ContentStore):
    """
    ディレクトリに永続化するコンテンツストア

    ファイル名はアドレスのハッシュ部分。ピン留め一覧は pins.json に保存する。
    """

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self.blobs_directory = self.directory / "blobs"
        self._pins_file = self.directory / "pins.json"
        self._node_id: Optional[str] = None
        self._pins: Set[str] = set()
        self._lock = asyncio.Lock()

    @property
    def node_id(self) -> str:
        if self._node_id is None:
            raise RuntimeError("Content store is not started")
        return self._node_id

    def _prepare(self):
        self.blobs_directory.mkdir(parents=True, exist_ok=True)
        node_file = self.directory / "node_id"
        if node_file.exists():
            self._node_id = node_file.read_text(encoding='utf-8').strip()
        else:
            self._node_id = f"node-{uuid.uuid4().hex[:12]}"
            node_file.write_text(self._node_id, encoding='utf-8')
        if self._pins_file.exists():
            self._pins = set(json.loads(self._pins_file.read_text(encoding='utf-8')))

    async def start(self):
        await asyncio.to_thread(self._prepare)
        logger.info(f"[ContentStore] Started file store at {self.directory} (node: {self._node_id})")

    def _blob_path(self, address: str) -> Path:
        if not is_content_address(address):
            raise ValueError(f"Invalid content address: {address}")
        return self.blobs_directory / address[len(CONTENT_ADDRESS_PREFIX):]

    def _write_pins(self):
        self._pins_file.write_text(json.dumps(sorted(self._pins)), encoding='utf-8')

    async def put(self, content: Union[bytes, str], pin: bool = False) -> str:
        data = _to_bytes(content)
        address = compute_content_address(data)
        path = self._blob_path(address)
        if not path.exists():
            await asyncio.to_thread(path.write_bytes, data)
        if pin:
            await self.pin(address)
        logger.debug(f"[ContentStore] Stored {len(data)} bytes at {address}")
        return address

    async def get(self, address: str) -> Optional[bytes]:
        if not is_content_address(address):
            return None
        path = self._blob_path(address)
        if not path.exists():
            return None
        return await asyncio.to_thread(path.read_bytes)

    async def pin(self, address: str):
        if not self._blob_path(address).exists():
            raise KeyError(f"Content not found: {address}")
        async with self._lock:
            if address not in self._pins:
                self._pins.add(address)
                await asyncio.to_thread(self._write_pins)

    async def is_pinned(self, address: str) -> bool:
        return address in self._pins


def create_content_store(directory: Optional[str]) -> ContentStore:
    """設定に応じたコンテンツストアを生成"""
    if directory:
        return FileContentStore(directory)
    return InMemoryContentStore()
