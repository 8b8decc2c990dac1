"""
vendor_marketplace/common/directory.py

ベンダーディレクトリ（ストレージ抽象）

バックエンド:
- InMemoryVendorDirectory: テスト・開発用（directory_backend=memory）
- SQLVendorDirectory: SQLAlchemy async（本番用、デフォルトはSQLite）

どちらも同じインターフェースを持ち、レコードは公開レコードと同じ
camelCase のキーを持つ辞書で受け渡す。委任秘密鍵（delegatedPrivateKey）は
include_private=True を指定した get_vendor() でのみ返される。
"""

import asyncio
import copy
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError

from vendor_marketplace.common.config import MarketplaceSettings
from vendor_marketplace.common.database import DatabaseManager, UPDATABLE_FIELDS, VendorCRUD
from vendor_marketplace.common.errors import AlreadyExists
from vendor_marketplace.common.logger import get_logger, log_database_operation

logger = get_logger(__name__)

PRIVATE_FIELDS = ("delegatedPrivateKey",)

# 読み取り-変更-書き込み用のコールバック
# 現在のレコード（秘密鍵を含む）を受け取り、更新内容（またはNone）を返す
VendorMutator = Callable[[Dict[str, Any]], Awaitable[Optional[Dict[str, Any]]]]


def public_vendor_view(record: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """秘密鍵フィールドを取り除いた公開レコード"""
    if record is None:
        return None
    return {key: value for key, value in record.items() if key not in PRIVATE_FIELDS}


def profile_matches(profile: Dict[str, Any], query: Dict[str, Any]) -> bool:
    """
    SQLバックエンドの検索条件と同じ規則でプロフィールを照合

    文字列は大文字小文字を区別しない部分一致、数値は完全一致。
    それ以外の型の条件は無視する。
    """
    for field, expected in query.items():
        if isinstance(expected, bool):
            continue
        actual = profile.get(field)
        if isinstance(expected, str):
            if actual is None or isinstance(actual, (bool, dict, list)):
                return False
            if expected.lower() not in str(actual).lower():
                return False
        elif isinstance(expected, (int, float)):
            if isinstance(actual, bool) or not isinstance(actual, (int, float)):
                return False
            if float(actual) != float(expected):
                return False
    return True


class VendorDirectory(ABC):
    """ベンダーディレクトリのインターフェース"""

    async def start(self):
        pass

    async def stop(self):
        pass

    @abstractmethod
    async def get_vendor_ids(self) -> List[str]:
        """登録済みベンダーIDの一覧（登録順）"""

    @abstractmethod
    async def get_vendor(
        self,
        vendor_id: str,
        include_private: bool = False
    ) -> Optional[Dict[str, Any]]:
        """ベンダーレコードを取得（存在しない場合はNone）"""

    @abstractmethod
    async def create_vendor(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """
        ベンダーレコードを作成

        Raises:
            AlreadyExists: vendorId または delegatedPublicKeyRef が重複
        """

    @abstractmethod
    async def update_vendor(
        self,
        vendor_id: str,
        updates: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """vendorSignature / profile を更新（存在しない場合はNone）"""

    @abstractmethod
    async def modify_vendor(
        self,
        vendor_id: str,
        mutator: VendorMutator
    ) -> Optional[Dict[str, Any]]:
        """
        1件のレコードに対する読み取り-変更-書き込みを原子的に実行

        mutator が例外を送出した場合は何も書き込まない。
        存在しない場合はNone。
        """

    @abstractmethod
    async def search(
        self,
        query: Dict[str, Any],
        limit: Optional[int] = None,
        offset: int = 0
    ) -> Dict[str, Any]:
        """
        プロフィール検索

        Returns:
            {"count": 一致件数（ページング無視）, "rows": 公開レコードのリスト}
        """


# ========================================
# In-memory backend
# ========================================

class InMemoryVendorDirectory(VendorDirectory):
    """インメモリのベンダーディレクトリ"""

    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._create_lock = asyncio.Lock()

    def _lock_for(self, vendor_id: str) -> asyncio.Lock:
        # 登録済みのベンダーのみ（レコードは削除されない）
        return self._locks.setdefault(vendor_id, asyncio.Lock())

    async def get_vendor_ids(self) -> List[str]:
        return list(self._records.keys())

    async def get_vendor(self, vendor_id: str, include_private: bool = False):
        record = self._records.get(vendor_id)
        if record is None:
            return None
        record = copy.deepcopy(record)
        return record if include_private else public_vendor_view(record)

    async def create_vendor(self, record: Dict[str, Any]) -> Dict[str, Any]:
        async with self._create_lock:
            vendor_id = record["vendorId"]
            if vendor_id in self._records:
                raise AlreadyExists(f"Vendor already registered: {vendor_id}")
            key_ref = record["delegatedPublicKeyRef"]
            if any(r["delegatedPublicKeyRef"] == key_ref for r in self._records.values()):
                raise AlreadyExists(f"Delegated key already in use: {key_ref}")

            now = datetime.now(timezone.utc).isoformat()
            stored = copy.deepcopy(record)
            stored.setdefault("vendorSignature", None)
            stored["profile"] = stored.get("profile") or {}
            stored["createdAt"] = now
            stored["updatedAt"] = now
            self._records[vendor_id] = stored

        log_database_operation(logger, "INSERT", vendor_id)
        return public_vendor_view(copy.deepcopy(stored))

    def _apply(self, vendor_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        for key in updates:
            if key not in UPDATABLE_FIELDS:
                raise ValueError(f"Field is not updatable: {key}")
        stored = self._records[vendor_id]
        stored.update(copy.deepcopy(updates))
        stored["updatedAt"] = datetime.now(timezone.utc).isoformat()
        log_database_operation(logger, "UPDATE", vendor_id)
        return public_vendor_view(copy.deepcopy(stored))

    async def update_vendor(self, vendor_id: str, updates: Dict[str, Any]):
        if vendor_id not in self._records:
            return None
        async with self._lock_for(vendor_id):
            return self._apply(vendor_id, updates)

    async def modify_vendor(self, vendor_id: str, mutator: VendorMutator):
        if vendor_id not in self._records:
            return None
        async with self._lock_for(vendor_id):
            updates = await mutator(copy.deepcopy(self._records[vendor_id]))
            if not updates:
                return public_vendor_view(copy.deepcopy(self._records[vendor_id]))
            return self._apply(vendor_id, updates)

    async def search(self, query: Dict[str, Any], limit: Optional[int] = None, offset: int = 0):
        matches = [
            public_vendor_view(copy.deepcopy(record))
            for record in self._records.values()
            if profile_matches(record.get("profile") or {}, query)
        ]
        end = offset + limit if limit else None
        return {"count": len(matches), "rows": matches[offset:end]}


# ========================================
# SQL backend
# ========================================

class SQLVendorDirectory(VendorDirectory):
    """SQLAlchemy async によるベンダーディレクトリ"""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.db: Optional[DatabaseManager] = None

    def _manager(self) -> DatabaseManager:
        if self.db is None:
            raise RuntimeError("Vendor directory is not started")
        return self.db

    async def start(self):
        self.db = DatabaseManager(self.database_url)
        await self.db.init_db()
        logger.info(f"[VendorDirectory] Connected: {self.database_url.split('@')[-1]}")

    async def stop(self):
        if self.db is not None:
            await self.db.dispose()
            self.db = None
            logger.info("[VendorDirectory] Disconnected")

    async def get_vendor_ids(self) -> List[str]:
        async with self._manager().get_session() as session:
            return await VendorCRUD.list_ids(session)

    async def get_vendor(self, vendor_id: str, include_private: bool = False):
        async with self._manager().get_session() as session:
            vendor = await VendorCRUD.get_by_id(session, vendor_id)
            return vendor.to_dict(include_private=include_private) if vendor else None

    async def create_vendor(self, record: Dict[str, Any]) -> Dict[str, Any]:
        async with self._manager().get_session() as session:
            vendor = await VendorCRUD.create(session, record)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                logger.info(f"[VendorDirectory] Duplicate vendor: {record['vendorId']}")
                raise AlreadyExists(f"Vendor already registered: {record['vendorId']}") from e
            await session.refresh(vendor)
            log_database_operation(logger, "INSERT", vendor.vendor_id)
            return vendor.to_dict()

    async def update_vendor(self, vendor_id: str, updates: Dict[str, Any]):
        async def replace(_current):
            return updates
        return await self.modify_vendor(vendor_id, replace)

    async def modify_vendor(self, vendor_id: str, mutator: VendorMutator):
        async with self._manager().get_session() as session:
            async with session.begin():
                vendor = await VendorCRUD.get_by_id(session, vendor_id, for_update=True)
                if vendor is None:
                    return None
                updates = await mutator(vendor.to_dict(include_private=True))
                if updates:
                    VendorCRUD.apply_updates(vendor, updates)
            if updates:
                await session.refresh(vendor)
                log_database_operation(logger, "UPDATE", vendor_id)
            return vendor.to_dict()

    async def search(self, query: Dict[str, Any], limit: Optional[int] = None, offset: int = 0):
        async with self._manager().get_session() as session:
            count, vendors = await VendorCRUD.search(session, query, limit, offset)
            return {"count": count, "rows": [vendor.to_dict() for vendor in vendors]}


def create_directory(settings: MarketplaceSettings) -> VendorDirectory:
    """設定に応じたベンダーディレクトリを生成"""
    if settings.directory_backend == "memory":
        return InMemoryVendorDirectory()
    return SQLVendorDirectory(settings.database_url)
