"""
vendor_marketplace/common/database.py

ベンダーディレクトリのデータベーススキーマとCRUD操作（SQLAlchemy async）
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from contextlib import asynccontextmanager
from pathlib import Path

from sqlalchemy import JSON, Column, DateTime, String, Text, and_, func
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.future import select

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ========================================
# SQLAlchemy Models
# ========================================

class Vendor(Base):
    """
    vendorsテーブル

    - vendor_id: ベンダーのDID（主キー、作成後は不変）
    - delegated_public_key_ref: 委任公開鍵のコンテンツアドレス（一意）
    - delegated_private_key: 委任秘密鍵のPEM（読み取りAPIでは返さない）
    - marketplace_signature: マーケットプレイスの署名（作成時のみ設定）
    - vendor_signature: ベンダーの相互署名（提出されるまでNULL）
    - profile: プロフィール（JSON、検索対象）
    """
    __tablename__ = "vendors"

    vendor_id = Column(String, primary_key=True)
    delegated_public_key_ref = Column(String, unique=True, nullable=False, index=True)
    delegated_private_key = Column(Text, nullable=False)
    marketplace_signature = Column(JSON, nullable=False)
    vendor_signature = Column(JSON, nullable=True)
    profile = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=_utcnow, index=True)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    def to_dict(self, include_private: bool = False) -> Dict[str, Any]:
        data = {
            "vendorId": self.vendor_id,
            "delegatedPublicKeyRef": self.delegated_public_key_ref,
            "marketplaceSignature": self.marketplace_signature,
            "vendorSignature": self.vendor_signature,
            "profile": self.profile or {},
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_private:
            data["delegatedPrivateKey"] = self.delegated_private_key
        return data


# 公開レコードのキー → カラム名
UPDATABLE_FIELDS = {
    "vendorSignature": "vendor_signature",
    "profile": "profile",
}


# ========================================
# Database Manager
# ========================================

class DatabaseManager:
    """データベース管理クラス"""

    def __init__(self, database_url: str = "sqlite+aiosqlite:///./data/marketplace.db"):
        """
        Args:
            database_url: SQLAlchemy非同期データベースURL
        """
        self.database_url = database_url
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def init_db(self):
        """データベース初期化（テーブル作成）"""
        url = make_url(self.database_url)
        if url.get_backend_name() == "sqlite" and url.database not in (None, "", ":memory:"):
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        await self.engine.dispose()

    @asynccontextmanager
    async def get_session(self):
        """セッション取得"""
        async with self.async_session() as session:
            yield session


# ========================================
# CRUD Operations
# ========================================

# SQLiteのjson_type()の値。true/false（bool）や object/array は照合しない
STRING_MATCH_TYPES = ("text", "integer", "real")
NUMBER_MATCH_TYPES = ("integer", "real")


def _json_type(field: str):
    return func.json_type(Vendor.profile, f"$.\"{field}\"")


def build_profile_filters(query: Dict[str, Any]) -> list:
    """
    検索クエリからWHERE条件を組み立てる

    - 文字列: プロフィールフィールドの部分一致（大文字小文字を区別しない）
    - 数値: 完全一致
    - それ以外（bool, list, dict, None）: 条件から除外
    """
    conditions = []
    for field, value in query.items():
        if isinstance(value, bool):
            continue
        if isinstance(value, str):
            conditions.append(and_(
                _json_type(field).in_(STRING_MATCH_TYPES),
                Vendor.profile[field].as_string().icontains(value, autoescape=True),
            ))
        elif isinstance(value, (int, float)):
            conditions.append(and_(
                _json_type(field).in_(NUMBER_MATCH_TYPES),
                Vendor.profile[field].as_float() == float(value),
            ))
    return conditions


class VendorCRUD:
    """Vendor CRUD操作"""

    @staticmethod
    async def create(session: AsyncSession, record: Dict[str, Any]) -> Vendor:
        """ベンダー作成（commitは呼び出し側）"""
        vendor = Vendor(
            vendor_id=record["vendorId"],
            delegated_public_key_ref=record["delegatedPublicKeyRef"],
            delegated_private_key=record["delegatedPrivateKey"],
            marketplace_signature=record["marketplaceSignature"],
            vendor_signature=record.get("vendorSignature"),
            profile=record.get("profile") or {},
        )
        session.add(vendor)
        return vendor

    @staticmethod
    async def get_by_id(
        session: AsyncSession,
        vendor_id: str,
        for_update: bool = False
    ) -> Optional[Vendor]:
        """IDでベンダー取得"""
        stmt = select(Vendor).where(Vendor.vendor_id == vendor_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def list_ids(session: AsyncSession) -> List[str]:
        """全ベンダーIDを登録順に取得"""
        result = await session.execute(
            select(Vendor.vendor_id).order_by(Vendor.created_at, Vendor.vendor_id)
        )
        return list(result.scalars().all())

    @staticmethod
    def apply_updates(vendor: Vendor, updates: Dict[str, Any]):
        """
        更新可能なフィールドのみ反映

        JSONカラムは変更検知のため新しいオブジェクトを代入する。
        """
        for key, value in updates.items():
            column = UPDATABLE_FIELDS.get(key)
            if column is None:
                raise ValueError(f"Field is not updatable: {key}")
            setattr(vendor, column, dict(value) if isinstance(value, dict) else value)
        vendor.updated_at = _utcnow()

    @staticmethod
    async def search(
        session: AsyncSession,
        query: Dict[str, Any],
        limit: Optional[int] = None,
        offset: int = 0
    ) -> Tuple[int, List[Vendor]]:
        """
        プロフィール検索

        Returns:
            Tuple[一致件数（ページング無視）, ページ内のベンダー]
        """
        conditions = build_profile_filters(query)

        count_stmt = select(func.count()).select_from(Vendor)
        stmt = select(Vendor).order_by(Vendor.created_at, Vendor.vendor_id)
        if conditions:
            count_stmt = count_stmt.where(*conditions)
            stmt = stmt.where(*conditions)
        if offset:
            stmt = stmt.offset(offset)
        if limit:
            stmt = stmt.limit(limit)

        count = (await session.execute(count_stmt)).scalar_one()
        rows = list((await session.execute(stmt)).scalars().all())
        return count, rows
