"""
vendor_marketplace/common/config.py

マーケットプレイス設定

環境変数（デフォルト）と JSON 設定ファイル（serve --config）から読み込む。
"""

import json
import os
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, model_validator


DEFAULT_CONTENT_DIRECTORY = "./data/content"


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class MarketplaceSettings(BaseModel):
    """マーケットプレイスの実行時設定"""

    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/marketplace.db",
        description="SQLAlchemy非同期データベースURL"
    )
    directory_backend: Literal["sql", "memory"] = Field(
        default="sql",
        description="ベンダーディレクトリのバックエンド"
    )
    keys_directory: str = Field(default="./keys", description="マーケットプレイス鍵の保存ディレクトリ")
    key_passphrase: Optional[str] = Field(
        default=None,
        description="秘密鍵を暗号化するパスフレーズ（未設定の場合は平文PEM）"
    )
    content_directory: Optional[str] = Field(
        default=None,
        description="コンテンツストアのディレクトリ（未設定の場合、sqlバックエンドでは ./data/content、memoryではインメモリ）"
    )
    did_methods: List[str] = Field(default_factory=lambda: ["mkt"], description="受け付けるDIDメソッド")
    did_registry_url: Optional[str] = Field(default=None, description="リモートDIDレジストリURL")
    did_resolution_timeout: float = Field(default=10.0, ge=0, description="DID解決の待機上限（秒）")
    network: str = Field(default="development", description="ネットワーク名")
    public_url: str = Field(default="http://localhost:8000", description="マーケットプレイスの公開URL")
    allow_unsigned_popr: bool = Field(
        default=False,
        description="ベンダー署名の提出前にPoPR発行を許可するか"
    )
    port: int = Field(default=8000, description="HTTPポート")

    @model_validator(mode="after")
    def default_content_directory(self) -> "MarketplaceSettings":
        # 永続化するディレクトリと同じ寿命で委任公開鍵・PoPRを保持する
        if self.content_directory is None and self.directory_backend == "sql":
            self.content_directory = DEFAULT_CONTENT_DIRECTORY
        return self

    @classmethod
    def from_env(cls, **overrides) -> "MarketplaceSettings":
        """環境変数から設定を生成"""
        values = {
            "database_url": os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./data/marketplace.db"),
            "directory_backend": os.getenv("MARKETPLACE_DIRECTORY_BACKEND", "sql"),
            "keys_directory": os.getenv("MARKETPLACE_KEYS_DIRECTORY", "./keys"),
            "key_passphrase": os.getenv("MARKETPLACE_KEY_PASSPHRASE"),
            "content_directory": os.getenv("MARKETPLACE_CONTENT_DIRECTORY"),
            "did_methods": [
                m.strip() for m in os.getenv("MARKETPLACE_DID_METHODS", "mkt").split(",") if m.strip()
            ],
            "did_registry_url": os.getenv("MARKETPLACE_DID_REGISTRY_URL"),
            "did_resolution_timeout": float(os.getenv("MARKETPLACE_DID_RESOLUTION_TIMEOUT", "10.0")),
            "network": os.getenv("MARKETPLACE_NETWORK", "development"),
            "public_url": os.getenv("MARKETPLACE_PUBLIC_URL", "http://localhost:8000"),
            "allow_unsigned_popr": _env_bool("MARKETPLACE_ALLOW_UNSIGNED_POPR"),
            "port": int(os.getenv("PORT", "8000")),
        }
        values.update(overrides)
        return cls(**values)

    @classmethod
    def from_file(cls, path: str) -> "MarketplaceSettings":
        """
        JSON設定ファイルから設定を生成

        ファイルに記載されたキーが環境変数の値を上書きする。
        """
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls.from_env(**data)

    def require_passphrase(self) -> str:
        """
        パスフレーズを取得（fail-closed）

        Raises:
            RuntimeError: パスフレーズが設定されていない場合
        """
        if not self.key_passphrase:
            raise RuntimeError(
                "セキュリティエラー: 環境変数 MARKETPLACE_KEY_PASSPHRASE が設定されていません。"
                " 鍵を暗号化して保存するためにパスフレーズの設定が必須です。"
            )
        return self.key_passphrase
