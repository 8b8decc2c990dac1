"""
vendor_marketplace/common/errors.py

マーケットプレイスのエラー体系

すべてのエラーはHTTPステータスコード・メッセージ・任意の構造化データを持ち、
HTTPレイヤーでは {status, message, data?} の形でクライアントに返却される。
"""

import functools
from typing import Any, Dict, Optional

from vendor_marketplace.common.logger import get_logger

logger = get_logger(__name__)


class MarketplaceError(Exception):
    """マーケットプレイスのエラー基底クラス"""

    status: int = 500
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None, data: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.data = data
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"status": self.status, "message": self.message}
        if self.data is not None:
            body["data"] = self.data
        return body


class InvalidIdentity(MarketplaceError):
    """ベンダーIDがDID形式ではない"""
    status = 400
    default_message = "Vendor identity is invalid"


class BadRequest(MarketplaceError):
    """リクエスト内容の不整合（パスと署名者の不一致など）"""
    status = 400
    default_message = "Bad request"


class ValidationFailed(MarketplaceError):
    """プロフィールのスキーマ違反（data にフィールド別エラーを格納）"""
    status = 400
    default_message = "Profile validation failed"


class InvalidSignature(MarketplaceError):
    """署名検証に失敗"""
    status = 403
    default_message = "Signature is not valid"


class NotFound(MarketplaceError):
    status = 404
    default_message = "Not found"


class AlreadyExists(MarketplaceError):
    """重複登録"""
    status = 409
    default_message = "Already exists"


class LifecycleConflict(MarketplaceError):
    """起動処理と停止処理の衝突"""
    status = 409
    default_message = "Operation conflicts with an ongoing start/stop transition"


class UpstreamFailure(MarketplaceError):
    """
    ディレクトリまたはIdentity Providerのインフラ障害

    元の例外メッセージは cause_message に保持され、ログにのみ出力される。
    """
    status = 500
    default_message = "Upstream failure"

    def __init__(self, message: Optional[str] = None, cause_message: Optional[str] = None):
        super().__init__(message)
        self.cause_message = cause_message


def normalize_errors(operation: str):
    """
    コンポーネント境界でエラーを正規化するデコレーター

    MarketplaceErrorはそのまま再送出し、それ以外の例外は
    ログに記録したうえでUpstreamFailureに包んで送出する。

    Args:
        operation: ログに出力する操作名
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except MarketplaceError:
                raise
            except Exception as e:
                logger.error(f"[{operation}] Upstream failure: {e}", exc_info=True)
                raise UpstreamFailure(
                    f"{operation} failed because of an upstream error",
                    cause_message=str(e)
                ) from e
        return wrapper
    return decorator
