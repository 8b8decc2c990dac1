"""
vendor_marketplace/common/logger.py

共通ロギング設定モジュール

LOG_LEVEL / LOG_FORMAT でレベルと出力形式（text/json）を切り替える。
ベンダー単位の処理は extra={"vendor_id", "operation"} を付けて出力し、
JSON形式ではそれぞれ独立したフィールドになる。
委任秘密鍵・パスフレーズはログに出る前にマスクされる。
"""

import json
import logging
import os
import re
import sys
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

MASK = '***MASKED***'

# メッセージ中に直接埋め込まれたPEM秘密鍵
PRIVATE_KEY_PEM = re.compile(
    r"-----BEGIN (?:ENCRYPTED |EC )?PRIVATE KEY-----.*?-----END (?:ENCRYPTED |EC )?PRIVATE KEY-----",
    re.DOTALL
)

# StructuredFormatter がJSONに含めるレコード属性
CONTEXT_FIELDS = ('vendor_id', 'operation')


def vendor_context(vendor_id: Optional[str], operation: str) -> Dict[str, Any]:
    """logger.xxx(..., extra=vendor_context(...)) 用のコンテキスト"""
    return {'vendor_id': vendor_id, 'operation': operation}


class SensitiveDataFilter(logging.Filter):
    """委任秘密鍵・パスフレーズなどをマスクするフィルター"""

    SENSITIVE_KEYS = {
        'password', 'passphrase', 'key_passphrase', 'secret', 'token', 'authorization',
        'private_key', 'privatekey', 'privatekeypem', 'delegatedprivatekey',
    }

    def filter(self, record: logging.LogRecord) -> bool:
        if not isinstance(record.msg, str) or MASK in record.msg:
            return True

        message = record.msg
        stripped = message.strip()
        if stripped.startswith('{'):
            try:
                message = json.dumps(self._mask(json.loads(stripped)), ensure_ascii=False, indent=2)
            except json.JSONDecodeError:
                pass
        record.msg = PRIVATE_KEY_PEM.sub(MASK, message)
        return True

    def _mask(self, data: Any) -> Any:
        if isinstance(data, dict):
            return {
                key: MASK if key.lower() in self.SENSITIVE_KEYS else self._mask(value)
                for key, value in data.items()
            }
        if isinstance(data, list):
            return [self._mask(item) for item in data]
        return data


class StructuredFormatter(logging.Formatter):
    """text / JSON 形式のフォーマッター"""

    def __init__(self, json_format: bool = False):
        super().__init__()
        self.json_format = json_format

    def format(self, record: logging.LogRecord) -> str:
        now = datetime.now(timezone.utc)
        context = {
            field: getattr(record, field) for field in CONTEXT_FIELDS
            if getattr(record, field, None) is not None
        }

        if self.json_format:
            log_data = {
                'timestamp': now.isoformat().replace('+00:00', 'Z'),
                'level': record.levelname,
                'logger': record.name,
                'message': record.getMessage(),
                **context,
            }
            if record.exc_info:
                log_data['exception'] = self.formatException(record.exc_info)
            return json.dumps(log_data, ensure_ascii=False)

        message = (
            f"[{now.strftime('%Y-%m-%d %H:%M:%S')}] {record.levelname:8s} "
            f"{record.name:30s} | {record.getMessage()}"
        )
        if context:
            message += " (" + ", ".join(f"{k}={v}" for k, v in context.items()) + ")"
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message


def setup_logger(name: str, level: Optional[str] = None, json_format: bool = False) -> logging.Logger:
    """
    ロガーをセットアップ

    環境変数:
        LOG_LEVEL: DEBUG/INFO/WARNING/ERROR/CRITICAL（デフォルト: INFO）
        LOG_FORMAT: json/text（デフォルト: text）
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    level = (level or os.getenv('LOG_LEVEL', 'INFO')).upper()
    log_level = getattr(logging, level, None)
    if not isinstance(log_level, int):
        log_level = logging.INFO
        logger.warning(f"Invalid log level '{level}', using INFO")
    logger.setLevel(log_level)

    json_format = json_format or os.getenv('LOG_FORMAT', 'text').lower() == 'json'
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(StructuredFormatter(json_format=json_format))
    handler.addFilter(SensitiveDataFilter())
    logger.addHandler(handler)

    # 親ロガーへの伝播を防止（重複出力を避ける）
    logger.propagate = False
    return logger


def get_logger(name: str) -> logging.Logger:
    return setup_logger(name)


def log_crypto_operation(
    logger: logging.Logger,
    operation: str,
    did: Optional[str] = None,
    success: bool = True
):
    """
    鍵生成・署名・検証の結果（INFO）

    did は署名者（DID、またはPoPRの場合は委任公開鍵のコンテンツアドレス）。
    DIDの場合のみ vendor_id としてコンテキストに載せる。
    """
    status = "SUCCESS" if success else "FAILED"
    key_str = f" (key: {did})" if did else ""
    vendor_id = did.split('#', 1)[0] if did and did.startswith('did:') else None
    logger.info(
        f"Crypto {operation.upper()}: ECDSA-P256{key_str} - {status}",
        extra=vendor_context(vendor_id, f"crypto.{operation}")
    )


def log_database_operation(logger: logging.Logger, operation: str, vendor_id: str):
    """vendorsテーブルへの書き込み（DEBUG）"""
    logger.debug(
        f"DB {operation}: vendors [id: {vendor_id}]",
        extra=vendor_context(vendor_id, f"db.{operation.lower()}")
    )


class LoggingAsyncClient:
    """
    ログ記録機能付きhttpx.AsyncClientラッパー

    DIDレジストリへの問い合わせとベンダーセットアップで使う。
    リクエスト行と結果はINFO、ボディはDEBUGで出力する。

    使用例:
        async with LoggingAsyncClient(logger, base_url=url) as client:
            response = await client.post("/vendors", json={"vendorId": did})
    """

    def __init__(self, logger: logging.Logger, **kwargs):
        self.logger = logger
        self._client = httpx.AsyncClient(**kwargs)

    def _debug_payload(self, kind: str, payload: Dict[str, Any]):
        if self.logger.isEnabledFor(logging.DEBUG):
            self.logger.debug(f"{kind}: {json.dumps(payload, ensure_ascii=False, default=str)}")

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        self.logger.info(f"HTTP Request: {method} {url}")
        self._debug_payload("HTTP_REQUEST_RAW", {
            "method": method,
            "url": str(url),
            "body": kwargs.get('json', kwargs.get('content')),
        })

        start_time = time.time()
        response = await self._client.request(method, url, **kwargs)
        await response.aread()
        duration_ms = (time.time() - start_time) * 1000

        self.logger.info(f"HTTP Response: {response.status_code} ({duration_ms:.2f}ms)")
        try:
            body = response.json()
        except ValueError:
            body = response.text
        self._debug_payload("HTTP_RESPONSE_RAW", {"status_code": response.status_code, "body": body})
        return response

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def aclose(self):
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    def __getattr__(self, name):
        """その他の属性は内部クライアントに委譲"""
        return getattr(self._client, name)
