"""
vendor_marketplace/common/telemetry.py

OpenTelemetry分散トレーシング設定モジュール

FastAPIとhttpxクライアント（DID解決・ベンダーセットアップ）に
OpenTelemetryを統合する。OTEL_ENABLED=true の場合のみ有効。
"""

import json
import os
import time
from typing import Any, Optional, Set

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.resources import Resource, SERVICE_NAME
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

from vendor_marketplace.common.logger import get_logger

logger = get_logger(__name__)

# 機密情報キー（マスク対象、小文字で部分一致）
SENSITIVE_KEYS: Set[str] = {
    "password", "passphrase", "secret", "token", "api_key",
    "private_key", "privatekey", "authorization",
}

# リクエスト/レスポンスボディの最大サイズ（バイト）
MAX_BODY_SIZE = 10000


def is_telemetry_enabled() -> bool:
    """OTEL_ENABLEDがtrue/1/yesの場合はTrue"""
    return os.getenv("OTEL_ENABLED", "false").lower() in ("true", "1", "yes")


def _otlp_exporter() -> OTLPSpanExporter:
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317")
    insecure = os.getenv("OTEL_EXPORTER_OTLP_INSECURE", "true").lower() in ("true", "1", "yes")
    logger.info(f"[Telemetry] OTLP endpoint: {endpoint} (insecure={insecure})")
    return OTLPSpanExporter(endpoint=endpoint, insecure=insecure)


def setup_telemetry(service_name: Optional[str] = None) -> Optional[TracerProvider]:
    """
    OpenTelemetry分散トレーシングのセットアップ

    環境変数:
        OTEL_ENABLED: トレーシング有効/無効（デフォルト: false）
        OTEL_SERVICE_NAME: サービス名（デフォルト: vendor_marketplace）
        OTEL_EXPORTER_OTLP_ENDPOINT: OTLPエンドポイント（デフォルト: http://localhost:4317）
        OTEL_EXPORTER_OTLP_INSECURE: 非セキュア接続（デフォルト: true）

    Returns:
        Optional[TracerProvider]: トレーサープロバイダー（無効時はNone）
    """
    if not is_telemetry_enabled():
        logger.info("[Telemetry] OpenTelemetry is disabled (OTEL_ENABLED=false)")
        return None

    try:
        existing_provider = trace.get_tracer_provider()

        # ProxyTracerProviderは未初期化状態なので設定が必要
        if not isinstance(existing_provider, (trace.NoOpTracerProvider, trace.ProxyTracerProvider)):
            logger.info(
                f"[Telemetry] TracerProvider already exists ({type(existing_provider).__name__}). "
                f"Adding OTLP exporter to existing provider."
            )
            existing_provider.add_span_processor(BatchSpanProcessor(_otlp_exporter()))
            return existing_provider

        if service_name is None:
            service_name = os.getenv("OTEL_SERVICE_NAME", "vendor_marketplace")

        provider = TracerProvider(resource=Resource(attributes={SERVICE_NAME: service_name}))
        provider.add_span_processor(BatchSpanProcessor(_otlp_exporter()))
        trace.set_tracer_provider(provider)

        # DID解決などの外部HTTP呼び出しも計装
        HTTPXClientInstrumentor().instrument()

        logger.info(f"[Telemetry] OpenTelemetry initialized for service: {service_name}")
        return provider

    except Exception as e:
        # トレーシングの失敗でサービス起動を止めない
        logger.error(f"[Telemetry] Failed to initialize OpenTelemetry: {e}", exc_info=True)
        return None


def mask_sensitive_data(data: Any, max_depth: int = 10) -> Any:
    """
    機密情報をマスクする（再帰的）

    委任秘密鍵（delegatedPrivateKey）もここで[REDACTED]になる。
    """
    if max_depth <= 0:
        return "[MAX_DEPTH_REACHED]"

    if isinstance(data, dict):
        masked = {}
        for key, value in data.items():
            key_lower = str(key).lower()
            if any(sensitive in key_lower for sensitive in SENSITIVE_KEYS):
                masked[key] = "[REDACTED]"
            else:
                masked[key] = mask_sensitive_data(value, max_depth - 1)
        return masked
    elif isinstance(data, list):
        return [mask_sensitive_data(item, max_depth - 1) for item in data]
    return data


def truncate_body(body: str, max_size: int = MAX_BODY_SIZE) -> str:
    if len(body) > max_size:
        return body[:max_size] + f"...[TRUNCATED {len(body) - max_size} bytes]"
    return body


def _body_attribute(body_bytes: bytes) -> str:
    body_json = json.loads(truncate_body(body_bytes.decode("utf-8")))
    return json.dumps(mask_sensitive_data(body_json), ensure_ascii=False)


async def _add_request_response_to_span(request, call_next):
    """リクエスト/レスポンスのJSONボディをスパン属性に記録するミドルウェア"""
    span = trace.get_current_span()
    if not span or not span.is_recording():
        return await call_next(request)

    if request.method in ("POST", "PUT", "PATCH") and \
            "application/json" in request.headers.get("content-type", ""):
        body_bytes = await request.body()
        if body_bytes:
            try:
                span.set_attribute("http.request.body", _body_attribute(body_bytes))
            except ValueError as e:
                span.set_attribute("http.request.body.error", str(e))

            # 後続のハンドラーがボディを再読み込みできるようにする
            async def receive():
                return {"type": "http.request", "body": body_bytes}
            request._receive = receive

    start_time = time.time()
    try:
        response = await call_next(request)
    except Exception as e:
        span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
        span.record_exception(e)
        raise
    span.set_attribute("http.response.duration_ms", int((time.time() - start_time) * 1000))

    body_bytes = getattr(response, "body", None)
    if body_bytes and "application/json" in response.headers.get("content-type", ""):
        try:
            span.set_attribute("http.response.body", _body_attribute(body_bytes))
        except ValueError as e:
            span.set_attribute("http.response.body.error", str(e))

    return response


def instrument_fastapi_app(app):
    """
    FastAPIアプリにOpenTelemetry計装を追加

    リクエスト/レスポンスボディも記録する（機密情報はマスク）。
    """
    if not is_telemetry_enabled():
        logger.debug("[Telemetry] FastAPI instrumentation skipped (OTEL_ENABLED=false)")
        return

    if getattr(app, "_is_instrumented_by_opentelemetry", False):
        logger.debug("[Telemetry] FastAPI app already instrumented, skipping")
        return

    try:
        FastAPIInstrumentor.instrument_app(app)

        from starlette.middleware.base import BaseHTTPMiddleware
        app.add_middleware(BaseHTTPMiddleware, dispatch=_add_request_response_to_span)

        app._is_instrumented_by_opentelemetry = True
        logger.info("[Telemetry] FastAPI app instrumented successfully")
    except Exception as e:
        logger.error(f"[Telemetry] Failed to instrument FastAPI app: {e}", exc_info=True)


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)
