"""
vendor_marketplace/services/marketplace/main.py

Marketplace Service - FastAPIエントリーポイント

    uvicorn --factory vendor_marketplace.services.marketplace.main:create_app
"""

import os

import uvicorn

from vendor_marketplace.common.config import MarketplaceSettings
from vendor_marketplace.common.telemetry import setup_telemetry, instrument_fastapi_app
from vendor_marketplace.services.marketplace.service import MarketplaceService


def create_app(settings: MarketplaceSettings = None):
    """
    FastAPIアプリを生成

    パスフレーズ未設定の場合は起動しない（鍵を平文で保存しないため）。
    """
    settings = settings or MarketplaceSettings.from_env()
    settings.require_passphrase()

    # OpenTelemetryセットアップ
    setup_telemetry(os.getenv("OTEL_SERVICE_NAME", "vendor_marketplace"))

    service = MarketplaceService(settings=settings)
    instrument_fastapi_app(service.app)
    return service.app


def run(settings: MarketplaceSettings = None):
    settings = settings or MarketplaceSettings.from_env()
    app = create_app(settings)
    uvicorn.run(
        app,
        host=os.getenv("HOST", "0.0.0.0"),
        port=settings.port,
        reload=False,
        log_level="info"
    )


if __name__ == "__main__":
    run()
