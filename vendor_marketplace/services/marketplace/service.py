"""
vendor_marketplace/services/marketplace/service.py

Marketplace Service - HTTP API

エンドポイント:
- GET  /                         サービス情報
- GET  /vendors                  ベンダーID一覧
- POST /search                   ディレクトリ検索
- POST /vendors                  ベンダー登録（ハンドシェイク第1段階）
- GET  /vendors/{id}             公開ベンダーレコード
- POST /vendors/{id}/profile     プロフィール設定
- PATCH /vendors/{id}/profile    プロフィール部分更新
- POST /vendors/{id}/signature   ベンダー相互署名（ハンドシェイク第2段階）
- POST /vendors/{id}/popr        PoPR発行
- GET  /.well-known              マーケットプレイスIdentityとノード情報
- GET  /content/{address}        コンテンツストアの内容（委任公開鍵・PoPR）

エラーはすべて {status, message, data?} のJSONで返す。
"""

from typing import List, Optional

from fastapi import Body, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from vendor_marketplace.common.config import MarketplaceSettings
from vendor_marketplace.common.errors import BadRequest, MarketplaceError
from vendor_marketplace.common.logger import get_logger
from vendor_marketplace.common.models import (
    DIDSignature,
    PoPROptions,
    PoPRResponse,
    ProfileRequest,
    SearchRequest,
    SearchResult,
    SignatureSubmission,
    VendorRecord,
    VendorRegistrationRequest,
    VendorRegistrationResponse,
    WellKnownResponse,
)
from vendor_marketplace.services.marketplace.marketplace import Marketplace

logger = get_logger(__name__)


def ensure_signed_by(vendor_id: str, signature: DIDSignature):
    """パスのベンダーIDと署名者が一致しない場合は400"""
    if signature.signer_did != vendor_id:
        raise BadRequest(
            f"Signature creator {signature.creator} does not match vendor {vendor_id}"
        )


class MarketplaceService:
    """
    Marketplace Service

    Args:
        marketplace: マーケットプレイスのコア（省略時は設定から生成）
        settings: 実行時設定（省略時は環境変数から読み込み）
    """

    def __init__(
        self,
        marketplace: Optional[Marketplace] = None,
        settings: Optional[MarketplaceSettings] = None
    ):
        self.settings = settings or (marketplace.settings if marketplace else MarketplaceSettings.from_env())
        self.marketplace = marketplace or Marketplace.from_settings(self.settings)

        self.app = FastAPI(
            title="Vendor Marketplace",
            description="ベンダーの信頼ハンドシェイク・プロフィール・PoPR発行API",
            version="1.0.0"
        )
        self._setup_cors()
        self._register_exception_handlers()
        self.register_endpoints()

        @self.app.on_event("startup")
        async def startup_event():
            logger.info("[MarketplaceService] Running startup tasks...")
            await self.marketplace.start()
            identity = await self.marketplace.get_marketplace_identity()
            logger.info(f"[MarketplaceService] Marketplace DID: {identity['identity']['did']}")

        @self.app.on_event("shutdown")
        async def shutdown_event():
            await self.marketplace.stop()

        logger.info("[MarketplaceService] Initialized")

    def _setup_cors(self):
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["*"],
            allow_headers=["*"],
        )

    def _register_exception_handlers(self):

        @self.app.exception_handler(MarketplaceError)
        async def marketplace_error_handler(request: Request, exc: MarketplaceError):
            if exc.status >= 500:
                logger.error(f"[MarketplaceService] {request.method} {request.url.path}: {exc.message}")
            else:
                logger.info(f"[MarketplaceService] {request.method} {request.url.path}: {exc.status} {exc.message}")
            return JSONResponse(status_code=exc.status, content=exc.to_dict())

        @self.app.exception_handler(RequestValidationError)
        async def validation_error_handler(request: Request, exc: RequestValidationError):
            data = {
                ".".join(str(part) for part in error["loc"] if part != "body") or "body": error["msg"]
                for error in exc.errors()
            }
            return JSONResponse(
                status_code=422,
                content={"status": 422, "message": "Request body is invalid", "data": data}
            )

    def register_endpoints(self):
        """エンドポイントの登録"""

        @self.app.get("/")
        async def root():
            return {"service": "Vendor Marketplace", "network": self.settings.network}

        @self.app.get("/vendors", response_model=List[str])
        async def list_vendors():
            return await self.marketplace.get_vendor_ids()

        @self.app.post("/search", response_model=SearchResult)
        async def search(request: SearchRequest):
            return await self.marketplace.search(request.query, request.limit, request.offset)

        @self.app.post("/vendors", response_model=VendorRegistrationResponse)
        async def register_vendor(request: VendorRegistrationRequest):
            """
            POST /vendors - ベンダー登録

            リクエスト: {"vendorId": "did:mkt:..."}（旧形式: {"delegatedPublicKeyRef": "..."}）
            レスポンス: {"vendorId", "delegatedPublicKeyRef", "marketplaceSignature"}
            """
            vendor_id = request.resolve_vendor_id()
            if not vendor_id:
                raise BadRequest("vendorId is required")
            return await self.marketplace.register_vendor(vendor_id)

        @self.app.get("/vendors/{vendor_id}", response_model=VendorRecord)
        async def get_vendor(vendor_id: str):
            return await self.marketplace.get_vendor(vendor_id)

        @self.app.post("/vendors/{vendor_id}/profile")
        async def set_profile(vendor_id: str, request: ProfileRequest):
            ensure_signed_by(vendor_id, request.signature)
            await self.marketplace.set_profile(request.profile, request.signature, request.identityDoc)
            return {}

        @self.app.patch("/vendors/{vendor_id}/profile")
        async def patch_profile(vendor_id: str, request: ProfileRequest):
            ensure_signed_by(vendor_id, request.signature)
            await self.marketplace.patch_profile(request.profile, request.signature, request.identityDoc)
            return {}

        @self.app.post("/vendors/{vendor_id}/signature")
        async def submit_signature(vendor_id: str, request: SignatureSubmission):
            """
            POST /vendors/{id}/signature - ベンダー相互署名の提出

            signature は delegatedPublicKeyRef に対するベンダーの署名。
            identityDoc を添付するとDID解決を省略できる。
            """
            ensure_signed_by(vendor_id, request.signature)
            await self.marketplace.update_vendor_signature(request.signature, request.identityDoc)
            return {}

        @self.app.post("/vendors/{vendor_id}/popr", response_model=PoPRResponse)
        async def create_popr(vendor_id: str, options: Optional[PoPROptions] = Body(default=None)):
            return await self.marketplace.create_popr(vendor_id, options or PoPROptions())

        @self.app.get("/.well-known", response_model=WellKnownResponse)
        async def well_known():
            return await self.marketplace.get_marketplace_identity()

        @self.app.get("/content/{address}")
        async def get_content(address: str):
            content = await self.marketplace.get_content(address)
            return Response(content=content, media_type="application/octet-stream")
