"""
vendor_marketplace/services/marketplace/popr.py

PoPR（Proof of Payment Request）の発行と検証

PoPRはベンダーの委任秘密鍵で署名され、正規化JSONとしてコンテンツストアに
保存される。key_location は登録時に記録した委任公開鍵のアドレスを指す。
"""

import time
from typing import Any, Dict, Optional, Union

from cryptography.hazmat.primitives.asymmetric import ec
from pydantic import ValidationError

from vendor_marketplace.common.crypto import canonicalize_json
from vendor_marketplace.common.directory import VendorDirectory
from vendor_marketplace.common.errors import BadRequest, NotFound
from vendor_marketplace.common.logger import get_logger, vendor_context
from vendor_marketplace.common.models import PoPR, PoPROptions, PoPRResponse

logger = get_logger(__name__)

PLACEHOLDER = "unspecified"
POPR_VERSION = 0


def now_millis() -> int:
    return int(time.time() * 1000)


def build_popr_payload(
    options: PoPROptions,
    vendor: Dict[str, Any],
    marketplace_did: str,
    marketplace_url: str
) -> Dict[str, Any]:
    """
    オプションと登録情報から署名前のPoPRペイロードを組み立てる

    未指定のテキスト項目は "unspecified"、amount は 0、
    created_at は現在時刻（ミリ秒）、expires_at は 0（無期限）。
    """
    marketplace_url = marketplace_url.rstrip("/")
    return {
        "item_id": options.item_id or PLACEHOLDER,
        "invoice_id": options.invoice_id or PLACEHOLDER,
        "customer_id": options.customer_id or PLACEHOLDER,
        "created_at": options.created_at if options.created_at is not None else now_millis(),
        "expires_at": options.expires_at if options.expires_at is not None else 0,
        "currency_symbol": options.currency_symbol or PLACEHOLDER,
        "amount": options.amount if options.amount is not None else 0,
        "marketplace_url": marketplace_url,
        "marketplace_vendor_url": f"{marketplace_url}/vendors/{vendor['vendorId']}",
        "key_location": vendor["delegatedPublicKeyRef"],
        "popr_version": POPR_VERSION,
        "attributes": list(options.attributes or []),
        "marketplace": {
            "did": marketplace_did,
            "signature": vendor["marketplaceSignature"],
        },
        "vendor": {
            "did": vendor["vendorId"],
            "signature": vendor.get("vendorSignature"),
        },
    }


class PoPRIssuer:
    """
    PoPR発行クラス

    Args:
        directory: ベンダーディレクトリ
        identity_provider: 署名・コンテンツストアを提供するIdentity Provider
        marketplace_url: PoPRに埋め込むマーケットプレイスの公開URL
        allow_unsigned: ベンダーの相互署名が未提出でも発行するか
    """

    def __init__(
        self,
        directory: VendorDirectory,
        identity_provider,
        marketplace_url: str,
        allow_unsigned: bool = False
    ):
        self.directory = directory
        self.identity_provider = identity_provider
        self.marketplace_url = marketplace_url
        self.allow_unsigned = allow_unsigned

    async def create_popr(
        self,
        vendor_id: str,
        options: Optional[Union[PoPROptions, Dict[str, Any]]] = None
    ) -> PoPRResponse:
        if not isinstance(options, PoPROptions):
            try:
                options = PoPROptions.model_validate(options or {})
            except ValidationError as e:
                raise BadRequest("PoPR options are malformed") from e

        vendor = await self.directory.get_vendor(vendor_id, include_private=True)
        if vendor is None:
            raise NotFound(f"Vendor {vendor_id} is not registered")
        if vendor.get("vendorSignature") is None and not self.allow_unsigned:
            raise NotFound(f"Vendor {vendor_id} has not submitted its signature yet")

        identity = await self.identity_provider.get_marketplace_identity()
        payload = build_popr_payload(options, vendor, identity.did, self.marketplace_url)

        private_key = self.identity_provider.import_private_key(vendor["delegatedPrivateKey"])
        signature = self.identity_provider.sign_document(
            payload, private_key, vendor["delegatedPublicKeyRef"]
        )
        payload["signature"] = signature.model_dump()

        popr = PoPR.model_validate(payload)
        address = await self.identity_provider.put_content(
            canonicalize_json(popr.model_dump(mode="json"))
        )
        logger.info(
            f"[PoPRIssuer] Issued PoPR for {vendor_id} at {address}",
            extra=vendor_context(vendor_id, "create_popr")
        )
        return PoPRResponse(popr=popr, contentAddress=address)


def verify_popr(
    popr: Union[PoPR, Dict[str, Any]],
    public_key: Union[ec.EllipticCurvePublicKey, str],
    signature_manager
) -> bool:
    """
    PoPRの署名を委任公開鍵で検証

    Args:
        popr: PoPR（モデルまたは辞書）
        public_key: key_location が指す委任公開鍵（PEMまたは公開鍵オブジェクト）
        signature_manager: SignatureManager
    """
    document = popr.model_dump(mode="json") if isinstance(popr, PoPR) else dict(popr)
    return signature_manager.verify_document(document, public_key)
