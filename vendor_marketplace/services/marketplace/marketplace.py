"""
vendor_marketplace/services/marketplace/marketplace.py

マーケットプレイスのコア

ベンダーの信頼ハンドシェイク:
1. register_vendor(): 委任鍵ペアを生成し、公開鍵のアドレスにマーケットプレイスが署名
2. update_vendor_signature(): ベンダーが同じアドレスに相互署名し、双方の署名で鍵が束縛される

すべての公開操作は最初に start() を呼び、失敗はエラー体系（common/errors.py）に正規化される。
"""

from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from vendor_marketplace.common.config import MarketplaceSettings
from vendor_marketplace.common.content_store import create_content_store
from vendor_marketplace.common.did_resolver import DIDResolver, is_valid_did
from vendor_marketplace.common.directory import VendorDirectory, create_directory, public_vendor_view
from vendor_marketplace.common.errors import (
    AlreadyExists,
    BadRequest,
    InvalidIdentity,
    InvalidSignature,
    NotFound,
    normalize_errors,
)
from vendor_marketplace.common.logger import get_logger, vendor_context
from vendor_marketplace.common.models import (
    DIDDocument,
    DIDSignature,
    PoPROptions,
    PoPRResponse,
    VendorRegistrationResponse,
)
from vendor_marketplace.services.marketplace.identity import LocalIdentityProvider
from vendor_marketplace.services.marketplace.lifecycle import LifecycleManager
from vendor_marketplace.services.marketplace.popr import PoPRIssuer
from vendor_marketplace.services.marketplace.profile import ProfileManager

logger = get_logger(__name__)


class Marketplace:
    """
    マーケットプレイスのコア

    Args:
        directory: ベンダーディレクトリ
        identity_provider: Identity & Signing Provider
        settings: 実行時設定
    """

    def __init__(
        self,
        directory: VendorDirectory,
        identity_provider: LocalIdentityProvider,
        settings: Optional[MarketplaceSettings] = None
    ):
        self.settings = settings or MarketplaceSettings()
        self.directory = directory
        self.identity_provider = identity_provider
        self.lifecycle = LifecycleManager([directory, identity_provider], name="Marketplace")
        self.profiles = ProfileManager(directory, identity_provider)
        self.popr_issuer = PoPRIssuer(
            directory,
            identity_provider,
            marketplace_url=self.settings.public_url,
            allow_unsigned=self.settings.allow_unsigned_popr,
        )

    @classmethod
    def from_settings(cls, settings: MarketplaceSettings) -> "Marketplace":
        """設定からディレクトリ・Identity Providerを組み立てる"""
        identity_provider = LocalIdentityProvider(
            keys_directory=settings.keys_directory,
            key_passphrase=settings.key_passphrase,
            content_store=create_content_store(settings.content_directory),
            did_resolver=DIDResolver(registry_url=settings.did_registry_url),
            did_method=settings.did_methods[0] if settings.did_methods else "mkt",
            resolution_timeout=settings.did_resolution_timeout,
        )
        return cls(create_directory(settings), identity_provider, settings)

    # ========================================
    # ライフサイクル
    # ========================================

    @normalize_errors("start")
    async def start(self):
        await self.lifecycle.start()

    @normalize_errors("stop")
    async def stop(self):
        await self.lifecycle.stop()

    # ========================================
    # 参照系
    # ========================================

    @normalize_errors("get_vendor_ids")
    async def get_vendor_ids(self) -> List[str]:
        await self.start()
        return await self.directory.get_vendor_ids()

    @normalize_errors("get_vendor")
    async def get_vendor(self, vendor_id: str) -> Dict[str, Any]:
        await self.start()
        vendor = await self.directory.get_vendor(vendor_id)
        if vendor is None:
            raise NotFound(f"Vendor {vendor_id} is not registered")
        return public_vendor_view(vendor)

    @normalize_errors("search")
    async def search(
        self,
        query: Dict[str, Any],
        limit: Optional[int] = None,
        offset: int = 0
    ) -> Dict[str, Any]:
        await self.start()
        return await self.directory.search(query or {}, limit=limit, offset=offset)

    @normalize_errors("get_marketplace_identity")
    async def get_marketplace_identity(self) -> Dict[str, Any]:
        """.well-known 用のIdentityとノード情報"""
        await self.start()
        identity = await self.identity_provider.get_marketplace_identity()
        return {
            "identity": identity.public_info(),
            "nodeId": self.identity_provider.node_id,
            "network": self.settings.network,
        }

    @normalize_errors("get_content")
    async def get_content(self, address: str) -> bytes:
        await self.start()
        content = await self.identity_provider.get_content(address)
        if content is None:
            raise NotFound(f"Content not found: {address}")
        return content

    # ========================================
    # 信頼ハンドシェイク
    # ========================================

    @normalize_errors("register_vendor")
    async def register_vendor(self, vendor_id: str) -> VendorRegistrationResponse:
        """
        ベンダーを登録し、委任鍵ペアを発行

        Raises:
            InvalidIdentity: vendor_id が受け付けるDID形式ではない
            AlreadyExists: 登録済み
        """
        if not is_valid_did(vendor_id, self.settings.did_methods):
            raise InvalidIdentity(f"Vendor identity is not a valid DID: {vendor_id}")

        await self.start()
        if await self.directory.get_vendor(vendor_id) is not None:
            raise AlreadyExists(f"Vendor already registered: {vendor_id}")

        private_key, public_key = self.identity_provider.generate_key_pair()
        key_ref = await self.identity_provider.store_public_key(public_key)

        identity = await self.identity_provider.get_marketplace_identity()
        marketplace_signature = self.identity_provider.sign_content_address(
            key_ref, identity.private_key, identity.did
        )

        record = await self.directory.create_vendor({
            "vendorId": vendor_id,
            "delegatedPublicKeyRef": key_ref,
            "delegatedPrivateKey": self.identity_provider.export_private_key(private_key),
            "marketplaceSignature": marketplace_signature.model_dump(),
            "vendorSignature": None,
            "profile": {},
        })
        logger.info(
            f"[Marketplace] Registered vendor {vendor_id} (delegated key: {key_ref})",
            extra=vendor_context(vendor_id, "register_vendor")
        )

        return VendorRegistrationResponse(
            vendorId=record["vendorId"],
            delegatedPublicKeyRef=record["delegatedPublicKeyRef"],
            marketplaceSignature=record["marketplaceSignature"],
        )

    @normalize_errors("update_vendor_signature")
    async def update_vendor_signature(
        self,
        signature: Union[DIDSignature, Dict[str, Any]],
        identity_doc: Optional[DIDDocument] = None
    ) -> Dict[str, Any]:
        """
        ベンダーの相互署名を記録

        署名は creator の鍵で、ベンダー自身の delegatedPublicKeyRef に対して
        なされたものでなければならない。

        Raises:
            NotFound: creator が登録済みベンダーではない
            InvalidSignature: 署名検証に失敗（レコードは変更されない）
        """
        if not isinstance(signature, DIDSignature):
            try:
                signature = DIDSignature.model_validate(signature)
            except ValidationError as e:
                raise BadRequest("Signature is malformed") from e
        vendor_id = signature.signer_did

        await self.start()

        async def countersign(current: Dict[str, Any]) -> Dict[str, Any]:
            valid = await self.identity_provider.verify_signature(
                current["delegatedPublicKeyRef"], signature, identity_doc
            )
            if not valid:
                raise InvalidSignature(f"Signature by {signature.creator} is not valid")
            return {"vendorSignature": signature.model_dump()}

        record = await self.directory.modify_vendor(vendor_id, countersign)
        if record is None:
            raise NotFound(f"Vendor {vendor_id} is not registered")
        if identity_doc is not None and identity_doc.id == vendor_id:
            # 検証に使った鍵（ローテーション後の鍵）を以降のDID解決に使う
            self.identity_provider.did_resolver.register(identity_doc)
        logger.info(
            f"[Marketplace] Vendor {vendor_id} countersigned its delegated key",
            extra=vendor_context(vendor_id, "update_vendor_signature")
        )
        return record

    # ========================================
    # プロフィール・PoPR
    # ========================================

    @normalize_errors("set_profile")
    async def set_profile(
        self,
        profile: Dict[str, Any],
        signature: DIDSignature,
        identity_doc: Optional[DIDDocument] = None
    ) -> Dict[str, Any]:
        await self.start()
        return await self.profiles.set_profile(profile, signature, identity_doc)

    @normalize_errors("patch_profile")
    async def patch_profile(
        self,
        partial_profile: Dict[str, Any],
        signature: DIDSignature,
        identity_doc: Optional[DIDDocument] = None
    ) -> Dict[str, Any]:
        await self.start()
        return await self.profiles.patch_profile(partial_profile, signature, identity_doc)

    @normalize_errors("create_popr")
    async def create_popr(
        self,
        vendor_id: str,
        options: Optional[Union[PoPROptions, Dict[str, Any]]] = None
    ) -> PoPRResponse:
        await self.start()
        return await self.popr_issuer.create_popr(vendor_id, options)
