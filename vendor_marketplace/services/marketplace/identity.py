"""
vendor_marketplace/services/marketplace/identity.py

Identity & Signing Provider

マーケットプレイスが利用する暗号・ストレージ機能をまとめたもの:
- 鍵ペア生成、署名、署名検証（common/crypto.py）
- コンテンツアドレス型ストレージへの保存・ピン留め（common/content_store.py）
- DIDドキュメントの解決（common/did_resolver.py）
- マーケットプレイス自身の永続的なIdentity（初回のみ読み込み・生成）
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union

from cryptography.hazmat.primitives.asymmetric import ec

from vendor_marketplace.common.content_store import ContentStore, InMemoryContentStore
from vendor_marketplace.common.crypto import (
    KeyManager,
    SignatureManager,
    compute_content_address,
)
from vendor_marketplace.common.did_resolver import DIDResolver, public_keys_of
from vendor_marketplace.common.logger import get_logger
from vendor_marketplace.common.models import DIDDocument, DIDSignature, VerificationMethod

logger = get_logger(__name__)

MARKETPLACE_KEY_ID = "marketplace"


@dataclass
class MarketplaceIdentity:
    """
    マーケットプレイス自身のIdentity

    source は鍵の入手元: "memory"（キャッシュ済み）、"fs:<path>"（鍵ファイル）、
    "random"（新規生成して保存）
    """
    did: str
    private_key: ec.EllipticCurvePrivateKey
    public_key_pem: str
    public_key_ref: str
    did_document: DIDDocument
    source: str

    def public_info(self) -> Dict[str, Any]:
        return {
            "did": self.did,
            "publicKeyRef": self.public_key_ref,
            "didDocument": self.did_document.model_dump(exclude_none=True),
        }


def build_did_document(did: str, public_key_pem: str) -> DIDDocument:
    """公開鍵1つを持つDIDドキュメントを生成"""
    key_id = f"{did}#key-1"
    return DIDDocument(
        id=did,
        verificationMethod=[
            VerificationMethod(id=key_id, controller=did, publicKeyPem=public_key_pem)
        ],
        authentication=[key_id],
        assertionMethod=[key_id],
    )


class LocalIdentityProvider:
    """
    ローカル鍵ストア + コンテンツストア + DIDリゾルバーによるIdentity Provider
    """

    def __init__(
        self,
        keys_directory: Optional[str] = None,
        key_passphrase: Optional[str] = None,
        content_store: Optional[ContentStore] = None,
        did_resolver: Optional[DIDResolver] = None,
        did_method: str = "mkt",
        resolution_timeout: float = 10.0
    ):
        """
        Args:
            keys_directory: マーケットプレイス鍵の保存先（Noneの場合は永続化しない）
            key_passphrase: 秘密鍵PEMを暗号化するパスフレーズ
            content_store: コンテンツストア（デフォルトはインメモリ）
            did_resolver: DIDリゾルバー（デフォルトはローカルのみ）
            did_method: マーケットプレイスDIDのメソッド名
            resolution_timeout: DID解決の待機上限（秒）
        """
        self.key_manager = KeyManager(keys_directory)
        self.signature_manager = SignatureManager(self.key_manager)
        self.key_passphrase = key_passphrase
        self.content_store = content_store or InMemoryContentStore()
        self.did_resolver = did_resolver or DIDResolver()
        self.did_method = did_method
        self.resolution_timeout = resolution_timeout

        self._identity: Optional[MarketplaceIdentity] = None
        self._identity_lock = asyncio.Lock()

    async def start(self):
        await self.content_store.start()

    async def stop(self):
        await self.content_store.stop()

    @property
    def node_id(self) -> str:
        return self.content_store.node_id

    # ========================================
    # 鍵と署名
    # ========================================

    def generate_key_pair(self) -> Tuple[ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey]:
        return self.key_manager.generate_key_pair()

    async def store_public_key(self, public_key: ec.EllipticCurvePublicKey) -> str:
        """公開鍵（PEM）をコンテンツストアに保存・ピン留めしてアドレスを返す"""
        pem = self.key_manager.public_key_to_pem(public_key)
        return await self.content_store.put(pem, pin=True)

    async def load_public_key(self, address: str) -> Optional[str]:
        """コンテンツアドレスから公開鍵PEMを取得"""
        content = await self.content_store.get(address)
        return content.decode("utf-8") if content is not None else None

    def sign_content_address(
        self,
        address: str,
        private_key: ec.EllipticCurvePrivateKey,
        creator: str
    ) -> DIDSignature:
        return self.signature_manager.sign_content_address(address, private_key, creator)

    def sign_document(
        self,
        document: Dict[str, Any],
        private_key: ec.EllipticCurvePrivateKey,
        creator: str
    ) -> DIDSignature:
        return self.signature_manager.sign_document(document, private_key, creator)

    def export_private_key(self, private_key: ec.EllipticCurvePrivateKey) -> str:
        return self.key_manager.export_private_key(private_key, self.key_passphrase)

    def import_private_key(self, exported: str) -> ec.EllipticCurvePrivateKey:
        return self.key_manager.import_private_key(exported, self.key_passphrase)

    async def put_content(self, content: Union[bytes, str], pin: bool = True) -> str:
        return await self.content_store.put(content, pin=pin)

    async def get_content(self, address: str) -> Optional[bytes]:
        return await self.content_store.get(address)

    # ========================================
    # マーケットプレイスIdentity
    # ========================================

    def _load_or_generate(self) -> Tuple[ec.EllipticCurvePrivateKey, str]:
        """鍵ファイルがあれば読み込み、なければ生成して保存（同期処理）"""
        if self.key_manager.keys_directory is not None:
            private_key = self.key_manager.load_private_key(MARKETPLACE_KEY_ID, self.key_passphrase)
            if private_key is not None:
                return private_key, "fs:" + self.key_manager.key_file_path(MARKETPLACE_KEY_ID)

        private_key, _ = self.key_manager.generate_key_pair()
        if self.key_manager.keys_directory is not None:
            self.key_manager.save_private_key(MARKETPLACE_KEY_ID, private_key, self.key_passphrase)
        return private_key, "random"

    async def get_marketplace_identity(self) -> MarketplaceIdentity:
        """
        マーケットプレイスのIdentityを取得

        初回呼び出し時のみ鍵を読み込み（または生成・保存）し、
        以降はメモリ上のキャッシュを返す（source="memory"）。
        同時に呼ばれた場合も読み込みは1回だけ行う。
        """
        if self._identity is not None:
            return self._cached_identity()

        async with self._identity_lock:
            if self._identity is not None:
                return self._cached_identity()

            private_key, source = await asyncio.to_thread(self._load_or_generate)
            public_key_pem = self.key_manager.public_key_to_pem(private_key.public_key())
            public_key_ref = await self.content_store.put(public_key_pem, pin=True)

            did = f"did:{self.did_method}:{public_key_ref.split(':', 1)[1][:32]}"
            did_document = build_did_document(did, public_key_pem)
            self.did_resolver.register(did_document)

            self._identity = MarketplaceIdentity(
                did=did,
                private_key=private_key,
                public_key_pem=public_key_pem,
                public_key_ref=public_key_ref,
                did_document=did_document,
                source=source,
            )
            logger.info(f"[IdentityProvider] Marketplace identity {did} loaded (source: {source})")
            return self._identity

    def _cached_identity(self) -> MarketplaceIdentity:
        identity = self._identity
        return MarketplaceIdentity(
            did=identity.did,
            private_key=identity.private_key,
            public_key_pem=identity.public_key_pem,
            public_key_ref=identity.public_key_ref,
            did_document=identity.did_document,
            source="memory",
        )

    # ========================================
    # 署名検証
    # ========================================

    async def _signer_public_keys(
        self,
        signature: DIDSignature,
        identity_doc: Optional[DIDDocument],
        timeout: float
    ) -> list:
        creator_did = signature.creator.split("#", 1)[0]
        if identity_doc is not None and identity_doc.id == creator_did:
            did_doc = identity_doc
        else:
            if identity_doc is not None:
                logger.warning(
                    f"[IdentityProvider] Ignoring identity document {identity_doc.id} "
                    f"for signature by {signature.creator}"
                )
            did_doc = await self.did_resolver.wait_for_did(creator_did, timeout)
        if did_doc is None:
            return []
        return public_keys_of(did_doc, signature.creator if "#" in signature.creator else None)

    async def verify_signature(
        self,
        address: str,
        signature: DIDSignature,
        identity_doc: Optional[DIDDocument] = None,
        timeout: Optional[float] = None
    ) -> bool:
        """
        signature.creator のDIDに紐づく鍵で、コンテンツアドレスへの署名を検証

        identity_doc の id が creator と一致する場合はDID解決を省略する。
        DIDが解決できないまま timeout を過ぎた場合は False（fail-closed）。
        """
        timeout = self.resolution_timeout if timeout is None else timeout
        public_keys = await self._signer_public_keys(signature, identity_doc, timeout)
        if not public_keys:
            logger.warning(f"[IdentityProvider] No public key available for {signature.creator}")
            return False
        return any(
            self.signature_manager.verify_content_address(address, signature, pem)
            for pem in public_keys
        )

    async def verify_payload_signature(
        self,
        payload: Dict[str, Any],
        signature: DIDSignature,
        identity_doc: Optional[DIDDocument] = None,
        timeout: Optional[float] = None
    ) -> bool:
        """辞書データ（正規化JSON）のコンテンツアドレスに対する署名を検証"""
        return await self.verify_signature(
            compute_content_address(payload), signature, identity_doc, timeout
        )
