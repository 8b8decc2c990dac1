"""
vendor_marketplace/common/did_resolver.py

DID解決機能

DIDからDIDドキュメントを取得し、署名検証に使う公開鍵を解決します。

解決順序:
1. ローカルレジストリ（マーケットプレイス自身のDID、登録済みベンダーなど）
2. リモートDIDレジストリ（MARKETPLACE_DID_REGISTRY_URL、HTTP経由）

ネットワーク上のDIDドキュメントは結果整合的に複製されるため、
wait_for_did() はタイムアウトまでポーリングし、タイムアウト時は
None を返す（検証側は fail-closed で扱う）。
"""

import asyncio
import re
from typing import Dict, List, Optional

import httpx
from pydantic import ValidationError

from vendor_marketplace.common.logger import LoggingAsyncClient, get_logger
from vendor_marketplace.common.models import DIDDocument

logger = get_logger(__name__)

DID_PATTERN = re.compile(r"^did:([a-z0-9]+):([A-Za-z0-9._:%-]+)$")


def parse_did(did: str) -> Optional[tuple]:
    """
    DIDを (method, method-specific-id) に分解

    DID#fragment 形式の場合はフラグメントを除いて解析する。
    形式が不正な場合はNone。
    """
    if not isinstance(did, str):
        return None
    match = DID_PATTERN.match(did.split("#", 1)[0])
    if not match:
        return None
    return match.group(1), match.group(2)


def is_valid_did(did: str, methods: Optional[List[str]] = None) -> bool:
    """DID形式（かつ許可されたメソッド）かどうか"""
    parsed = parse_did(did)
    if parsed is None or "#" in did:
        return False
    return methods is None or parsed[0] in methods


def public_keys_of(did_doc: DIDDocument, kid: Optional[str] = None) -> List[str]:
    """
    DIDドキュメントから署名検証に使える公開鍵（PEM）を取り出す

    Args:
        did_doc: DIDドキュメント
        kid: 鍵ID（DID#fragment）。指定した場合は一致するものだけを返す
    """
    if kid and "#" in kid:
        fragment = kid.split("#", 1)[1]
        return [
            vm.publicKeyPem for vm in did_doc.verificationMethod
            if vm.id == kid or vm.id.endswith(f"#{fragment}")
        ]
    return [vm.publicKeyPem for vm in did_doc.verificationMethod]


class DIDResolver:
    """
    DID解決クラス

    ローカルレジストリはインメモリ。リモートレジストリは
    GET {registry_url}/resolve/{did} がDIDドキュメントJSONを返すことを期待する。
    """

    def __init__(
        self,
        registry_url: Optional[str] = None,
        http_timeout: float = 5.0,
        poll_interval: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Args:
            registry_url: リモートDIDレジストリのベースURL（Noneの場合はローカルのみ）
            http_timeout: HTTPリクエスト1回あたりのタイムアウト（秒）
            poll_interval: wait_for_did() のポーリング間隔（秒）
            transport: httpxトランスポート（テスト用）
        """
        self.registry_url = registry_url.rstrip("/") if registry_url else None
        self.http_timeout = http_timeout
        self.poll_interval = poll_interval
        self.transport = transport

        self._did_registry: Dict[str, DIDDocument] = {}

    def register(self, did_doc: DIDDocument):
        """DIDドキュメントをローカルレジストリに登録"""
        self._did_registry[did_doc.id] = did_doc
        logger.info(f"[DIDResolver] Registered DID: {did_doc.id}")

    def resolve_local(self, did: str) -> Optional[DIDDocument]:
        return self._did_registry.get(did.split("#", 1)[0])

    async def _fetch_remote(self, did: str) -> Optional[DIDDocument]:
        url = f"{self.registry_url}/resolve/{did}"
        client_kwargs = {"timeout": self.http_timeout}
        if self.transport is not None:
            client_kwargs["transport"] = self.transport
        async with LoggingAsyncClient(logger, **client_kwargs) as client:
            try:
                response = await client.get(url)
            except httpx.HTTPError as e:
                logger.warning(f"[DIDResolver] Registry request failed: {did}: {e}")
                return None

        if response.status_code == 404:
            return None
        if response.status_code != 200:
            logger.warning(
                f"[DIDResolver] Registry returned {response.status_code} for {did}"
            )
            return None

        try:
            did_doc = DIDDocument.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.warning(f"[DIDResolver] Malformed DID document for {did}: {e}")
            return None

        if did_doc.id != did:
            logger.warning(f"[DIDResolver] DID document id mismatch: {did_doc.id} != {did}")
            return None
        return did_doc

    async def resolve_async(self, did: str) -> Optional[DIDDocument]:
        """
        DIDからDIDドキュメントを解決

        Returns:
            Optional[DIDDocument]: DIDドキュメント（存在しない場合はNone）
        """
        did = did.split("#", 1)[0]
        did_doc = self.resolve_local(did)
        if did_doc:
            logger.debug(f"[DIDResolver] Resolved from local registry: {did}")
            return did_doc

        if self.registry_url:
            did_doc = await self._fetch_remote(did)
            if did_doc:
                self._did_registry[did] = did_doc
                logger.info(f"[DIDResolver] Resolved from remote registry: {did}")
                return did_doc

        logger.debug(f"[DIDResolver] DID not found: {did}")
        return None

    async def _poll(self, did: str) -> DIDDocument:
        while True:
            did_doc = await self.resolve_async(did)
            if did_doc:
                return did_doc
            await asyncio.sleep(self.poll_interval)

    async def wait_for_did(self, did: str, timeout: float) -> Optional[DIDDocument]:
        """
        DIDドキュメントが解決可能になるまで待機

        レジストリへのリクエスト中であってもタイムアウトで打ち切る。

        Args:
            did: 解決するDID
            timeout: 待機上限（秒）。0の場合は1回だけ解決を試みる

        Returns:
            Optional[DIDDocument]: タイムアウトした場合はNone
        """
        if timeout <= 0:
            return await self.resolve_async(did)
        try:
            return await asyncio.wait_for(self._poll(did), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[DIDResolver] Timed out waiting for DID: {did} ({timeout}s)")
            return None
