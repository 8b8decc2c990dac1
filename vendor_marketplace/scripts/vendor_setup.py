"""
vendor_marketplace/scripts/vendor_setup.py

ベンダーセットアップスクリプト

ローカルでベンダーの鍵ペアとDIDドキュメントを生成し、
マーケットプレイスとの信頼ハンドシェイクを最後まで実行します:

1. GET  /.well-known                マーケットプレイスの確認
2. POST /vendors                    ベンダー登録（委任鍵の発行）
3. 委任公開鍵のアドレスにベンダー鍵で署名
4. POST /vendors/{did}/signature    相互署名をDIDドキュメントとともに提出

最後にベンダーIdentity（DID・DIDドキュメント・秘密鍵PEM）をエクスポートします。
"""

from typing import Any, Callable, Dict, Optional

import httpx

from vendor_marketplace.common.crypto import KeyManager, SignatureManager, compute_content_address
from vendor_marketplace.common.logger import LoggingAsyncClient, get_logger
from vendor_marketplace.services.marketplace.identity import build_did_document

logger = get_logger(__name__)


class VendorSetupError(Exception):
    """ハンドシェイクの途中でマーケットプレイスがエラーを返した"""
    pass


def _check(response: httpx.Response, step: str) -> Dict[str, Any]:
    if response.status_code != 200:
        try:
            message = response.json().get("message", response.text)
        except ValueError:
            message = response.text
        raise VendorSetupError(f"{step} failed: server returned {response.status_code}: {message}")
    return response.json()


async def vendor_setup(
    url: str = "http://localhost:8000",
    network: Optional[str] = None,
    did_method: str = "mkt",
    transport: Optional[httpx.AsyncBaseTransport] = None,
    log: Callable[[str], None] = print
) -> Dict[str, Any]:
    """
    ベンダーを生成してマーケットプレイスに登録する

    Args:
        url: マーケットプレイスのURL
        network: 期待するネットワーク名（指定時はマーケットプレイスと一致しなければエラー）
        did_method: ベンダーDIDのメソッド名
        transport: httpxトランスポート（テスト用）
        log: 進捗の出力先

    Returns:
        エクスポートしたベンダーIdentity
    """
    key_manager = KeyManager()
    signature_manager = SignatureManager(key_manager)

    private_key, public_key = key_manager.generate_key_pair()
    public_key_pem = key_manager.public_key_to_pem(public_key)
    did = f"did:{did_method}:{compute_content_address(public_key_pem).split(':', 1)[1][:32]}"
    did_document = build_did_document(did, public_key_pem)
    log(f"Using DID {did}")

    client_kwargs: Dict[str, Any] = {"timeout": 30.0}
    if transport is not None:
        client_kwargs["transport"] = transport

    async with LoggingAsyncClient(logger, base_url=url, **client_kwargs) as client:
        info = _check(await client.get("/.well-known"), "Fetching marketplace info")
        log(f"Marketplace {info['identity']['did']} on network {info['network']}")
        if network and info["network"] != network:
            raise VendorSetupError(
                f"Marketplace is on network {info['network']}, expected {network}"
            )

        log(f"===> Register Request for {did}")
        registration = _check(
            await client.post("/vendors", json={"vendorId": did}),
            "Registering"
        )
        key_ref = registration["delegatedPublicKeyRef"]
        log(f"<=== Delegated key {key_ref}")

        log("===> Signature")
        signature = signature_manager.sign_content_address(key_ref, private_key, did)
        _check(
            await client.post(
                f"/vendors/{did}/signature",
                json={
                    "signature": signature.model_dump(),
                    "identityDoc": did_document.model_dump(exclude_none=True),
                },
            ),
            "Submitting signature"
        )
        log("<=== OK")

    return {
        "did": did,
        "didDocument": did_document.model_dump(exclude_none=True),
        "privateKeyPem": key_manager.export_private_key(private_key),
        "delegatedPublicKeyRef": key_ref,
        "marketplaceSignature": registration["marketplaceSignature"],
    }
