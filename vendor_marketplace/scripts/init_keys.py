"""
vendor_marketplace/scripts/init_keys.py

マーケットプレイス鍵の初期化スクリプト

マーケットプレイスの秘密鍵をパスフレーズで暗号化して鍵ディレクトリに保存し、
DIDドキュメントを marketplace_did.json として書き出します。
既に鍵がある場合は読み込むだけで、上書きしません。

必須環境変数：
    MARKETPLACE_KEY_PASSPHRASE
"""

import json
from pathlib import Path
from typing import Any, Callable, Dict

from vendor_marketplace.common.config import MarketplaceSettings
from vendor_marketplace.services.marketplace.identity import LocalIdentityProvider


async def init_keys(settings: MarketplaceSettings, log: Callable[[str], None] = print) -> Dict[str, Any]:
    """
    マーケットプレイスIdentityを読み込み（または生成）し、DIDドキュメントを保存

    Returns:
        {"did", "source", "didDocumentPath"}
    """
    provider = LocalIdentityProvider(
        keys_directory=settings.keys_directory,
        key_passphrase=settings.require_passphrase(),
        did_method=settings.did_methods[0] if settings.did_methods else "mkt",
    )
    await provider.start()
    try:
        identity = await provider.get_marketplace_identity()
    finally:
        await provider.stop()

    did_doc_file = Path(settings.keys_directory) / "marketplace_did.json"
    did_doc_file.parent.mkdir(parents=True, exist_ok=True)
    did_doc_file.write_text(
        json.dumps(identity.did_document.model_dump(exclude_none=True), indent=2, ensure_ascii=False),
        encoding="utf-8"
    )

    if identity.source == "random":
        log(f"  ✓ 新しい鍵を生成: {identity.did}")
    else:
        log(f"  ✓ 既存の鍵を使用: {identity.did} ({identity.source})")
    log(f"  ✓ DID Documentを保存: {did_doc_file}")

    return {"did": identity.did, "source": identity.source, "didDocumentPath": str(did_doc_file)}
