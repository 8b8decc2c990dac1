"""
vendor_marketplace/common/models.py

FastAPI用のPydanticモデル

- 署名・DIDドキュメント（W3C DID仕様に準拠した形）
- HTTP APIのリクエスト/レスポンス型
- PoPR（Proof of Payment Request）
"""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# ========================================
# Cryptographic Models
# ========================================

class DIDSignature(BaseModel):
    """
    DIDに紐づく署名

    creator は署名者のDID（またはDID#鍵ID）、signatureValue は
    BASE64エンコードされたECDSA署名値。

    Example:
    {
      "type": "EcdsaSecp256r1Signature2019",
      "created": "2026-10-18T12:34:56Z",
      "creator": "did:mkt:vendor-42",
      "signatureValue": "MEUCIQDx..."
    }
    """
    type: str = Field(default="EcdsaSecp256r1Signature2019", description="署名タイプ")
    created: Optional[str] = Field(None, description="署名作成日時（ISO 8601）")
    creator: str = Field(..., description="署名者のDID")
    signatureValue: str = Field(..., description="BASE64エンコードされた署名値")

    @property
    def signer_did(self) -> str:
        """creator からフラグメント（#key-1 など）を除いたDID"""
        return self.creator.split("#", 1)[0]


class VerificationMethod(BaseModel):
    """
    DIDドキュメントの検証メソッド

    Example:
    {
      "id": "did:mkt:vendor-42#key-1",
      "type": "EcdsaSecp256r1VerificationKey2019",
      "controller": "did:mkt:vendor-42",
      "publicKeyPem": "-----BEGIN PUBLIC KEY-----\\n..."
    }
    """
    id: str = Field(..., description="検証メソッドID（DIDフラグメント形式）")
    type: str = Field(default="EcdsaSecp256r1VerificationKey2019", description="公開鍵タイプ")
    controller: str = Field(..., description="コントローラーDID")
    publicKeyPem: str = Field(..., description="PEM形式の公開鍵")


class DIDDocument(BaseModel):
    """
    DIDドキュメント

    署名者の現在の署名鍵を記述する。ベンダーは登録時・プロフィール更新時に
    これを添付することで、ネットワークからの解決を省略できる。
    """
    id: str = Field(..., description="DID")
    verificationMethod: List[VerificationMethod] = Field(
        default_factory=list,
        description="検証メソッドのリスト"
    )
    authentication: List[str] = Field(default_factory=list, description="認証に使用する検証メソッド")
    assertionMethod: Optional[List[str]] = Field(None, description="アサーションに使用する検証メソッド")


# ========================================
# Vendor Models
# ========================================

class VendorRegistrationRequest(BaseModel):
    """
    POST /vendors のリクエスト

    旧クライアントは vendorId の代わりに delegatedPublicKeyRef を送ってくる。
    どちらの場合も値はベンダーIDとして扱われる。
    """
    vendorId: Optional[str] = Field(None, description="ベンダーのDID")
    delegatedPublicKeyRef: Optional[str] = Field(None, description="旧形式のベンダー識別子")

    def resolve_vendor_id(self) -> Optional[str]:
        return self.vendorId or self.delegatedPublicKeyRef


class VendorRegistrationResponse(BaseModel):
    """ハンドシェイク第1段階のレスポンス（秘密鍵は含まない）"""
    vendorId: str
    delegatedPublicKeyRef: str
    marketplaceSignature: DIDSignature


class VendorRecord(BaseModel):
    """公開用ベンダーレコード（委任秘密鍵は含まない）"""
    vendorId: str
    delegatedPublicKeyRef: str
    marketplaceSignature: DIDSignature
    vendorSignature: Optional[DIDSignature] = None
    profile: Dict[str, Any] = Field(default_factory=dict)
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None


class SignatureSubmission(BaseModel):
    """POST /vendors/{id}/signature のリクエスト"""
    signature: DIDSignature
    identityDoc: Optional[DIDDocument] = Field(None, description="署名者のDIDドキュメント（任意）")


class ProfileRequest(BaseModel):
    """POST/PATCH /vendors/{id}/profile のリクエスト"""
    profile: Dict[str, Any]
    signature: DIDSignature
    identityDoc: Optional[DIDDocument] = None


class SearchRequest(BaseModel):
    """
    POST /search のリクエスト

    query はプロフィールのフィールド名から、部分一致文字列または数値への写像。
    limit が未指定または0の場合は件数無制限。
    """
    query: Dict[str, Any] = Field(default_factory=dict)
    limit: Optional[int] = Field(None, ge=0)
    offset: int = Field(default=0, ge=0)


class SearchResult(BaseModel):
    count: int = Field(..., description="ページングを無視した一致件数")
    rows: List[VendorRecord] = Field(default_factory=list)


# ========================================
# PoPR Models
# ========================================

class PoPROptions(BaseModel):
    """
    PoPR発行オプション（すべて任意、未指定はデフォルト値）
    """
    model_config = ConfigDict(extra="ignore")

    item_id: Optional[str] = None
    invoice_id: Optional[str] = None
    customer_id: Optional[str] = None
    currency_symbol: Optional[str] = None
    amount: Optional[Union[int, float]] = None
    created_at: Optional[int] = Field(None, description="作成日時（エポックミリ秒）")
    expires_at: Optional[int] = Field(None, description="有効期限（エポックミリ秒、0は無期限）")
    attributes: Optional[List[Any]] = None


class PoPRParty(BaseModel):
    """PoPRに埋め込まれる当事者情報（DIDと署名）"""
    did: str
    signature: Optional[DIDSignature] = None


class PoPR(BaseModel):
    """
    Proof of Payment Request

    マーケットプレイスとベンダーの双方が署名した委任鍵を参照し、
    委任秘密鍵による署名を持つ決済リクエスト。
    """
    item_id: str
    invoice_id: str
    customer_id: str
    created_at: int
    expires_at: int
    currency_symbol: str
    amount: Union[int, float]
    marketplace_url: str
    marketplace_vendor_url: str
    key_location: str = Field(..., description="委任公開鍵のコンテンツアドレス")
    popr_version: int = 0
    attributes: List[Any] = Field(default_factory=list)
    marketplace: PoPRParty
    vendor: PoPRParty
    signature: Optional[DIDSignature] = None


class PoPRResponse(BaseModel):
    popr: PoPR
    contentAddress: str


class WellKnownResponse(BaseModel):
    """GET /.well-known のレスポンス"""
    identity: Dict[str, Any]
    nodeId: str
    network: str
