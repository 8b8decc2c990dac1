"""
vendor_marketplace/services/marketplace/profile.py

ベンダープロフィール管理

プロフィールは type フィールドで2種類に分かれる:
- individual: vendorAddress, email, username(≤25), firstname(≤60), lastname(≤60)
- business:   vendorAddress, email, businessname(≤120)

バリデーションエラーは {フィールド名: メッセージ} の形で返す。
"""

import re
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictStr, TypeAdapter, ValidationError, field_validator

from vendor_marketplace.common.directory import VendorDirectory
from vendor_marketplace.common.errors import InvalidSignature, NotFound, ValidationFailed
from vendor_marketplace.common.logger import get_logger, vendor_context
from vendor_marketplace.common.models import DIDDocument, DIDSignature

logger = get_logger(__name__)

PROFILE_TYPES = ("individual", "business")

EMAIL_PATTERN = re.compile(
    r'^(([^<>()\[\]\\.,;:\s@"]+(\.[^<>()\[\]\\.,;:\s@"]+)*)|(".+"))@'
    r'((\[[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}])|(([a-zA-Z\-0-9]+\.)+[a-zA-Z]{2,}))$'
)


class _ProfileBase(BaseModel):
    model_config = ConfigDict(extra="allow")

    vendorAddress: StrictStr = Field(..., min_length=1)
    email: StrictStr

    @field_validator("email")
    @classmethod
    def check_email(cls, value: str) -> str:
        if not EMAIL_PATTERN.match(value):
            raise ValueError("Email address is invalid")
        return value


class IndividualProfile(_ProfileBase):
    type: Literal["individual"]
    username: StrictStr = Field(..., min_length=1, max_length=25)
    firstname: StrictStr = Field(..., min_length=1, max_length=60)
    lastname: StrictStr = Field(..., min_length=1, max_length=60)


class BusinessProfile(_ProfileBase):
    type: Literal["business"]
    businessname: StrictStr = Field(..., min_length=1, max_length=120)


Profile = Annotated[Union[IndividualProfile, BusinessProfile], Field(discriminator="type")]

_profile_adapter = TypeAdapter(Profile)


def _error_message(error: Dict[str, Any]) -> str:
    kind = error["type"]
    if kind == "missing":
        return "this field is required"
    if kind == "string_too_long":
        return f"too long (max length {error['ctx']['max_length']})"
    if kind == "string_too_short":
        return "this value is required"
    if kind == "value_error":
        return str(error["ctx"]["error"])
    return "invalid type"


def validate_profile(profile: Dict[str, Any]) -> Optional[Dict[str, str]]:
    """
    プロフィールを検証

    Returns:
        エラーがなければNone、あれば {フィールド名: メッセージ}
    """
    if not isinstance(profile, dict):
        return {"profile": "invalid type"}
    errors: Dict[str, str] = {}
    profile_type = profile.get("type")
    if not profile_type:
        errors["type"] = "Profile type is required"
    elif profile_type not in PROFILE_TYPES:
        errors["type"] = "Invalid profile type"
    if errors:
        # 種別が不明な場合も individual として残りの項目を検証する
        profile = {**profile, "type": "individual"}

    try:
        _profile_adapter.validate_python(profile)
    except ValidationError as e:
        for error in e.errors():
            # loc は (タグ, フィールド名, ...) の形
            field = str(error["loc"][1]) if len(error["loc"]) > 1 else str(error["loc"][0])
            errors.setdefault(field, _error_message(error))
    return errors or None


def set_profile_fullname(profile: Dict[str, Any]) -> Dict[str, Any]:
    """
    表示名（name）を付与したプロフィールのコピーを返す

    firstname または businessname、続けて lastname、最後に (username)。
    """
    name = profile.get("firstname") or profile.get("businessname") or ""
    if profile.get("lastname"):
        name += f" {profile['lastname']}"
    if profile.get("username"):
        name += f" ({profile['username']})"
    return {**profile, "name": name}


class ProfileManager:
    """
    プロフィールの設定・部分更新

    署名はプロフィールのペイロードそのもの（正規化JSONのコンテンツアドレス）に対して検証する。
    """

    def __init__(self, directory: VendorDirectory, identity_provider):
        self.directory = directory
        self.identity_provider = identity_provider

    async def _verify(
        self,
        payload: Dict[str, Any],
        signature: DIDSignature,
        identity_doc: Optional[DIDDocument]
    ) -> str:
        vendor_id = signature.signer_did
        if await self.directory.get_vendor(vendor_id) is None:
            raise NotFound(f"Vendor {vendor_id} is not registered")

        valid = await self.identity_provider.verify_payload_signature(payload, signature, identity_doc)
        if not valid:
            logger.warning(
                f"[ProfileManager] Invalid profile signature by {signature.creator}",
                extra=vendor_context(vendor_id, "verify_profile_signature")
            )
            raise InvalidSignature("Profile signature is not valid")
        return vendor_id

    async def _store(self, vendor_id: str, patch: Dict[str, Any], merge: bool) -> Dict[str, Any]:
        async def mutate(current: Dict[str, Any]) -> Dict[str, Any]:
            profile = {**(current.get("profile") or {}), **patch} if merge else dict(patch)
            errors = validate_profile(profile)
            if errors:
                raise ValidationFailed("Profile validation failed", data=errors)
            return {"profile": set_profile_fullname(profile)}

        record = await self.directory.modify_vendor(vendor_id, mutate)
        if record is None:
            raise NotFound(f"Vendor {vendor_id} is not registered")
        logger.info(
            f"[ProfileManager] Profile updated for {vendor_id} (merge={merge})",
            extra=vendor_context(vendor_id, "patch_profile" if merge else "set_profile")
        )
        return record

    async def set_profile(
        self,
        profile: Dict[str, Any],
        signature: DIDSignature,
        identity_doc: Optional[DIDDocument] = None
    ) -> Dict[str, Any]:
        """プロフィールを全体置換"""
        vendor_id = await self._verify(profile, signature, identity_doc)
        return await self._store(vendor_id, profile, merge=False)

    async def patch_profile(
        self,
        partial_profile: Dict[str, Any],
        signature: DIDSignature,
        identity_doc: Optional[DIDDocument] = None
    ) -> Dict[str, Any]:
        """既存プロフィールにマージしてから全体を再検証"""
        vendor_id = await self._verify(partial_profile, signature, identity_doc)
        return await self._store(vendor_id, partial_profile, merge=True)
