"""
vendor_marketplace/common/crypto.py

暗号署名と鍵管理

- JSON正規化（Canonicalization）とコンテンツアドレス計算
- ECDSA P-256 鍵ペアの生成・PEMエクスポート/インポート・暗号化保存
- コンテンツアドレスおよび任意データへの署名と検証
"""

import json
import base64
import hashlib
import os
from typing import Any, Dict, Optional, Tuple, Union
from datetime import datetime, timezone
from pathlib import Path

from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.exceptions import InvalidSignature
from pydantic import ValidationError

from vendor_marketplace.common.logger import get_logger, log_crypto_operation
from vendor_marketplace.common.models import DIDSignature

logger = get_logger(__name__)

SIGNATURE_TYPE = "EcdsaSecp256r1Signature2019"
CONTENT_ADDRESS_PREFIX = "sha256:"


class CryptoError(Exception):
    """暗号処理に関するエラー"""
    pass


# ========================================
# JSON正規化とコンテンツアドレス
# ========================================

def canonicalize_json(
    data: Dict[str, Any],
    exclude_keys: Optional[list] = None
) -> str:
    """
    JSONデータを正規化（Canonicalization）

    - キーをアルファベット順にソート
    - 余分な空白を削除（separators=(',', ':')）
    - UTF-8（ensure_ascii=False）

    Args:
        data: 正規化するデータ
        exclude_keys: 除外するキー（例：['signature']）

    Returns:
        str: 正規化されたJSON文字列
    """
    data_copy = dict(data) if isinstance(data, dict) else data
    if exclude_keys and isinstance(data_copy, dict):
        for key in exclude_keys:
            data_copy.pop(key, None)

    return json.dumps(
        data_copy,
        sort_keys=True,
        separators=(',', ':'),
        ensure_ascii=False
    )


def compute_content_address(content: Union[bytes, str, Dict[str, Any]]) -> str:
    """
    コンテンツアドレスを計算

    辞書は正規化JSONに変換してからハッシュ化する。

    Returns:
        str: "sha256:<hex>" 形式のアドレス
    """
    if isinstance(content, dict):
        content = canonicalize_json(content)
    if isinstance(content, str):
        content = content.encode('utf-8')
    return CONTENT_ADDRESS_PREFIX + hashlib.sha256(content).hexdigest()


def is_content_address(value: str) -> bool:
    """コンテンツアドレス形式かどうか"""
    if not isinstance(value, str) or not value.startswith(CONTENT_ADDRESS_PREFIX):
        return False
    digest = value[len(CONTENT_ADDRESS_PREFIX):]
    return len(digest) == 64 and all(c in "0123456789abcdef" for c in digest)


def utc_timestamp() -> str:
    """ISO 8601形式の現在時刻（Z表記）"""
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


# ========================================
# 鍵管理
# ========================================

class KeyManager:
    """
    鍵管理クラス
    秘密鍵の生成、エクスポート、保存、読み込みを管理
    """

    def __init__(self, keys_directory: Optional[str] = None):
        """
        Args:
            keys_directory: 鍵を保存するディレクトリ（Noneの場合はファイル保存不可）
        """
        self.keys_directory = Path(keys_directory) if keys_directory else None

    def generate_key_pair(self) -> Tuple[ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey]:
        """新しい鍵ペアを生成（ECDSA P-256）"""
        private_key = ec.generate_private_key(ec.SECP256R1())
        log_crypto_operation(logger, "generate")
        return private_key, private_key.public_key()

    def export_private_key(
        self,
        private_key: ec.EllipticCurvePrivateKey,
        passphrase: Optional[str] = None
    ) -> str:
        """
        秘密鍵をPEM(PKCS8)文字列にエクスポート

        Args:
            private_key: 秘密鍵
            passphrase: 指定した場合はパスフレーズで暗号化

        Returns:
            str: PEM文字列
        """
        if passphrase:
            encryption = serialization.BestAvailableEncryption(passphrase.encode('utf-8'))
        else:
            encryption = serialization.NoEncryption()

        pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=encryption
        )
        return pem.decode('utf-8')

    def import_private_key(
        self,
        pem: str,
        passphrase: Optional[str] = None
    ) -> ec.EllipticCurvePrivateKey:
        """
        PEM文字列から秘密鍵を復元

        Raises:
            CryptoError: パスフレーズ誤り・破損・非ECDSA鍵の場合
        """
        try:
            private_key = serialization.load_pem_private_key(
                pem.encode('utf-8'),
                password=passphrase.encode('utf-8') if passphrase else None
            )
        except (ValueError, TypeError) as e:
            raise CryptoError(f"秘密鍵を読み込めません（パスフレーズ誤りまたは破損）: {e}")

        if not isinstance(private_key, ec.EllipticCurvePrivateKey):
            raise CryptoError("ECDSA秘密鍵ではありません")
        return private_key

    def public_key_to_pem(self, public_key: ec.EllipticCurvePublicKey) -> str:
        """公開鍵をPEM文字列に変換"""
        return public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo
        ).decode('utf-8')

    def public_key_from_pem(self, pem: Union[str, bytes]) -> ec.EllipticCurvePublicKey:
        """PEM文字列から公開鍵を復元"""
        if isinstance(pem, str):
            pem = pem.encode('utf-8')
        try:
            public_key = serialization.load_pem_public_key(pem)
        except ValueError as e:
            raise CryptoError(f"公開鍵を読み込めません: {e}")
        if not isinstance(public_key, ec.EllipticCurvePublicKey):
            raise CryptoError("ECDSA公開鍵ではありません")
        return public_key

    def _key_file(self, key_id: str) -> Path:
        if self.keys_directory is None:
            raise CryptoError("鍵ディレクトリが設定されていません")
        return self.keys_directory / f"{key_id}_private.pem"

    def save_private_key(
        self,
        key_id: str,
        private_key: ec.EllipticCurvePrivateKey,
        passphrase: Optional[str] = None
    ) -> str:
        """
        秘密鍵をPEMで保存（パスフレーズ指定時は暗号化）

        Returns:
            str: 保存先のファイルパス
        """
        key_file = self._key_file(key_id)
        key_file.parent.mkdir(parents=True, exist_ok=True)
        key_file.write_text(self.export_private_key(private_key, passphrase), encoding='utf-8')

        # パーミッションを制限（所有者のみ読み書き可能）
        os.chmod(key_file, 0o600)

        logger.info(f"[KeyManager] 秘密鍵を保存: {key_file}")
        return str(key_file)

    def load_private_key(
        self,
        key_id: str,
        passphrase: Optional[str] = None
    ) -> Optional[ec.EllipticCurvePrivateKey]:
        """
        保存済みの秘密鍵を読み込み

        Returns:
            秘密鍵（ファイルが存在しない場合はNone）

        Raises:
            CryptoError: パスフレーズ誤りまたは鍵ファイル破損
        """
        key_file = self._key_file(key_id)
        if not key_file.exists():
            return None

        private_key = self.import_private_key(key_file.read_text(encoding='utf-8'), passphrase)
        logger.info(f"[KeyManager] 秘密鍵を読み込み: {key_file}")
        return private_key

    def key_file_path(self, key_id: str) -> str:
        return str(self._key_file(key_id))


# ========================================
# 署名管理
# ========================================

class SignatureManager:
    """
    署名管理クラス
    コンテンツアドレスと任意データの署名・検証を管理
    """

    def __init__(self, key_manager: KeyManager):
        self.key_manager = key_manager

    def sign_bytes(self, message: bytes, private_key: ec.EllipticCurvePrivateKey) -> str:
        """バイト列にECDSA(SHA-256)署名し、BASE64で返す"""
        signature_bytes = private_key.sign(message, ec.ECDSA(hashes.SHA256()))
        return base64.b64encode(signature_bytes).decode('utf-8')

    def verify_bytes(
        self,
        message: bytes,
        signature_value: str,
        public_key: Union[ec.EllipticCurvePublicKey, str]
    ) -> bool:
        """
        ECDSA署名を検証

        Returns:
            bool: 検証結果（True=有効、False=無効）
        """
        try:
            if isinstance(public_key, str):
                public_key = self.key_manager.public_key_from_pem(public_key)
            signature_bytes = base64.b64decode(signature_value.encode('utf-8'), validate=True)
            public_key.verify(signature_bytes, message, ec.ECDSA(hashes.SHA256()))
            return True
        except InvalidSignature:
            return False
        except (CryptoError, ValueError, TypeError) as e:
            logger.warning(f"[SignatureManager] 署名検証エラー: {e}")
            return False

    def sign_content_address(
        self,
        content_address: str,
        private_key: ec.EllipticCurvePrivateKey,
        creator: str
    ) -> DIDSignature:
        """
        コンテンツアドレスに署名

        Args:
            content_address: 署名対象のアドレス
            private_key: 署名に使う秘密鍵
            creator: 署名者のDID

        Returns:
            DIDSignature: 署名オブジェクト
        """
        signature = DIDSignature(
            type=SIGNATURE_TYPE,
            created=utc_timestamp(),
            creator=creator,
            signatureValue=self.sign_bytes(content_address.encode('utf-8'), private_key)
        )
        log_crypto_operation(logger, "sign", creator)
        return signature

    def verify_content_address(
        self,
        content_address: str,
        signature: DIDSignature,
        public_key: Union[ec.EllipticCurvePublicKey, str]
    ) -> bool:
        """コンテンツアドレスへの署名を検証"""
        valid = self.verify_bytes(
            content_address.encode('utf-8'),
            signature.signatureValue,
            public_key
        )
        log_crypto_operation(logger, "verify", signature.creator, success=valid)
        return valid

    def sign_document(
        self,
        document: Dict[str, Any],
        private_key: ec.EllipticCurvePrivateKey,
        creator: str
    ) -> DIDSignature:
        """
        辞書データに署名

        signature フィールドを除いた正規化JSONのコンテンツアドレスに署名する。
        """
        content_address = compute_content_address(
            canonicalize_json(document, exclude_keys=['signature'])
        )
        return self.sign_content_address(content_address, private_key, creator)

    def verify_document(
        self,
        document: Dict[str, Any],
        public_key: Union[ec.EllipticCurvePublicKey, str]
    ) -> bool:
        """sign_document で付与された signature フィールドを検証"""
        raw_signature = document.get('signature')
        if not raw_signature:
            return False
        try:
            signature = DIDSignature.model_validate(raw_signature)
        except ValidationError:
            return False
        content_address = compute_content_address(
            canonicalize_json(document, exclude_keys=['signature'])
        )
        return self.verify_content_address(content_address, signature, public_key)
