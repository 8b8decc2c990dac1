"""
Tests for common/crypto.py

Tests cover:
- JSON canonicalization and content addresses
- Key generation, export/import and passphrase-protected storage
- Content address and document signing / verification
"""

import os
import json
import stat

import pytest
from cryptography.hazmat.primitives.asymmetric import ec

from vendor_marketplace.common.crypto import (
    CONTENT_ADDRESS_PREFIX,
    SIGNATURE_TYPE,
    CryptoError,
    KeyManager,
    canonicalize_json,
    compute_content_address,
    is_content_address,
)


class TestJSONCanonicalization:
    """Test JSON canonicalization functions"""

    def test_canonicalize_json_sorts_keys(self):
        """Test that key order does not affect canonical form"""
        a = canonicalize_json({"b": 1, "a": {"d": 2, "c": 3}})
        b = canonicalize_json({"a": {"c": 3, "d": 2}, "b": 1})

        assert a == b
        assert a == '{"a":{"c":3,"d":2},"b":1}'

    def test_canonicalize_json_with_exclusion(self):
        """Test JSON canonicalization with key exclusion"""
        data = {"name": "Test", "signature": "xxx"}
        canonical = canonicalize_json(data, exclude_keys=["signature"])

        assert json.loads(canonical) == {"name": "Test"}
        # Original dict is not modified
        assert "signature" in data

    def test_canonicalize_json_keeps_unicode(self):
        """Test that non-ASCII characters are not escaped"""
        assert canonicalize_json({"name": "山田"}) == '{"name":"山田"}'


class TestContentAddress:
    """Test content address computation"""

    def test_address_format(self):
        """Test that addresses are sha256-prefixed hex digests"""
        address = compute_content_address(b"hello")

        assert address.startswith(CONTENT_ADDRESS_PREFIX)
        assert is_content_address(address)
        assert address == compute_content_address("hello")

    def test_dict_address_uses_canonical_json(self):
        """Test that equivalent dicts share an address"""
        assert compute_content_address({"a": 1, "b": 2}) == compute_content_address({"b": 2, "a": 1})
        assert compute_content_address({"a": 1}) != compute_content_address({"a": 2})

    @pytest.mark.parametrize("value", [
        "sha256:xyz",
        "md5:" + "0" * 64,
        "sha256:" + "A" * 64,
        None,
    ])
    def test_is_content_address_rejects(self, value):
        """Test that malformed addresses are rejected"""
        assert not is_content_address(value)


class TestKeyManager:
    """Test KeyManager functionality"""

    def test_generate_key_pair(self, key_manager):
        """Test ECDSA key pair generation"""
        private_key, public_key = key_manager.generate_key_pair()

        assert private_key.public_key().public_numbers() == public_key.public_numbers()
        assert isinstance(private_key.curve, ec.SECP256R1)

    def test_export_import_roundtrip_with_passphrase(self, key_manager):
        """Test encrypted PEM export and import"""
        private_key, _ = key_manager.generate_key_pair()
        pem = key_manager.export_private_key(private_key, "secret")

        assert "ENCRYPTED PRIVATE KEY" in pem

        restored = key_manager.import_private_key(pem, "secret")
        assert restored.private_numbers() == private_key.private_numbers()

    def test_import_with_wrong_passphrase(self, key_manager):
        """Test that a wrong passphrase raises CryptoError"""
        private_key, _ = key_manager.generate_key_pair()
        pem = key_manager.export_private_key(private_key, "secret")

        with pytest.raises(CryptoError):
            key_manager.import_private_key(pem, "wrong")

    def test_import_garbage(self, key_manager):
        """Test that a corrupt PEM raises CryptoError"""
        with pytest.raises(CryptoError):
            key_manager.import_private_key("not a pem")

    def test_public_key_pem_roundtrip(self, key_manager):
        """Test public key PEM conversion"""
        _, public_key = key_manager.generate_key_pair()
        pem = key_manager.public_key_to_pem(public_key)

        assert pem.startswith("-----BEGIN PUBLIC KEY-----")
        assert key_manager.public_key_from_pem(pem).public_numbers() == public_key.public_numbers()

    def test_save_and_load_private_key(self, key_manager, temp_keys_dir):
        """Test saving and loading an encrypted private key file"""
        private_key, _ = key_manager.generate_key_pair()
        path = key_manager.save_private_key("marketplace", private_key, "secret")

        assert path == os.path.join(temp_keys_dir, "marketplace_private.pem")
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

        loaded = KeyManager(temp_keys_dir).load_private_key("marketplace", "secret")
        assert loaded.private_numbers() == private_key.private_numbers()

    def test_load_missing_key_returns_none(self, key_manager):
        """Test loading a key that was never saved"""
        assert key_manager.load_private_key("missing", "secret") is None

    def test_save_without_directory(self):
        """Test that saving without a keys directory fails"""
        manager = KeyManager()
        private_key, _ = manager.generate_key_pair()

        with pytest.raises(CryptoError):
            manager.save_private_key("k", private_key)


class TestSignatureManager:
    """Test SignatureManager functionality"""

    def test_sign_and_verify_content_address(self, key_manager, signature_manager):
        """Test content address signing"""
        private_key, public_key = key_manager.generate_key_pair()
        address = compute_content_address(b"delegated key")

        signature = signature_manager.sign_content_address(address, private_key, "did:mkt:abc")

        assert signature.type == SIGNATURE_TYPE
        assert signature.creator == "did:mkt:abc"
        assert signature.created.endswith("Z")
        assert signature_manager.verify_content_address(address, signature, public_key)

    def test_verify_with_pem(self, key_manager, signature_manager):
        """Test verification with a PEM encoded public key"""
        private_key, public_key = key_manager.generate_key_pair()
        pem = key_manager.public_key_to_pem(public_key)
        signature = signature_manager.sign_content_address("sha256:" + "0" * 64, private_key, "did:mkt:abc")

        assert signature_manager.verify_content_address("sha256:" + "0" * 64, signature, pem)

    def test_verify_rejects_other_address(self, key_manager, signature_manager):
        """Test that a signature does not verify a different address"""
        private_key, public_key = key_manager.generate_key_pair()
        signature = signature_manager.sign_content_address("sha256:" + "0" * 64, private_key, "did:mkt:abc")

        assert not signature_manager.verify_content_address("sha256:" + "1" * 64, signature, public_key)

    def test_verify_rejects_other_key(self, key_manager, signature_manager):
        """Test that a signature does not verify with another key"""
        private_key, _ = key_manager.generate_key_pair()
        _, other_public = key_manager.generate_key_pair()
        signature = signature_manager.sign_content_address("sha256:" + "0" * 64, private_key, "did:mkt:abc")

        assert not signature_manager.verify_content_address("sha256:" + "0" * 64, signature, other_public)

    def test_verify_malformed_signature_value(self, key_manager, signature_manager):
        """Test that a non-base64 signature value is rejected without raising"""
        private_key, public_key = key_manager.generate_key_pair()
        signature = signature_manager.sign_content_address("sha256:" + "0" * 64, private_key, "did:mkt:abc")
        signature.signatureValue = "***"

        assert not signature_manager.verify_content_address("sha256:" + "0" * 64, signature, public_key)

    def test_sign_and_verify_document(self, key_manager, signature_manager):
        """Test document signing excludes the signature field"""
        private_key, public_key = key_manager.generate_key_pair()
        document = {"invoice_id": "inv-1", "amount": 10}

        signature = signature_manager.sign_document(document, private_key, "sha256:" + "0" * 64)
        signed = {**document, "signature": signature.model_dump()}

        assert signature_manager.verify_document(signed, public_key)

        tampered = {**signed, "amount": 11}
        assert not signature_manager.verify_document(tampered, public_key)

    def test_verify_document_without_signature(self, key_manager, signature_manager):
        """Test verifying an unsigned document"""
        _, public_key = key_manager.generate_key_pair()

        assert not signature_manager.verify_document({"a": 1}, public_key)
        assert not signature_manager.verify_document({"a": 1, "signature": {"bogus": True}}, public_key)
