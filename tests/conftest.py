"""
Pytest configuration and fixtures for Vendor Marketplace tests
"""

import pytest
import tempfile
import shutil
import uuid
from pathlib import Path
from typing import AsyncGenerator

from vendor_marketplace.common.config import MarketplaceSettings
from vendor_marketplace.common.content_store import InMemoryContentStore
from vendor_marketplace.common.crypto import KeyManager, SignatureManager, compute_content_address
from vendor_marketplace.common.did_resolver import DIDResolver
from vendor_marketplace.common.directory import InMemoryVendorDirectory, SQLVendorDirectory
from vendor_marketplace.common.models import DIDSignature
from vendor_marketplace.services.marketplace.identity import LocalIdentityProvider, build_did_document
from vendor_marketplace.services.marketplace.marketplace import Marketplace

TEST_PASSPHRASE = "test-passphrase"


class VendorKeys:
    """
    A vendor's own long-term identity, as held by the vendor (never by the marketplace)
    """

    def __init__(self, method: str = "mkt"):
        self.key_manager = KeyManager()
        self.signature_manager = SignatureManager(self.key_manager)
        self.private_key, public_key = self.key_manager.generate_key_pair()
        self.public_key_pem = self.key_manager.public_key_to_pem(public_key)
        self.did = f"did:{method}:{uuid.uuid4().hex}"
        self.did_document = build_did_document(self.did, self.public_key_pem)

    def sign(self, content_address: str) -> DIDSignature:
        return self.signature_manager.sign_content_address(content_address, self.private_key, self.did)

    def sign_payload(self, payload: dict) -> DIDSignature:
        return self.sign(compute_content_address(payload))


@pytest.fixture
def vendor_keys():
    """
    Factory for vendor identities
    """
    return VendorKeys


@pytest.fixture
def temp_keys_dir():
    """
    Temporary directory for test keys
    """
    temp_dir = tempfile.mkdtemp()
    yield temp_dir
    shutil.rmtree(temp_dir)


@pytest.fixture
def temp_db_path():
    """
    Temporary database path for tests
    """
    temp_file = tempfile.NamedTemporaryFile(delete=False, suffix=".db")
    db_path = temp_file.name
    temp_file.close()
    yield db_path
    Path(db_path).unlink(missing_ok=True)


@pytest.fixture
def key_manager(temp_keys_dir):
    """
    KeyManager instance with temporary keys directory
    """
    return KeyManager(keys_directory=temp_keys_dir)


@pytest.fixture
def signature_manager(key_manager):
    """
    SignatureManager instance
    """
    return SignatureManager(key_manager=key_manager)


@pytest.fixture
def settings(temp_keys_dir):
    """
    Settings for an in-memory marketplace with a short DID resolution timeout
    """
    return MarketplaceSettings(
        directory_backend="memory",
        keys_directory=temp_keys_dir,
        key_passphrase=TEST_PASSPHRASE,
        did_resolution_timeout=0.2,
        public_url="http://marketplace.test",
        network="testnet",
    )


@pytest.fixture
def identity_provider(temp_keys_dir):
    """
    LocalIdentityProvider with in-memory content store and local-only DID resolver
    """
    return LocalIdentityProvider(
        keys_directory=temp_keys_dir,
        key_passphrase=TEST_PASSPHRASE,
        content_store=InMemoryContentStore(),
        did_resolver=DIDResolver(poll_interval=0.05),
        resolution_timeout=0.2,
    )


@pytest.fixture
async def marketplace(settings, identity_provider) -> AsyncGenerator[Marketplace, None]:
    """
    Marketplace backed by the in-memory vendor directory
    """
    mkt = Marketplace(InMemoryVendorDirectory(), identity_provider, settings)
    yield mkt
    await mkt.stop()


@pytest.fixture
async def sql_marketplace(settings, identity_provider, temp_db_path) -> AsyncGenerator[Marketplace, None]:
    """
    Marketplace backed by a temporary SQLite vendor directory
    """
    directory = SQLVendorDirectory(f"sqlite+aiosqlite:///{temp_db_path}")
    mkt = Marketplace(directory, identity_provider, settings)
    yield mkt
    await mkt.stop()


@pytest.fixture
async def registered_vendor(marketplace, vendor_keys):
    """
    A vendor that completed the first half of the handshake
    """
    keys = vendor_keys()
    registration = await marketplace.register_vendor(keys.did)
    return keys, registration


@pytest.fixture
async def countersigned_vendor(marketplace, registered_vendor):
    """
    A vendor that completed the full handshake
    """
    keys, registration = registered_vendor
    signature = keys.sign(registration.delegatedPublicKeyRef)
    await marketplace.update_vendor_signature(signature, keys.did_document)
    return keys, registration
