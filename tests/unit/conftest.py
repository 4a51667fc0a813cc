"""
Shared fixtures for unit tests.

Keys are generated once per test session with cryptography so that tokens can
be signed for real and checked with jwt.decode.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

PROJECT_ID = "test-project"
REGISTRY_ID = "test-registry"
DEVICE_ID = "dev1"
CLOUD_REGION = "us-central1"


def _private_pem(key) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


def _public_pem(key) -> str:
    return (
        key.public_key()
        .public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode()
    )


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def other_rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def ec_key():
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def rsa_private_pem(rsa_key) -> str:
    return _private_pem(rsa_key)


@pytest.fixture(scope="session")
def rsa_public_pem(rsa_key) -> str:
    return _public_pem(rsa_key)


@pytest.fixture(scope="session")
def other_rsa_private_pem(other_rsa_key) -> str:
    return _private_pem(other_rsa_key)


@pytest.fixture(scope="session")
def other_rsa_public_pem(other_rsa_key) -> str:
    return _public_pem(other_rsa_key)


@pytest.fixture(scope="session")
def ec_private_pem(ec_key) -> str:
    return _private_pem(ec_key)


@pytest.fixture(scope="session")
def ec_public_pem(ec_key) -> str:
    return _public_pem(ec_key)


@pytest.fixture
def session_options(rsa_private_pem) -> dict:
    """Minimal valid options in camelCase."""
    return {
        "projectId": PROJECT_ID,
        "registryId": REGISTRY_ID,
        "deviceId": DEVICE_ID,
        "cloudRegion": CLOUD_REGION,
        "privateKey": rsa_private_pem,
    }


class FakeClock:
    """Settable replacement for time.time."""

    def __init__(self, now: float = 1_700_000_000) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mock_aiomqtt_client():
    """
    Mock aiomqtt.Client instance.

    Connects successfully; its message iterator yields nothing, so a receiver
    returns immediately as if the broker closed the session.
    """
    client = MagicMock()
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=None)
    client.publish = AsyncMock()
    client.subscribe = AsyncMock()
    client.messages = EmptyMessages()
    return client


class EmptyMessages:
    """Async iterator over no messages."""

    def __aiter__(self):
        return self

    async def __anext__(self):
        raise StopAsyncIteration
