from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterator
from unittest import mock

import pytest
import requests
from asn1crypto import x509
from cryptography import x509 as crypto_x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

from security_token import AuthenticationClient, BackendConfig, Core
from security_token.exceptions import BackendError
from security_token.keystore import DEFAULT_CURVE, KeystoreBackend, PairedCertificate
from security_token.logging_utils import LOGGER_NAMESPACE
from security_token.signers import IdentitySigner, SoftwareSigner, curve_spec

TOKEN_URL = "https://iam.example.test/oauth/token"

_CURVES = {
    "secp256r1": ec.SECP256R1,
    "secp384r1": ec.SECP384R1,
    "secp521r1": ec.SECP521R1,
}


class MemoryKeystore(KeystoreBackend):
    """In-memory keystore with software keys; records every call it receives."""

    def __init__(self) -> None:
        self.keys: dict[bytes, SoftwareSigner] = {}
        self.certificates: dict[bytes, bytes] = {}
        self.calls: list[str] = []
        self.closed = False

    def open(self) -> None:
        self.calls.append("open")

    def close(self) -> None:
        self.calls.append("close")
        self.closed = True

    def generate_key_pair(self, key_id: bytes, curve: str = DEFAULT_CURVE) -> IdentitySigner:
        self.calls.append("generate_key_pair")
        curve_spec(curve)
        if key_id in self.keys:
            raise BackendError("duplicate id")
        signer = SoftwareSigner(ec.generate_private_key(_CURVES[curve]()))
        self.keys[key_id] = signer
        return signer

    def import_certificate(self, key_id: bytes, certificate: x509.Certificate) -> None:
        self.calls.append("import_certificate")
        if key_id not in self.keys:
            raise BackendError("no key pair")
        self.certificates[key_id] = certificate.dump()

    def find_key_pair(self, key_id: bytes) -> IdentitySigner | None:
        self.calls.append("find_key_pair")
        return self.keys.get(key_id)

    def find_certificate(self, key_id: bytes) -> x509.Certificate | None:
        self.calls.append("find_certificate")
        der = self.certificates.get(key_id)
        return None if der is None else x509.Certificate.load(der)

    def find_all_paired_certificates(self) -> list[PairedCertificate]:
        self.calls.append("find_all_paired_certificates")
        return [
            PairedCertificate(key_id, x509.Certificate.load(der), self.keys[key_id])
            for key_id, der in self.certificates.items()
            if key_id in self.keys
        ]

    def delete_certificate(self, key_id: bytes) -> bool:
        self.calls.append("delete_certificate")
        return self.certificates.pop(key_id, None) is not None

    def delete_key_pair(self, key_id: bytes) -> bool:
        self.calls.append("delete_key_pair")
        return self.keys.pop(key_id, None) is not None


def ec_private_key(curve: str = "secp256r1") -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(_CURVES[curve]())


def pkcs8_pem(private_key: ec.EllipticCurvePrivateKey | rsa.RSAPrivateKey) -> bytes:
    return private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )


def self_signed_pem(
    private_key: ec.EllipticCurvePrivateKey,
    *,
    organization: str | None = "acme",
    serial_number: int = 0x0102030405,
) -> bytes:
    attributes = [crypto_x509.NameAttribute(NameOID.COMMON_NAME, "machine-01")]
    if organization is not None:
        attributes.append(crypto_x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization))
    name = crypto_x509.Name(attributes)
    now = datetime.now(timezone.utc)
    certificate = (
        crypto_x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(serial_number)
        .not_valid_before(now - timedelta(minutes=1))
        .not_valid_after(now + timedelta(days=30))
        .sign(private_key, hashes.SHA256())
    )
    return certificate.public_bytes(serialization.Encoding.PEM)


def token_response(payload: object, status_code: int = 200) -> mock.Mock:
    response = mock.Mock(spec=requests.Response)
    response.status_code = status_code
    response.json.return_value = payload
    return response


@pytest.fixture(autouse=True)
def _restore_package_logger() -> Iterator[None]:
    logger = logging.getLogger(LOGGER_NAMESPACE)
    handlers = list(logger.handlers)
    propagate = logger.propagate
    level = logger.level
    yield
    for handler in logger.handlers:
        if handler not in handlers:
            handler.close()
    logger.handlers = handlers
    logger.propagate = propagate
    logger.setLevel(level)


@pytest.fixture
def backend_config() -> BackendConfig:
    return BackendConfig(token_url=TOKEN_URL, timeout=5.0)


@pytest.fixture
def keystore() -> MemoryKeystore:
    return MemoryKeystore()


@pytest.fixture
def http_session() -> mock.Mock:
    session = mock.create_autospec(requests.Session, instance=True)
    session.post.return_value = token_response({"access_token": "session.jwt.value"})
    return session


@pytest.fixture
def auth_client(backend_config: BackendConfig, http_session: mock.Mock) -> AuthenticationClient:
    return AuthenticationClient(backend_config, session=http_session)


@pytest.fixture
def core(
    keystore: MemoryKeystore,
    backend_config: BackendConfig,
    auth_client: AuthenticationClient,
) -> Iterator[Core]:
    with Core(keystore, backend_config, auth_client=auth_client) as instance:
        yield instance
