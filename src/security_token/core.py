from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from asn1crypto import x509

from .auth import AuthenticationClient, TokenExchangeProfile
from .config import BackendConfig, SecurityTokenConfig
from .exceptions import (
    CertificateNotFoundError,
    InvalidSerialError,
    MalformedCredentialError,
    NoTokensFoundError,
)
from .identity import IdentityCertificateFactory
from .keystore import KeystoreBackend, PairedCertificate, Pkcs11Keystore, SoftwareKeystore
from .serial import hex_encode, parse_serial
from .signers import IdentitySigner
from .x509_ops import dump_certificate_pem

_logger = logging.getLogger("security_token.core")


@dataclass(frozen=True)
class Token:
    """Signer and certificate resolved for one identity id."""

    key_id: bytes
    signer: IdentitySigner
    certificate: x509.Certificate

    @property
    def serial(self) -> str:
        return hex_encode(self.key_id)


def export_certificate(certificate: x509.Certificate) -> str:
    return dump_certificate_pem(certificate).decode("ascii")


def _read_credential(path: str | Path, label: str) -> bytes:
    source = Path(path).expanduser()
    try:
        return source.read_bytes()
    except OSError as exc:
        raise MalformedCredentialError(f"Unable to read {label} file {source}: {exc}") from exc


def _issued_order(pair: PairedCertificate) -> tuple[Any, bytes]:
    return pair.not_before, pair.key_id


class Core:
    """
    Identity lifecycle and login operations over one keystore session.

    The keystore is opened on construction and released by close() or by
    leaving a ``with`` block. A Core is not safe for concurrent use.
    """

    def __init__(
        self,
        keystore: KeystoreBackend,
        backend: BackendConfig,
        *,
        auth_client: AuthenticationClient | None = None,
        profile: TokenExchangeProfile | None = None,
    ) -> None:
        self.backend = backend
        self._keystore = keystore
        self._keystore.open()
        self._auth = auth_client or AuthenticationClient(backend, profile=profile)

    @classmethod
    def from_config(
        cls,
        config: SecurityTokenConfig,
        *,
        profile: TokenExchangeProfile | None = None,
    ) -> "Core":
        if config.source is not None:
            _logger.info("Using config file: %s", config.source)
        return cls(Pkcs11Keystore(config.pkcs11), config.backend, profile=profile)

    def __enter__(self) -> "Core":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def close(self) -> None:
        try:
            self._keystore.close()
        finally:
            self._auth.close()

    def generate(self, provider: str) -> x509.Certificate:
        return IdentityCertificateFactory(self._keystore).generate(provider)

    def list(self) -> list[PairedCertificate]:
        """Every provisioned identity, earliest issued first."""
        return sorted(self._keystore.find_all_paired_certificates(), key=_issued_order)

    def get_token(self, serial: str | None = None) -> Token:
        if serial:
            key_id = parse_serial(serial)
        else:
            pairs = self.list()
            if not pairs:
                raise NoTokensFoundError("No security tokens found.")
            key_id = pairs[0].key_id

        signer = self._keystore.find_key_pair(key_id)
        if signer is None:
            raise InvalidSerialError(f"Invalid serial number: {hex_encode(key_id)}")

        certificate = self._keystore.find_certificate(key_id)
        if certificate is None:
            raise CertificateNotFoundError(
                f"Certificate not found for serial number {hex_encode(key_id)}"
            )
        return Token(key_id=key_id, signer=signer, certificate=certificate)

    def show(self, serial: str | None = None) -> str:
        return export_certificate(self.get_token(serial).certificate)

    def delete(self, serial: str) -> bool:
        """
        Remove the certificate, then the key pair, for serial.

        Returns False (after logging a warning) when the key pair was already
        gone, which tolerates an earlier partial deletion.
        """
        key_id = parse_serial(serial)
        self._keystore.delete_certificate(key_id)
        if not self._keystore.delete_key_pair(key_id):
            _logger.warning("No key pair found for serial=%s", hex_encode(key_id))
            return False
        return True

    def login(self, signer: IdentitySigner, certificate: x509.Certificate) -> str:
        return self._auth.login(signer, certificate)

    def login_pkcs11(self, serial: str | None = None) -> str:
        token = self.get_token(serial)
        return self.login(token.signer, token.certificate)

    def login_x509(
        self,
        key: str | bytes,
        cert: str | bytes,
        *,
        from_path: bool = False,
    ) -> str:
        """
        Log in with caller-supplied PEM material.

        key and cert are PEM text, or file paths when from_path is True.
        """
        if from_path:
            key_pem = _read_credential(key, "private key")
            cert_pem = _read_credential(cert, "certificate")
        else:
            key_pem, cert_pem = key, cert

        keystore = SoftwareKeystore.from_pem(key_pem, cert_pem)
        with keystore:
            (identity,) = keystore.find_all_paired_certificates()
            return self.login(identity.signer, identity.certificate)
