"""
Signing capability shared by hardware- and software-resident identity keys.

Signatures are always returned in the fixed-width r||s form used by JWS;
x509_ops.ecdsa_signature_to_der converts them for certificates.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import pkcs11
from asn1crypto import keys, pem, x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from pkcs11 import Mechanism

from .exceptions import BackendError, MalformedCredentialError, UnsupportedKeyAlgorithmError
from .x509_ops import ecdsa_signature_to_raw, pkcs11_public_key_to_public_key_info

_logger = logging.getLogger("security_token.signers")

PKCS8_PEM_TYPE = "PRIVATE KEY"


@dataclass(frozen=True)
class CurveSpec:
    name: str
    jws_algorithm: str
    x509_algorithm: str
    size: int
    mechanism: Mechanism
    hash_algorithm: type[hashes.HashAlgorithm]


CURVE_SPECS: dict[str, CurveSpec] = {
    "secp256r1": CurveSpec(
        name="secp256r1",
        jws_algorithm="ES256",
        x509_algorithm="ecdsa_sha256",
        size=32,
        mechanism=Mechanism.ECDSA_SHA256,
        hash_algorithm=hashes.SHA256,
    ),
    "secp384r1": CurveSpec(
        name="secp384r1",
        jws_algorithm="ES384",
        x509_algorithm="ecdsa_sha384",
        size=48,
        mechanism=Mechanism.ECDSA_SHA384,
        hash_algorithm=hashes.SHA384,
    ),
    "secp521r1": CurveSpec(
        name="secp521r1",
        jws_algorithm="ES512",
        x509_algorithm="ecdsa_sha512",
        size=66,
        mechanism=Mechanism.ECDSA_SHA512,
        hash_algorithm=hashes.SHA512,
    ),
}


def curve_spec(curve: str) -> CurveSpec:
    spec = CURVE_SPECS.get(curve)
    if spec is None:
        available = ", ".join(sorted(CURVE_SPECS))
        raise UnsupportedKeyAlgorithmError(
            f"Unsupported elliptic curve '{curve}'. Available: {available}"
        )
    return spec


class IdentitySigner(ABC):
    """Proof-of-possession capability of one identity private key."""

    @property
    @abstractmethod
    def curve(self) -> str:
        """Named curve of the key, e.g. secp256r1."""

    @abstractmethod
    def sign(self, data: bytes) -> bytes:
        """Hash and sign data, returning fixed-width r||s."""

    @abstractmethod
    def public_key_info(self) -> keys.PublicKeyInfo:
        """SubjectPublicKeyInfo of the matching public key."""

    @property
    def spec(self) -> CurveSpec:
        return curve_spec(self.curve)

    @property
    def jws_algorithm(self) -> str:
        return self.spec.jws_algorithm

    @property
    def x509_signing_algorithm(self) -> str:
        return self.spec.x509_algorithm

    def matches_certificate(self, certificate: x509.Certificate) -> bool:
        return certificate.public_key.dump() == self.public_key_info().dump()


class Pkcs11Signer(IdentitySigner):
    """
    Handle to a key pair stored on a PKCS#11 token.

    Only object handles are held; signing happens inside the module.
    """

    def __init__(
        self,
        key_id: bytes,
        private_key: pkcs11.PrivateKey,
        public_key: pkcs11.PublicKey,
    ) -> None:
        self.key_id = key_id
        self._private_key = private_key
        self._public_key_info = pkcs11_public_key_to_public_key_info(public_key)

    @property
    def curve(self) -> str:
        _kind, name = self._public_key_info.curve
        return str(name)

    def public_key_info(self) -> keys.PublicKeyInfo:
        return self._public_key_info

    def sign(self, data: bytes) -> bytes:
        spec = self.spec
        try:
            signature = self._private_key.sign(data, mechanism=spec.mechanism)
        except Exception as exc:
            _logger.exception("PKCS#11 signing failed curve=%s", spec.name)
            raise BackendError(f"PKCS#11 signing failed: {exc}") from exc
        _logger.debug(
            "Signed payload on token mechanism=%s signature_size=%d",
            spec.mechanism.name,
            len(signature),
        )
        return ecdsa_signature_to_raw(signature, spec.size)


class SoftwareSigner(IdentitySigner):
    """In-memory EC private key supplied by the caller."""

    def __init__(self, private_key: ec.EllipticCurvePrivateKey) -> None:
        curve_spec(private_key.curve.name)
        self._private_key = private_key

    @property
    def curve(self) -> str:
        return self._private_key.curve.name

    def public_key_info(self) -> keys.PublicKeyInfo:
        der = self._private_key.public_key().public_bytes(
            serialization.Encoding.DER,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        return keys.PublicKeyInfo.load(der)

    def sign(self, data: bytes) -> bytes:
        spec = self.spec
        der = self._private_key.sign(data, ec.ECDSA(spec.hash_algorithm()))
        r, s = decode_dss_signature(der)
        return r.to_bytes(spec.size, byteorder="big") + s.to_bytes(spec.size, byteorder="big")


def load_pkcs8_signer(data: bytes | str) -> SoftwareSigner:
    """Build a software signer from a PEM PKCS#8 ("PRIVATE KEY") EC key."""

    payload = data.encode("utf-8") if isinstance(data, str) else data
    if not pem.detect(payload):
        raise MalformedCredentialError("Private key is not PEM encoded.")
    try:
        pem_type, _headers, der_bytes = pem.unarmor(payload)
    except ValueError as exc:
        raise MalformedCredentialError(f"Unable to decode private key PEM: {exc}") from exc
    if pem_type != PKCS8_PEM_TYPE:
        raise MalformedCredentialError(
            f"Expected a PKCS#8 '{PKCS8_PEM_TYPE}' PEM block, received '{pem_type}'."
        )

    try:
        private_key = serialization.load_der_private_key(der_bytes, password=None)
    except UnsupportedAlgorithm as exc:
        raise UnsupportedKeyAlgorithmError(f"Unsupported private key: {exc}") from exc
    except (ValueError, TypeError) as exc:
        raise MalformedCredentialError(f"Unable to parse PKCS#8 private key: {exc}") from exc

    if not isinstance(private_key, ec.EllipticCurvePrivateKey):
        raise UnsupportedKeyAlgorithmError(
            f"Unsupported private key algorithm: {type(private_key).__name__}; "
            "only elliptic-curve keys are accepted."
        )
    return SoftwareSigner(private_key)
