"""Machine identities on PKCS#11 tokens and JWT login to a Manetu backend."""

from .auth import AuthenticationClient, TokenExchangeProfile
from .config import BackendConfig, Pkcs11Config, SecurityTokenConfig
from .core import Core, Token, export_certificate
from .exceptions import (
    AuthenticationError,
    BackendError,
    CertificateIntegrityError,
    CertificateNotFoundError,
    ConfigurationError,
    InvalidSerialError,
    MalformedCredentialError,
    MalformedSerialError,
    NoTokensFoundError,
    NotFoundError,
    RandomnessError,
    SecurityTokenError,
    UnsupportedKeyAlgorithmError,
)
from .identity import IdentityCertificateFactory, compute_mrn
from .keystore import KeystoreBackend, PairedCertificate, Pkcs11Keystore, SoftwareKeystore
from .logging_utils import configure_logging
from .serial import hex_encode, parse_serial
from .signers import IdentitySigner, Pkcs11Signer, SoftwareSigner, load_pkcs8_signer
from .x509_ops import TrustPool

__all__ = [
    "AuthenticationClient",
    "AuthenticationError",
    "BackendConfig",
    "BackendError",
    "CertificateIntegrityError",
    "CertificateNotFoundError",
    "ConfigurationError",
    "Core",
    "IdentityCertificateFactory",
    "IdentitySigner",
    "InvalidSerialError",
    "KeystoreBackend",
    "MalformedCredentialError",
    "MalformedSerialError",
    "NoTokensFoundError",
    "NotFoundError",
    "PairedCertificate",
    "Pkcs11Config",
    "Pkcs11Keystore",
    "Pkcs11Signer",
    "RandomnessError",
    "SecurityTokenConfig",
    "SecurityTokenError",
    "SoftwareKeystore",
    "SoftwareSigner",
    "Token",
    "TokenExchangeProfile",
    "TrustPool",
    "UnsupportedKeyAlgorithmError",
    "compute_mrn",
    "configure_logging",
    "export_certificate",
    "hex_encode",
    "load_pkcs8_signer",
    "parse_serial",
]
