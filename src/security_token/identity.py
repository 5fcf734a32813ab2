from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timezone
from typing import Callable

from asn1crypto import x509

from .exceptions import CertificateIntegrityError
from .keystore import DEFAULT_CURVE, KeystoreBackend
from .serial import hex_encode, random_id
from .x509_ops import (
    IDENTITY_VALIDITY_DAYS,
    TrustPool,
    certificate_organizations,
    create_self_signed_identity_certificate,
)

_logger = logging.getLogger("security_token.identity")

MRN_PREFIX = "mrn:iam:"


def compute_mrn(certificate: x509.Certificate) -> str:
    """
    Manetu Resource Name of an identity certificate.

    mrn:iam:<organization>:identity:<hex sha256 of the certificate DER>
    """
    organizations = certificate_organizations(certificate)
    if not organizations:
        raise CertificateIntegrityError(
            "Certificate subject has no organization; cannot derive an MRN."
        )
    digest = hashlib.sha256(certificate.dump()).hexdigest()
    return f"{MRN_PREFIX}{organizations[0]}:identity:{digest}"


class IdentityCertificateFactory:
    """
    Provisions a new identity: key pair on the keystore plus a self-signed
    certificate stored under the same id.

    If a step after key generation fails the key pair is left on the token
    and must be removed by hand; no cleanup is attempted.
    """

    def __init__(
        self,
        backend: KeystoreBackend,
        *,
        clock: Callable[[], datetime] | None = None,
        validity_days: int = IDENTITY_VALIDITY_DAYS,
        curve: str = DEFAULT_CURVE,
    ) -> None:
        self._backend = backend
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._validity_days = validity_days
        self._curve = curve

    def generate(self, provider: str) -> x509.Certificate:
        if not provider or not provider.strip():
            raise ValueError("provider is required for identity certificates.")

        key_id = random_id()
        signer = self._backend.generate_key_pair(key_id, self._curve)
        now = self._clock()

        certificate = create_self_signed_identity_certificate(
            key_id=key_id,
            provider=provider,
            subject_public_key_info=signer.public_key_info(),
            sign_tbs=signer.sign,
            signing_algorithm=signer.x509_signing_algorithm,
            validity_days=self._validity_days,
            now=now,
        )

        try:
            TrustPool([certificate]).verify(certificate, at=now.replace(microsecond=0))
        except CertificateIntegrityError:
            _logger.error(
                "Self-verification failed; certificate not stored id=%s", key_id.hex()
            )
            raise

        self._backend.import_certificate(key_id, certificate)
        _logger.info(
            "Provisioned identity serial=%s provider=%s", hex_encode(key_id), provider
        )
        return certificate
