from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable

import pkcs11
from asn1crypto import algos, core, keys, pem, x509
from cryptography import x509 as crypto_x509
from cryptography.exceptions import InvalidSignature
from pkcs11 import Attribute, KeyType

from .exceptions import CertificateIntegrityError, MalformedCredentialError
from .serial import hex_encode

IDENTITY_VALIDITY_DAYS = 3650

_SIGNATURE_ALGORITHMS = {
    "ecdsa_sha256": "sha256_ecdsa",
    "ecdsa_sha384": "sha384_ecdsa",
    "ecdsa_sha512": "sha512_ecdsa",
}


def _normalize_algorithm_name(algorithm: str) -> str:
    return algorithm.strip().lower().replace("-", "_")


def signature_algorithm_identifier(algorithm: str) -> algos.SignedDigestAlgorithm:
    normalized = _normalize_algorithm_name(algorithm)
    resolved = _SIGNATURE_ALGORITHMS.get(normalized)
    if resolved is None:
        available = ", ".join(sorted(_SIGNATURE_ALGORITHMS))
        raise ValueError(
            f"Unsupported X.509 signing algorithm '{algorithm}'. Use one of: {available}."
        )
    return algos.SignedDigestAlgorithm({"algorithm": resolved})


def ecdsa_signature_to_der(signature: bytes) -> bytes:
    """
    Ensure an ECDSA signature is a DER SEQUENCE as X.509 expects.

    PKCS#11 providers return raw r||s; some return DER already.
    """
    try:
        algos.DSASignature.load(signature, strict=True)
        return signature
    except ValueError:
        if len(signature) % 2 != 0:
            raise ValueError("Invalid raw ECDSA signature length.")
        half = len(signature) // 2
        r = int.from_bytes(signature[:half], byteorder="big")
        s = int.from_bytes(signature[half:], byteorder="big")
        return algos.DSASignature({"r": r, "s": s}).dump()


def ecdsa_signature_to_raw(signature: bytes, size: int) -> bytes:
    """Fixed-width r||s form used by JWS, from either raw or DER input."""
    if len(signature) == 2 * size:
        return signature
    parsed = algos.DSASignature.load(signature)
    r = parsed["r"].native
    s = parsed["s"].native
    return r.to_bytes(size, byteorder="big") + s.to_bytes(size, byteorder="big")


def _load_pem_or_der(
    data: bytes | str,
    expected_pem_type: str,
) -> bytes:
    if isinstance(data, str):
        payload = data.encode("utf-8")
    else:
        payload = data

    if pem.detect(payload):
        pem_type, _headers, der_bytes = pem.unarmor(payload)
        if pem_type != expected_pem_type:
            raise ValueError(
                f"Expected PEM type '{expected_pem_type}', received '{pem_type}'."
            )
        return der_bytes
    return payload


def load_certificate(data: bytes | str) -> x509.Certificate:
    try:
        certificate = x509.Certificate.load(_load_pem_or_der(data, "CERTIFICATE"))
        # Force a full parse so malformed input fails here, not later.
        certificate.native
    except ValueError as exc:
        raise MalformedCredentialError(f"Unable to parse certificate: {exc}") from exc
    return certificate


def dump_certificate_pem(certificate: x509.Certificate) -> bytes:
    return pem.armor("CERTIFICATE", certificate.dump())


def pkcs11_public_key_to_public_key_info(
    public_key: pkcs11.PublicKey,
) -> keys.PublicKeyInfo:
    key_type = public_key[Attribute.KEY_TYPE]
    if key_type != KeyType.EC:
        raise ValueError(f"Unsupported public key type for identity certificates: {key_type}")

    ec_params = public_key[Attribute.EC_PARAMS]
    ec_point = public_key[Attribute.EC_POINT]
    try:
        ec_point = core.OctetString.load(ec_point).native
    except ValueError:
        pass
    return keys.PublicKeyInfo(
        {
            "algorithm": {
                "algorithm": "ec",
                "parameters": keys.ECDomainParameters.load(ec_params),
            },
            "public_key": ec_point,
        }
    )


def build_identity_subject(provider: str, key_id: bytes) -> x509.Name:
    if not provider or not provider.strip():
        raise ValueError("provider is required for identity certificates.")
    return x509.Name.build(
        {
            "organization_name": provider,
            "serial_number": hex_encode(key_id),
        }
    )


def build_identity_extensions() -> x509.Extensions:
    return x509.Extensions(
        [
            x509.Extension(
                {
                    "extn_id": "key_usage",
                    "critical": True,
                    "extn_value": x509.KeyUsage({"digital_signature", "key_cert_sign"}),
                }
            ),
            x509.Extension(
                {
                    "extn_id": "extended_key_usage",
                    "critical": False,
                    "extn_value": x509.ExtKeyUsageSyntax(["any_extended_key_usage"]),
                }
            ),
            x509.Extension(
                {
                    "extn_id": "basic_constraints",
                    "critical": True,
                    "extn_value": x509.BasicConstraints({"ca": False}),
                }
            ),
        ]
    )


def _asn1_time(value: datetime) -> x509.Time:
    if value.year < 2050:
        return x509.Time({"utc_time": value})
    return x509.Time({"general_time": value})


def create_self_signed_identity_certificate(
    *,
    key_id: bytes,
    provider: str,
    subject_public_key_info: keys.PublicKeyInfo,
    sign_tbs: Callable[[bytes], bytes],
    signing_algorithm: str = "ecdsa_sha256",
    validity_days: int = IDENTITY_VALIDITY_DAYS,
    now: datetime | None = None,
) -> x509.Certificate:
    if not key_id:
        raise ValueError("key_id must not be empty.")
    if validity_days <= 0:
        raise ValueError("validity_days must be > 0.")

    not_before = (now or datetime.now(timezone.utc)).replace(microsecond=0)
    not_after = not_before + timedelta(days=validity_days)
    subject = build_identity_subject(provider, key_id)
    signature_id = signature_algorithm_identifier(signing_algorithm)

    tbs_certificate = x509.TbsCertificate(
        {
            "version": "v3",
            "serial_number": int.from_bytes(key_id, byteorder="big"),
            "signature": signature_id,
            "issuer": subject,
            "validity": x509.Validity(
                {
                    "not_before": _asn1_time(not_before),
                    "not_after": _asn1_time(not_after),
                }
            ),
            "subject": subject,
            "subject_public_key_info": subject_public_key_info,
            "extensions": build_identity_extensions(),
        }
    )

    signature = ecdsa_signature_to_der(sign_tbs(tbs_certificate.dump()))
    return x509.Certificate(
        {
            "tbs_certificate": tbs_certificate,
            "signature_algorithm": signature_id,
            "signature_value": signature,
        }
    )


def certificate_organizations(certificate: x509.Certificate) -> list[str]:
    value = certificate.subject.native.get("organization_name")
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(item) for item in value]


def to_cryptography_certificate(certificate: x509.Certificate) -> crypto_x509.Certificate:
    return crypto_x509.load_der_x509_certificate(certificate.dump())


class TrustPool:
    """
    Set of certificates trusted as direct issuers.

    An identity certificate is valid when a pool member issued it, the member's
    key verifies its signature, and the check time lies inside its validity.
    """

    def __init__(self, certificates: Iterable[x509.Certificate] = ()) -> None:
        self._certificates: list[crypto_x509.Certificate] = []
        for certificate in certificates:
            self.add(certificate)

    def add(self, certificate: x509.Certificate) -> None:
        try:
            self._certificates.append(to_cryptography_certificate(certificate))
        except ValueError as exc:
            raise CertificateIntegrityError(
                f"Certificate cannot be added to the trust pool: {exc}"
            ) from exc

    def verify(
        self,
        certificate: x509.Certificate,
        *,
        at: datetime | None = None,
    ) -> crypto_x509.Certificate:
        try:
            candidate = to_cryptography_certificate(certificate)
        except ValueError as exc:
            raise CertificateIntegrityError(
                f"Certificate cannot be parsed for verification: {exc}"
            ) from exc

        moment = at or datetime.now(timezone.utc)
        if not candidate.not_valid_before_utc <= moment <= candidate.not_valid_after_utc:
            raise CertificateIntegrityError(
                f"Certificate is not valid at {moment.isoformat()}."
            )

        for issuer in self._certificates:
            try:
                candidate.verify_directly_issued_by(issuer)
            except (ValueError, TypeError, InvalidSignature):
                continue
            return issuer

        raise CertificateIntegrityError(
            "Certificate was not issued by any certificate in the trust pool."
        )
