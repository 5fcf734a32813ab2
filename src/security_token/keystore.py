from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import pkcs11
import pkcs11.util.ec as ec_util
from asn1crypto import x509
from pkcs11 import Attribute, CertificateType, KeyType, ObjectClass
from pkcs11.util.x509 import decode_x509_certificate

from .config import Pkcs11Config
from .exceptions import (
    BackendError,
    CertificateIntegrityError,
    MalformedCredentialError,
    SecurityTokenError,
)
from .serial import hex_encode, serial_number_to_id
from .signers import IdentitySigner, Pkcs11Signer, curve_spec, load_pkcs8_signer
from .x509_ops import load_certificate

DEFAULT_CURVE = "secp256r1"

_logger = logging.getLogger("security_token.keystore")


def _format_exception(exc: Exception) -> str:
    details = str(exc).strip()
    if not details and getattr(exc, "args", None):
        details = ", ".join(str(a) for a in exc.args if a)
    if details:
        return f"{type(exc).__name__}: {details}"
    return type(exc).__name__


@dataclass(frozen=True)
class PairedCertificate:
    """A provisioned identity: certificate plus the handle of its key pair."""

    key_id: bytes
    certificate: x509.Certificate
    signer: IdentitySigner

    @property
    def serial(self) -> str:
        return hex_encode(self.key_id)

    @property
    def not_before(self) -> datetime:
        return self.certificate.not_valid_before


class KeystoreBackend(ABC):
    """
    Key pair and certificate storage addressed by a binary id.

    Use as a context manager so the underlying session is always released.
    """

    def __enter__(self) -> "KeystoreBackend":
        self.open()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def open(self) -> None:
        return None

    @abstractmethod
    def close(self) -> None:
        ...

    @abstractmethod
    def generate_key_pair(self, key_id: bytes, curve: str = DEFAULT_CURVE) -> IdentitySigner:
        ...

    @abstractmethod
    def import_certificate(self, key_id: bytes, certificate: x509.Certificate) -> None:
        ...

    @abstractmethod
    def find_key_pair(self, key_id: bytes) -> IdentitySigner | None:
        ...

    @abstractmethod
    def find_certificate(self, key_id: bytes) -> x509.Certificate | None:
        ...

    @abstractmethod
    def find_all_paired_certificates(self) -> list[PairedCertificate]:
        ...

    @abstractmethod
    def delete_certificate(self, key_id: bytes) -> bool:
        """Remove the certificate for key_id; False when there was none."""

    @abstractmethod
    def delete_key_pair(self, key_id: bytes) -> bool:
        """Remove the key pair for key_id; False when there was none."""


class Pkcs11Keystore(KeystoreBackend):
    """
    Identity keystore on a PKCS#11 token, built on python-pkcs11.

    One read/write user session is held from open() to close(). A closed
    keystore cannot be reopened. The session is not safe for concurrent use.
    """

    def __init__(self, config: Pkcs11Config) -> None:
        self._config = config
        self._session: pkcs11.Session | None = None
        self._closed = False

    @property
    def session(self) -> pkcs11.Session:
        if self._session is None:
            raise BackendError("Keystore session is not open.")
        return self._session

    def open(self) -> None:
        if self._session is not None:
            _logger.debug("Keystore session already open.")
            return
        if self._closed:
            raise BackendError("Keystore session was closed; create a new keystore.")

        try:
            token = self._find_token(pkcs11.lib(self._config.module_path))
            self._session = token.open(user_pin=self._config.user_pin(), rw=True)
            _logger.info("Keystore session opened.")
        except SecurityTokenError:
            raise
        except Exception as exc:
            _logger.exception("Failed to open keystore session.")
            raise BackendError(
                f"Failed to open keystore session: {_format_exception(exc)}"
            ) from exc

    def _find_token(self, lib: pkcs11.lib) -> pkcs11.Token:
        if self._config.slot_no is None:
            _logger.info(
                "Opening keystore session using token_label=%s", self._config.token_label
            )
            return lib.get_token(token_label=self._config.token_label)

        _logger.info("Opening keystore session using slot=%s", self._config.slot_no)
        for slot in lib.get_slots(token_present=True):
            if slot.slot_id == self._config.slot_no:
                return slot.get_token()
        raise BackendError(f"No token present in slot {self._config.slot_no}.")

    def close(self) -> None:
        self._closed = True
        if self._session is None:
            _logger.debug("Keystore session already closed.")
            return
        try:
            self._session.close()
        finally:
            self._session = None
            _logger.info("Keystore session closed.")

    def _get_key(self, object_class: ObjectClass, key_id: bytes) -> Any:
        try:
            key = self.session.get_key(
                object_class=object_class,
                key_type=KeyType.EC,
                id=key_id,
            )
            _logger.debug("Loaded %s id=%s", object_class.name, key_id.hex())
            return key
        except pkcs11.exceptions.NoSuchKey:
            _logger.debug("%s not found id=%s", object_class.name, key_id.hex())
            return None
        except pkcs11.exceptions.MultipleObjectsReturned as exc:
            raise BackendError(
                f"Multiple {object_class.name} objects share id {hex_encode(key_id)}."
            ) from exc
        except Exception as exc:
            _logger.exception("Failed to load %s id=%s", object_class.name, key_id.hex())
            raise BackendError(
                f"Failed to load {object_class.name}: {_format_exception(exc)}"
            ) from exc

    def _certificate_objects(self, key_id: bytes | None = None) -> list[Any]:
        template: dict[Attribute, Any] = {Attribute.CLASS: ObjectClass.CERTIFICATE}
        if key_id is not None:
            template[Attribute.ID] = key_id
        try:
            return list(self.session.get_objects(template))
        except Exception as exc:
            _logger.exception("Failed to enumerate certificates.")
            raise BackendError(
                f"Failed to enumerate certificates: {_format_exception(exc)}"
            ) from exc

    @staticmethod
    def _read_certificate(obj: Any) -> tuple[bytes, x509.Certificate]:
        try:
            key_id = bytes(obj[Attribute.ID] or b"")
            certificate = x509.Certificate.load(bytes(obj[Attribute.VALUE]))
        except Exception as exc:
            _logger.exception("Failed to read certificate object.")
            raise BackendError(
                f"Failed to read certificate object: {_format_exception(exc)}"
            ) from exc
        return key_id, certificate

    def generate_key_pair(self, key_id: bytes, curve: str = DEFAULT_CURVE) -> Pkcs11Signer:
        curve_spec(curve)
        if self._get_key(ObjectClass.PRIVATE_KEY, key_id) is not None:
            raise BackendError(f"A key pair with id {hex_encode(key_id)} already exists.")

        label = key_id.hex()
        try:
            parameters = self.session.create_domain_parameters(
                KeyType.EC,
                {Attribute.EC_PARAMS: ec_util.encode_named_curve_parameters(curve)},
                local=True,
            )
            public_key, private_key = parameters.generate_keypair(
                id=key_id,
                store=True,
                public_template={
                    Attribute.LABEL: label,
                    Attribute.TOKEN: True,
                    Attribute.VERIFY: True,
                },
                private_template={
                    Attribute.LABEL: label,
                    Attribute.TOKEN: True,
                    Attribute.SENSITIVE: True,
                    Attribute.EXTRACTABLE: False,
                    Attribute.SIGN: True,
                },
            )
        except Exception as exc:
            _logger.exception("Failed to generate EC keypair id=%s curve=%s", label, curve)
            raise BackendError(
                f"Failed to generate EC keypair: {_format_exception(exc)}"
            ) from exc

        _logger.info("Generated EC keypair id=%s curve=%s", label, curve)
        return Pkcs11Signer(key_id, private_key, public_key)

    def import_certificate(self, key_id: bytes, certificate: x509.Certificate) -> None:
        if self._get_key(ObjectClass.PRIVATE_KEY, key_id) is None:
            raise BackendError(
                f"No key pair with id {hex_encode(key_id)} to attach the certificate to."
            )

        template = decode_x509_certificate(certificate.dump())
        template.update(
            {
                Attribute.CLASS: ObjectClass.CERTIFICATE,
                Attribute.CERTIFICATE_TYPE: CertificateType.X_509,
                Attribute.TOKEN: True,
                Attribute.ID: key_id,
                Attribute.LABEL: key_id.hex(),
            }
        )
        try:
            self.session.create_object(template)
        except Exception as exc:
            _logger.exception("Failed to import certificate id=%s", key_id.hex())
            raise BackendError(
                f"Failed to import certificate: {_format_exception(exc)}"
            ) from exc
        _logger.info("Imported certificate id=%s", key_id.hex())

    def find_key_pair(self, key_id: bytes) -> Pkcs11Signer | None:
        private_key = self._get_key(ObjectClass.PRIVATE_KEY, key_id)
        if private_key is None:
            return None
        public_key = self._get_key(ObjectClass.PUBLIC_KEY, key_id)
        if public_key is None:
            raise BackendError(
                f"Private key {hex_encode(key_id)} has no matching public key object."
            )
        try:
            return Pkcs11Signer(key_id, private_key, public_key)
        except Exception as exc:
            raise BackendError(
                f"Unusable key pair {hex_encode(key_id)}: {_format_exception(exc)}"
            ) from exc

    def find_certificate(self, key_id: bytes) -> x509.Certificate | None:
        objects = self._certificate_objects(key_id)
        if not objects:
            _logger.debug("Certificate not found id=%s", key_id.hex())
            return None
        _found_id, certificate = self._read_certificate(objects[0])
        return certificate

    def find_all_paired_certificates(self) -> list[PairedCertificate]:
        pairs: list[PairedCertificate] = []
        for obj in self._certificate_objects():
            key_id, certificate = self._read_certificate(obj)
            if not key_id:
                continue
            signer = self.find_key_pair(key_id)
            if signer is None:
                _logger.debug("Skipping unpaired certificate id=%s", key_id.hex())
                continue
            pairs.append(PairedCertificate(key_id, certificate, signer))
        _logger.debug("Found %d paired certificates.", len(pairs))
        return pairs

    def delete_certificate(self, key_id: bytes) -> bool:
        objects = self._certificate_objects(key_id)
        try:
            for obj in objects:
                obj.destroy()
        except Exception as exc:
            _logger.exception("Failed to delete certificate id=%s", key_id.hex())
            raise BackendError(
                f"Failed to delete certificate: {_format_exception(exc)}"
            ) from exc
        if objects:
            _logger.info("Deleted certificate id=%s", key_id.hex())
        return bool(objects)

    def delete_key_pair(self, key_id: bytes) -> bool:
        deleted = False
        for object_class in (ObjectClass.PRIVATE_KEY, ObjectClass.PUBLIC_KEY):
            key = self._get_key(object_class, key_id)
            if key is None:
                continue
            try:
                key.destroy()
            except Exception as exc:
                _logger.exception("Failed to delete %s id=%s", object_class.name, key_id.hex())
                raise BackendError(
                    f"Failed to delete {object_class.name}: {_format_exception(exc)}"
                ) from exc
            deleted = True
        if deleted:
            _logger.info("Deleted key pair id=%s", key_id.hex())
        return deleted


class SoftwareKeystore(KeystoreBackend):
    """
    Read-only keystore around one caller-supplied key and certificate.

    Generation, import and deletion are hardware-only and always refused.
    """

    def __init__(self, signer: IdentitySigner, certificate: x509.Certificate) -> None:
        if not signer.matches_certificate(certificate):
            raise CertificateIntegrityError(
                "Private key does not match the certificate public key."
            )
        serial_number = certificate.serial_number
        if serial_number < 0:
            raise MalformedCredentialError("Certificate serial number is negative.")
        self.key_id = serial_number_to_id(serial_number)
        self._signer = signer
        self._certificate = certificate

    @classmethod
    def from_pem(cls, key_pem: bytes | str, certificate_pem: bytes | str) -> "SoftwareKeystore":
        signer = load_pkcs8_signer(key_pem)
        return cls(signer, load_certificate(certificate_pem))

    def close(self) -> None:
        return None

    def _refuse(self, operation: str) -> BackendError:
        return BackendError(f"{operation} is not supported by a software keystore.")

    def generate_key_pair(self, key_id: bytes, curve: str = DEFAULT_CURVE) -> IdentitySigner:
        raise self._refuse("Key pair generation")

    def import_certificate(self, key_id: bytes, certificate: x509.Certificate) -> None:
        raise self._refuse("Certificate import")

    def delete_certificate(self, key_id: bytes) -> bool:
        raise self._refuse("Certificate deletion")

    def delete_key_pair(self, key_id: bytes) -> bool:
        raise self._refuse("Key pair deletion")

    def find_key_pair(self, key_id: bytes) -> IdentitySigner | None:
        return self._signer if key_id == self.key_id else None

    def find_certificate(self, key_id: bytes) -> x509.Certificate | None:
        return self._certificate if key_id == self.key_id else None

    def find_all_paired_certificates(self) -> list[PairedCertificate]:
        return [PairedCertificate(self.key_id, self._certificate, self._signer)]
