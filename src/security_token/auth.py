"""
Two-leg login: a self-asserted JWT signed by the identity key is exchanged
at the backend token endpoint for a session JWT.

The claim and form layout lives in TokenExchangeProfile so deployments can
match whatever their backend expects. The default follows the OAuth 2.0 JWT
client assertion profile (RFC 7523).
"""

from __future__ import annotations

import base64
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping

import requests
from asn1crypto import x509
from jwt.algorithms import Algorithm
from jwt.api_jws import PyJWS
from jwt.exceptions import InvalidKeyError, PyJWTError

from .config import BackendConfig
from .exceptions import AuthenticationError, SecurityTokenError
from .identity import compute_mrn
from .signers import CURVE_SPECS, IdentitySigner

CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"

_logger = logging.getLogger("security_token.auth")


@dataclass(frozen=True)
class TokenExchangeProfile:
    """Claims of the assertion JWT and the form posted to the token endpoint."""

    assertion_lifetime: timedelta = timedelta(minutes=5)
    audience: str | None = None
    grant_type: str = "client_credentials"
    client_assertion_type: str = CLIENT_ASSERTION_TYPE
    token_field: str = "access_token"
    embed_certificate: bool = True
    extra_claims: Mapping[str, Any] = field(default_factory=dict)

    def build_claims(self, mrn: str, audience: str, now: datetime) -> dict[str, Any]:
        issued_at = int(now.timestamp())
        claims: dict[str, Any] = {
            "iss": mrn,
            "sub": mrn,
            "aud": self.audience or audience,
            "jti": str(uuid.uuid4()),
            "iat": issued_at,
            "exp": issued_at + int(self.assertion_lifetime.total_seconds()),
        }
        claims.update(self.extra_claims)
        return claims

    def build_headers(self, certificate: x509.Certificate) -> dict[str, Any]:
        if not self.embed_certificate:
            return {}
        return {"x5c": [base64.b64encode(certificate.dump()).decode("ascii")]}

    def build_form(self, mrn: str, assertion: str) -> dict[str, str]:
        return {
            "grant_type": self.grant_type,
            "client_id": mrn,
            "client_assertion_type": self.client_assertion_type,
            "client_assertion": assertion,
        }

    def extract_token(self, payload: Any) -> str:
        if not isinstance(payload, Mapping):
            raise ValueError("Token response is not a JSON object.")
        token = payload.get(self.token_field)
        if not isinstance(token, str) or not token:
            raise ValueError(f"Token response has no '{self.token_field}' value.")
        return token


class _IdentitySignerAlgorithm(Algorithm):
    """JWS algorithm whose signing key is an IdentitySigner."""

    def __init__(self, name: str) -> None:
        self.name = name

    def prepare_key(self, key: Any) -> IdentitySigner:
        if not isinstance(key, IdentitySigner):
            raise InvalidKeyError("Assertion signing key must be an IdentitySigner.")
        if key.jws_algorithm != self.name:
            raise InvalidKeyError(
                f"Key on curve {key.curve} cannot produce {self.name} signatures."
            )
        return key

    def sign(self, msg: bytes, key: IdentitySigner) -> bytes:
        return key.sign(msg)

    def verify(self, msg: bytes, key: Any, sig: bytes) -> bool:
        """Assertions are verified by the backend, never locally."""
        raise NotImplementedError("Assertions are verified by the backend.")

    @staticmethod
    def to_jwk(key_obj: Any, as_dict: bool = False) -> Any:
        """JWK export of identity keys is owned by the backend."""
        raise NotImplementedError("Identity keys are not exported as JWK.")

    @staticmethod
    def from_jwk(jwk: Any) -> Any:
        """JWK import is not supported; keys stay on their keystore."""
        raise NotImplementedError("Identity keys are not loaded from JWK.")


def _assertion_jws() -> PyJWS:
    jws = PyJWS(algorithms=[])
    for spec in CURVE_SPECS.values():
        jws.register_algorithm(spec.jws_algorithm, _IdentitySignerAlgorithm(spec.jws_algorithm))
    return jws


class AuthenticationClient:
    """
    Performs the assertion/exchange login against one backend.

    One request per login, no retries, no caching of session tokens.
    """

    def __init__(
        self,
        backend: BackendConfig,
        *,
        profile: TokenExchangeProfile | None = None,
        session: requests.Session | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._backend = backend
        self._profile = profile or TokenExchangeProfile()
        self._owns_session = session is None
        self._session = session or requests.Session()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._jws = _assertion_jws()

    def close(self) -> None:
        if self._owns_session:
            self._session.close()

    def create_assertion(self, signer: IdentitySigner, certificate: x509.Certificate) -> str:
        if not signer.matches_certificate(certificate):
            raise AuthenticationError("Signer does not match the identity certificate.")

        mrn = compute_mrn(certificate)
        claims = self._profile.build_claims(mrn, self._backend.token_url, self._clock())
        payload = json.dumps(claims, separators=(",", ":")).encode("utf-8")
        try:
            assertion = self._jws.encode(
                payload,
                signer,
                algorithm=signer.jws_algorithm,
                headers=self._profile.build_headers(certificate),
            )
        except (PyJWTError, SecurityTokenError) as exc:
            _logger.exception("Failed to sign assertion mrn=%s", mrn)
            raise AuthenticationError(f"Failed to sign assertion: {exc}") from exc

        _logger.debug("Created assertion mrn=%s algorithm=%s", mrn, signer.jws_algorithm)
        return assertion

    def exchange(self, mrn: str, assertion: str) -> str:
        url = self._backend.token_url
        try:
            response = self._session.post(
                url,
                data=self._profile.build_form(mrn, assertion),
                headers={"Accept": "application/json"},
                timeout=self._backend.timeout,
                verify=self._backend.verify_tls,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            _logger.error("Token exchange failed mrn=%s url=%s: %s", mrn, url, exc)
            raise AuthenticationError(f"Token exchange failed: {exc}") from exc

        try:
            token = self._profile.extract_token(response.json())
        except ValueError as exc:
            _logger.error(
                "Malformed token response mrn=%s status=%s", mrn, response.status_code
            )
            raise AuthenticationError(f"Malformed token response: {exc}") from exc

        _logger.info("Token exchange succeeded mrn=%s", mrn)
        return token

    def login(self, signer: IdentitySigner, certificate: x509.Certificate) -> str:
        mrn = compute_mrn(certificate)
        assertion = self.create_assertion(signer, certificate)
        return self.exchange(mrn, assertion)
