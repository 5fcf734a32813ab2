class SecurityTokenError(RuntimeError):
    """Base client error."""


class ConfigurationError(SecurityTokenError):
    """Configuration is invalid or incomplete."""


class BackendError(SecurityTokenError):
    """The keystore module is unreachable or rejected an operation."""


class NotFoundError(SecurityTokenError):
    """No matching key pair, certificate, or provisioned identity."""


class NoTokensFoundError(NotFoundError):
    """The keystore holds no paired identity."""


class InvalidSerialError(NotFoundError):
    """No key pair exists for the requested serial number."""


class CertificateNotFoundError(NotFoundError):
    """A key pair exists but its certificate is missing."""


class MalformedSerialError(SecurityTokenError, ValueError):
    """Serial number text is not colon-separated hex."""


class MalformedCredentialError(SecurityTokenError, ValueError):
    """Supplied PEM key or certificate material cannot be decoded."""


class RandomnessError(SecurityTokenError):
    """The secure random source is unavailable."""


class CertificateIntegrityError(SecurityTokenError):
    """A certificate failed self-verification or does not match its key."""


class UnsupportedKeyAlgorithmError(SecurityTokenError):
    """The supplied private key is not an elliptic-curve key."""


class AuthenticationError(SecurityTokenError):
    """The assertion could not be created or exchanged for a session token."""
