from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping
from urllib.parse import urlparse

import yaml

from .exceptions import ConfigurationError

CONFIG_FILE_NAMES = ("security-tokens.yaml", "security-tokens.yml")
DEFAULT_SEARCH_PATHS = (Path("."), Path("~/.manetu"), Path("/etc/manetu"))
DEFAULT_PIN_ENV = "SECURITY_TOKEN_USER_PIN"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _first(section: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        value = section.get(name)
        if value is not None and value != "":
            return value
    return None


def _parse_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got: {value}")


def _section(data: Mapping[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, Mapping):
        raise ConfigurationError(f"Configuration section '{name}' must be a mapping.")
    return {str(key).lower(): item for key, item in value.items()}


@dataclass(frozen=True)
class Pkcs11Config:
    """Location and credentials of the PKCS#11 token holding identities."""

    module_path: str
    token_label: str | None = None
    slot_no: int | None = None
    pin: str | None = field(default=None, repr=False)
    user_pin_env: str = DEFAULT_PIN_ENV

    def validate(self) -> None:
        if not self.module_path:
            raise ConfigurationError("A PKCS#11 module path is required.")
        if not Path(self.module_path).exists():
            raise ConfigurationError(
                f"PKCS#11 module path does not exist: {self.module_path}"
            )
        if not self.token_label and self.slot_no is None:
            raise ConfigurationError(
                "Set either a token label or a slot number to locate the token."
            )

    def user_pin(self) -> str:
        if self.pin:
            return self.pin
        pin = os.environ.get(self.user_pin_env)
        if not pin:
            raise ConfigurationError(
                f"No PIN configured; set pkcs11.pin or {self.user_pin_env}."
            )
        return pin


@dataclass(frozen=True)
class BackendConfig:
    """Backend token endpoint used for both legs of the login exchange."""

    token_url: str
    timeout: float | None = None
    verify_tls: bool = True

    def validate(self) -> None:
        parsed = urlparse(self.token_url or "")
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ConfigurationError(
                f"Backend token URL must be an http(s) URL, got: {self.token_url!r}"
            )
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigurationError("Backend timeout must be > 0 when set.")


@dataclass(frozen=True)
class SecurityTokenConfig:
    """
    Complete runtime configuration.

    Values come from a YAML file (see discover()) and are overridden by:
    - SECURITY_TOKEN_PKCS11_MODULE
    - SECURITY_TOKEN_TOKEN_LABEL
    - SECURITY_TOKEN_SLOT
    - SECURITY_TOKEN_USER_PIN_ENV
    - SECURITY_TOKEN_URL
    """

    pkcs11: Pkcs11Config
    backend: BackendConfig
    source: Path | None = None

    @classmethod
    def from_env(cls) -> "SecurityTokenConfig":
        return cls.from_mapping({})

    @classmethod
    def from_mapping(
        cls,
        data: Mapping[str, Any],
        *,
        source: Path | None = None,
    ) -> "SecurityTokenConfig":
        lowered = {str(key).lower(): value for key, value in data.items()}
        pkcs11_section = _section(lowered, "pkcs11")
        backend_section = _section(lowered, "backend")

        module_path = os.environ.get("SECURITY_TOKEN_PKCS11_MODULE") or _first(
            pkcs11_section, "path", "module_path"
        )
        token_label = os.environ.get("SECURITY_TOKEN_TOKEN_LABEL") or _first(
            pkcs11_section, "token_label", "tokenlabel"
        )
        slot_raw = os.environ.get("SECURITY_TOKEN_SLOT") or _first(
            pkcs11_section, "slot", "slot_no"
        )
        pin = _first(pkcs11_section, "pin")
        user_pin_env = (
            os.environ.get("SECURITY_TOKEN_USER_PIN_ENV")
            or _first(pkcs11_section, "pin_env", "user_pin_env")
            or DEFAULT_PIN_ENV
        )

        slot_no: int | None = None
        if slot_raw is not None:
            try:
                slot_no = int(slot_raw)
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(
                    f"PKCS#11 slot must be an integer, got: {slot_raw}"
                ) from exc

        token_url = os.environ.get("SECURITY_TOKEN_URL") or _first(
            backend_section, "token_url", "tokenurl", "url"
        )
        timeout_raw = _first(backend_section, "timeout")
        timeout: float | None = None
        if timeout_raw is not None:
            try:
                timeout = float(timeout_raw)
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(
                    f"Backend timeout must be a number, got: {timeout_raw}"
                ) from exc
        verify_raw = _first(backend_section, "verify_tls")
        verify_tls = True if verify_raw is None else _parse_bool(verify_raw, "verify_tls")

        pkcs11_config = Pkcs11Config(
            module_path=str(module_path or ""),
            token_label=str(token_label) if token_label is not None else None,
            slot_no=slot_no,
            pin=str(pin) if pin is not None else None,
            user_pin_env=str(user_pin_env),
        )
        backend_config = BackendConfig(
            token_url=str(token_url or ""),
            timeout=timeout,
            verify_tls=verify_tls,
        )
        pkcs11_config.validate()
        backend_config.validate()
        return cls(pkcs11=pkcs11_config, backend=backend_config, source=source)

    @classmethod
    def from_file(cls, path: str | Path) -> "SecurityTokenConfig":
        resolved = Path(path).expanduser()
        try:
            with resolved.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        except OSError as exc:
            raise ConfigurationError(
                f"Unable to read config file {resolved}: {exc}"
            ) from exc
        except yaml.YAMLError as exc:
            raise ConfigurationError(
                f"Unable to parse config file {resolved}: {exc}"
            ) from exc
        if not isinstance(data, Mapping):
            raise ConfigurationError(
                f"Config file {resolved} must contain a mapping at the top level."
            )
        return cls.from_mapping(data, source=resolved)

    @classmethod
    def discover(
        cls,
        search_paths: Iterable[str | Path] | None = None,
    ) -> "SecurityTokenConfig":
        """
        Load the first security-tokens.yaml found on the search path.

        SECURITY_TOKEN_CONFIG names an explicit file and skips the search.
        Without any file the configuration is built from the environment alone.
        """

        explicit = os.environ.get("SECURITY_TOKEN_CONFIG")
        if explicit:
            return cls.from_file(explicit)

        found = find_config_file(search_paths)
        if found is None:
            return cls.from_env()
        return cls.from_file(found)


def find_config_file(search_paths: Iterable[str | Path] | None = None) -> Path | None:
    for directory in search_paths or DEFAULT_SEARCH_PATHS:
        base = Path(directory).expanduser()
        for name in CONFIG_FILE_NAMES:
            candidate = base / name
            if candidate.is_file():
                return candidate
    return None
