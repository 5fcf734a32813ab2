"""Identity ids and their colon-separated hex serial number text."""

from __future__ import annotations

import re
import secrets

from .exceptions import MalformedSerialError, RandomnessError

ID_SIZE_BYTES = 32

_HEX_OCTETS = re.compile(r"(?:[0-9a-fA-F]{2})+")


def random_id(size: int = ID_SIZE_BYTES) -> bytes:
    try:
        return secrets.token_bytes(size)
    except (OSError, NotImplementedError) as exc:
        raise RandomnessError(f"Secure random source unavailable: {exc}") from exc


def hex_encode(data: bytes) -> str:
    """Render bytes as uppercase two-digit octets joined by colons, e.g. A1:B2:03."""
    return ":".join(f"{octet:02X}" for octet in data)


def parse_serial(serial: str) -> bytes:
    stripped = serial.strip().replace(":", "")
    if not _HEX_OCTETS.fullmatch(stripped):
        raise MalformedSerialError(
            f"Serial number must be colon-separated hex octets, got: {serial!r}"
        )
    return bytes.fromhex(stripped)


def serial_number_to_id(serial_number: int) -> bytes:
    """Big-endian bytes of a certificate serial number (no leading zero octets)."""
    if serial_number < 0:
        raise ValueError("serial_number must be >= 0.")
    return serial_number.to_bytes(max(1, (serial_number.bit_length() + 7) // 8), "big")
