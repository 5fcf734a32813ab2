from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from conftest import MemoryKeystore
from security_token import Core, cli
from security_token.exceptions import ConfigurationError
from security_token.serial import hex_encode


@pytest.fixture
def cli_core(
    core: Core, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> Core:
    monkeypatch.setenv("SECURITY_TOKEN_LOG_FILE", str(tmp_path / "cli.log"))
    monkeypatch.setattr(cli, "_load_config", lambda args: SimpleNamespace(source=None))
    monkeypatch.setattr(cli.Core, "from_config", lambda config: core)
    return core


def test_generate_prints_serial_and_certificate(
    cli_core: Core, keystore: MemoryKeystore, capsys: pytest.CaptureFixture[str]
) -> None:
    assert cli.main(["generate", "--provider", "acme"]) == cli.EXIT_OK

    captured = capsys.readouterr()
    (key_id,) = keystore.certificates
    assert f"Serial: {hex_encode(key_id)}" in captured.err
    assert captured.out.startswith("-----BEGIN CERTIFICATE-----")


def test_generate_writes_certificate_file(
    cli_core: Core, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    target = tmp_path / "out" / "identity.pem"

    assert cli.main(["generate", "--provider", "acme", "--out", str(target)]) == cli.EXIT_OK

    assert target.read_text(encoding="utf-8").startswith("-----BEGIN CERTIFICATE-----")
    assert f"Wrote certificate to: {target}" in capsys.readouterr().out


def test_list_renders_identities(
    cli_core: Core, capsys: pytest.CaptureFixture[str]
) -> None:
    cli_core.generate("acme")
    capsys.readouterr()

    assert cli.main(["list"]) == cli.EXIT_OK

    out = capsys.readouterr().out
    assert "Provider" in out
    assert "acme" in out


def test_show_unknown_serial_is_operation_error(
    cli_core: Core, capsys: pytest.CaptureFixture[str]
) -> None:
    assert cli.main(["show", "--serial", "01:02"]) == cli.EXIT_OPERATION_ERROR
    assert "Invalid serial number" in capsys.readouterr().err


def test_malformed_serial_is_operation_error(
    cli_core: Core, capsys: pytest.CaptureFixture[str]
) -> None:
    assert cli.main(["delete", "--serial", "xyz"]) == cli.EXIT_OPERATION_ERROR
    assert "colon-separated hex" in capsys.readouterr().err


def test_delete_reports_missing_key_pair(
    cli_core: Core, keystore: MemoryKeystore, capsys: pytest.CaptureFixture[str]
) -> None:
    cli_core.generate("acme")
    (key_id,) = keystore.certificates
    keystore.keys.clear()
    capsys.readouterr()

    assert cli.main(["delete", "--serial", hex_encode(key_id)]) == cli.EXIT_OK
    assert "WARNING: no key pair found" in capsys.readouterr().err


def test_login_pkcs11_prints_session_token(
    cli_core: Core, capsys: pytest.CaptureFixture[str]
) -> None:
    cli_core.generate("acme")
    capsys.readouterr()

    assert cli.main(["login", "pkcs11"]) == cli.EXIT_OK
    assert capsys.readouterr().out.strip() == "session.jwt.value"


def test_configuration_error_is_fatal(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setenv("SECURITY_TOKEN_LOG_FILE", str(tmp_path / "cli.log"))

    def _missing(args: object) -> None:
        raise ConfigurationError("A PKCS#11 module path is required.")

    monkeypatch.setattr(cli, "_load_config", _missing)

    assert cli.main(["list"]) == cli.EXIT_FATAL
    assert "fatal: A PKCS#11 module path is required." in capsys.readouterr().err


def test_unwritable_output_is_operation_error(
    cli_core: Core, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    target = blocker / "identity.pem"

    assert (
        cli.main(["generate", "--provider", "acme", "--out", str(target)])
        == cli.EXIT_OPERATION_ERROR
    )
    assert "security-token: error:" in capsys.readouterr().err
