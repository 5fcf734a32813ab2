from __future__ import annotations

import argparse
import sys
from pathlib import Path

from rich import box
from rich.console import Console
from rich.table import Table

from .config import SecurityTokenConfig
from .core import Core, export_certificate
from .exceptions import BackendError, ConfigurationError, SecurityTokenError
from .keystore import PairedCertificate
from .logging_utils import configure_logging
from .serial import ID_SIZE_BYTES, hex_encode
from .x509_ops import certificate_organizations

EXIT_OK = 0
EXIT_OPERATION_ERROR = 1
EXIT_FATAL = 2


class _HelpFormatter(
    argparse.RawTextHelpFormatter,
    argparse.ArgumentDefaultsHelpFormatter,
):
    """Keep multiline examples readable and include defaults."""


CLI_HELP_EPILOG = """Configuration:
  security-tokens.yaml is read from ., ~/.manetu or /etc/manetu
  (or the file named by --config / SECURITY_TOKEN_CONFIG).

  Environment overrides:
    SECURITY_TOKEN_PKCS11_MODULE
    SECURITY_TOKEN_TOKEN_LABEL or SECURITY_TOKEN_SLOT
    SECURITY_TOKEN_USER_PIN
    SECURITY_TOKEN_URL

Examples:
  security-token generate --provider acme
  security-token list
  security-token show --serial 3A:0F:...
  security-token delete --serial 3A:0F:...
  security-token login pkcs11 --serial 3A:0F:...
  security-token login x509 --key key.pem --cert cert.pem --path
"""


def _write_text_output(payload: str, out_path: str | None, label: str) -> None:
    if out_path is None:
        print(payload)
        return
    target = Path(out_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(payload, encoding="utf-8")
    print(f"Wrote {label} to: {target}")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="security-token",
        description=(
            "Manage PKCS#11-backed machine identities and log in to the backend "
            "with them."
        ),
        formatter_class=_HelpFormatter,
        epilog=CLI_HELP_EPILOG,
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Explicit configuration file (skips the search path).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    generate = subparsers.add_parser(
        "generate",
        help="Generate a key pair and self-signed identity certificate.",
        formatter_class=_HelpFormatter,
    )
    generate.add_argument("--provider", required=True, help="Identity provider (O=).")
    generate.add_argument("--out", default=None, help="Write the certificate PEM here.")

    subparsers.add_parser(
        "list",
        help="List provisioned identities.",
        formatter_class=_HelpFormatter,
    )

    show = subparsers.add_parser(
        "show",
        help="Print the certificate PEM of an identity.",
        formatter_class=_HelpFormatter,
    )
    show.add_argument(
        "--serial",
        default=None,
        help="Identity serial (default: earliest issued identity).",
    )
    show.add_argument("--out", default=None, help="Write the certificate PEM here.")

    delete = subparsers.add_parser(
        "delete",
        help="Delete an identity certificate and key pair.",
        formatter_class=_HelpFormatter,
    )
    delete.add_argument("--serial", required=True, help="Identity serial.")

    login = subparsers.add_parser(
        "login",
        help="Exchange an identity assertion for a session token.",
        formatter_class=_HelpFormatter,
    )
    login_sub = login.add_subparsers(dest="login_command", required=True)

    login_pkcs11 = login_sub.add_parser(
        "pkcs11",
        help="Log in with an identity held on the PKCS#11 token.",
        formatter_class=_HelpFormatter,
    )
    login_pkcs11.add_argument(
        "--serial",
        default=None,
        help="Identity serial (default: earliest issued identity).",
    )

    login_x509 = login_sub.add_parser(
        "x509",
        help="Log in with a PEM PKCS#8 EC key and certificate.",
        formatter_class=_HelpFormatter,
    )
    login_x509.add_argument("--key", required=True, help="Private key PEM (or path).")
    login_x509.add_argument("--cert", required=True, help="Certificate PEM (or path).")
    login_x509.add_argument(
        "--path",
        action="store_true",
        help="Treat --key and --cert as file paths.",
    )
    return parser


def _load_config(args: argparse.Namespace) -> SecurityTokenConfig:
    if args.config:
        return SecurityTokenConfig.from_file(args.config)
    return SecurityTokenConfig.discover()


def _providers(pair: PairedCertificate) -> str:
    return ",".join(certificate_organizations(pair.certificate))


def _render_identities(pairs: list[PairedCertificate], console: Console) -> None:
    table = Table(box=box.SIMPLE)
    table.add_column("Serial", style="cyan", overflow="fold")
    table.add_column("Provider")
    table.add_column("Created")
    for pair in pairs:
        table.add_row(pair.serial, _providers(pair), str(pair.not_before))
    console.print(table)


def _run_command(core: Core, args: argparse.Namespace) -> int:
    if args.command == "generate":
        certificate = core.generate(args.provider)
        serial = hex_encode(certificate.serial_number.to_bytes(ID_SIZE_BYTES, byteorder="big"))
        print(f"Serial: {serial}", file=sys.stderr)
        _write_text_output(export_certificate(certificate), args.out, "certificate")
        return EXIT_OK

    if args.command == "list":
        _render_identities(core.list(), Console())
        return EXIT_OK

    if args.command == "show":
        _write_text_output(core.show(args.serial), args.out, "certificate")
        return EXIT_OK

    if args.command == "delete":
        if not core.delete(args.serial):
            print(
                f"WARNING: no key pair found for serial {args.serial}",
                file=sys.stderr,
            )
        return EXIT_OK

    if args.command == "login" and args.login_command == "pkcs11":
        print(core.login_pkcs11(args.serial))
        return EXIT_OK

    if args.command == "login" and args.login_command == "x509":
        print(core.login_x509(args.key, args.cert, from_path=args.path))
        return EXIT_OK

    raise ValueError("Unsupported command combination.")


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        configure_logging()
        config = _load_config(args)
        if config.source is not None:
            print(f"Using config file: {config.source}", file=sys.stderr)
        core = Core.from_config(config)
    except (ConfigurationError, BackendError, ValueError) as exc:
        print(f"security-token: fatal: {exc}", file=sys.stderr)
        return EXIT_FATAL

    with core:
        try:
            return _run_command(core, args)
        except (SecurityTokenError, ValueError, OSError) as exc:
            print(f"security-token: error: {exc}", file=sys.stderr)
            return EXIT_OPERATION_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
