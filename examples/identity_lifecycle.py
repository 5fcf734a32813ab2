from __future__ import annotations

import argparse
import sys
from pathlib import Path

if __package__ in (None, ""):
    repo_src = Path(__file__).resolve().parents[1] / "src"
    if str(repo_src) not in sys.path:
        sys.path.insert(0, str(repo_src))

try:
    from security_token import (
        Core,
        SecurityTokenConfig,
        SecurityTokenError,
        compute_mrn,
        configure_logging,
        hex_encode,
    )
except ModuleNotFoundError as exc:
    if exc.name == "pkcs11":
        raise SystemExit(
            "Missing dependency: python-pkcs11\n"
            "Install it with:\n"
            "  python3 -m pip install -e .\n"
            "or:\n"
            "  python3 -m pip install python-pkcs11"
        ) from exc
    raise


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Lifecycle demo: provision an identity on the token, inspect it, "
            "optionally log in with it, then delete it."
        )
    )
    parser.add_argument(
        "--provider",
        default="demo-provider",
        help="Identity provider written to the certificate (default: demo-provider).",
    )
    parser.add_argument(
        "--login",
        action="store_true",
        help="Exchange an assertion at the configured backend before deleting.",
    )
    parser.add_argument(
        "--keep",
        action="store_true",
        help="Leave the identity on the token instead of deleting it.",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    try:
        configure_logging()
        config = SecurityTokenConfig.discover()
        with Core.from_config(config) as core:
            certificate = core.generate(args.provider)
            serial = hex_encode(certificate.serial_number.to_bytes(32, byteorder="big"))
            print(f"Provisioned serial: {serial}")
            print(f"MRN: {compute_mrn(certificate)}")

            print(f"Identities on token: {len(core.list())}")
            print(core.show(serial))

            if args.login:
                token = core.login_pkcs11(serial)
                print(f"Session token: {token[:24]}...")

            if args.keep:
                print("Identity kept on token.")
            elif core.delete(serial):
                print(f"Deleted identity: {serial}")
            else:
                print(f"Certificate deleted; no key pair was left for {serial}")

        return 0
    except (SecurityTokenError, ValueError) as exc:
        print(f"Client error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
