"""
CareVault - Operator Entry Point

Commands:
  generate-secret   print a fresh session signing secret
  hash-password     read a password (no echo) and print its Argon2id digest,
                    e.g. to seed a staff account's password_hash
"""

import argparse
import getpass
import secrets
import sys
from typing import List, Optional

from .auth.credentials import CredentialHasher
from .auth.registration import PASSWORD_MIN_LENGTH, password_errors
from .config import MIN_SECRET_BYTES


def generate_secret(nbytes: int = 48) -> str:
    """Random URL-safe secret, long enough for HS256."""
    return secrets.token_urlsafe(max(nbytes, MIN_SECRET_BYTES))


def _hash_password(args: argparse.Namespace) -> int:
    password = getpass.getpass("Password: ")
    confirm = getpass.getpass("Confirm password: ")
    errors = password_errors(password, confirm, args.min_length)
    if errors:
        for error in errors:
            print(f"error: {error}", file=sys.stderr)
        return 1
    print(CredentialHasher().hash(password))
    return 0


def _generate_secret(args: argparse.Namespace) -> int:
    print(generate_secret(args.bytes))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="carevault", description=__doc__.strip().splitlines()[0])
    commands = parser.add_subparsers(dest="command", required=True)

    secret = commands.add_parser("generate-secret", help="print a new session secret")
    secret.add_argument("--bytes", type=int, default=48, help="entropy in bytes (min 32)")
    secret.set_defaults(handler=_generate_secret)

    hashing = commands.add_parser("hash-password", help="hash a password for seeding")
    hashing.add_argument("--min-length", type=int, default=PASSWORD_MIN_LENGTH)
    hashing.set_defaults(handler=_hash_password)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for CareVault."""
    args = build_parser().parse_args(argv)
    return args.handler(args)


if __name__ == "__main__":
    sys.exit(main())
