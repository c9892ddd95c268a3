#!/usr/bin/env python3
"""
SessionGuard -- operator CLI for the session-security core.

Usage:
  python main.py keys
  python main.py keys --generate
  python main.py cleanup
  python main.py inspect <ACCESS_TOKEN>
  python main.py create-user admin@example.com --password 's3cret' --role ROLE_ADMIN

Environment variables (see core/config.py for the full list):
  KEYS_DIR              Directory holding private_key.pem / public_key.pem.
  DATABASE_URL          SQLAlchemy URL of the refresh-token / user database.
  REDIS_URL             Optional. Shared TTL store for multi-node deployments.
"""

import argparse
import json
import logging
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.errors import KeyMaterialError, StoreUnavailableError
from auth.keys import TokenSigner
from auth.models import Principal
from auth.tokens import TokenIssuer, hash_password
from core.bootstrap import build_components
from core.config import get_settings


def _cmd_keys(args: argparse.Namespace) -> int:
    settings = get_settings()
    keys_dir = args.dir or settings.keys_dir
    try:
        signer = TokenSigner.load_or_create(keys_dir, generate=args.generate or settings.generate_missing_keys)
    except KeyMaterialError as e:
        print(f"  [!] {e}")
        return 1
    print(f"  Keys directory: {keys_dir}")
    print(f"  Key id (kid):   {signer.key_id}")
    return 0


def _cmd_cleanup(args: argparse.Namespace) -> int:
    settings = get_settings()
    try:
        components = build_components(settings)
    except KeyMaterialError as e:
        print(f"  [!] {e}")
        return 1
    try:
        result, purged = components.service.sweep()
    except StoreUnavailableError as e:
        print(f"  [!] Cleanup failed: {e}")
        return 1
    finally:
        components.close()
    print(f"  Refresh tokens removed: {result.expired} expired, {result.revoked} revoked")
    print(f"  TTL store rows purged:  {purged}")
    return 0


def _cmd_inspect(args: argparse.Namespace) -> int:
    settings = get_settings()
    try:
        signer = TokenSigner.load_or_create(settings.keys_dir, generate=False)
    except KeyMaterialError as e:
        print(f"  [!] {e}")
        return 1
    issuer = TokenIssuer(signer, issuer=settings.token_issuer)
    info = issuer.token_info(args.token)
    print(json.dumps(info, indent=2))
    return 0 if "error" not in info else 1


def _cmd_create_user(args: argparse.Namespace) -> int:
    settings = get_settings()
    try:
        components = build_components(settings)
    except KeyMaterialError as e:
        print(f"  [!] {e}")
        return 1
    roles = tuple(args.role) if args.role else ("ROLE_USER",)
    principal = Principal(
        email=args.email,
        password_hash=hash_password(args.password),
        roles=roles,
        email_verified=True,
    )
    try:
        uid = components.users.create_user(principal)
    except IntegrityError:
        print(f"  [!] A user with email '{args.email}' already exists.")
        return 1
    finally:
        components.close()
    print(f"  Created user {args.email} (id={uid}, roles={', '.join(roles)})")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="sessionguard",
        description="Operator tools for SessionGuard keys, tokens and maintenance.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py keys --generate
  python main.py cleanup
  python main.py inspect eyJhbGciOiJSUzI1NiIs...
  python main.py create-user admin@example.com --password 's3cret' --role ROLE_ADMIN --role ROLE_USER
        """,
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log at DEBUG level",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    keys = sub.add_parser("keys", help="Ensure the RSA keypair exists and print its key id")
    keys.add_argument("--generate", action="store_true", help="Generate the keypair if missing or invalid")
    keys.add_argument("--dir", metavar="PATH", default=None, help="Keys directory (default: KEYS_DIR)")
    keys.set_defaults(func=_cmd_keys)

    cleanup = sub.add_parser("cleanup", help="Run one refresh-token and TTL-store sweep")
    cleanup.set_defaults(func=_cmd_cleanup)

    inspect = sub.add_parser("inspect", help="Verify a token and print its claims as JSON")
    inspect.add_argument("token", metavar="TOKEN")
    inspect.set_defaults(func=_cmd_inspect)

    create_user = sub.add_parser("create-user", help="Add a principal to the user store")
    create_user.add_argument("email")
    create_user.add_argument("--password", required=True)
    create_user.add_argument("--role", action="append", metavar="ROLE", help="Repeatable; default ROLE_USER")
    create_user.set_defaults(func=_cmd_create_user)

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if not getattr(args, "func", None):
        parser.print_help()
        return 0
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
