#!/usr/bin/env python3
"""
Marketplace auth -- administrative command line.

Usage:
  python main.py create-admin --username root --email root@example.com --phone 555-0100
  python main.py grant-claim root@example.com product.write
  python main.py purge-tokens --older-than-days 90
  python main.py show-chain <refresh-token>

Environment variables (see core/config.py):
  SECRET_KEY     Access token signing key, at least 32 characters. Required
                 unless DEBUG=true.
  DATABASE_URL   SQLAlchemy URL of the auth database.
"""

import argparse
import getpass
import logging
import sys
from datetime import timedelta
from typing import Optional

from auth.clock import utcnow
from auth.errors import AuthError
from auth.models import Role
from auth.service import AuthService
from core.config import get_settings
from core.logging_config import configure_logging, token_prefix

logger = logging.getLogger("marketplace.cli")


def _create_admin(service: AuthService, args: argparse.Namespace) -> int:
    password = args.password or getpass.getpass("Password: ")
    user = service.register(
        username=args.username,
        email=args.email,
        password=password,
        phone=args.phone,
        first_name=args.first_name,
        last_name=args.last_name,
    )
    # Registration always assigns the default role; promote directly in the store.
    service.store.update_user(user.id, role=Role.admin)
    print(f"  Created admin user_id={user.id} ({user.username})")
    return 0


def _grant_claim(service: AuthService, args: argparse.Namespace) -> int:
    user = service.store.get_by_login(args.user)
    if user is None:
        print(f"  [!] No user matches '{args.user}'.")
        return 1
    added = service.store.grant_claim(user.id, args.claim)
    state = "granted" if added else "already present"
    print(f"  Claim '{args.claim.strip()}' {state} for user_id={user.id}")
    return 0


def _purge_tokens(service: AuthService, args: argparse.Namespace) -> int:
    cutoff = utcnow() - timedelta(days=args.older_than_days)
    refresh = service.store.purge_refresh_tokens(cutoff)
    reset = service.store.purge_reset_tokens(cutoff)
    logger.info("Purged %d refresh token(s) and %d reset token(s) expired before %s", refresh, reset, cutoff)
    print(f"  Purged {refresh} refresh token(s) and {reset} reset token(s).")
    return 0


def _show_chain(service: AuthService, args: argparse.Namespace) -> int:
    now = utcnow()
    for token in service.refresh_tokens.chain(args.token):
        if token.is_active(now):
            state = "active"
        elif token.is_revoked:
            state = f"revoked ({token.reason_revoked})"
        else:
            state = "expired"
        print(f"  {token_prefix(token.token, 12)} user_id={token.user_id} created={token.created.isoformat()} {state}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="marketplace-auth",
        description="Administrative tasks for the marketplace authentication store.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    admin = sub.add_parser("create-admin", help="Register a user and promote it to admin")
    admin.add_argument("--username", required=True)
    admin.add_argument("--email", required=True)
    admin.add_argument("--phone", required=True)
    admin.add_argument("--first-name", default="")
    admin.add_argument("--last-name", default="")
    admin.add_argument("--password", help="Prompted for when omitted (preferred: keeps it out of shell history)")
    admin.set_defaults(handler=_create_admin)

    claim = sub.add_parser("grant-claim", help="Attach an operation claim to a user")
    claim.add_argument("user", help="Username or email")
    claim.add_argument("claim", help="Claim name, e.g. product.write")
    claim.set_defaults(handler=_grant_claim)

    purge = sub.add_parser("purge-tokens", help="Delete refresh/reset tokens that expired long ago")
    purge.add_argument("--older-than-days", type=int, default=90, metavar="N")
    purge.set_defaults(handler=_purge_tokens)

    chain = sub.add_parser("show-chain", help="Print the rotation lineage starting at a refresh token")
    chain.add_argument("token")
    chain.set_defaults(handler=_show_chain)

    return parser


def main(argv: Optional[list[str]] = None, service: Optional[AuthService] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level)
    service = service or AuthService.from_settings(settings)
    try:
        return args.handler(service, args)
    except AuthError as exc:
        logger.warning("%s failed: %s", args.command, exc)
        print(f"  [!] {exc.public_message}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
