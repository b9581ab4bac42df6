#!/usr/bin/env python3
"""
tenantauth -- operator CLI for the authentication and RBAC core.

Usage:
  python main.py init-db
  python main.py seed
  python main.py create-user alice --kind tenant_owner --tenant-id 1 --role MANAGER
  python main.py create-user root --kind platform_operator
  python main.py sweep

Configuration comes from the environment (or .env), the same Settings the
API uses: DATABASE_URL, SECRET_KEY, PEPPER, ...

create-user prompts for the password twice. It is never accepted as a
command-line argument (it would land in shell history and ps output).
"""

import argparse
import getpass
import logging
import sys

from sqlalchemy.exc import IntegrityError

from auth.lockout import AttemptStore, LockoutGuard
from auth.maintenance import sweep
from auth.models import PrincipalKind, PrincipalStatus, User
from auth.passwords import PasswordHasher
from auth.revocation import RevocationStore
from auth.schema import build_engine, create_schema
from auth.seed import seed_defaults
from auth.sessions import SessionManager
from auth.store import AuthStore, ReferenceNotFound
from core.config import get_settings

_MIN_PASSWORD_LENGTH = 12


def _engine(settings):
    engine = build_engine(settings.database_url, timeout=settings.db_timeout_seconds)
    create_schema(engine)
    return engine


def _read_password() -> str:
    first = getpass.getpass("Password: ")
    second = getpass.getpass("Repeat password: ")
    if first != second:
        raise SystemExit("  [!] Passwords do not match.")
    return first


def cmd_init_db(args, settings) -> int:
    engine = _engine(settings)
    engine.dispose()
    print(f"  Schema ready at {settings.database_url}")
    return 0


def cmd_seed(args, settings) -> int:
    engine = _engine(settings)
    added = seed_defaults(AuthStore(engine))
    engine.dispose()
    print(f"  Seeded {added['roles']} roles, {added['permissions']} permissions, {added['role_grants']} role grants.")
    return 0


def cmd_create_user(args, settings) -> int:
    password = _read_password()
    if len(password) < _MIN_PASSWORD_LENGTH:
        print(f"  [!] Password must be at least {_MIN_PASSWORD_LENGTH} characters.")
        return 1

    engine = _engine(settings)
    store = AuthStore(engine)
    unknown = [code for code in args.role or [] if store.get_role(code) is None]
    if unknown:
        engine.dispose()
        print(f"  [!] Unknown role(s): {', '.join(unknown)}. Run 'seed' or create the role first.")
        return 1
    hasher = PasswordHasher.from_settings(settings)
    try:
        user_id = store.create_user(
            User(
                username=args.username,
                kind=args.kind,
                tenant_id=args.tenant_id,
                email=args.email,
                credential_hash=hasher.hash(password),
                status=PrincipalStatus.active.value,
            )
        )
        for role_code in args.role or []:
            store.assign_role(user_id, role_code, args.tenant_id)
    except ValueError as exc:
        print(f"  [!] {exc}")
        return 1
    except IntegrityError:
        print(f"  [!] Username '{args.username}' already exists.")
        return 1
    except ReferenceNotFound as exc:
        print(f"  [!] {exc}")
        return 1
    finally:
        hasher.close()
        engine.dispose()
    print(f"  Created {args.kind} '{args.username}' (id {user_id}).")
    return 0


def cmd_sweep(args, settings) -> int:
    engine = _engine(settings)
    result = sweep(
        RevocationStore(engine),
        LockoutGuard.from_settings(AttemptStore(engine), settings),
        SessionManager.from_settings(engine, settings),
        None,
        settings.login_attempt_retention_days,
    )
    engine.dispose()
    print(
        "  Removed {refresh_tokens} refresh tokens, {login_attempts} login attempts, {sessions} sessions.".format(
            **result
        )
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tenantauth",
        description="Operator commands for the tenantauth authentication and RBAC core.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py init-db
  python main.py seed
  python main.py create-user alice --kind tenant_owner --tenant-id 1 --role MANAGER
  python main.py sweep
        """,
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log at DEBUG level",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    init_db = sub.add_parser("init-db", help="Create every missing table (idempotent)")
    init_db.set_defaults(func=cmd_init_db)

    seed = sub.add_parser("seed", help="Insert the default roles, permissions and MANAGER grants (idempotent)")
    seed.set_defaults(func=cmd_seed)

    create_user = sub.add_parser("create-user", help="Create an active principal")
    create_user.add_argument("username", help="Login identity (case-insensitive)")
    create_user.add_argument(
        "--kind",
        choices=[k.value for k in PrincipalKind],
        default=PrincipalKind.tenant_member.value,
        help="Principal kind (default: tenant_member)",
    )
    create_user.add_argument(
        "--tenant-id",
        type=int,
        default=None,
        metavar="ID",
        help="Owning tenant. Required for every kind except platform_operator",
    )
    create_user.add_argument("--email", default=None, help="Contact address")
    create_user.add_argument(
        "--role",
        action="append",
        metavar="CODE",
        help="Role code to assign in --tenant-id (repeatable)",
    )
    create_user.set_defaults(func=cmd_create_user)

    sweep_cmd = sub.add_parser("sweep", help="Delete expired refresh tokens, old login attempts and idle sessions")
    sweep_cmd.set_defaults(func=cmd_sweep)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    if args.command == "create-user" and args.role and args.tenant_id is None:
        print("  [!] --role requires --tenant-id.")
        return 1
    try:
        settings = get_settings()
    except ValueError as exc:
        print(f"  [!] Invalid configuration: {exc}")
        return 2
    return args.func(args, settings)


if __name__ == "__main__":
    sys.exit(main())
