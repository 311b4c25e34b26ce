#!/usr/bin/env python3
"""
CodeGate -- administration CLI for the passwordless auth and RBAC core.

Usage:
  python main.py generate-client "Mobile app"
  python main.py create-role Editor editor --description "Can publish"
  python main.py create-role "Project lead" lead --scope project 7
  python main.py grant-permission editor articles.publish
  python main.py assign-role alice@example.com editor
  python main.py assign-role alice@example.com editor --scope project 7
  python main.py check alice@example.com articles.publish --scope project 7
  python main.py make-superuser alice@example.com
  python main.py disable-role editor
  python main.py purge-cache

Configuration comes from the environment / .env (see core/config.py).
`check` exits 0 when the action is allowed and 1 when it is denied.
A malformed --scope exits 2.
"""

import argparse
import json
import logging
import secrets
import sys
from typing import Optional

from auth.errors import AuthError
from auth.service import AuthService
from core.config import get_settings
from rbac.models import Role, Scope
from rbac.permissions import normalize_scope

logger = logging.getLogger("codegate.cli")


def _add_scope(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--scope",
        nargs=2,
        metavar=("TYPE", "ID"),
        help="Resource scope, e.g. --scope project 7",
    )


def _scope(args: argparse.Namespace) -> Optional[Scope]:
    """Parse --scope TYPE ID. Raises UnsupportedScope for an empty type or a non-integer id."""
    return normalize_scope(tuple(args.scope)) if getattr(args, "scope", None) else None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="codegate",
        description="Administer CodeGate users, roles and client applications.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("generate-client", help="Print a new CLIENT_APPLICATIONS entry")
    p.add_argument("name")

    p = sub.add_parser("create-role", help="Create a role")
    p.add_argument("name")
    p.add_argument("codename")
    p.add_argument("--description", default="")
    p.add_argument("--disabled", action="store_true")
    _add_scope(p)

    p = sub.add_parser("disable-role", help="Disable a role (it stops granting anything)")
    p.add_argument("codename")
    _add_scope(p)

    p = sub.add_parser("enable-role", help="Re-enable a role")
    p.add_argument("codename")
    _add_scope(p)

    p = sub.add_parser("grant-permission", help="Add a permission to a role")
    p.add_argument("role")
    p.add_argument("permission")
    p.add_argument("--custom-name", default=None)
    _add_scope(p)

    p = sub.add_parser("assign-role", help="Assign a role to a user")
    p.add_argument("identifier", help="email or username")
    p.add_argument("role")
    _add_scope(p)

    p = sub.add_parser("check", help="Check whether a user may perform an action")
    p.add_argument("identifier", help="email or username")
    p.add_argument("action", help="permission codename or role:<codename>")
    _add_scope(p)

    p = sub.add_parser("make-superuser", help="Grant superuser status to a user")
    p.add_argument("identifier", help="email or username")

    sub.add_parser("purge-cache", help="Delete expired cache entries")
    return parser


def run(args: argparse.Namespace, service: AuthService) -> int:
    """Execute one parsed command against service. Returns the process exit code."""
    roles = service.permissions.store if service.permissions is not None else None
    try:
        scope = _scope(args)
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        return 2

    if args.command == "generate-client":
        entry = {
            "client_id": secrets.token_urlsafe(16),
            "client_secret": secrets.token_urlsafe(32),
            "name": args.name,
        }
        print(json.dumps(entry))
        return 0

    if args.command == "purge-cache":
        purge = getattr(service.codes.cache, "purge_expired", None)
        removed = purge() if purge is not None else 0
        print(f"Removed {removed} expired cache entries")
        return 0

    if args.command == "make-superuser":
        user = service.find_user(args.identifier)
        if user is None:
            print(f"  [!] No user matches '{args.identifier}'.")
            return 1
        service.store.update_user(user.id, is_superuser=True)
        print(f"User {user.id} is now a superuser")
        return 0

    if roles is None:
        print("  [!] RBAC is not configured for this service.")
        return 1

    if args.command == "create-role":
        role_id = roles.create_role(
            Role(
                name=args.name,
                codename=args.codename,
                description=args.description,
                scope_type=scope.scope_type if scope else None,
                scope_id=scope.scope_id if scope else None,
                enabled=not args.disabled,
            )
        )
        print(f"Created role {args.codename} (id={role_id})")
        return 0

    if args.command in ("disable-role", "enable-role"):
        role = roles.get_role_by_codename(args.codename, scope)
        if role is None:
            print(f"  [!] No role '{args.codename}'.")
            return 1
        roles.set_role_enabled(role.id, args.command == "enable-role")
        print(f"Role {role.codename} {'enabled' if args.command == 'enable-role' else 'disabled'}")
        return 0

    if args.command == "grant-permission":
        role = roles.get_role_by_codename(args.role, scope)
        if role is None:
            print(f"  [!] No role '{args.role}'.")
            return 1
        permission = roles.add_permission_to_role(role.id, args.permission, custom_name=args.custom_name)
        print(f"Granted {permission.codename} to role {role.codename}")
        return 0

    user = service.find_user(args.identifier)
    if user is None:
        print(f"  [!] No user matches '{args.identifier}'.")
        return 1

    if args.command == "assign-role":
        role = None
        if scope is not None:
            role = roles.get_role_by_codename(args.role, scope)
        role = role or roles.get_role_by_codename(args.role)
        if role is None:
            print(f"  [!] No role '{args.role}'.")
            return 1
        roles.assign_role(user.id, role.id, scope)
        print(f"Assigned role {role.codename} to user {user.id}")
        return 0

    if args.command == "check":
        try:
            allowed = service.check_permission(user, args.action, scope)
        except AuthError as exc:
            print(f"  [!] {exc.message}")
            return 2
        print("allowed" if allowed else "denied")
        return 0 if allowed else 1

    raise AssertionError(f"unhandled command {args.command!r}")


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    service = AuthService.from_settings(settings)
    try:
        return run(args, service)
    finally:
        service.store.close()
        if service.permissions is not None:
            service.permissions.store.close()


if __name__ == "__main__":
    sys.exit(main())
