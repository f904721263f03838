from __future__ import annotations

import argparse
import asyncio
import getpass
import sys
from uuid import uuid4

from skillgate.core.config import get_settings
from skillgate.domain.identity import GLOBAL_ROLES, Role, parse_role
from skillgate.persistence.db import SessionLocal
from skillgate.persistence.repos import principals as principals_repo
from skillgate.persistence.store import SqlPrincipalStore
from skillgate.services.audit import AuditRecorder
from skillgate.services.auth.passwords import hash_password


def _build_parser() -> argparse.ArgumentParser:
    # Global administrators cannot self-register; this is the only way to mint one.
    parser = argparse.ArgumentParser(description="Provision a global administrator")
    parser.add_argument("--email", required=True, help="Login email")
    parser.add_argument("--name", default=None, help="Display name")
    parser.add_argument("--role", default=Role.SUPER_ADMIN.value, help="Role: sys_admin|super_admin")
    parser.add_argument(
        "--password-stdin",
        action="store_true",
        help="Read the password from stdin instead of prompting",
    )
    return parser


def _read_password(args: argparse.Namespace) -> str:
    if args.password_stdin:
        return sys.stdin.readline().rstrip("\n")
    first = getpass.getpass("Password: ")
    second = getpass.getpass("Repeat password: ")
    if first != second:
        raise ValueError("Passwords do not match")
    return first


async def _create_admin(args: argparse.Namespace, password: str) -> int:
    role = parse_role(args.role)
    if role not in GLOBAL_ROLES:
        raise ValueError("Only sys_admin or super_admin can be provisioned here")
    if len(password) < get_settings().password_min_length:
        raise ValueError("Password is too short")

    user_id = uuid4().hex
    async with SessionLocal() as session:
        if await principals_repo.get_user_by_email(session, args.email) is not None:
            raise ValueError("Email is already registered")
        await principals_repo.create_user(
            session,
            user_id=user_id,
            email=args.email,
            name=args.name,
            password_hash=hash_password(password),
            role=role.value,
            tenant_id=None,
            approved=True,
        )
        await session.commit()

    recorder = AuditRecorder(SqlPrincipalStore(SessionLocal))
    await recorder.record(
        "create_super_admin",
        "user.provisioned",
        "user",
        user_id,
        {"role": role.value},
        actor_role="system",
    )

    print("Administrator created:")
    print(f"  subject_id: {user_id}")
    print(f"  role: {role.value}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        password = _read_password(args)
        return asyncio.run(_create_admin(args, password))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_super_admin failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
