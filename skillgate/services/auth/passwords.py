from __future__ import annotations

import bcrypt

from skillgate.core.config import get_settings
from skillgate.core.errors import MalformedInput


# bcrypt ignores everything past 72 bytes.
_MAX_PASSWORD_BYTES = 72


def check_password_policy(password: str) -> None:
    settings = get_settings()
    if len(password) < settings.password_min_length:
        raise MalformedInput(f"Password must be at least {settings.password_min_length} characters")
    if len(password.encode("utf-8")) > _MAX_PASSWORD_BYTES:
        raise MalformedInput("Password is too long")


def hash_password(password: str, *, rounds: int | None = None) -> str:
    # bcrypt only looks at the first 72 bytes; longer secrets are rejected upstream.
    work_factor = rounds if rounds is not None else get_settings().password_bcrypt_rounds
    salt = bcrypt.gensalt(rounds=work_factor)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hashes never authenticate.
        return False
