import hashlib
import hmac
import logging
import re
import secrets
from typing import Any

from db import get_conn

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 1000
PBKDF2_KEY_LENGTH = 64
MIN_PASSWORD_LENGTH = 6
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class DuplicateUserError(ValueError):
    pass


def _new_salt() -> str:
    return secrets.token_hex(16)


def _hash_password(password: str, salt: str) -> str:
    dk = hashlib.pbkdf2_hmac(
        "sha512",
        password.encode("utf-8"),
        salt.encode("utf-8"),
        PBKDF2_ITERATIONS,
        dklen=PBKDF2_KEY_LENGTH,
    )
    return dk.hex()


def _verify_password(password: str, password_hash: str, salt: str) -> bool:
    if not password_hash or not salt:
        return False
    got = _hash_password(password or "", salt)
    return hmac.compare_digest(got, password_hash)


def _public(row: Any) -> dict[str, Any]:
    return {
        "id": row["id"],
        "username": row["username"],
        "email": row["email"],
        "created_at": str(row["created_at"]) if row["created_at"] is not None else None,
    }


def get_user_by_id(user_id: int) -> dict[str, Any] | None:
    conn = get_conn()
    row = conn.execute(
        "SELECT id, username, email, created_at FROM users WHERE id = ?",
        (int(user_id),),
    ).fetchone()
    conn.close()
    return _public(row) if row else None


def get_user_by_username(username: str) -> dict[str, Any] | None:
    conn = get_conn()
    row = conn.execute(
        "SELECT id, username, email, password_hash, salt, created_at FROM users WHERE username = ?",
        ((username or "").strip(),),
    ).fetchone()
    conn.close()
    return dict(row) if row else None


def find_user_by_email(email: str) -> dict[str, Any] | None:
    conn = get_conn()
    row = conn.execute(
        "SELECT id, username, email, created_at FROM users WHERE email = ?",
        ((email or "").strip(),),
    ).fetchone()
    conn.close()
    return _public(row) if row else None


def create_user(username: str, email: str, password: str) -> dict[str, Any]:
    salt = _new_salt()
    pwd_hash = _hash_password(password, salt)
    conn = get_conn()
    try:
        user_id = conn.insert(
            "INSERT INTO users(username, email, password_hash, salt) VALUES (?, ?, ?, ?)",
            (username, email, pwd_hash, salt),
        )
        conn.commit()
    except Exception as e:
        conn.rollback()
        if "unique" in str(e).lower() or "duplicate" in str(e).lower():
            raise DuplicateUserError("Username or email is already in use.") from e
        raise
    finally:
        conn.close()
    logger.info("Created user %s", user_id)
    return {"id": user_id, "username": username, "email": email}


def update_password(user_id: int, new_password: str) -> int:
    salt = _new_salt()
    pwd_hash = _hash_password(new_password, salt)
    conn = get_conn()
    cur = conn.execute(
        "UPDATE users SET password_hash = ?, salt = ? WHERE id = ?",
        (pwd_hash, salt, int(user_id)),
    )
    conn.commit()
    updated = cur.rowcount if cur.rowcount is not None else 0
    conn.close()
    return int(updated)


def register_user(username: str | None, email: str | None, password: str | None) -> dict[str, Any]:
    username_n = (username or "").strip()
    email_n = (email or "").strip()
    password = password or ""

    if not username_n or not email_n or not password:
        raise ValueError("Username, email and password are required.")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long.")
    if not EMAIL_RE.match(email_n):
        raise ValueError("Please enter a valid email address.")
    if get_user_by_username(username_n):
        raise DuplicateUserError("Username is already in use.")
    if find_user_by_email(email_n):
        raise DuplicateUserError("Email is already in use.")

    return create_user(username_n, email_n, password)


def authenticate_user(username: str, password: str) -> dict[str, Any] | None:
    row = get_user_by_username(username)
    if not row:
        return None
    if not _verify_password(password, row["password_hash"], row["salt"]):
        return None
    return _public(row)


def change_password(user_id: int, current_password: str | None, new_password: str | None) -> None:
    if not current_password or not new_password:
        raise ValueError("Current password and new password are required.")
    if len(new_password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"New password must be at least {MIN_PASSWORD_LENGTH} characters long.")

    conn = get_conn()
    row = conn.execute(
        "SELECT id, password_hash, salt FROM users WHERE id = ?",
        (int(user_id),),
    ).fetchone()
    conn.close()
    if not row:
        raise LookupError("User not found.")
    if not _verify_password(current_password, row["password_hash"], row["salt"]):
        raise PermissionError("Current password is incorrect.")

    update_password(int(user_id), new_password)
    logger.info("Password changed for user %s", user_id)


def find_username(email: str | None) -> str:
    if not (email or "").strip():
        raise ValueError("Please enter your email.")
    user = find_user_by_email(email)
    if not user:
        raise LookupError("No username is registered with that email.")
    return str(user["username"])


def reset_password(email: str | None) -> str:
    """Overwrite the stored password with a fresh 8-hex-char one and return it."""
    if not (email or "").strip():
        raise ValueError("Please enter your email.")
    user = find_user_by_email(email)
    if not user:
        raise LookupError("No account is registered with that email.")
    temp_password = secrets.token_hex(4)
    update_password(int(user["id"]), temp_password)
    logger.info("Password reset for user %s", user["id"])
    return temp_password
