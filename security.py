"""Password hashing, the sign-up password policy and Fernet encryption of order shipping fields."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional

import bcrypt
from cryptography.fernet import Fernet, InvalidToken
from werkzeug.security import check_password_hash

BCRYPT_ROUNDS = int(os.getenv("LOCALBUY_BCRYPT_ROUNDS", "12"))
SENSITIVE_KEY_ENV = "SENSITIVE_DATA_KEY"
SENSITIVE_KEY_FILE = Path(__file__).with_name("sensitive_key.txt")
WERKZEUG_HASH_PREFIXES = ("scrypt:", "pbkdf2:")
COMMON_PASSWORDS = {"password", "password1", "letmein", "1234", "12345", "123456", "qwerty", "localbuy"}

_shipping_cipher: Optional[Fernet] = None


def hash_password(password: str) -> str:
    """Return a salted bcrypt hash of ``password`` as text for the users table."""

    if not isinstance(password, str):
        raise TypeError("Password must be a string.")
    digest = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS))
    return digest.decode("utf-8")


def verify_password(password: str, stored_hash: str | bytes | None) -> bool:
    """Check a login attempt against the stored hash.

    Accounts imported with werkzeug ``scrypt:``/``pbkdf2:`` hashes still sign in;
    anything else is treated as bcrypt and a malformed hash simply fails.
    """

    if not password or not stored_hash:
        return False

    encoded = stored_hash if isinstance(stored_hash, str) else stored_hash.decode("utf-8")
    if encoded.startswith(WERKZEUG_HASH_PREFIXES):
        return check_password_hash(encoded, password)

    try:
        return bcrypt.checkpw(password.encode("utf-8"), encoded.encode("utf-8"))
    except (ValueError, TypeError):
        return False


def validate_password(identity: str, password: str) -> str | None:
    """Return an error message if the password fails validation, otherwise None.

    ``identity`` is whatever the user signs in with or is known by (the local
    part of the email address works well); passwords derived from it are
    rejected.
    """

    lowered = password.lower()
    identity_lower = (identity or "").lower()

    if len(password) < 8:
        return "Password must be at least eight characters."
    if lowered in COMMON_PASSWORDS:
        return "Please choose a less common password."
    if identity_lower and lowered == identity_lower:
        return "Password cannot match your name or email."
    if identity_lower and lowered in {f"{identity_lower}{d}" for d in ("123", "1", "01")}:
        return "Password is too closely related to your name or email."
    if lowered.isdigit():
        return "Password must include letters in addition to numbers."
    if lowered.isalpha():
        return "Password must include at least one number or symbol."
    if re.search(r"(.)\1{2,}", lowered):
        return "Password cannot contain the same character repeated three or more times consecutively."

    return None


def _read_or_create_key() -> bytes:
    env_key = os.getenv(SENSITIVE_KEY_ENV)
    if env_key:
        return env_key.strip().encode("utf-8")
    if SENSITIVE_KEY_FILE.exists():
        return SENSITIVE_KEY_FILE.read_bytes().strip()
    # First run without a configured key: keep a generated one beside the code.
    key = Fernet.generate_key()
    SENSITIVE_KEY_FILE.write_bytes(key)
    return key


def _cipher() -> Fernet:
    global _shipping_cipher
    if _shipping_cipher is None:
        _shipping_cipher = Fernet(_read_or_create_key())
    return _shipping_cipher


def encrypt_sensitive_value(value: Optional[str]) -> str:
    """Seal one shipping field (address, city, postcode, phone) into a Fernet token."""

    return _cipher().encrypt((value or "").encode("utf-8")).decode("utf-8")


def decrypt_sensitive_value(value: Optional[str]) -> str:
    """Open a shipping field token; text that is not a token comes back unchanged."""

    text = "" if value is None else str(value)
    if not text:
        return ""
    try:
        return _cipher().decrypt(text.encode("utf-8")).decode("utf-8")
    except (InvalidToken, ValueError, TypeError):
        return text
