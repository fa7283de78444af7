"""
Access code generation.

Codes are 12 characters drawn uniformly from A-Z0-9 using the OS CSPRNG,
which gives a 36**12 space. Uniqueness against stored codes is the
caller's job.
"""

import secrets
import string

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 12


def generate_access_code(length: int = CODE_LENGTH) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def is_well_formed(code: str) -> bool:
    return len(code) == CODE_LENGTH and all(ch in CODE_ALPHABET for ch in code)
