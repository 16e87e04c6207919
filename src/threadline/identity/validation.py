"""External identifier formats, type inference and user-id minting."""

from __future__ import annotations

import re
import secrets
import time
from collections.abc import Callable

from threadline.errors import InvalidIdentityError
from threadline.models import IdentityType

E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

MINTED_USER_PREFIX = "external-user"
_BASE36_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
_MINTED_SUFFIX_LENGTH = 7


def is_valid_identifier(identity_type: IdentityType | str, value: str) -> bool:
    if not value or not value.strip():
        return False
    match IdentityType(identity_type):
        case IdentityType.PHONE:
            return E164_PATTERN.fullmatch(value) is not None
        case IdentityType.EMAIL:
            return EMAIL_PATTERN.fullmatch(value) is not None
        case IdentityType.PLATFORM_ID:
            return True


def validate_identifier(identity_type: IdentityType | str, value: str) -> None:
    """Raise ``InvalidIdentityError`` when *value* does not fit *identity_type*."""
    if not is_valid_identifier(identity_type, value):
        raise InvalidIdentityError(str(identity_type), value)


def infer_identity_type(value: str) -> IdentityType:
    """Guess the identifier type of a raw sender identifier.

    Anything containing ``@`` is an email, an E.164 string is a phone number,
    and everything else is a platform-scoped id.
    """
    if "@" in value:
        return IdentityType.EMAIL
    if E164_PATTERN.fullmatch(value):
        return IdentityType.PHONE
    return IdentityType.PLATFORM_ID


def mint_user_id(clock_ms: Callable[[], int] | None = None) -> str:
    """Return a fresh id for a sender with no identity link.

    Format: ``external-user-<epoch ms>-<7 base36 chars>``.
    """
    millis = clock_ms() if clock_ms is not None else time.time_ns() // 1_000_000
    suffix = "".join(secrets.choice(_BASE36_ALPHABET) for _ in range(_MINTED_SUFFIX_LENGTH))
    return f"{MINTED_USER_PREFIX}-{millis}-{suffix}"


__all__ = [
    "E164_PATTERN",
    "EMAIL_PATTERN",
    "MINTED_USER_PREFIX",
    "infer_identity_type",
    "is_valid_identifier",
    "mint_user_id",
    "validate_identifier",
]
