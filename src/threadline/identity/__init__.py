"""Identity resolution: external identifiers to internal user ids.

Re-exports the public symbols so that ``from threadline.identity import X``
works without knowing the submodule.
"""

from threadline.identity.cache import CacheEntry, IdentityCache, TTLIdentityCache
from threadline.identity.resolver import IdentityResolver, ResolvedUser
from threadline.identity.validation import (
    infer_identity_type,
    is_valid_identifier,
    mint_user_id,
    validate_identifier,
)

__all__ = [
    "CacheEntry",
    "IdentityCache",
    "IdentityResolver",
    "ResolvedUser",
    "TTLIdentityCache",
    "infer_identity_type",
    "is_valid_identifier",
    "mint_user_id",
    "validate_identifier",
]
