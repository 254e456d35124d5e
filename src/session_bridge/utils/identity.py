"""User identity hashing.

A user's (email, password) pair is reduced to an opaque SHA-256 digest
that partitions stored sessions and settings. The digest is a key, not a
credential: nothing ever authenticates against it.
"""

from __future__ import annotations

import hashlib
import json
from typing import NewType

UserIdentity = NewType("UserIdentity", str)

IDENTITY_LENGTH = 64


def hash_identity(email: str, password: str) -> UserIdentity:
    """Derive the identity partition key for a credential pair.

    The pair is JSON-encoded before hashing so field boundaries can't
    shift: ``("a:b", "c")`` and ``("a", "b:c")`` hash differently.
    """
    payload = json.dumps([email, password], ensure_ascii=False, separators=(",", ":"))
    return UserIdentity(hashlib.sha256(payload.encode("utf-8")).hexdigest())


def scoped_key(identity: str, *parts: str) -> str:
    """Build a storage key scoped to one identity, e.g. ``settings:<identity>:charts``."""
    if not parts:
        raise ValueError("scoped_key needs at least one part")
    return ":".join([parts[0], identity, *parts[1:]])
