"""Hashing helpers shared by every storage backend.

Both the session store and the result cache partition on the same
``UserHandle``; the cache additionally keys on a canonical query signature.
"""

from __future__ import annotations

import base64
import hashlib
import json
from typing import Any, Mapping, Optional

# Never part of a query signature: identity is already the partition key and
# the refresh flag only controls whether the cache is consulted.
VOLATILE_QUERY_FIELDS = frozenset({"refresh", "userEmail", "user_email", "email"})

USER_HANDLE_LENGTH = 16


def normalize_identity(identity: str) -> str:
    return identity.strip().lower()


def user_handle(identity: str) -> str:
    """Pseudonymous partition key for an email-like identity.

    Case-insensitive: ``Parent@Example.com`` and ``parent@example.com`` share
    a handle.
    """

    if not identity or not identity.strip():
        raise ValueError("identity must be a non-empty string")
    digest = hashlib.sha256(normalize_identity(identity).encode("utf-8")).hexdigest()
    return digest[:USER_HANDLE_LENGTH]


def canonical_query(params: Mapping[str, Any], namespace: Optional[str] = None) -> str:
    """Stable JSON for ``params`` minus volatile fields, with sorted keys."""

    filtered = {k: v for k, v in params.items() if k not in VOLATILE_QUERY_FIELDS}
    body: dict[str, Any] = {"params": filtered}
    if namespace:
        body["ns"] = namespace
    return json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)


def query_signature(params: Mapping[str, Any], namespace: Optional[str] = None) -> str:
    """Hash of the canonical query; field order never changes the result."""

    return hashlib.sha256(canonical_query(params, namespace).encode("utf-8")).hexdigest()


def derive_cipher_key(master_key: str, identity: str) -> bytes:
    """Per-identity Fernet key: sha256(master key material + lowercase identity)."""

    material = f"{master_key}{normalize_identity(identity)}"
    return base64.urlsafe_b64encode(hashlib.sha256(material.encode("utf-8")).digest())


__all__ = [
    "VOLATILE_QUERY_FIELDS",
    "canonical_query",
    "derive_cipher_key",
    "normalize_identity",
    "query_signature",
    "user_handle",
]
