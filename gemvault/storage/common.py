"""Shared storage helpers used by both the memory and postgres backends.

Seed data here mirrors the rows inserted by ``sql/001_identity_core.sql`` so
that a fresh MemoryStore and a freshly migrated database look the same.
"""

from __future__ import annotations

import base64
import hashlib
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from cryptography.fernet import Fernet

# ============================================================================
# SEED DATA
# ============================================================================

DEFAULT_ROLES: List[Tuple[str, str]] = [
    ("admin", "Full platform administration"),
    ("customer", "Marketplace buyer"),
    ("dealer", "Gemstone dealer"),
    ("cutter", "Lapidary / cutter"),
    ("appraiser", "Certified appraiser"),
]

_CRUD = ("create", "read", "update", "delete")
_RESOURCES = (
    "gemstone",
    "rough_stone",
    "jewelry",
    "listing",
    "order",
    "appraisal",
    "user",
    "role",
)

DEFAULT_PERMISSIONS: List[Tuple[str, str]] = [
    (resource, action) for resource in _RESOURCES for action in _CRUD
] + [("role", "manage")]

_CATALOG_READS = [
    ("gemstone", "read"),
    ("rough_stone", "read"),
    ("jewelry", "read"),
    ("listing", "read"),
]

_CUSTOMER_GRANTS = _CATALOG_READS + [("order", "create"), ("order", "read")]

# admin is deliberately absent: its powers come from the resolver bypass
DEFAULT_GRANTS: Dict[str, List[Tuple[str, str]]] = {
    "customer": _CUSTOMER_GRANTS,
    "dealer": _CUSTOMER_GRANTS
    + [
        ("gemstone", "create"),
        ("gemstone", "update"),
        ("rough_stone", "create"),
        ("rough_stone", "update"),
        ("jewelry", "create"),
        ("jewelry", "update"),
        ("listing", "create"),
        ("listing", "update"),
        ("listing", "delete"),
    ],
    "cutter": [
        ("rough_stone", "read"),
        ("rough_stone", "update"),
        ("gemstone", "create"),
        ("gemstone", "update"),
    ],
    "appraiser": _CATALOG_READS
    + [
        ("appraisal", "create"),
        ("appraisal", "read"),
        ("appraisal", "update"),
    ],
}


def permission_description(resource: str, action: str) -> str:
    return f"{action.capitalize()} {resource.replace('_', ' ')}"


# ============================================================================
# MFA SECRET ENCRYPTION
# ============================================================================

def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_secret_cipher(key_material: str) -> Fernet:
    if not key_material:
        raise RuntimeError("MFA encryption key material is required")
    try:
        return Fernet(derive_cipher_key(key_material))
    except ValueError as exc:
        raise RuntimeError("Unable to initialize MFA cipher") from exc


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def normalize_email(email: str) -> str:
    return email.strip().lower()


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive timestamps read back from storage."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def generate_uuid() -> str:
    return str(uuid.uuid4())
