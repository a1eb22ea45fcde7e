"""Deterministic identifiers derived from stable business keys.

Every persisted id is a SHA-256 digest rendered as unpadded base64url, so
redelivered messages and racing workers address the same rows.

- aggregate record: hash of the normalized canonical identifier
- price observation: hash of ``{vendor_id}_{period_key}``
- brand: hash of the brand URL
"""

from __future__ import annotations

import base64
import hashlib
import time
import uuid
from datetime import datetime


def generate_doc_id(value: str) -> str:
    """Hash an arbitrary business key into a 43-character document id.

    Example:
        >>> len(generate_doc_id("7501234567890"))
        43
    """
    digest = hashlib.sha256(value.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def normalize_identifier(identifier: str) -> str:
    """Normalize a canonical identifier (barcodes are upper-cased and trimmed)."""
    return str(identifier).strip().upper()


def record_id_for(canonical_identifier: str) -> str:
    return generate_doc_id(normalize_identifier(canonical_identifier))


def observation_id(vendor_id: str, period: str) -> str:
    return generate_doc_id(f"{vendor_id}_{period}")


def brand_id_for(brand_url: str) -> str:
    return generate_doc_id(brand_url)


def period_key_for(moment: datetime) -> str:
    """Format a (naive UTC) timestamp as its ``YYYYMMDD`` period bucket."""
    return moment.strftime("%Y%m%d")


def new_holder_id(prefix: str) -> str:
    """Unique id for one run (lease holder, claim holder, cleanup pass).

    Example:
        >>> new_holder_id("vp")  # doctest: +SKIP
        'vp-1718000000000-3f9a1c'
    """
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"
