"""Canonical ID, timestamp and fingerprint factories.

All modules import from here instead of defining local _uuid()/_now() copies.

ID Categories
-------------
1. Entity IDs: UUID v4 strings (invoice, item, activity, submission, event)
2. Job IDs: ``{event_type}_{epoch_ms}_{suffix}`` so stores list them readably
3. Content fingerprints: MD5 over canonical JSON (invoice ``content_hash``)

Timestamp Rule
--------------
All timestamps are ``datetime`` with ``tzinfo=timezone.utc``, never naive.
Deferred jobs carry ``run_after`` as integer epoch seconds.
"""

from __future__ import annotations

import hashlib
import json
import secrets
import string
import time
import uuid
from datetime import datetime, timezone
from typing import Any

_BASE36 = string.digits + string.ascii_lowercase


def new_id() -> str:
    """Generate a new UUID v4 string.  Use for all internal entity IDs."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def job_id(event_type: str | None = None) -> str:
    """Build a deferred-job id such as ``invoice.later_1718000000000_k3f9xa``."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"{event_type or 'job'}_{int(time.time() * 1000)}_{suffix}"


def canonical_json(payload: Any) -> str:
    """Serialize *payload* deterministically (sorted keys, ``default=str``)."""
    return json.dumps(payload, sort_keys=True, default=str, separators=(",", ":"))


def fingerprint(payload: dict[str, Any]) -> str:
    """MD5 hex digest of the canonical JSON form of *payload*.

    Used for the invoice ``content_hash``: equal renderable content gives an
    equal fingerprint, so cached PDFs can be matched against it.
    """
    return hashlib.md5(canonical_json(payload).encode()).hexdigest()
