from __future__ import annotations

import hashlib
import json
from typing import Any, Optional

from pydantic_core import to_jsonable_python

from ..constants import CACHE_KEY_PREFIX

HASH_LENGTH = 16


def normalize_context(context: Any) -> str:
    """Canonical JSON: keys sorted at every depth, no whitespace."""
    return json.dumps(
        to_jsonable_python(context), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def hash_context(context: Any) -> str:
    digest = hashlib.sha256(normalize_context(context).encode("utf-8")).hexdigest()
    return digest[:HASH_LENGTH]


def make_cache_key(cache_type: str, entity_id: Optional[str], context: Any) -> str:
    """``ai:{type}:{entity}:{hash}``; field order in ``context`` does not matter."""
    entity = entity_id or "global"
    return f"{CACHE_KEY_PREFIX}:{cache_type}:{entity}:{hash_context(context)}"


def entity_prefix(cache_type: str, entity_id: str) -> str:
    return f"{CACHE_KEY_PREFIX}:{cache_type}:{entity_id}:"
