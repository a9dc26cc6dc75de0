"""
Document and revision helpers shared by every backend.

Revisions follow the "<generation>-<hash>" shape: each update bumps the
generation and hashes the new body together with the previous revision.
When two stores disagree, the winner is the revision with the higher
generation, ties broken by the lexicographically higher hash, so every
replica picks the same winner without coordination.
"""

from __future__ import annotations

import copy
import hashlib
import json
from typing import Any, Dict, Optional, Tuple

META_ID = "_id"
META_REV = "_rev"


def parse_revision(rev: Optional[str]) -> Tuple[int, str]:
    """Split a revision into (generation, hash); None parses as (0, "")."""
    if not rev:
        return (0, "")
    generation, _, digest = rev.partition("-")
    try:
        return (int(generation), digest)
    except ValueError:
        return (0, rev)


def next_revision(body: Dict[str, Any], previous: Optional[str]) -> str:
    generation, _ = parse_revision(previous)
    payload = canonical_json(body) + (previous or "")
    digest = hashlib.md5(payload.encode("utf-8"), usedforsecurity=False).hexdigest()
    return f"{generation + 1}-{digest}"


def revision_wins(candidate: Optional[str], current: Optional[str]) -> bool:
    """True if candidate beats current under the deterministic winner policy."""
    return parse_revision(candidate) > parse_revision(current)


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def to_plain(value: Any) -> Any:
    """
    Strip anything that is not plain JSON data.

    Host containers (observable mappings, proxies) are flattened by a
    JSON round trip before every write.
    """
    return json.loads(json.dumps(value))


def split_document(doc: Dict[str, Any]) -> Tuple[Optional[str], Optional[str], Dict[str, Any]]:
    """Return (id, rev, body) where body has no store metadata."""
    body = {k: v for k, v in doc.items() if k not in (META_ID, META_REV)}
    return doc.get(META_ID), doc.get(META_REV), body


def with_meta(key: str, rev: str, body: Dict[str, Any]) -> Dict[str, Any]:
    doc = copy.deepcopy(body)
    doc[META_ID] = key
    doc[META_REV] = rev
    return doc
