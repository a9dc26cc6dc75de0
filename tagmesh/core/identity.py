"""
Secure Storage Identity Derivation

A subject's data lives in a store whose name cannot be enumerated:

    secret_id  = sha256(repository_secret_root + "-" + subject_id)   (hex)
    storage_id = metadata_document_id_root + secret_id

Anyone holding the secret root (or handed the storage id) can reach the
store; an adversary who knows the prefix scheme and the subject id but
not the secret root cannot predict it.

Entities inside one subject store are namespaced with a readable
composite key "subject_id:entity_id". That key is a namespacing device,
not a security boundary.
"""

from __future__ import annotations

from typing import Optional

from tagmesh.core import constants as C
from tagmesh.core.types import ContentHash


def derive_secret_id(secret_root: str, subject_id: str) -> str:
    """Hex SHA-256 of the salted subject id (64 characters)."""
    return ContentHash.of_text(secret_root + C.SECRET_SEPARATOR + subject_id).to_hex()


def derive_storage_id(
    secret_root: str,
    subject_id: str,
    document_id_root: str = C.DEFAULT_METADATA_DOCUMENT_ID_ROOT,
) -> str:
    """Name of the store holding every entity of subject_id."""
    return document_id_root + derive_secret_id(secret_root, subject_id)


def storage_id_for_secret(secret_id: str, document_id_root: str) -> str:
    """Storage id for an already derived (or externally supplied) secret id."""
    return document_id_root + secret_id


def schema_store_id(document_id_root: str = C.DEFAULT_METADATA_DOCUMENT_ID_ROOT) -> str:
    """Name of the deployment-wide tag schema store."""
    return document_id_root + C.SCHEMA_STORE_SUFFIX


def entity_key(subject_id: str, entity_id: str) -> str:
    return subject_id + C.ENTITY_KEY_SEPARATOR + entity_id


def parse_entity_key(subject_id: str, key: str) -> Optional[str]:
    """
    Recover the bare entity id from a composite key.

    Everything after the "subject_id:" prefix is the entity id, so ids
    containing ':' round-trip. Keys from another namespace yield None.
    """
    prefix = subject_id + C.ENTITY_KEY_SEPARATOR
    if not key.startswith(prefix):
        return None
    return key[len(prefix):]
