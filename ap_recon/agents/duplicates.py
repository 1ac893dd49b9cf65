"""
Duplicate detection by content hash.
"""

import hashlib
import re
from typing import Optional
from pydantic import BaseModel

from ap_recon.schemas.records import Table, FileField, FileRecord
from ap_recon.store.airtable import and_, field_equals, not_cleared
from ap_recon.utils.logging import setup_logging


logger = setup_logging(__name__)

_SHA256_HEX = re.compile(r"^[0-9a-f]{64}$")


class DuplicateCheck(BaseModel):
    is_duplicate: bool
    record_id: Optional[str] = None
    file_name: Optional[str] = None
    reason: Optional[str] = None


def compute_file_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def normalize_file_hash(file_hash: str) -> str:
    """Lower-case hex SHA-256; ValueError for anything else."""
    normalized = (file_hash or "").strip().lower()
    if not _SHA256_HEX.match(normalized):
        raise ValueError(f"Invalid SHA-256 hash: {file_hash!r}")
    return normalized


async def find_duplicate_file(store, file_hash: str, exclude_record_id: Optional[str] = None) -> DuplicateCheck:
    """
    Look for a non-cleared File with the same content hash.

    `exclude_record_id` skips the file being checked when it is already stored.
    """
    normalized = normalize_file_hash(file_hash)
    records = await store.list(
        Table.FILES,
        filter_formula=and_(not_cleared(), field_equals(FileField.HASH, normalized)),
        fields=[FileField.NAME, FileField.HASH, FileField.CREATED_AT],
        sort=[{"field": FileField.CREATED_AT, "direction": "asc"}],
        max_records=2,
    )
    matches = [FileRecord.from_store(r) for r in records if r.id != exclude_record_id]
    if not matches:
        return DuplicateCheck(is_duplicate=False)

    original = matches[0]
    logger.info(f"[Duplicates] Hash {normalized[:12]}... already uploaded as {original.id}")
    return DuplicateCheck(
        is_duplicate=True,
        record_id=original.id,
        file_name=original.name,
        reason=f"This file was already uploaded as {original.name or original.id}",
    )
