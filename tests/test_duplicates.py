"""
Tests for content-hash duplicate detection.
"""

import pytest

from ap_recon.agents.duplicates import compute_file_hash, normalize_file_hash, find_duplicate_file
from ap_recon.schemas.records import Table


CONTENT = b"%PDF-1.4 invoice INV-2025-001"


@pytest.fixture
def file_hash():
    return compute_file_hash(CONTENT)


def test_hash_is_sha256_hex(file_hash):
    assert len(file_hash) == 64
    assert file_hash == compute_file_hash(CONTENT)
    assert file_hash != compute_file_hash(CONTENT + b" ")


def test_normalize_accepts_upper_case(file_hash):
    assert normalize_file_hash(f"  {file_hash.upper()} ") == file_hash


@pytest.mark.parametrize("bad", ["", "abc", "z" * 64, None])
def test_normalize_rejects_garbage(bad):
    with pytest.raises(ValueError):
        normalize_file_hash(bad)


@pytest.mark.asyncio
async def test_no_duplicate(store, file_hash):
    store.add(Table.FILES, "recOther", {"FileName": "other.pdf", "FileHash": "0" * 64})

    result = await find_duplicate_file(store, file_hash)

    assert result.is_duplicate is False
    assert result.record_id is None


@pytest.mark.asyncio
async def test_duplicate_found(store, file_hash):
    store.add(Table.FILES, "recFile1", {"FileName": "invoice.pdf", "FileHash": file_hash, "Created-At": "2025-01-01T00:00:00Z"})

    result = await find_duplicate_file(store, file_hash)

    assert result.is_duplicate is True
    assert result.record_id == "recFile1"
    assert result.file_name == "invoice.pdf"
    assert "invoice.pdf" in result.reason


@pytest.mark.asyncio
async def test_cleared_files_are_ignored(store, file_hash):
    store.add(Table.FILES, "recFile1", {"FileName": "invoice.pdf", "FileHash": file_hash, "Cleared": True})

    result = await find_duplicate_file(store, file_hash)

    assert result.is_duplicate is False


@pytest.mark.asyncio
async def test_excludes_the_file_itself(store, file_hash):
    store.add(Table.FILES, "recFile1", {"FileName": "invoice.pdf", "FileHash": file_hash, "Created-At": "2025-01-01T00:00:00Z"})
    store.add(Table.FILES, "recFile2", {"FileName": "invoice (1).pdf", "FileHash": file_hash, "Created-At": "2025-02-01T00:00:00Z"})

    assert (await find_duplicate_file(store, file_hash, exclude_record_id="recFile1")).record_id == "recFile2"
    assert (await find_duplicate_file(store, file_hash, exclude_record_id="recFile2")).record_id == "recFile1"

    solo = await find_duplicate_file(store, compute_file_hash(b"unique"), exclude_record_id="recFile1")
    assert solo.is_duplicate is False


@pytest.mark.asyncio
async def test_oldest_upload_is_reported(store, file_hash):
    store.add(Table.FILES, "recNew", {"FileName": "b.pdf", "FileHash": file_hash, "Created-At": "2025-03-01T00:00:00Z"})
    store.add(Table.FILES, "recOld", {"FileName": "a.pdf", "FileHash": file_hash, "Created-At": "2025-01-01T00:00:00Z"})

    result = await find_duplicate_file(store, file_hash)

    assert result.record_id == "recOld"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
