"""
Tests for upload validation, the local blob store and storage retries.
"""
import os
from unittest.mock import MagicMock

import pytest

from picmatch.errors import EntityNotFoundError, IndexUnavailableError, InvalidUploadError
from picmatch.retry import call_with_retries
from picmatch.storage import (
    ALLOWED_IMAGE_EXTENSIONS,
    LocalBlobStore,
    sanitize_filename,
    sanitize_path_component,
    validate_upload,
)


# ============================================================================
# Sanitization and validation
# ============================================================================

@pytest.mark.parametrize("raw, expected", [
    ("../../etc/passwd", "passwd"),
    ("..\\secret.jpg", "secret.jpg"),
    (".hidden.png", "hidden.png"),
    ("my photo (1).jpg", "my_photo__1_.jpg"),
    ("a\x00b.jpg", "ab.jpg"),
])
def test_sanitize_filename(raw, expected):
    assert sanitize_filename(raw) == expected


def test_sanitize_path_component_strips_traversal():
    assert sanitize_path_component("../evt_1") == "evt_1"


def test_validate_upload_accepts_images():
    validate_upload(b"data", "photo.JPG", ALLOWED_IMAGE_EXTENSIONS)


@pytest.mark.parametrize("data, filename, message", [
    (b"data", "", "No file provided"),
    (b"data", "doc.pdf", "Invalid file type"),
    (b"", "photo.jpg", "File is empty"),
    (b"x" * (1024 * 1024 + 1), "photo.jpg", "File too large"),
])
def test_validate_upload_rejects(data, filename, message):
    with pytest.raises(InvalidUploadError, match=message):
        validate_upload(data, filename, ALLOWED_IMAGE_EXTENSIONS, max_size_mb=1)


# ============================================================================
# LocalBlobStore
# ============================================================================

def test_put_get_delete(tmp_path):
    store = LocalBlobStore(str(tmp_path))

    ref = store.put("evt_1", b"bytes", "../party.jpg")

    assert ref.startswith("local://evt_1/")
    assert ref.endswith("_party.jpg")
    assert store.get(ref) == b"bytes"

    store.delete(ref)
    with pytest.raises(EntityNotFoundError):
        store.get(ref)


def test_get_rejects_foreign_reference(tmp_path):
    with pytest.raises(EntityNotFoundError):
        LocalBlobStore(str(tmp_path)).get("s3://bucket/key.jpg")


def test_traversal_in_reference_stays_inside_root(tmp_path):
    store = LocalBlobStore(str(tmp_path / "root"))
    (tmp_path / "secret.jpg").write_bytes(b"secret")

    with pytest.raises(EntityNotFoundError):
        store.get("local://../secret.jpg")


def test_delete_event_removes_folder(tmp_path):
    store = LocalBlobStore(str(tmp_path))
    store.put("evt_1", b"a", "a.jpg")
    store.put("evt_1", b"b", "b.jpg")

    store.delete_event("evt_1")

    assert not os.path.exists(tmp_path / "evt_1")


# ============================================================================
# Retries
# ============================================================================

def test_transient_failure_is_retried_with_backoff():
    func = MagicMock(side_effect=[IndexUnavailableError("down"), IndexUnavailableError("down"), "ok"])
    delays = []

    assert call_with_retries(func, "arg", attempts=3, backoff=0.5, sleep=delays.append) == "ok"

    assert func.call_count == 3
    assert delays == [0.5, 1.0]


def test_retries_give_up_after_last_attempt():
    func = MagicMock(side_effect=IndexUnavailableError("down"))

    with pytest.raises(IndexUnavailableError):
        call_with_retries(func, attempts=2, backoff=0.0, sleep=lambda _: None)
    assert func.call_count == 2


def test_other_errors_are_not_retried():
    func = MagicMock(side_effect=ValueError("bad input"))

    with pytest.raises(ValueError):
        call_with_retries(func, attempts=5, sleep=lambda _: None)
    assert func.call_count == 1
