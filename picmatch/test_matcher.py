"""
Tests for the Match Resolver: thresholding, per-photo max score, ranking
and selfie face selection.
"""
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from conftest import unit_pair
from picmatch.errors import AmbiguousFaceWarning, NoDescriptorError
from picmatch.matcher import MatchResolver, cosine_similarities, select_query_face
from picmatch.models import BoundingBox, ExtractedFace, FaceDescriptor, Photo
from picmatch.photo_index import PhotoIndex

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def index_photo(index, photo_id, vectors, event_id="evt_1", minutes=0):
    index.add_photo(Photo(
        photo_id=photo_id,
        event_id=event_id,
        storage_ref=f"local://{event_id}/{photo_id}.jpg",
        uploaded_at=T0 + timedelta(minutes=minutes),
    ))
    index.insert(photo_id, [
        FaceDescriptor(f"{photo_id}:{i}", photo_id, np.asarray(v, dtype=np.float64), BoundingBox(0, 1, 1, 0), 0.9)
        for i, v in enumerate(vectors)
    ])


def face(vector, confidence):
    return ExtractedFace(BoundingBox(0, 1, 1, 0), np.asarray(vector, dtype=np.float64), confidence)


# ============================================================================
# Similarity
# ============================================================================

def test_cosine_similarity_ignores_magnitude():
    scores = cosine_similarities([2.0, 0.0], [[5.0, 0.0], [0.0, 3.0]])
    assert scores == pytest.approx([1.0, 0.0])


def test_cosine_similarity_of_empty_matrix():
    assert len(cosine_similarities([1.0, 0.0], [])) == 0


# ============================================================================
# Resolve
# ============================================================================

def test_photo_matches_when_any_descriptor_passes_threshold():
    index = PhotoIndex()
    query, close = unit_pair(0.82)
    _, far = unit_pair(0.3)
    index_photo(index, "p1", [far, close])
    index_photo(index, "p2", [far])

    matches = MatchResolver(index, threshold=0.6).resolve("evt_1", [query])

    assert [m.photo_id for m in matches] == ["p1"]
    assert matches[0].score == pytest.approx(0.82)


def test_ranking_by_score_then_upload_time():
    index = PhotoIndex()
    query, strong = unit_pair(0.9)
    _, weak = unit_pair(0.7)
    index_photo(index, "late_tie", [strong], minutes=5)
    index_photo(index, "weak", [weak], minutes=0)
    index_photo(index, "early_tie", [strong], minutes=1)

    matches = MatchResolver(index, threshold=0.6).resolve("evt_1", [query])

    assert [m.photo_id for m in matches] == ["early_tie", "late_tie", "weak"]


def test_resolve_never_crosses_events():
    index = PhotoIndex()
    query, close = unit_pair(0.95)
    index_photo(index, "other_event_photo", [close], event_id="evt_2")

    assert MatchResolver(index).resolve("evt_1", [query]) == []


def test_multiple_references_keep_best_score():
    index = PhotoIndex()
    base = np.array([1.0, 0.0, 0.0])
    index_photo(index, "p1", [base])
    weak_ref = np.array([0.65, np.sqrt(1 - 0.65 ** 2), 0.0])
    strong_ref = np.array([0.9, np.sqrt(1 - 0.9 ** 2), 0.0])

    matches = MatchResolver(index, threshold=0.6).resolve("evt_1", [weak_ref, strong_ref])

    assert matches[0].score == pytest.approx(0.9)


def test_resolve_restricted_to_photo_ids():
    index = PhotoIndex()
    query, close = unit_pair(0.9)
    index_photo(index, "p1", [close])
    index_photo(index, "p2", [close])

    matches = MatchResolver(index).resolve("evt_1", [query], photo_ids=["p2"])

    assert [m.photo_id for m in matches] == ["p2"]


def test_resolve_without_references_is_empty():
    index = PhotoIndex()
    index_photo(index, "p1", [[1.0, 0.0]])
    assert MatchResolver(index).resolve("evt_1", []) == []


# ============================================================================
# Selfie face selection
# ============================================================================

def test_select_query_face_rejects_zero_faces():
    with pytest.raises(NoDescriptorError):
        select_query_face([])


def test_select_query_face_single_face_no_warning(recwarn):
    chosen = select_query_face([face([1.0, 0.0], 0.7)])
    assert chosen.confidence == 0.7
    assert not [w for w in recwarn if issubclass(w.category, AmbiguousFaceWarning)]


def test_select_query_face_picks_highest_confidence_and_warns(caplog):
    faces = [face([1.0, 0.0], 0.6), face([0.0, 1.0], 0.95), face([1.0, 1.0], 0.8)]
    with pytest.warns(AmbiguousFaceWarning):
        chosen = select_query_face(faces, owner="sel_1")

    assert chosen.confidence == 0.95
    assert any('[MATCHING]' in r.message and 'sel_1' in r.message for r in caplog.records)
