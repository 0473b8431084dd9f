"""Tests for the PostgreSQL repository against a mocked psycopg2 connection."""
from datetime import datetime, timezone
from unittest.mock import MagicMock

import numpy as np
import psycopg2
import pytest

from picmatch.db import UPSERT_ATTRIBUTION, PostgresRepository
from picmatch.errors import IndexUnavailableError
from picmatch.models import Attribution, BoundingBox, EventStatus, FaceDescriptor, PhotoState

WHEN = datetime(2026, 4, 2, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def conn():
    return MagicMock()


@pytest.fixture
def repository(conn):
    return PostgresRepository("postgresql://test", connect=MagicMock(return_value=conn))


def executed(conn):
    cursor = conn.cursor.return_value.__enter__.return_value
    return [c.args for c in cursor.execute.call_args_list]


def test_upsert_attribution_only_raises_score(repository, conn):
    attribution = Attribution("a@x.com", "pho_1", "evt_1", 0.82, WHEN)

    repository.upsert_attribution(attribution)

    (sql, params), = executed(conn)
    assert sql == UPSERT_ATTRIBUTION
    assert "WHERE attributions.score < EXCLUDED.score" in sql
    assert params == ("a@x.com", "pho_1", "evt_1", 0.82, WHEN)
    conn.close.assert_called_once()


def test_replace_descriptors_swaps_and_marks_indexed(repository, conn):
    descriptor = FaceDescriptor("pho_1:0", "pho_1", np.array([0.5, 0.5]), BoundingBox(1, 2, 3, 0), 0.9)

    repository.replace_descriptors("pho_1", [descriptor])

    statements = executed(conn)
    assert statements[0] == ("DELETE FROM face_descriptors WHERE photo_id = %s", ("pho_1",))
    assert statements[1][1] == ("pho_1:0", "pho_1", [0.5, 0.5], 1, 2, 3, 0, 0.9)
    assert statements[2][1] == (PhotoState.INDEXED.value, "pho_1")


def test_connection_failure_is_storage_unavailable(conn):
    connect = MagicMock(side_effect=psycopg2.OperationalError("could not connect"))
    repository = PostgresRepository("postgresql://secret@host/db", connect=connect)

    with pytest.raises(IndexUnavailableError):
        repository.update_event_status("evt_1", EventStatus.CLOSED)


def test_statement_failure_is_storage_unavailable_and_closes(repository, conn):
    cursor = conn.cursor.return_value.__enter__.return_value
    cursor.execute.side_effect = psycopg2.OperationalError("server closed the connection")

    with pytest.raises(IndexUnavailableError):
        repository.delete_photo("pho_1")
    conn.close.assert_called_once()


def test_delete_attributions_for_attendee_scoped_by_event(repository, conn):
    repository.delete_attributions_for_attendee("a@x.com", event_id="evt_1")

    (sql, params), = executed(conn)
    assert "event_id = %s" in sql
    assert params == ("a@x.com", "evt_1")


def test_load_snapshot_builds_models(repository, conn):
    cursor = conn.cursor.return_value.__enter__.return_value
    cursor.fetchall.side_effect = [
        [{"event_id": "evt_1", "organizer_id": "org@x.com", "name": "Gala", "created_at": WHEN, "status": "open"}],
        [{"photo_id": "pho_1", "event_id": "evt_1", "storage_ref": "local://evt_1/a.jpg", "uploaded_at": WHEN, "state": "indexed"}],
        [{"descriptor_id": "pho_1:0", "photo_id": "pho_1", "vector": [1.0, 0.0],
          "box_top": 0, "box_right": 4, "box_bottom": 4, "box_left": 0, "confidence": 0.8}],
        [{"event_id": "evt_1", "attendee_id": "a@x.com", "position": 0, "vector": [0.0, 1.0]}],
        [{"event_id": "evt_1", "attendee_id": "a@x.com", "registered_at": WHEN}],
        [{"attendee_id": "a@x.com", "photo_id": "pho_1", "event_id": "evt_1", "score": 0.7, "decided_at": WHEN}],
    ]

    snapshot = repository.load_snapshot()

    assert snapshot["events"][0].status is EventStatus.OPEN
    assert snapshot["photos"][0].state is PhotoState.INDEXED
    assert snapshot["descriptors"][0].bounding_box == BoundingBox(0, 4, 4, 0)
    np.testing.assert_allclose(snapshot["attendees"][0].descriptors[0], [0.0, 1.0])
    assert snapshot["attributions"][0].score == 0.7
