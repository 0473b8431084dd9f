# db.py  (PostgreSQL write-through persistence, Neon compatible)
import logging

import numpy as np
import psycopg2
import psycopg2.extras

from picmatch.errors import IndexUnavailableError
from picmatch.models import (
    Attendee,
    Attribution,
    BoundingBox,
    Event,
    EventStatus,
    FaceDescriptor,
    Photo,
    PhotoState,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS events (
    event_id      TEXT PRIMARY KEY,
    organizer_id  TEXT NOT NULL,
    name          TEXT NOT NULL DEFAULT '',
    created_at    TIMESTAMPTZ NOT NULL,
    status        TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS photos (
    photo_id     TEXT PRIMARY KEY,
    event_id     TEXT NOT NULL REFERENCES events(event_id) ON DELETE CASCADE,
    storage_ref  TEXT NOT NULL,
    uploaded_at  TIMESTAMPTZ NOT NULL,
    state        TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS face_descriptors (
    descriptor_id  TEXT PRIMARY KEY,
    photo_id       TEXT NOT NULL REFERENCES photos(photo_id) ON DELETE CASCADE,
    vector         DOUBLE PRECISION[] NOT NULL,
    box_top        INTEGER NOT NULL,
    box_right      INTEGER NOT NULL,
    box_bottom     INTEGER NOT NULL,
    box_left       INTEGER NOT NULL,
    confidence     DOUBLE PRECISION NOT NULL
);
CREATE TABLE IF NOT EXISTS attendees (
    event_id       TEXT NOT NULL REFERENCES events(event_id) ON DELETE CASCADE,
    attendee_id    TEXT NOT NULL,
    registered_at  TIMESTAMPTZ NOT NULL,
    PRIMARY KEY (event_id, attendee_id)
);
CREATE TABLE IF NOT EXISTS attendee_references (
    event_id     TEXT NOT NULL,
    attendee_id  TEXT NOT NULL,
    position     INTEGER NOT NULL,
    vector       DOUBLE PRECISION[] NOT NULL,
    PRIMARY KEY (event_id, attendee_id, position),
    FOREIGN KEY (event_id, attendee_id) REFERENCES attendees(event_id, attendee_id) ON DELETE CASCADE
);
CREATE TABLE IF NOT EXISTS attributions (
    attendee_id  TEXT NOT NULL,
    photo_id     TEXT NOT NULL REFERENCES photos(photo_id) ON DELETE CASCADE,
    event_id     TEXT NOT NULL,
    score        DOUBLE PRECISION NOT NULL,
    decided_at   TIMESTAMPTZ NOT NULL,
    PRIMARY KEY (attendee_id, photo_id)
);
"""

# Monotonic-best: a stored score is only replaced by a strictly higher one
UPSERT_ATTRIBUTION = """
INSERT INTO attributions (attendee_id, photo_id, event_id, score, decided_at)
VALUES (%s, %s, %s, %s, %s)
ON CONFLICT (attendee_id, photo_id) DO UPDATE
SET score = EXCLUDED.score, decided_at = EXCLUDED.decided_at, event_id = EXCLUDED.event_id
WHERE attributions.score < EXCLUDED.score
"""


class PostgresRepository:
    """
    Mirrors engine state into PostgreSQL.

    Each call opens its own connection and commits on success; connection
    level failures surface as IndexUnavailableError so callers can retry.
    """

    def __init__(self, database_url, connect=psycopg2.connect):
        self.database_url = database_url
        self._connect = connect

    # --- DB HELPER ---
    def get_db_connection(self):
        try:
            return self._connect(self.database_url)
        except psycopg2.OperationalError as err:
            # Log error without exposing connection string details
            logger.error("[DB] Database connection failed")
            raise IndexUnavailableError("Database connection failed") from err

    def _execute(self, operation, statements):
        conn = self.get_db_connection()
        try:
            with conn:
                with conn.cursor() as cur:
                    for sql, params in statements:
                        cur.execute(sql, params)
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as err:
            logger.error(f"[DB] Statement failed - error: {str(err)}, operation: {operation}")
            raise IndexUnavailableError(f"Database unavailable during {operation}") from err
        finally:
            conn.close()

    def _fetch(self, sql, params=None):
        conn = self.get_db_connection()
        try:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(sql, params)
                return cur.fetchall()
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as err:
            logger.error(f"[DB] Query failed - error: {str(err)}, operation: fetch")
            raise IndexUnavailableError("Database unavailable during fetch") from err
        finally:
            conn.close()

    def ensure_schema(self):
        self._execute("ensure_schema", [(SCHEMA, None)])
        logger.info("[DB] Schema ready")

    # --- events ---
    def save_event(self, event):
        self._execute("save_event", [(
            "INSERT INTO events (event_id, organizer_id, name, created_at, status) VALUES (%s, %s, %s, %s, %s) "
            "ON CONFLICT (event_id) DO UPDATE SET name = EXCLUDED.name, status = EXCLUDED.status",
            (event.event_id, event.organizer_id, event.name, event.created_at, event.status.value),
        )])

    def update_event_status(self, event_id, status):
        self._execute("update_event_status", [(
            "UPDATE events SET status = %s WHERE event_id = %s", (status.value, event_id),
        )])

    def delete_event(self, event_id):
        # attendee_references, descriptors and attributions go by cascade
        self._execute("delete_event", [
            ("DELETE FROM attributions WHERE event_id = %s", (event_id,)),
            ("DELETE FROM events WHERE event_id = %s", (event_id,)),
        ])

    # --- photos and descriptors ---
    def save_photo(self, photo):
        self._execute("save_photo", [(
            "INSERT INTO photos (photo_id, event_id, storage_ref, uploaded_at, state) VALUES (%s, %s, %s, %s, %s) "
            "ON CONFLICT (photo_id) DO UPDATE SET state = EXCLUDED.state",
            (photo.photo_id, photo.event_id, photo.storage_ref, photo.uploaded_at, photo.state.value),
        )])

    def update_photo_state(self, photo_id, state):
        self._execute("update_photo_state", [(
            "UPDATE photos SET state = %s WHERE photo_id = %s", (state.value, photo_id),
        )])

    def replace_descriptors(self, photo_id, descriptors):
        """Swap a photo's descriptor set and mark it indexed in one transaction."""
        statements = [("DELETE FROM face_descriptors WHERE photo_id = %s", (photo_id,))]
        for d in descriptors:
            box = d.bounding_box
            statements.append((
                "INSERT INTO face_descriptors (descriptor_id, photo_id, vector, box_top, box_right, box_bottom, box_left, confidence) "
                "VALUES (%s, %s, %s, %s, %s, %s, %s, %s)",
                (d.descriptor_id, photo_id, [float(x) for x in d.vector], box.top, box.right, box.bottom, box.left, d.confidence),
            ))
        statements.append((
            "UPDATE photos SET state = %s WHERE photo_id = %s", (PhotoState.INDEXED.value, photo_id),
        ))
        self._execute("replace_descriptors", statements)

    def delete_photo(self, photo_id):
        self._execute("delete_photo", [("DELETE FROM photos WHERE photo_id = %s", (photo_id,))])

    # --- attendees ---
    def save_attendee(self, attendee):
        statements = [
            (
                "INSERT INTO attendees (event_id, attendee_id, registered_at) VALUES (%s, %s, %s) "
                "ON CONFLICT (event_id, attendee_id) DO NOTHING",
                (attendee.event_id, attendee.attendee_id, attendee.registered_at),
            ),
            (
                "DELETE FROM attendee_references WHERE event_id = %s AND attendee_id = %s",
                (attendee.event_id, attendee.attendee_id),
            ),
        ]
        for position, vector in enumerate(attendee.descriptors):
            statements.append((
                "INSERT INTO attendee_references (event_id, attendee_id, position, vector) VALUES (%s, %s, %s, %s)",
                (attendee.event_id, attendee.attendee_id, position, [float(x) for x in vector]),
            ))
        self._execute("save_attendee", statements)

    def delete_attendee(self, event_id, attendee_id):
        self._execute("delete_attendee", [(
            "DELETE FROM attendees WHERE event_id = %s AND attendee_id = %s", (event_id, attendee_id),
        )])

    # --- attributions ---
    def upsert_attribution(self, attribution):
        self._execute("upsert_attribution", [(
            UPSERT_ATTRIBUTION,
            (attribution.attendee_id, attribution.photo_id, attribution.event_id, attribution.score, attribution.decided_at),
        )])

    def delete_attributions_for_photo(self, photo_id):
        self._execute("delete_attributions_for_photo", [(
            "DELETE FROM attributions WHERE photo_id = %s", (photo_id,),
        )])

    def delete_attributions_for_attendee(self, attendee_id, event_id=None):
        if event_id is None:
            sql, params = "DELETE FROM attributions WHERE attendee_id = %s", (attendee_id,)
        else:
            sql, params = "DELETE FROM attributions WHERE attendee_id = %s AND event_id = %s", (attendee_id, event_id)
        self._execute("delete_attributions_for_attendee", [(sql, params)])

    # --- start-up ---
    def load_snapshot(self):
        """Read everything back for rehydrating the in-memory components."""
        events = [
            Event(event_id=r["event_id"], organizer_id=r["organizer_id"], name=r["name"],
                  created_at=r["created_at"], status=EventStatus(r["status"]))
            for r in self._fetch("SELECT * FROM events")
        ]
        photos = [
            Photo(photo_id=r["photo_id"], event_id=r["event_id"], storage_ref=r["storage_ref"],
                  uploaded_at=r["uploaded_at"], state=PhotoState(r["state"]))
            for r in self._fetch("SELECT * FROM photos")
        ]
        descriptors = [
            FaceDescriptor(
                descriptor_id=r["descriptor_id"],
                photo_id=r["photo_id"],
                vector=np.asarray(r["vector"], dtype=np.float64),
                bounding_box=BoundingBox(r["box_top"], r["box_right"], r["box_bottom"], r["box_left"]),
                confidence=r["confidence"],
            )
            for r in self._fetch("SELECT * FROM face_descriptors")
        ]
        references = {}
        for r in self._fetch("SELECT * FROM attendee_references ORDER BY position"):
            references.setdefault((r["event_id"], r["attendee_id"]), []).append(np.asarray(r["vector"], dtype=np.float64))
        attendees = [
            Attendee(attendee_id=r["attendee_id"], event_id=r["event_id"],
                     descriptors=references.get((r["event_id"], r["attendee_id"]), []),
                     registered_at=r["registered_at"])
            for r in self._fetch("SELECT * FROM attendees")
        ]
        attributions = [
            Attribution(attendee_id=r["attendee_id"], photo_id=r["photo_id"], event_id=r["event_id"],
                        score=r["score"], decided_at=r["decided_at"])
            for r in self._fetch("SELECT * FROM attributions")
        ]
        logger.info(f"[DB] Snapshot loaded - events: {len(events)}, photos: {len(photos)}, attendees: {len(attendees)}, attributions: {len(attributions)}")
        return {
            "events": events,
            "photos": photos,
            "descriptors": descriptors,
            "attendees": attendees,
            "attributions": attributions,
        }
