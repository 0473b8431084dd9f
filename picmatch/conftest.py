"""
Shared fixtures.

Core tests run against a deterministic fake extractor: image bytes of the
form ``FACES:<json>`` describe the faces directly, ``CORRUPT`` bytes fail
extraction, anything else has no faces.
"""
import json
import threading
import time

import numpy as np
import pytest

from picmatch.errors import ExtractionError
from picmatch.ledger import AttributionLedger
from picmatch.matcher import MatchResolver
from picmatch.models import BoundingBox, ExtractedFace, Principal, Role
from picmatch.photo_index import PhotoIndex
from picmatch.pipeline import IngestionPipeline
from picmatch.registry import AttendeeRegistry, EventRegistry
from picmatch.service import MatchingService
from picmatch.storage import LocalBlobStore


def face_bytes(*faces):
    """
    Encode faces for the fake extractor. Each face is a vector or a
    (vector, confidence) pair.
    """
    payload = []
    for face in faces:
        if isinstance(face, tuple):
            vector, confidence = face
        else:
            vector, confidence = face, 0.9
        payload.append({"vector": [float(x) for x in vector], "confidence": confidence})
    return b"FACES:" + json.dumps(payload).encode()


def unit_pair(similarity):
    """Two unit vectors whose cosine similarity is exactly ``similarity``."""
    a = np.array([1.0, 0.0, 0.0])
    b = np.array([similarity, np.sqrt(1.0 - similarity ** 2), 0.0])
    return a, b


class FakeExtractor:

    def __init__(self, delay=0.0):
        self.delay = delay
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self, image_bytes, owner=None):
        with self._lock:
            self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if image_bytes.startswith(b"CORRUPT"):
            raise ExtractionError("Unable to decode image")
        if not image_bytes.startswith(b"FACES:"):
            return []
        faces = []
        for i, item in enumerate(json.loads(image_bytes[len(b"FACES:"):].decode())):
            faces.append(ExtractedFace(
                bounding_box=BoundingBox(top=0, right=10 * (i + 1), bottom=10, left=10 * i),
                vector=np.asarray(item["vector"], dtype=np.float64),
                confidence=item["confidence"],
            ))
        return faces


def make_service(upload_folder, extractor=None, threshold=0.6, extraction_timeout=5.0):
    events = EventRegistry()
    attendees = AttendeeRegistry()
    photo_index = PhotoIndex()
    ledger = AttributionLedger()
    blob_store = LocalBlobStore(str(upload_folder))
    pipeline = IngestionPipeline(
        photo_index=photo_index,
        resolver=MatchResolver(photo_index, threshold=threshold),
        ledger=ledger,
        attendees=attendees,
        blob_store=blob_store,
        extractor=extractor or FakeExtractor(),
        extraction_workers=2,
        matching_workers=2,
        extraction_timeout=extraction_timeout,
    )
    return MatchingService(events, attendees, photo_index, ledger, pipeline, blob_store)


@pytest.fixture
def organizer():
    return Principal(email="organizer@example.com", role=Role.ORGANIZER)


@pytest.fixture
def service(tmp_path):
    svc = make_service(tmp_path / "uploads")
    yield svc
    svc.shutdown(wait=True)
