"""
Ingestion pipeline.

Photos:  uploaded -> extracting -> indexed -> matched   (or failed)
Selfies: submitted -> extracting -> matching -> attributed (or failed)

Each upload is one task. Extraction runs on its own bounded pool so it can
be rate limited separately from matching. When a photo reaches ``indexed``
a photo-indexed message is handed to the matching pool, which scores the
photo against every attendee already registered for the event. Selfies only
scan photos that are indexed at the time; later photos reach the attendee
through that photo-side rescan.
"""
import logging
import threading
import traceback
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import numpy as np

from picmatch.errors import (
    EntityNotFoundError,
    ExtractionError,
    IndexUnavailableError,
    InvalidStateError,
    PicMatchError,
)
from picmatch.matcher import select_query_face
from picmatch.models import FaceDescriptor, PhotoState, ProcessingState, utcnow

logger = logging.getLogger(__name__)

PHOTO = "photo"
SELFIE = "selfie"

TRANSITIONS = {
    PHOTO: {
        ProcessingState.UPLOADED: {ProcessingState.EXTRACTING, ProcessingState.FAILED},
        ProcessingState.EXTRACTING: {ProcessingState.INDEXED, ProcessingState.FAILED},
        ProcessingState.INDEXED: {ProcessingState.MATCHED, ProcessingState.FAILED},
        ProcessingState.MATCHED: set(),
        ProcessingState.FAILED: set(),
    },
    SELFIE: {
        ProcessingState.SUBMITTED: {ProcessingState.EXTRACTING, ProcessingState.FAILED},
        ProcessingState.EXTRACTING: {ProcessingState.MATCHING, ProcessingState.FAILED},
        ProcessingState.MATCHING: {ProcessingState.ATTRIBUTED, ProcessingState.FAILED},
        ProcessingState.ATTRIBUTED: set(),
        ProcessingState.FAILED: set(),
    },
}

INITIAL_STATE = {PHOTO: ProcessingState.UPLOADED, SELFIE: ProcessingState.SUBMITTED}


@dataclass
class EntityStatus:
    entity_id: str
    kind: str
    event_id: str
    storage_ref: str
    state: ProcessingState
    attendee_id: Optional[str] = None
    failed_at: Optional[ProcessingState] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    attempts: int = 1
    in_flight: bool = False
    query_vector: Optional[np.ndarray] = None
    reference_added: bool = False
    matches: int = 0
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self):
        data = {
            "entity_id": self.entity_id,
            "kind": self.kind,
            "event_id": self.event_id,
            "state": self.state.value,
            "attempts": self.attempts,
            "updated_at": self.updated_at.isoformat(),
        }
        if self.kind == SELFIE:
            data["attendee_id"] = self.attendee_id
            data["matches"] = self.matches
        if self.error:
            data["error"] = self.error
            data["error_code"] = self.error_code
        return data


class StatusTracker:
    """Thread-safe processing state per photo or selfie submission."""

    def __init__(self):
        self._lock = threading.Lock()
        self._statuses = {}

    def create(self, entity_id, kind, event_id, storage_ref, attendee_id=None):
        status = EntityStatus(
            entity_id=entity_id,
            kind=kind,
            event_id=event_id,
            storage_ref=storage_ref,
            state=INITIAL_STATE[kind],
            attendee_id=attendee_id,
        )
        with self._lock:
            self._statuses[entity_id] = status
        return status

    def get(self, entity_id):
        with self._lock:
            status = self._statuses.get(entity_id)
        if status is None:
            raise EntityNotFoundError(f"Unknown entity: {entity_id}")
        return status

    def find(self, entity_id):
        with self._lock:
            return self._statuses.get(entity_id)

    def transition(self, entity_id, new_state):
        with self._lock:
            status = self._statuses.get(entity_id)
            if status is None:
                raise EntityNotFoundError(f"Unknown entity: {entity_id}")
            allowed = TRANSITIONS[status.kind][status.state]
            if new_state not in allowed:
                raise InvalidStateError(f"{status.kind} {entity_id}: {status.state.value} -> {new_state.value} is not allowed")
            if new_state is ProcessingState.FAILED:
                status.failed_at = status.state
            status.state = new_state
            status.updated_at = utcnow()
        logger.info(f"[PIPELINE] State change - entity_id: {entity_id}, state: {new_state.value}, operation: transition")
        return status

    def fail(self, entity_id, error):
        status = self.transition(entity_id, ProcessingState.FAILED)
        with self._lock:
            status.error = str(error)
            status.error_code = getattr(error, "error_code", "INTERNAL_ERROR")
        return status

    def rewind(self, entity_id, state, reason=None):
        """
        Move an entity back to a resting state. Only used for retry and for
        storage outages, never as a regular transition.
        """
        with self._lock:
            status = self._statuses.get(entity_id)
            if status is None:
                return None
            status.state = state
            status.updated_at = utcnow()
            if reason is None:
                status.error = None
                status.error_code = None
                status.failed_at = None
            else:
                status.error = str(reason)
                status.error_code = getattr(reason, "error_code", "INTERNAL_ERROR")
        logger.info(f"[PIPELINE] State rewound - entity_id: {entity_id}, state: {state.value}, operation: rewind")
        return status

    def set_flag(self, entity_id, **values):
        """Update bookkeeping fields. Entities forgotten meanwhile are skipped."""
        with self._lock:
            status = self._statuses.get(entity_id)
            if status is None:
                return None
            for key, value in values.items():
                setattr(status, key, value)
        return status

    def selfies_for(self, event_id, attendee_id):
        with self._lock:
            return [
                s for s in self._statuses.values()
                if s.kind == SELFIE and s.event_id == event_id and s.attendee_id == attendee_id
            ]

    def forget(self, entity_id):
        with self._lock:
            self._statuses.pop(entity_id, None)


class IngestionPipeline:

    def __init__(
        self,
        photo_index,
        resolver,
        ledger,
        attendees,
        blob_store,
        extractor,
        extraction_workers=2,
        matching_workers=4,
        extraction_timeout=60.0,
    ):
        self.photo_index = photo_index
        self.resolver = resolver
        self.ledger = ledger
        self.attendees = attendees
        self.blob_store = blob_store
        self.extractor = extractor
        self.extraction_timeout = extraction_timeout
        self.status = StatusTracker()

        self._task_pool = ThreadPoolExecutor(max_workers=extraction_workers + matching_workers, thread_name_prefix="ingest")
        self._extract_pool = ThreadPoolExecutor(max_workers=extraction_workers, thread_name_prefix="extract")
        self._match_pool = ThreadPoolExecutor(max_workers=matching_workers, thread_name_prefix="match")

        self._pending = 0
        self._idle = threading.Condition()

    # ------------------------------------------------------------------
    # Task bookkeeping
    # ------------------------------------------------------------------
    def _submit(self, pool, func, *args):
        with self._idle:
            self._pending += 1
        try:
            future = pool.submit(func, *args)
        except RuntimeError:
            self._task_done(None)
            raise
        future.add_done_callback(self._task_done)
        return future

    def _task_done(self, future):
        error = None if future is None or future.cancelled() else future.exception()
        if error is not None:
            logger.error(f"[PIPELINE] Task crashed - error: {type(error).__name__}: {str(error)}, operation: task_done")
        with self._idle:
            self._pending -= 1
            if self._pending == 0:
                self._idle.notify_all()

    def wait_until_idle(self, timeout=None):
        """Block until every queued task, including chained rescans, has finished."""
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout=timeout)

    def shutdown(self, wait=True):
        self._task_pool.shutdown(wait=wait)
        self._match_pool.shutdown(wait=wait)
        self._extract_pool.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def submit_photo(self, photo):
        self.status.create(photo.photo_id, PHOTO, photo.event_id, photo.storage_ref)
        self.status.set_flag(photo.photo_id, in_flight=True)
        self._submit(self._task_pool, self._run_photo, photo.photo_id)
        return photo.photo_id

    def submit_selfie(self, submission_id, event_id, attendee_id, storage_ref):
        self.status.create(submission_id, SELFIE, event_id, storage_ref, attendee_id=attendee_id)
        self.status.set_flag(submission_id, in_flight=True)
        self._submit(self._task_pool, self._run_selfie, submission_id)
        return submission_id

    def has_active_selfie(self, event_id, attendee_id):
        return any(
            s.state is not ProcessingState.FAILED
            for s in self.status.selfies_for(event_id, attendee_id)
        )

    def retry(self, entity_id):
        """
        Restart a failed entity from the last resting state before the
        failed step. Entities parked by a storage outage can be retried too.
        """
        status = self.status.get(entity_id)
        if status.in_flight:
            raise InvalidStateError(f"{entity_id} is still being processed")
        parked = status.state is INITIAL_STATE[status.kind] and status.error is not None
        if status.state is not ProcessingState.FAILED and not parked:
            raise InvalidStateError(f"{entity_id} is {status.state.value}; only failed entities can be retried")

        self.status.set_flag(entity_id, attempts=status.attempts + 1, in_flight=True)
        if status.kind == PHOTO:
            if status.failed_at is ProcessingState.INDEXED:
                self.status.rewind(entity_id, ProcessingState.INDEXED)
                self._submit(self._match_pool, self._rescan_photo, entity_id)
            else:
                self.photo_index.set_state(entity_id, PhotoState.PENDING)
                self.status.rewind(entity_id, ProcessingState.UPLOADED)
                self._submit(self._task_pool, self._run_photo, entity_id)
        else:
            self.status.rewind(entity_id, ProcessingState.SUBMITTED)
            self._submit(self._task_pool, self._run_selfie, entity_id)

        logger.info(f"[PIPELINE] Retry scheduled - entity_id: {entity_id}, kind: {status.kind}, attempt: {status.attempts}, operation: retry")
        return self.status.get(entity_id)

    def resume_pending(self):
        """Re-enqueue photos left in the pending state, e.g. after a restart."""
        resumed = 0
        for photo in self.photo_index.all_photos(state=PhotoState.PENDING):
            existing = self.status.find(photo.photo_id)
            if existing is not None and existing.in_flight:
                continue
            self.submit_photo(photo)
            resumed += 1
        logger.info(f"[PIPELINE] Resumed pending photos - count: {resumed}, operation: resume_pending")
        return resumed

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------
    def _extract(self, image_bytes, owner):
        future = self._extract_pool.submit(self.extractor, image_bytes, owner)
        try:
            return future.result(timeout=self.extraction_timeout)
        except FutureTimeoutError:
            # The extraction thread keeps running to completion; its result is discarded
            raise ExtractionError(f"Extraction timed out after {self.extraction_timeout}s")

    # ------------------------------------------------------------------
    # Photo side
    # ------------------------------------------------------------------
    def _run_photo(self, photo_id):
        status = self.status.find(photo_id)
        if status is None:
            logger.info(f"[PIPELINE] Photo removed before processing - photo_id: {photo_id}, operation: run_photo")
            return
        event_id = status.event_id
        logger.info(f"[PIPELINE] Photo task started - event_id: {event_id}, photo_id: {photo_id}, operation: run_photo")
        try:
            self.status.transition(photo_id, ProcessingState.EXTRACTING)
            image_bytes = self.blob_store.get(status.storage_ref)
            faces = self._extract(image_bytes, photo_id)
            descriptors = [FaceDescriptor.from_face(photo_id, face, i) for i, face in enumerate(faces)]
            self.photo_index.insert(photo_id, descriptors)
            self.status.transition(photo_id, ProcessingState.INDEXED)
        except IndexUnavailableError as e:
            logger.error(f"[PIPELINE] Storage unavailable, photo parked - event_id: {event_id}, photo_id: {photo_id}, error: {str(e)}, operation: run_photo")
            self.status.rewind(photo_id, ProcessingState.UPLOADED, reason=e)
            self.status.set_flag(photo_id, in_flight=False)
            return
        except Exception as e:
            self._fail_photo(photo_id, event_id, e)
            return

        logger.info(f"[PIPELINE] Photo indexed, scheduling rescan - event_id: {event_id}, photo_id: {photo_id}, faces: {len(descriptors)}, operation: run_photo")
        self._submit(self._match_pool, self._rescan_photo, photo_id)

    def _rescan_photo(self, photo_id):
        """Score one newly indexed photo against every registered attendee of its event."""
        status = self.status.find(photo_id)
        if status is None:
            logger.info(f"[PIPELINE] Photo removed before rescan - photo_id: {photo_id}, operation: rescan_photo")
            return
        event_id = status.event_id
        try:
            attributed = 0
            for attendee in self.attendees.attendees(event_id):
                matches = self.resolver.resolve(event_id, attendee.descriptors, photo_ids=[photo_id])
                for match in matches:
                    attribution, _ = self.ledger.record_match(attendee.attendee_id, match.photo_id, match.score, event_id=event_id)
                    if attribution is not None:
                        attributed += 1
            self.status.transition(photo_id, ProcessingState.MATCHED)
            self.status.set_flag(photo_id, in_flight=False, matches=attributed)
            logger.info(f"[PIPELINE] Photo matched - event_id: {event_id}, photo_id: {photo_id}, attendees_attributed: {attributed}, operation: rescan_photo")
        except Exception as e:
            self._fail_photo(photo_id, event_id, e)

    def _fail_photo(self, photo_id, event_id, error):
        if isinstance(error, PicMatchError):
            logger.error(f"[PIPELINE] Photo failed - event_id: {event_id}, photo_id: {photo_id}, error: {str(error)}, operation: run_photo")
        else:
            logger.error(f"[PIPELINE] Unexpected photo failure - event_id: {event_id}, photo_id: {photo_id}, error: {str(error)}, operation: run_photo")
            logger.error(f"[PIPELINE] Traceback: {traceback.format_exc()}")
        try:
            status = self.status.fail(photo_id, error)
            if status.failed_at is not ProcessingState.INDEXED:
                self.photo_index.mark_failed(photo_id)
        except PicMatchError as e:
            # Photo deleted while processing
            logger.warning(f"[PIPELINE] Could not record failure - photo_id: {photo_id}, error: {str(e)}, operation: run_photo")
        finally:
            self.status.set_flag(photo_id, in_flight=False)

    # ------------------------------------------------------------------
    # Selfie side
    # ------------------------------------------------------------------
    def _run_selfie(self, submission_id):
        status = self.status.find(submission_id)
        if status is None:
            logger.info(f"[PIPELINE] Selfie removed before processing - submission_id: {submission_id}, operation: run_selfie")
            return
        event_id, attendee_id = status.event_id, status.attendee_id
        logger.info(f"[PIPELINE] Selfie task started - event_id: {event_id}, attendee_id: {attendee_id}, submission_id: {submission_id}, operation: run_selfie")
        try:
            self.status.transition(submission_id, ProcessingState.EXTRACTING)
            if status.query_vector is None:
                image_bytes = self.blob_store.get(status.storage_ref)
                faces = self._extract(image_bytes, submission_id)
                face = select_query_face(faces, owner=submission_id)
                self.status.set_flag(submission_id, query_vector=face.vector)
            if not status.reference_added:
                # Reference becomes visible before the index is read, so a
                # concurrently indexed photo is seen by this scan or by its rescan
                self.attendees.add_reference(event_id, attendee_id, status.query_vector)
                self.status.set_flag(submission_id, reference_added=True)

            self.status.transition(submission_id, ProcessingState.MATCHING)
            attendee = self.attendees.get(event_id, attendee_id)
            attributed = 0
            for match in self.resolver.resolve(event_id, attendee.descriptors):
                attribution, _ = self.ledger.record_match(attendee_id, match.photo_id, match.score, event_id=event_id)
                if attribution is not None:
                    attributed += 1
            self.status.transition(submission_id, ProcessingState.ATTRIBUTED)
            self.status.set_flag(submission_id, in_flight=False, matches=attributed)
            logger.info(f"[PIPELINE] Selfie attributed - event_id: {event_id}, attendee_id: {attendee_id}, matches: {attributed}, operation: run_selfie")
        except IndexUnavailableError as e:
            logger.error(f"[PIPELINE] Storage unavailable, selfie parked - event_id: {event_id}, submission_id: {submission_id}, error: {str(e)}, operation: run_selfie")
            self.status.rewind(submission_id, ProcessingState.SUBMITTED, reason=e)
            self.status.set_flag(submission_id, in_flight=False)
        except Exception as e:
            if isinstance(e, PicMatchError):
                logger.error(f"[PIPELINE] Selfie failed - event_id: {event_id}, submission_id: {submission_id}, error: {str(e)}, operation: run_selfie")
            else:
                logger.error(f"[PIPELINE] Unexpected selfie failure - event_id: {event_id}, submission_id: {submission_id}, error: {str(e)}, operation: run_selfie")
                logger.error(f"[PIPELINE] Traceback: {traceback.format_exc()}")
            self.status.fail(submission_id, e)
            self.status.set_flag(submission_id, in_flight=False)
