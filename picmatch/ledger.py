"""
Attribution Ledger: which attendee appears in which photo.

At most one attribution exists per (attendee, photo). Upserts follow a
monotonic-best rule: a stored score is only ever replaced by a higher one.
Locking is per photo, so upserts for different photos never wait on each
other. A removed photo is remembered and never receives attributions again,
even from a match that was scored before the removal.
"""
import itertools
import logging
import threading
from collections import defaultdict

from picmatch.models import Attribution, utcnow
from picmatch.retry import WriteThrough

logger = logging.getLogger(__name__)


class AttributionLedger(WriteThrough):

    def __init__(self, repository=None, retry_attempts=3, retry_backoff=0.5, clock=utcnow, **kwargs):
        super().__init__(repository, retry_attempts, retry_backoff, **kwargs)
        self._clock = clock
        self._guard = threading.Lock()
        self._photo_locks = {}
        self._removed_photos = set()
        self._records = {}                      # (attendee_id, photo_id) -> Attribution
        self._by_attendee = defaultdict(set)    # attendee_id -> {photo_id}
        self._by_photo = defaultdict(set)       # photo_id -> {attendee_id}
        self._sequence = {}                     # pair -> write order, breaks timestamp ties
        self._counter = itertools.count(1)

    def _lock_for(self, photo_id):
        with self._guard:
            lock = self._photo_locks.get(photo_id)
            if lock is None:
                lock = self._photo_locks[photo_id] = threading.Lock()
            return lock

    def record_match(self, attendee_id, photo_id, score, event_id=""):
        """
        Insert or improve the attribution for a pair.
        Returns the stored Attribution and whether it changed. For a photo
        that has been removed nothing is stored and ``(None, False)`` is
        returned.
        """
        key = (attendee_id, photo_id)
        score = float(score)
        with self._lock_for(photo_id):
            with self._guard:
                removed = photo_id in self._removed_photos
                existing = self._records.get(key)
            if removed:
                logger.info(f"[ATTRIBUTION] Match for removed photo dropped - attendee_id: {attendee_id}, photo_id: {photo_id}, operation: record_match")
                return None, False
            if existing is not None and score <= existing.score:
                logger.info(f"[ATTRIBUTION] Kept existing score - attendee_id: {attendee_id}, photo_id: {photo_id}, stored: {existing.score:.3f}, offered: {score:.3f}, operation: record_match")
                return existing, False

            attribution = Attribution(
                attendee_id=attendee_id,
                photo_id=photo_id,
                event_id=event_id or (existing.event_id if existing else ""),
                score=score,
                decided_at=self._clock(),
            )
            self._persist("upsert_attribution", attribution)
            with self._guard:
                self._records[key] = attribution
                self._by_attendee[attendee_id].add(photo_id)
                self._by_photo[photo_id].add(attendee_id)
                self._sequence[key] = next(self._counter)

        logger.info(f"[ATTRIBUTION] Attribution recorded - attendee_id: {attendee_id}, photo_id: {photo_id}, score: {score:.3f}, operation: record_match")
        return attribution, True

    def get(self, attendee_id, photo_id):
        with self._guard:
            return self._records.get((attendee_id, photo_id))

    def photos_for(self, attendee_id, event_id=None):
        """Attributions of an attendee, most recently decided first."""
        with self._guard:
            keys = [(attendee_id, pid) for pid in self._by_attendee.get(attendee_id, ())]
            rows = [(self._records[k], self._sequence.get(k, 0)) for k in keys]
        if event_id is not None:
            rows = [r for r in rows if r[0].event_id == event_id]
        rows.sort(key=lambda r: (r[0].decided_at, r[1]), reverse=True)
        return [attribution for attribution, _ in rows]

    def attendees_for(self, photo_id):
        """Attributions pointing at a photo, highest score first."""
        with self._guard:
            rows = [self._records[(aid, photo_id)] for aid in self._by_photo.get(photo_id, ())]
        return sorted(rows, key=lambda a: (-a.score, a.attendee_id))

    def remove_photo(self, photo_id):
        """Drop a photo's attributions and refuse any later match for it."""
        with self._lock_for(photo_id):
            with self._guard:
                self._removed_photos.add(photo_id)
            self._persist("delete_attributions_for_photo", photo_id)
            with self._guard:
                attendees = self._by_photo.pop(photo_id, set())
                for attendee_id in attendees:
                    self._drop_pair(attendee_id, photo_id)
                    self._by_attendee[attendee_id].discard(photo_id)
        return len(attendees)

    def remove_attendee(self, attendee_id, event_id=None):
        """Drop an attendee's attributions, optionally only within one event."""
        self._persist("delete_attributions_for_attendee", attendee_id, event_id)
        removed = 0
        with self._guard:
            for photo_id in list(self._by_attendee.get(attendee_id, ())):
                if event_id is not None and self._records[(attendee_id, photo_id)].event_id != event_id:
                    continue
                self._drop_pair(attendee_id, photo_id)
                self._by_attendee[attendee_id].discard(photo_id)
                self._by_photo[photo_id].discard(attendee_id)
                removed += 1
        return removed

    def _drop_pair(self, attendee_id, photo_id):
        key = (attendee_id, photo_id)
        self._records.pop(key, None)
        self._sequence.pop(key, None)

    def __len__(self):
        with self._guard:
            return len(self._records)

    def load(self, attributions):
        with self._guard:
            for attribution in sorted(attributions, key=lambda a: a.decided_at):
                key = (attribution.attendee_id, attribution.photo_id)
                self._records[key] = attribution
                self._by_attendee[attribution.attendee_id].add(attribution.photo_id)
                self._by_photo[attribution.photo_id].add(attribution.attendee_id)
                self._sequence[key] = next(self._counter)
