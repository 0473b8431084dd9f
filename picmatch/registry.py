"""
Events and attendee registrations.

An attendee is keyed by account email and registered at most once per
event; registering again for the same event is rejected and the existing
record is kept.
"""
import logging
import threading
from dataclasses import replace

import numpy as np

from picmatch.errors import (
    DuplicateRegistrationError,
    EntityNotFoundError,
    EventClosedError,
    EventNotFoundError,
)
from picmatch.models import Attendee, Event, EventStatus, new_id
from picmatch.retry import WriteThrough

logger = logging.getLogger(__name__)


class EventRegistry(WriteThrough):

    def __init__(self, repository=None, retry_attempts=3, retry_backoff=0.5, **kwargs):
        super().__init__(repository, retry_attempts, retry_backoff, **kwargs)
        self._lock = threading.Lock()
        self._events = {}

    def create(self, organizer_id, name=""):
        event = Event(event_id=new_id("evt"), organizer_id=organizer_id, name=name)
        self._persist("save_event", event)
        with self._lock:
            self._events[event.event_id] = event
        logger.info(f"[REGISTRY] Event created - event_id: {event.event_id}, organizer_id: {organizer_id}, operation: create_event")
        return event

    def get(self, event_id):
        with self._lock:
            event = self._events.get(event_id)
        if event is None:
            raise EventNotFoundError(f"Event not found: {event_id}")
        return event

    def require_open(self, event_id):
        event = self.get(event_id)
        if not event.is_open:
            raise EventClosedError(f"Event {event_id} is closed for uploads")
        return event

    def close(self, event_id):
        event = self.get(event_id)
        if not event.is_open:
            return event
        self._persist("update_event_status", event_id, EventStatus.CLOSED)
        with self._lock:
            current = self._events.get(event_id)
            if current is None:
                raise EventNotFoundError(f"Event not found: {event_id}")
            event = self._events[event_id] = replace(current, status=EventStatus.CLOSED)
        logger.info(f"[REGISTRY] Event closed - event_id: {event_id}, operation: close_event")
        return event

    def delete(self, event_id):
        event = self.get(event_id)
        self._persist("delete_event", event_id)
        with self._lock:
            self._events.pop(event_id, None)
        logger.info(f"[REGISTRY] Event deleted - event_id: {event_id}, operation: delete_event")
        return event

    def list_for(self, organizer_id):
        with self._lock:
            events = [e for e in self._events.values() if e.organizer_id == organizer_id]
        return sorted(events, key=lambda e: e.created_at, reverse=True)

    def load(self, events):
        with self._lock:
            for event in events:
                self._events[event.event_id] = event


class AttendeeRegistry(WriteThrough):
    """
    Registrations keyed by (event, account). Writes for one key hold that
    key's lock while they persist; the registry-wide lock only guards the
    in-memory maps, so a slow store never stalls other registrations.
    """

    def __init__(self, repository=None, retry_attempts=3, retry_backoff=0.5, **kwargs):
        super().__init__(repository, retry_attempts, retry_backoff, **kwargs)
        self._lock = threading.Lock()
        self._key_locks = {}
        self._attendees = {}    # (event_id, attendee_id) -> Attendee

    def _lock_for(self, key):
        with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    def register(self, event_id, attendee_id):
        """Create the (account, event) record. Raises on a second registration."""
        key = (event_id, attendee_id)
        with self._lock_for(key):
            if self.is_registered(event_id, attendee_id):
                logger.warning(f"[REGISTRY] Duplicate registration rejected - event_id: {event_id}, attendee_id: {attendee_id}, operation: register")
                raise DuplicateRegistrationError(f"{attendee_id} is already registered for event {event_id}")
            attendee = Attendee(attendee_id=attendee_id, event_id=event_id)
            self._persist("save_attendee", attendee)
            with self._lock:
                self._attendees[key] = attendee
        logger.info(f"[REGISTRY] Attendee registered - event_id: {event_id}, attendee_id: {attendee_id}, operation: register")
        return attendee

    def get(self, event_id, attendee_id):
        with self._lock:
            attendee = self._attendees.get((event_id, attendee_id))
        if attendee is None:
            raise EntityNotFoundError(f"{attendee_id} is not registered for event {event_id}")
        return attendee

    def is_registered(self, event_id, attendee_id):
        with self._lock:
            return (event_id, attendee_id) in self._attendees

    def add_reference(self, event_id, attendee_id, vector):
        """Attach a selfie descriptor. Each reference is kept and compared individually."""
        key = (event_id, attendee_id)
        with self._lock_for(key):
            attendee = self.get(event_id, attendee_id)
            updated = replace(attendee, descriptors=attendee.descriptors + [np.asarray(vector, dtype=np.float64)])
            self._persist("save_attendee", updated)
            with self._lock:
                if key in self._attendees:
                    self._attendees[key] = updated
        return updated

    def attendees(self, event_id, with_reference=True):
        """Registered attendees of an event, earliest registration first."""
        with self._lock:
            rows = [a for (eid, _), a in self._attendees.items() if eid == event_id]
        if with_reference:
            rows = [a for a in rows if a.has_reference]
        return sorted(rows, key=lambda a: a.registered_at)

    def events_for(self, attendee_id):
        with self._lock:
            return [eid for (eid, aid) in self._attendees if aid == attendee_id]

    def remove(self, event_id, attendee_id):
        key = (event_id, attendee_id)
        with self._lock_for(key):
            self.get(event_id, attendee_id)
            self._persist("delete_attendee", event_id, attendee_id)
            with self._lock:
                self._key_locks.pop(key, None)
                return self._attendees.pop(key)

    def drop_event(self, event_id):
        with self._lock:
            keys = [k for k in self._attendees if k[0] == event_id]
            for key in keys:
                self._key_locks.pop(key, None)
            return [self._attendees.pop(k) for k in keys]

    def load(self, attendees):
        with self._lock:
            for attendee in attendees:
                self._attendees[(attendee.event_id, attendee.attendee_id)] = attendee
