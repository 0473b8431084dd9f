"""
Per-event store of photos and their face descriptors.

Every event is its own partition with its own lock; there is no API that
reads across partitions, so an attendee of one event can never be matched
against another event's photos.
"""
import logging
import threading
from dataclasses import replace

from picmatch.errors import EntityNotFoundError
from picmatch.models import PhotoState
from picmatch.retry import WriteThrough

logger = logging.getLogger(__name__)


class _Partition:
    def __init__(self):
        self.lock = threading.RLock()
        self.photos = {}        # photo_id -> Photo, insertion ordered
        self.descriptors = {}   # photo_id -> tuple(FaceDescriptor)


class PhotoIndex(WriteThrough):

    def __init__(self, repository=None, retry_attempts=3, retry_backoff=0.5, **kwargs):
        super().__init__(repository, retry_attempts, retry_backoff, **kwargs)
        self._registry_lock = threading.Lock()
        self._partitions = {}
        self._photo_events = {}

    def _partition(self, event_id, create=False):
        with self._registry_lock:
            partition = self._partitions.get(event_id)
            if partition is None and create:
                partition = self._partitions[event_id] = _Partition()
            return partition

    def _locate(self, photo_id):
        with self._registry_lock:
            event_id = self._photo_events.get(photo_id)
            partition = self._partitions.get(event_id) if event_id is not None else None
        if partition is None:
            raise EntityNotFoundError(f"Unknown photo: {photo_id}")
        return event_id, partition

    # ------------------------------------------------------------------
    # Photo records
    # ------------------------------------------------------------------
    def add_photo(self, photo):
        """Register a freshly uploaded photo in the pending state."""
        self._persist("save_photo", photo)
        partition = self._partition(photo.event_id, create=True)
        with partition.lock:
            partition.photos[photo.photo_id] = photo
            partition.descriptors.setdefault(photo.photo_id, ())
        with self._registry_lock:
            self._photo_events[photo.photo_id] = photo.event_id
        logger.info(f"[PHOTO_INDEX] Photo registered - event_id: {photo.event_id}, photo_id: {photo.photo_id}, operation: add_photo")
        return photo

    def get_photo(self, photo_id):
        _, partition = self._locate(photo_id)
        with partition.lock:
            photo = partition.photos.get(photo_id)
        if photo is None:
            raise EntityNotFoundError(f"Unknown photo: {photo_id}")
        return photo

    def photos(self, event_id, state=None):
        """Photos of one event, earliest upload first."""
        partition = self._partition(event_id)
        if partition is None:
            return []
        with partition.lock:
            photos = list(partition.photos.values())
        if state is not None:
            photos = [p for p in photos if p.state is state]
        return sorted(photos, key=lambda p: p.uploaded_at)

    def set_state(self, photo_id, state):
        _, partition = self._locate(photo_id)
        with partition.lock:
            photo = partition.photos[photo_id]
            if photo.state is state:
                return photo
            self._persist("update_photo_state", photo_id, state)
            updated = partition.photos[photo_id] = replace(photo, state=state)
        return updated

    def mark_failed(self, photo_id):
        return self.set_state(photo_id, PhotoState.FAILED)

    # ------------------------------------------------------------------
    # Descriptors
    # ------------------------------------------------------------------
    def insert(self, photo_id, descriptors):
        """
        Replace the descriptor set of a photo and mark it indexed.

        Idempotent: inserting the same photo again swaps the whole set, so
        readers see either the old set or the new one, never a mix.
        """
        descriptors = tuple(descriptors)
        for descriptor in descriptors:
            if descriptor.photo_id != photo_id:
                raise ValueError(f"Descriptor {descriptor.descriptor_id} belongs to photo {descriptor.photo_id}, not {photo_id}")

        event_id, partition = self._locate(photo_id)
        with partition.lock:
            if photo_id not in partition.photos:
                raise EntityNotFoundError(f"Unknown photo: {photo_id}")
            # Storage first: a failed write leaves the previous set visible
            self._persist("replace_descriptors", photo_id, descriptors)
            replaced = len(partition.descriptors.get(photo_id, ()))
            partition.descriptors[photo_id] = descriptors
            photo = partition.photos[photo_id] = replace(partition.photos[photo_id], state=PhotoState.INDEXED)

        logger.info(f"[PHOTO_INDEX] Photo indexed - event_id: {event_id}, photo_id: {photo_id}, faces: {len(descriptors)}, replaced: {replaced}, operation: insert")
        return photo

    def descriptors_for(self, photo_id):
        _, partition = self._locate(photo_id)
        with partition.lock:
            return list(partition.descriptors.get(photo_id, ()))

    def query(self, event_id):
        """
        Snapshot of every descriptor of the event's indexed photos.
        Iteration order is photo registration order, then face order.
        """
        partition = self._partition(event_id)
        if partition is None:
            return []
        with partition.lock:
            return [
                descriptor
                for photo_id, photo in partition.photos.items()
                if photo.state is PhotoState.INDEXED
                for descriptor in partition.descriptors.get(photo_id, ())
            ]

    def indexed_photos(self, event_id):
        """Mapping photo_id -> Photo for the indexed photos of an event."""
        partition = self._partition(event_id)
        if partition is None:
            return {}
        with partition.lock:
            return {pid: p for pid, p in partition.photos.items() if p.state is PhotoState.INDEXED}

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------
    def remove(self, photo_id):
        """Delete a photo and its descriptors. Irreversible."""
        event_id, partition = self._locate(photo_id)
        with partition.lock:
            self._persist("delete_photo", photo_id)
            photo = partition.photos.pop(photo_id, None)
            partition.descriptors.pop(photo_id, None)
        with self._registry_lock:
            self._photo_events.pop(photo_id, None)
        logger.info(f"[PHOTO_INDEX] Photo removed - event_id: {event_id}, photo_id: {photo_id}, operation: remove")
        return photo

    def drop_event(self, event_id):
        """Remove a whole partition, returning the photos it held."""
        with self._registry_lock:
            partition = self._partitions.pop(event_id, None)
            if partition is None:
                return []
            for photo_id in list(partition.photos):
                self._photo_events.pop(photo_id, None)
        with partition.lock:
            photos = list(partition.photos.values())
            partition.photos.clear()
            partition.descriptors.clear()
        logger.info(f"[PHOTO_INDEX] Partition dropped - event_id: {event_id}, photos: {len(photos)}, operation: drop_event")
        return photos

    def load(self, photos, descriptors):
        """Rehydrate from a repository snapshot without writing back."""
        by_photo = {}
        for descriptor in descriptors:
            by_photo.setdefault(descriptor.photo_id, []).append(descriptor)
        for photo in sorted(photos, key=lambda p: p.uploaded_at):
            partition = self._partition(photo.event_id, create=True)
            with partition.lock:
                partition.photos[photo.photo_id] = photo
                partition.descriptors[photo.photo_id] = tuple(
                    sorted(by_photo.get(photo.photo_id, []), key=lambda d: d.descriptor_id)
                )
            with self._registry_lock:
                self._photo_events[photo.photo_id] = photo.event_id

    def all_photos(self, state=None):
        """Photos across every partition, for start-up recovery only."""
        with self._registry_lock:
            partitions = list(self._partitions.values())
        photos = []
        for partition in partitions:
            with partition.lock:
                photos.extend(partition.photos.values())
        if state is not None:
            photos = [p for p in photos if p.state is state]
        return sorted(photos, key=lambda p: p.uploaded_at)
