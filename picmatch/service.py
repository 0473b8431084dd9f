"""
Core operations exposed to the web layer.

Every call takes the authenticated Principal explicitly; nothing here reads
ambient session state.
"""
import logging
from io import BytesIO

import qrcode

from picmatch.errors import (
    DuplicateRegistrationError,
    EntityNotFoundError,
    IndexUnavailableError,
    PermissionDeniedError,
)
from picmatch.ledger import AttributionLedger
from picmatch.matcher import MatchResolver
from picmatch.models import Photo, PhotoRef, PhotoState, ProcessingState, new_id
from picmatch.photo_index import PhotoIndex
from picmatch.pipeline import PHOTO, IngestionPipeline
from picmatch.registry import AttendeeRegistry, EventRegistry
from picmatch.storage import ALLOWED_IMAGE_EXTENSIONS, LocalBlobStore, validate_upload

logger = logging.getLogger(__name__)


class MatchingService:

    def __init__(self, events, attendees, photo_index, ledger, pipeline, blob_store,
                 max_upload_mb=10, public_base_url="http://localhost:8080"):
        self.events = events
        self.attendees = attendees
        self.photo_index = photo_index
        self.ledger = ledger
        self.pipeline = pipeline
        self.blob_store = blob_store
        self.max_upload_mb = max_upload_mb
        self.public_base_url = public_base_url

    # ------------------------------------------------------------------
    # Authorization helpers
    # ------------------------------------------------------------------
    def _require_organizer(self, principal):
        if not principal.is_organizer:
            raise PermissionDeniedError("Only organizers can do this")

    def _owned_event(self, principal, event_id):
        event = self.events.get(event_id)
        if event.organizer_id != principal.email:
            logger.warning(f"[SECURITY] Event access denied - event_id: {event_id}, principal: {principal.email}, operation: owned_event")
            raise PermissionDeniedError("You do not own this event")
        return event

    def _authorize_entity(self, principal, status):
        if status.kind == PHOTO:
            self._owned_event(principal, status.event_id)
        elif status.attendee_id != principal.email:
            raise PermissionDeniedError("This submission belongs to another account")

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    def create_event(self, principal, name=""):
        self._require_organizer(principal)
        return self.events.create(principal.email, name=name)

    def close_event(self, principal, event_id):
        self._owned_event(principal, event_id)
        return self.events.close(event_id)

    def list_events(self, principal):
        return self.events.list_for(principal.email)

    def delete_event(self, principal, event_id):
        """Cascade: photos, descriptors, attendees, attributions and stored images."""
        self._owned_event(principal, event_id)
        photos = self.photo_index.drop_event(event_id)
        for photo in photos:
            self.ledger.remove_photo(photo.photo_id)
            self.pipeline.status.forget(photo.photo_id)
        for attendee in self.attendees.drop_event(event_id):
            self.ledger.remove_attendee(attendee.attendee_id, event_id=event_id)
        self.blob_store.delete_event(event_id)
        event = self.events.delete(event_id)
        logger.info(f"[API] Event deleted with cascade - event_id: {event_id}, photos: {len(photos)}, operation: delete_event")
        return event

    def event_qr_png(self, event_id):
        """PNG bytes of a QR code pointing attendees at the event's selfie page."""
        self.events.get(event_id)
        qr = qrcode.QRCode(version=1, box_size=10, border=5)
        qr.add_data(f"{self.public_base_url}/upload-selfie/{event_id}")
        qr.make(fit=True)
        img = qr.make_image(fill_color="black", back_color="white")
        buffer = BytesIO()
        img.save(buffer)
        return buffer.getvalue()

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------
    def upload_photo(self, principal, event_id, image_bytes, filename="photo.jpg"):
        """Store the photo and enqueue ingestion. Returns immediately."""
        self._require_organizer(principal)
        self._owned_event(principal, event_id)
        self.events.require_open(event_id)
        validate_upload(image_bytes, filename, ALLOWED_IMAGE_EXTENSIONS, self.max_upload_mb)

        storage_ref = self.blob_store.put(event_id, image_bytes, filename)
        photo = Photo(photo_id=new_id("pho"), event_id=event_id, storage_ref=storage_ref)
        try:
            self.photo_index.add_photo(photo)
        except IndexUnavailableError:
            logger.error(f"[API] Photo record not stored, removing blob - event_id: {event_id}, ref: {storage_ref}, operation: upload_photo")
            self.blob_store.delete(storage_ref)
            raise
        self.pipeline.submit_photo(photo)
        logger.info(f"[API] Photo upload accepted - event_id: {event_id}, photo_id: {photo.photo_id}, operation: upload_photo")
        return photo.photo_id

    def upload_selfie(self, principal, event_id, image_bytes, filename="selfie.jpg", additional=False):
        """
        Register the caller for the event (once) and enqueue selfie matching.
        ``additional`` adds another reference selfie to an existing registration.
        """
        attendee_id = principal.email
        self.events.require_open(event_id)
        validate_upload(image_bytes, filename, ALLOWED_IMAGE_EXTENSIONS, self.max_upload_mb)

        if self.attendees.is_registered(event_id, attendee_id):
            if not additional:
                attendee = self.attendees.get(event_id, attendee_id)
                # A registration whose selfies all failed may submit again
                if attendee.has_reference or self.pipeline.has_active_selfie(event_id, attendee_id):
                    logger.warning(f"[REGISTRY] Duplicate registration rejected - event_id: {event_id}, attendee_id: {attendee_id}, operation: upload_selfie")
                    raise DuplicateRegistrationError(f"{attendee_id} is already registered for event {event_id}")
        elif additional:
            raise EntityNotFoundError(f"{attendee_id} is not registered for event {event_id}")
        else:
            self.attendees.register(event_id, attendee_id)

        storage_ref = self.blob_store.put(event_id, image_bytes, filename)
        submission_id = new_id("sel")
        self.pipeline.submit_selfie(submission_id, event_id, attendee_id, storage_ref)
        logger.info(f"[API] Selfie accepted - event_id: {event_id}, attendee_id: {attendee_id}, submission_id: {submission_id}, operation: upload_selfie")
        return submission_id

    def retry(self, principal, entity_id):
        status = self.pipeline.status.get(entity_id)
        self._authorize_entity(principal, status)
        self.events.require_open(status.event_id)
        return self.pipeline.retry(entity_id).to_dict()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_my_photos(self, principal, event_id=None):
        """Photos attributed to the caller across their events, newest decision first."""
        refs = []
        for attribution in self.ledger.photos_for(principal.email, event_id=event_id):
            try:
                photo = self.photo_index.get_photo(attribution.photo_id)
            except EntityNotFoundError:
                continue
            refs.append(PhotoRef(
                photo_id=photo.photo_id,
                event_id=photo.event_id,
                storage_ref=photo.storage_ref,
                uploaded_at=photo.uploaded_at,
                score=attribution.score,
            ))
        return refs

    def get_event_photos(self, principal, event_id):
        """Organizer view: every indexed photo of the event, earliest first."""
        self._owned_event(principal, event_id)
        return [
            PhotoRef(photo_id=p.photo_id, event_id=p.event_id, storage_ref=p.storage_ref, uploaded_at=p.uploaded_at)
            for p in self.photo_index.photos(event_id, state=PhotoState.INDEXED)
        ]

    def get_processing_status(self, principal, entity_id):
        status = self.pipeline.status.find(entity_id)
        if status is not None:
            self._authorize_entity(principal, status)
            return status.to_dict()

        # Photos loaded from storage after a restart have no task history
        photo = self.photo_index.get_photo(entity_id)
        self._owned_event(principal, photo.event_id)
        state = {
            PhotoState.PENDING: ProcessingState.UPLOADED,
            PhotoState.INDEXED: ProcessingState.INDEXED,
            PhotoState.FAILED: ProcessingState.FAILED,
        }[photo.state]
        return {"entity_id": entity_id, "kind": PHOTO, "event_id": photo.event_id, "state": state.value}

    def get_photo_attendees(self, principal, photo_id):
        photo = self.photo_index.get_photo(photo_id)
        self._owned_event(principal, photo.event_id)
        return self.ledger.attendees_for(photo_id)

    def read_photo_bytes(self, principal, photo_id):
        """Image bytes for the organizer or for an attendee attributed to the photo."""
        photo = self.photo_index.get_photo(photo_id)
        if self.ledger.get(principal.email, photo_id) is None:
            self._owned_event(principal, photo.event_id)
        return self.blob_store.get(photo.storage_ref)

    # ------------------------------------------------------------------
    # Moderation
    # ------------------------------------------------------------------
    def delete_photo(self, principal, photo_id):
        photo = self.photo_index.get_photo(photo_id)
        self._owned_event(principal, photo.event_id)
        self.ledger.remove_photo(photo_id)
        self.photo_index.remove(photo_id)
        self.blob_store.delete(photo.storage_ref)
        self.pipeline.status.forget(photo_id)
        return photo

    def shutdown(self, wait=True):
        self.pipeline.shutdown(wait=wait)


def build_service(settings, extractor=None, repository=None):
    """
    Wire the engine from Settings. With DATABASE_URL set, state is mirrored
    to PostgreSQL and reloaded on start-up.
    """
    if repository is None and settings.database_url:
        from picmatch.db import PostgresRepository
        repository = PostgresRepository(settings.database_url)
        repository.ensure_schema()

    if extractor is None:
        from picmatch.face_utils import FaceDescriptorExtractor
        extractor = FaceDescriptorExtractor(
            min_confidence=settings.min_face_confidence,
            detection_model=settings.face_detection_model,
        )

    retry_opts = dict(retry_attempts=settings.storage_retry_attempts, retry_backoff=settings.storage_retry_backoff)
    events = EventRegistry(repository, **retry_opts)
    attendees = AttendeeRegistry(repository, **retry_opts)
    photo_index = PhotoIndex(repository, **retry_opts)
    ledger = AttributionLedger(repository, **retry_opts)

    if repository is not None:
        snapshot = repository.load_snapshot()
        events.load(snapshot["events"])
        photo_index.load(snapshot["photos"], snapshot["descriptors"])
        attendees.load(snapshot["attendees"])
        ledger.load(snapshot["attributions"])

    pipeline = IngestionPipeline(
        photo_index=photo_index,
        resolver=MatchResolver(photo_index, threshold=settings.match_threshold),
        ledger=ledger,
        attendees=attendees,
        blob_store=LocalBlobStore(settings.upload_folder),
        extractor=extractor,
        extraction_workers=settings.extraction_workers,
        matching_workers=settings.matching_workers,
        extraction_timeout=settings.extraction_timeout,
    )
    if repository is not None:
        pipeline.resume_pending()

    return MatchingService(
        events=events,
        attendees=attendees,
        photo_index=photo_index,
        ledger=ledger,
        pipeline=pipeline,
        blob_store=pipeline.blob_store,
        max_upload_mb=settings.max_upload_mb,
        public_base_url=settings.public_base_url,
    )
