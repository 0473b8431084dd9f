"""Domain records shared by the index, resolver, ledger and pipeline."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple

import numpy as np


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class Role(str, Enum):
    ORGANIZER = "organizer"
    ATTENDEE = "attendee"


class EventStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class PhotoState(str, Enum):
    PENDING = "pending"
    INDEXED = "indexed"
    FAILED = "failed"


class ProcessingState(str, Enum):
    # photo lifecycle
    UPLOADED = "uploaded"
    EXTRACTING = "extracting"
    INDEXED = "indexed"
    MATCHED = "matched"
    # selfie lifecycle
    SUBMITTED = "submitted"
    MATCHING = "matching"
    ATTRIBUTED = "attributed"
    # shared terminal failure
    FAILED = "failed"


@dataclass(frozen=True)
class Principal:
    """Authenticated caller handed in by the session layer."""

    email: str
    role: Role = Role.ATTENDEE

    @classmethod
    def from_session(cls, email, role=None):
        # Accounts without a stored role are attendees
        try:
            resolved = Role(role) if role else Role.ATTENDEE
        except ValueError:
            resolved = Role.ATTENDEE
        return cls(email=email.strip().lower(), role=resolved)

    @property
    def is_organizer(self) -> bool:
        return self.role is Role.ORGANIZER


@dataclass(frozen=True)
class BoundingBox:
    """Face location in pixels, (top, right, bottom, left) order."""

    top: int
    right: int
    bottom: int
    left: int

    @property
    def width(self) -> int:
        return self.right - self.left

    @property
    def height(self) -> int:
        return self.bottom - self.top

    def as_tuple(self) -> Tuple[int, int, int, int]:
        return (self.top, self.right, self.bottom, self.left)


@dataclass(frozen=True, eq=False)
class ExtractedFace:
    bounding_box: BoundingBox
    vector: np.ndarray
    confidence: float


@dataclass(frozen=True, eq=False)
class FaceDescriptor:
    descriptor_id: str
    photo_id: str
    vector: np.ndarray
    bounding_box: BoundingBox
    confidence: float

    @classmethod
    def from_face(cls, photo_id: str, face: ExtractedFace, position: int) -> "FaceDescriptor":
        # Deterministic ids keep re-indexing idempotent
        return cls(
            descriptor_id=f"{photo_id}:{position}",
            photo_id=photo_id,
            vector=np.asarray(face.vector, dtype=np.float64),
            bounding_box=face.bounding_box,
            confidence=float(face.confidence),
        )


@dataclass
class Event:
    event_id: str
    organizer_id: str
    name: str = ""
    created_at: datetime = field(default_factory=utcnow)
    status: EventStatus = EventStatus.OPEN

    @property
    def is_open(self) -> bool:
        return self.status is EventStatus.OPEN

    def to_dict(self):
        return {
            "event_id": self.event_id,
            "organizer_id": self.organizer_id,
            "name": self.name,
            "created_at": self.created_at.isoformat(),
            "status": self.status.value,
        }


@dataclass
class Photo:
    photo_id: str
    event_id: str
    storage_ref: str
    uploaded_at: datetime = field(default_factory=utcnow)
    state: PhotoState = PhotoState.PENDING


@dataclass
class Attendee:
    attendee_id: str
    event_id: str
    descriptors: List[np.ndarray] = field(default_factory=list)
    registered_at: datetime = field(default_factory=utcnow)

    @property
    def has_reference(self) -> bool:
        return bool(self.descriptors)


@dataclass(frozen=True)
class Attribution:
    attendee_id: str
    photo_id: str
    event_id: str
    score: float
    decided_at: datetime


@dataclass(frozen=True)
class PhotoMatch:
    photo_id: str
    score: float
    uploaded_at: datetime


@dataclass(frozen=True)
class PhotoRef:
    photo_id: str
    event_id: str
    storage_ref: str
    uploaded_at: datetime
    score: Optional[float] = None

    def to_dict(self):
        data = {
            "photo_id": self.photo_id,
            "event_id": self.event_id,
            "storage_ref": self.storage_ref,
            "uploaded_at": self.uploaded_at.isoformat(),
        }
        if self.score is not None:
            data["score"] = round(self.score, 4)
        return data
