# config.py  (environment driven, .env supported)
from dotenv import load_dotenv
load_dotenv()

import os
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

DEFAULT_SECRET_KEY = "your_super_secret_key_here"


@dataclass(frozen=True)
class Settings:
    secret_key: str
    database_url: str
    port: int
    upload_folder: str
    match_threshold: float
    min_face_confidence: float
    face_detection_model: str
    extraction_workers: int
    matching_workers: int
    extraction_timeout: float
    storage_retry_attempts: int
    storage_retry_backoff: float
    max_upload_mb: int
    log_level: str
    public_base_url: str


def _read_float(name, default, low=None, high=None):
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")
    if low is not None and value < low:
        raise ValueError(f"{name} must be >= {low}, got {value}")
    if high is not None and value > high:
        raise ValueError(f"{name} must be <= {high}, got {value}")
    return value


def _read_int(name, default, low=1):
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < low:
        raise ValueError(f"{name} must be >= {low}, got {value}")
    return value


def load_settings():
    """
    Build Settings from the process environment.

    Missing values fall back to defaults; security relevant fallbacks are
    logged as warnings so they show up in production logs.
    """
    secret_key = os.environ.get("FLASK_SECRET_KEY")
    if not secret_key:
        logger.warning("FLASK_SECRET_KEY environment variable not set. Using default (not secure for production).")
        secret_key = DEFAULT_SECRET_KEY

    # Unset means in-memory only (no write-through persistence)
    database_url = os.environ.get("DATABASE_URL", "")
    if not database_url:
        logger.warning("DATABASE_URL environment variable not set. Running without persistent storage.")

    detection_model = os.environ.get("FACE_DETECTION_MODEL", "hog").lower()
    if detection_model not in ("hog", "cnn"):
        raise ValueError(f"FACE_DETECTION_MODEL must be 'hog' or 'cnn', got {detection_model!r}")

    settings = Settings(
        secret_key=secret_key,
        database_url=database_url,
        port=_read_int("PORT", 8080),
        upload_folder=os.environ.get("UPLOAD_FOLDER", os.path.join(BASE_DIR, "..", "uploads")),
        match_threshold=_read_float("MATCH_THRESHOLD", 0.6, low=-1.0, high=1.0),
        min_face_confidence=_read_float("MIN_FACE_CONFIDENCE", 0.5, low=0.0, high=1.0),
        face_detection_model=detection_model,
        extraction_workers=_read_int("EXTRACTION_WORKERS", 2),
        matching_workers=_read_int("MATCHING_WORKERS", 4),
        extraction_timeout=_read_float("EXTRACTION_TIMEOUT", 60.0, low=0.1),
        storage_retry_attempts=_read_int("STORAGE_RETRY_ATTEMPTS", 3),
        storage_retry_backoff=_read_float("STORAGE_RETRY_BACKOFF", 0.5, low=0.0),
        max_upload_mb=_read_int("MAX_UPLOAD_MB", 10),
        log_level=os.environ.get("LOG_LEVEL", "WARNING").upper(),
        public_base_url=os.environ.get("PUBLIC_BASE_URL", "http://localhost:8080").rstrip("/"),
    )
    logger.info(f"Application will run on port: {settings.port}")
    return settings


def configure_logging(level="WARNING"):
    """Configure root logging. WARNING for production, INFO for debugging."""
    numeric = getattr(logging, str(level).upper(), None)
    if not isinstance(numeric, int):
        raise ValueError(f"Unknown log level: {level}")
    logging.basicConfig(level=numeric)
