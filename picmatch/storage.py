import os
import re
import shutil
import uuid
import logging

from picmatch.errors import EntityNotFoundError, IndexUnavailableError, InvalidUploadError

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_EXTENSIONS = {'.png', '.jpg', '.jpeg'}
REF_SCHEME = "local://"


# --- SECURITY HELPERS ---
def sanitize_filename(filename):
    """
    Sanitize filename to prevent path traversal attacks.
    Removes directory separators and ensures filename is safe.
    """
    # Get just the basename (removes any path components)
    filename = os.path.basename(filename or "")
    # Remove any remaining path separators
    filename = filename.replace('/', '').replace('\\', '')
    # Remove any null bytes
    filename = filename.replace('\x00', '')
    # Remove leading dots to prevent hidden files
    filename = filename.lstrip('.')
    # Only allow alphanumeric, dash, underscore, and dot
    filename = re.sub(r'[^a-zA-Z0-9._-]', '_', filename)
    return filename


def sanitize_path_component(component):
    """
    Sanitize a path component (like event_id) to prevent path traversal.
    """
    component = str(component).replace('/', '').replace('\\', '')
    component = component.replace('\x00', '')
    component = component.replace('..', '')
    return component


def validate_upload(data, filename, allowed_extensions=None, max_size_mb=10):
    """
    Validate uploaded image bytes.

    Raises InvalidUploadError describing the first problem found.
    """
    if not filename:
        raise InvalidUploadError("No file provided")

    if allowed_extensions:
        file_ext = os.path.splitext(filename)[1].lower()
        if file_ext not in allowed_extensions:
            raise InvalidUploadError(f"Invalid file type. Allowed: {', '.join(sorted(allowed_extensions))}")

    if not data:
        raise InvalidUploadError("File is empty")

    max_size_bytes = max_size_mb * 1024 * 1024
    if len(data) > max_size_bytes:
        raise InvalidUploadError(f"File too large. Maximum size: {max_size_mb}MB")


class LocalBlobStore:
    """
    Raw image bytes on the local filesystem, one folder per event.
    References look like ``local://<event_id>/<name>``.
    """

    def __init__(self, root):
        self.root = os.path.abspath(root)
        try:
            os.makedirs(self.root, exist_ok=True)
            logger.info(f"[STORAGE] Upload folder ready: {self.root}")
        except OSError as e:
            logger.error(f"[STORAGE] Failed to create upload folder: {e}")
            raise

    def _path_for(self, ref):
        if not ref or not ref.startswith(REF_SCHEME):
            raise EntityNotFoundError(f"Not a local storage reference: {ref}")
        event_part, _, name = ref[len(REF_SCHEME):].partition('/')
        safe_event = sanitize_path_component(event_part)
        safe_name = sanitize_filename(name)
        if safe_event != event_part or safe_name != name:
            logger.warning(f"[SECURITY] Path sanitization applied - ref: {ref}, operation: resolve_ref")
        return os.path.join(self.root, safe_event, safe_name)

    def put(self, event_id, data, filename="image.jpg"):
        event_dir = os.path.join(self.root, sanitize_path_component(event_id))
        name = f"{uuid.uuid4().hex[:8]}_{sanitize_filename(filename) or 'image.jpg'}"
        try:
            os.makedirs(event_dir, exist_ok=True)
            with open(os.path.join(event_dir, name), 'wb') as f:
                f.write(data)
        except OSError as e:
            logger.error(f"[STORAGE] Failed to write blob - event_id: {event_id}, filename: {name}, error: {str(e)}, operation: put")
            raise IndexUnavailableError(f"Blob storage unavailable: {e}") from e
        ref = f"{REF_SCHEME}{sanitize_path_component(event_id)}/{name}"
        logger.info(f"[STORAGE] Blob stored - event_id: {event_id}, ref: {ref}, bytes: {len(data)}, operation: put")
        return ref

    def get(self, ref):
        path = self._path_for(ref)
        if not os.path.exists(path):
            raise EntityNotFoundError(f"Blob not found: {ref}")
        try:
            with open(path, 'rb') as f:
                return f.read()
        except OSError as e:
            logger.error(f"[STORAGE] Failed to read blob - ref: {ref}, error: {str(e)}, operation: get")
            raise IndexUnavailableError(f"Blob storage unavailable: {e}") from e

    def delete(self, ref):
        path = self._path_for(ref)
        if os.path.exists(path):
            os.remove(path)
            logger.info(f"[STORAGE] Blob deleted - ref: {ref}, operation: delete")

    def delete_event(self, event_id):
        event_dir = os.path.join(self.root, sanitize_path_component(event_id))
        if os.path.isdir(event_dir):
            shutil.rmtree(event_dir)
            logger.info(f"[STORAGE] Event folder deleted - event_id: {event_id}, operation: delete_event")
