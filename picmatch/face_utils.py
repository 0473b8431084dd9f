import logging

import cv2
import numpy as np
import face_recognition

from picmatch.errors import ExtractionError
from picmatch.models import BoundingBox, ExtractedFace

logger = logging.getLogger(__name__)

# Faces smaller than this (pixels per side) carry too little detail to encode
MIN_FACE_SIDE = 20


def decode_image(image_bytes):
    """
    Decode raw upload bytes into an RGB array.
    Raises ExtractionError for empty, unreadable or corrupt data.
    """
    if not image_bytes:
        raise ExtractionError("Image data is empty")

    np_arr = np.frombuffer(image_bytes, np.uint8)
    try:
        bgr = cv2.imdecode(np_arr, cv2.IMREAD_COLOR)
    except cv2.error as e:
        raise ExtractionError(f"Unable to decode image: {e}") from e
    if bgr is None:
        raise ExtractionError("Unable to decode image")

    return cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)


def compute_face_quality(face_rgb):
    """
    Calculate clarity + brightness of a face crop, returns score from 0 to 1.
    Used as the extraction confidence of the face.
    """
    if face_rgb.size == 0:
        return 0.0

    gray = cv2.cvtColor(face_rgb, cv2.COLOR_RGB2GRAY)
    sharpness = cv2.Laplacian(gray, cv2.CV_64F).var()
    brightness = np.mean(gray)

    sharp_norm = min(1.0, sharpness / 80.0)     # sharp threshold
    bright_norm = min(1.0, brightness / 150.0)  # brightness threshold

    size_ok = min(face_rgb.shape[0], face_rgb.shape[1]) >= MIN_FACE_SIDE
    score = (sharp_norm * 0.7) + (bright_norm * 0.3)
    return float(score if size_ok else score * 0.5)


def _clamp_box(location, height, width):
    top, right, bottom, left = location
    return BoundingBox(
        top=max(0, int(top)),
        right=min(width, int(right)),
        bottom=min(height, int(bottom)),
        left=max(0, int(left)),
    )


class FaceDescriptorExtractor:
    """
    Turns a decoded image into face descriptors.

    Extraction is deterministic for a fixed detection model, so re-running it
    on the same bytes after a crash or a retry yields the same descriptors.
    """

    def __init__(self, min_confidence=0.5, detection_model="hog", upsample=1):
        self.min_confidence = min_confidence
        self.detection_model = detection_model
        self.upsample = upsample

    def extract(self, image_bytes, owner=None):
        """
        Returns faces ordered left to right, top to bottom.
        An empty list means no face above the confidence floor.
        """
        rgb = decode_image(image_bytes)
        height, width = rgb.shape[:2]

        try:
            locations = face_recognition.face_locations(
                rgb, number_of_times_to_upsample=self.upsample, model=self.detection_model
            )
            encodings = face_recognition.face_encodings(rgb, known_face_locations=locations)
        except (RuntimeError, ValueError) as e:
            logger.error(f"[EXTRACTION] Face detection failed - owner: {owner}, error: {str(e)}, operation: face_detection")
            raise ExtractionError(f"Face detection failed: {e}") from e

        faces = []
        for location, encoding in zip(locations, encodings):
            box = _clamp_box(location, height, width)
            crop = rgb[box.top:box.bottom, box.left:box.right]
            confidence = compute_face_quality(crop)
            if confidence < self.min_confidence:
                logger.info(f"[EXTRACTION] Face below confidence floor - owner: {owner}, box: {box.as_tuple()}, confidence: {confidence:.2f}, operation: face_filter")
                continue
            faces.append(ExtractedFace(
                bounding_box=box,
                vector=np.asarray(encoding, dtype=np.float64),
                confidence=confidence,
            ))

        faces.sort(key=lambda f: (f.bounding_box.left, f.bounding_box.top))
        logger.info(f"[EXTRACTION] Extraction complete - owner: {owner}, detected: {len(locations)}, kept: {len(faces)}, operation: extract")
        return faces

    __call__ = extract
