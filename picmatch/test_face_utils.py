"""
Tests for face descriptor extraction.

Detection and encoding are patched so the tests exercise decoding, the
confidence floor and face ordering without depending on model output.
"""
import numpy as np
import pytest

cv2 = pytest.importorskip("cv2")
pytest.importorskip("face_recognition")

from picmatch import face_utils  # noqa: E402
from picmatch.errors import ExtractionError  # noqa: E402
from picmatch.face_utils import FaceDescriptorExtractor, compute_face_quality, decode_image  # noqa: E402


def encode_png(image):
    ok, buffer = cv2.imencode('.png', image)
    assert ok
    return buffer.tobytes()


@pytest.fixture
def half_textured_png():
    """Left half sharp noise, right half black."""
    rng = np.random.default_rng(7)
    image = np.zeros((100, 100, 3), dtype=np.uint8)
    image[:, :50] = rng.integers(0, 256, size=(100, 50, 3), dtype=np.uint8)
    return encode_png(image)


@pytest.fixture
def fake_detector(monkeypatch):
    """Install fixed face locations; returns the list so tests can set it."""
    locations = []

    def face_locations(rgb, number_of_times_to_upsample=1, model="hog"):
        return list(locations)

    def face_encodings(rgb, known_face_locations=None):
        return [np.full(128, float(i + 1)) for i, _ in enumerate(known_face_locations)]

    monkeypatch.setattr(face_utils.face_recognition, "face_locations", face_locations)
    monkeypatch.setattr(face_utils.face_recognition, "face_encodings", face_encodings)
    return locations


# ============================================================================
# Decoding
# ============================================================================

def test_decode_rejects_empty_bytes():
    with pytest.raises(ExtractionError):
        decode_image(b"")


def test_decode_rejects_corrupt_bytes():
    with pytest.raises(ExtractionError):
        decode_image(b"\x00\x01 definitely not an image")


def test_decode_returns_rgb_array(half_textured_png):
    rgb = decode_image(half_textured_png)
    assert rgb.shape == (100, 100, 3)


# ============================================================================
# Quality and extraction
# ============================================================================

def test_face_quality_bounds():
    assert compute_face_quality(np.zeros((0, 0, 3), dtype=np.uint8)) == 0.0
    assert compute_face_quality(np.zeros((40, 40, 3), dtype=np.uint8)) == 0.0


def test_low_quality_faces_are_dropped(half_textured_png, fake_detector):
    # (top, right, bottom, left): one face on the noise, one on the black half
    fake_detector.extend([(60, 95, 95, 60), (10, 40, 40, 10)])

    faces = FaceDescriptorExtractor(min_confidence=0.5).extract(half_textured_png, owner="pho_1")

    assert len(faces) == 1
    assert faces[0].bounding_box.left == 10
    assert faces[0].confidence >= 0.5
    assert faces[0].vector.shape == (128,)


def test_faces_ordered_left_to_right(half_textured_png, fake_detector):
    fake_detector.extend([(50, 45, 90, 25), (5, 20, 40, 0)])

    faces = FaceDescriptorExtractor(min_confidence=0.0)(half_textured_png)

    assert [f.bounding_box.left for f in faces] == [0, 25]


def test_no_faces_is_empty_not_error(half_textured_png, fake_detector):
    assert FaceDescriptorExtractor().extract(half_textured_png) == []


def test_extraction_is_deterministic(half_textured_png, fake_detector):
    fake_detector.append((10, 40, 40, 10))
    extractor = FaceDescriptorExtractor()

    first = extractor.extract(half_textured_png)
    second = extractor.extract(half_textured_png)

    assert [f.confidence for f in first] == [f.confidence for f in second]
    np.testing.assert_array_equal(first[0].vector, second[0].vector)
