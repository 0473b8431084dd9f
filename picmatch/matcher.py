"""
Match Resolver: cosine similarity of a query descriptor against one event's
Photo Index.

A linear scan over a single event is fine for hundreds to low thousands of
photos. Larger deployments can swap in an approximate nearest-neighbour
index by providing another object with the same ``resolve`` method.
"""
import logging
import warnings

import numpy as np

from picmatch.errors import AmbiguousFaceWarning, NoDescriptorError
from picmatch.models import PhotoMatch

logger = logging.getLogger(__name__)

EPSILON = 1e-12


def normalize_rows(matrix):
    matrix = np.atleast_2d(np.asarray(matrix, dtype=np.float64))
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms < EPSILON] = 1.0
    return matrix / norms


def cosine_similarities(query, matrix):
    """Similarity of one query vector against every row of matrix."""
    if len(matrix) == 0:
        return np.zeros(0)
    q = normalize_rows(query)[0]
    return normalize_rows(matrix) @ q


def select_query_face(faces, owner=None):
    """
    Pick the face to match from a selfie.

    Zero faces is an error. Several faces is allowed: the highest-confidence
    one wins and a warning is emitted.
    """
    if not faces:
        raise NoDescriptorError("Couldn't detect a face in the selfie")
    if len(faces) > 1:
        logger.warning(f"[MATCHING] Multiple faces in selfie, using highest confidence - owner: {owner}, faces: {len(faces)}, operation: select_query_face")
        warnings.warn(
            f"Selfie contains {len(faces)} faces; using the highest-confidence face",
            AmbiguousFaceWarning,
            stacklevel=2,
        )
    # max() keeps the first on ties, which follows extractor ordering
    return max(faces, key=lambda f: f.confidence)


class MatchResolver:

    def __init__(self, photo_index, threshold=0.6):
        self.photo_index = photo_index
        self.threshold = threshold

    def resolve(self, event_id, query_vectors, photo_ids=None):
        """
        Rank the event's photos against one or more reference vectors.

        A photo matches when any of its descriptors scores at or above the
        threshold against any reference; its score is the best such value.
        Results are ordered by score descending, then upload time ascending.
        ``photo_ids`` restricts the scan to those photos.
        """
        queries = [np.asarray(v, dtype=np.float64) for v in query_vectors]
        if not queries:
            return []

        descriptors = self.photo_index.query(event_id)
        if photo_ids is not None:
            wanted = set(photo_ids)
            descriptors = [d for d in descriptors if d.photo_id in wanted]
        if not descriptors:
            return []

        matrix = normalize_rows([d.vector for d in descriptors])
        references = normalize_rows(queries)
        # rows: descriptors, columns: references
        scores = (matrix @ references.T).max(axis=1)

        best = {}
        for descriptor, score in zip(descriptors, scores):
            score = float(score)
            if score < self.threshold:
                continue
            if score > best.get(descriptor.photo_id, -np.inf):
                best[descriptor.photo_id] = score

        photos = self.photo_index.indexed_photos(event_id)
        matches = [
            PhotoMatch(photo_id=pid, score=score, uploaded_at=photos[pid].uploaded_at)
            for pid, score in best.items()
            if pid in photos
        ]
        matches.sort(key=lambda m: (-m.score, m.uploaded_at))

        logger.info(f"[MATCHING] Resolve complete - event_id: {event_id}, descriptors_scanned: {len(descriptors)}, matches: {len(matches)}, threshold: {self.threshold}, operation: resolve")
        return matches
