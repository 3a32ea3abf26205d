import numpy as np
from typing import Dict, List, Optional, Sequence, Tuple, Union
from collections import defaultdict

from core.logger import logger

Descriptor = Union[Sequence[float], Sequence[Sequence[float]], np.ndarray]


def to_descriptor_matrix(descriptor: Descriptor) -> Optional[np.ndarray]:
    """
    Normalize a stored descriptor to an (N, D) float matrix.
    A principal may be enrolled with one vector or a small gallery of vectors.
    Returns None for empty or non-numeric input.
    """
    if descriptor is None:
        return None
    try:
        matrix = np.asarray(descriptor, dtype=np.float64)
    except (TypeError, ValueError):
        return None
    if matrix.ndim == 1:
        matrix = matrix.reshape(1, -1)
    if matrix.ndim != 2 or matrix.shape[0] == 0 or matrix.shape[1] == 0:
        return None
    if not np.all(np.isfinite(matrix)):
        return None
    return matrix


class FaceRecognizer:
    """
    Face descriptor matching using cosine similarity, with statistical
    aggregation over a principal's enrolled descriptors.
    """

    def __init__(self, similarity_threshold: float = 0.6, use_statistical: bool = True):
        """
        Initialize face recognizer.

        Args:
            similarity_threshold: Minimum cosine similarity for a match (0-1)
            use_statistical: If True, blend max with top-3 average for galleries
        """
        self.similarity_threshold = similarity_threshold
        self.use_statistical = use_statistical

    @staticmethod
    def compute_similarity_matrix(query_embeddings: np.ndarray, db_embeddings: np.ndarray) -> np.ndarray:
        """
        Compute similarity matrix between queries and database.
        Shape: (Q, D) x (N, D).T -> (Q, N)
        """
        q_norm = np.linalg.norm(query_embeddings, axis=1, keepdims=True)
        db_norm = np.linalg.norm(db_embeddings, axis=1, keepdims=True)

        q_normalized = query_embeddings / (q_norm + 1e-10)
        db_normalized = db_embeddings / (db_norm + 1e-10)

        return np.dot(q_normalized, db_normalized.T)

    def _aggregate(self, similarities: List[float]) -> float:
        max_sim = max(similarities)
        if self.use_statistical and len(similarities) >= 3:
            top_3 = sorted(similarities, reverse=True)[:3]
            return float(0.7 * max_sim + 0.3 * np.mean(top_3))
        return float(max_sim)

    def match_face(
        self,
        query_descriptor: Descriptor,
        candidates: Dict[int, Descriptor],
    ) -> Tuple[Optional[int], float]:
        """
        Find the single best candidate for a query descriptor.

        Args:
            query_descriptor: Descriptor presented at the door
            candidates: principal id -> enrolled descriptor(s)

        Returns:
            (principal id, similarity) of the best match at or above the
            threshold, or (None, 0.0)
        """
        query = to_descriptor_matrix(query_descriptor)
        if query is None or query.shape[0] != 1:
            return None, 0.0
        dim = query.shape[1]

        rows = []
        row_owners = []
        for principal_id, descriptor in candidates.items():
            enrolled = to_descriptor_matrix(descriptor)
            if enrolled is None:
                continue
            if enrolled.shape[1] != dim:
                logger.warning(
                    f"Skipping principal {principal_id}: descriptor dimension "
                    f"{enrolled.shape[1]} != {dim}"
                )
                continue
            rows.append(enrolled)
            row_owners.extend([principal_id] * enrolled.shape[0])

        if not rows:
            return None, 0.0

        db_matrix = np.vstack(rows)
        similarities = self.compute_similarity_matrix(query, db_matrix)[0]

        per_principal = defaultdict(list)
        for idx, sim in enumerate(similarities):
            per_principal[row_owners[idx]].append(float(sim))

        best_match_id = None
        best_similarity = 0.0
        for principal_id, sims in per_principal.items():
            score = self._aggregate(sims)
            if score > best_similarity:
                best_similarity = score
                best_match_id = principal_id

        if best_match_id is not None and best_similarity >= self.similarity_threshold:
            return best_match_id, round(best_similarity, 3)
        return None, 0.0

    def verify_face(self, query_descriptor: Descriptor, enrolled_descriptor: Descriptor) -> bool:
        """One-to-one check of a presented descriptor against one principal."""
        match_id, _ = self.match_face(query_descriptor, {0: enrolled_descriptor})
        return match_id is not None
