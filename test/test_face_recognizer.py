import numpy as np
import pytest

from core.face_recognizer import FaceRecognizer, to_descriptor_matrix

EMBEDDING_DIM = 128


def random_unit(rng, dim=EMBEDDING_DIM):
    v = rng.standard_normal(dim)
    return v / np.linalg.norm(v)


def build_gallery(rng, num_people=50, per_person=3):
    gallery = {}
    for person_id in range(num_people):
        gallery[person_id] = [random_unit(rng).tolist() for _ in range(per_person)]
    return gallery


def test_best_match_in_gallery():
    rng = np.random.default_rng(0)
    recognizer = FaceRecognizer(similarity_threshold=0.6)
    gallery = build_gallery(rng)

    query = np.array(gallery[17][0]) + rng.standard_normal(EMBEDDING_DIM) * 0.01
    match_id, similarity = recognizer.match_face(query.tolist(), gallery)

    assert match_id == 17
    assert similarity >= 0.6


def test_no_match_below_threshold():
    rng = np.random.default_rng(1)
    recognizer = FaceRecognizer(similarity_threshold=0.6)
    gallery = build_gallery(rng, num_people=10)

    assert recognizer.match_face(random_unit(rng).tolist(), gallery) == (None, 0.0)


def test_dimension_mismatch_is_skipped():
    rng = np.random.default_rng(2)
    recognizer = FaceRecognizer()
    target = random_unit(rng)
    candidates = {1: random_unit(rng, 64).tolist(), 2: target.tolist()}

    match_id, _ = recognizer.match_face(target.tolist(), candidates)
    assert match_id == 2


def test_empty_or_invalid_query():
    recognizer = FaceRecognizer()
    assert recognizer.match_face([], {1: [0.1, 0.2]}) == (None, 0.0)
    assert recognizer.match_face([0.1, 0.2], {}) == (None, 0.0)
    assert not recognizer.verify_face([float("nan"), 1.0], [1.0, 1.0])


def test_statistical_aggregation_blends_top_three():
    recognizer = FaceRecognizer(use_statistical=True)
    assert recognizer._aggregate([0.9, 0.6, 0.3]) == pytest.approx(0.7 * 0.9 + 0.3 * 0.6)
    assert recognizer._aggregate([0.9, 0.5]) == pytest.approx(0.9)


def test_to_descriptor_matrix_shapes():
    assert to_descriptor_matrix([1.0, 2.0]).shape == (1, 2)
    assert to_descriptor_matrix([[1.0, 2.0], [3.0, 4.0]]).shape == (2, 2)
    assert to_descriptor_matrix(None) is None
    assert to_descriptor_matrix(["a", "b"]) is None
