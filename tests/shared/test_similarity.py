"""Tests for vector helpers."""

import json

import pytest

from seshat.shared.errors import ValidationError
from seshat.shared.similarity import cosine_similarity, is_valid_embedding, l2_norm, validate_embedding


def test_cosine_similarity_identical():
    vector = [0.1, 0.2, 0.3]
    assert cosine_similarity(vector, vector) == pytest.approx(1.0)


def test_cosine_similarity_orthogonal():
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)


def test_cosine_similarity_opposite():
    assert cosine_similarity([1.0, 2.0], [-1.0, -2.0]) == pytest.approx(-1.0)


def test_cosine_similarity_degenerate_inputs():
    assert cosine_similarity([1.0, 2.0], [1.0, 2.0, 3.0]) == 0.0
    assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0
    assert cosine_similarity([], []) == 0.0


def test_cosine_similarity_with_precomputed_norm():
    a, b = [3.0, 4.0], [4.0, 3.0]
    assert cosine_similarity(a, b, norm_a=l2_norm(a)) == pytest.approx(cosine_similarity(a, b))


def test_l2_norm():
    assert l2_norm([3.0, 4.0]) == pytest.approx(5.0)


class TestValidateEmbedding:
    """Tests for validate_embedding."""

    def test_accepts_list(self):
        assert validate_embedding([1, 2, 3], dimensions=3) == [1.0, 2.0, 3.0]

    def test_accepts_json_string(self):
        assert validate_embedding(json.dumps([0.5, 0.25]), dimensions=2) == [0.5, 0.25]

    def test_rejects_wrong_length(self):
        with pytest.raises(ValidationError, match=r"Invalid embedding dimensions: 5 \(expected 768\)"):
            validate_embedding([0.1] * 5)

    def test_rejects_malformed_json(self):
        with pytest.raises(ValidationError, match="failed to parse JSON"):
            validate_embedding("[0.1, 0.2", dimensions=2)

    @pytest.mark.parametrize("bad", [float("nan"), float("inf"), "0.1", None, True])
    def test_rejects_invalid_values(self, bad):
        with pytest.raises(ValidationError, match="invalid values"):
            validate_embedding([0.1, bad], dimensions=2)

    def test_rejects_non_array(self):
        with pytest.raises(ValidationError):
            validate_embedding(42, dimensions=1)

    def test_is_valid_embedding(self):
        assert is_valid_embedding([0.0] * 768)
        assert not is_valid_embedding([0.0] * 767)
