"""Tests for per-dimension importance profiles."""

import numpy as np
import pytest

from reducedemb.errors import DegeneratePairSet, InvalidParameter
from reducedemb.importance import normalize_scores, profile
from reducedemb.records import PairArrays


class TestProfile:
    @pytest.mark.parametrize("mode", ["separation", "ablation", "solo"])
    def test_one_score_per_dimension(self, clustered, mode):
        embeddings, pairs = clustered
        scores = profile(embeddings, pairs, mode=mode)
        assert scores.shape == (8,)

    def test_separation_is_normalized_and_ranks_signal_first(self, clustered):
        embeddings, pairs = clustered
        scores = profile(embeddings, pairs, mode="separation")
        assert scores.min() == 0.0
        assert scores.max() == 1.0
        assert set(np.argsort(scores)[-2:]) == {2, 5}

    def test_solo_favours_signal_dimensions(self, clustered):
        embeddings, pairs = clustered
        scores = profile(embeddings, pairs, mode="solo")
        assert np.argmax(scores) in (2, 5)

    def test_prefix_of_dimensions(self, clustered):
        embeddings, pairs = clustered
        assert profile(embeddings, pairs, mode="ablation", dimensions=3).shape == (3,)

    @pytest.mark.parametrize("dimensions", [0, 9])
    def test_rejects_bad_prefix(self, clustered, dimensions):
        embeddings, pairs = clustered
        with pytest.raises(InvalidParameter):
            profile(embeddings, pairs, dimensions=dimensions)

    def test_rejects_unknown_mode(self, clustered):
        embeddings, pairs = clustered
        with pytest.raises(InvalidParameter):
            profile(embeddings, pairs, mode="gradient")

    def test_single_class_pairs(self, clustered):
        embeddings, pairs = clustered
        genuine_only = PairArrays(pairs.first[pairs.genuine], pairs.second[pairs.genuine],
                                  pairs.genuine[pairs.genuine])
        with pytest.raises(DegeneratePairSet):
            profile(embeddings, genuine_only)


class TestNormalizeScores:
    def test_constant_scores_are_zero(self):
        np.testing.assert_array_equal(normalize_scores(np.full(4, 2.0)), np.zeros(4))
