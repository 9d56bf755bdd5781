"""Tests for exhaustive and greedy best-subset search."""

import numpy as np
import pytest

from conftest import make_embeddings, to_pair_arrays
from reducedemb.errors import InvalidParameter, SearchTooLarge
from reducedemb.records import PairArrays, generate_pairs
from reducedemb.search import exhaustive_search, greedy_search, search_cost
from reducedemb.verification import PairwiseComponents


@pytest.fixture()
def components(clustered):
    embeddings, pairs = clustered
    return PairwiseComponents(embeddings, pairs)


def random_components(seed, dimension=6, metric="euclidean"):
    embeddings, labels = make_embeddings(n_identities=6, per_identity=3, dimension=dimension,
                                         signal=(1,), seed=seed)
    embeddings += np.random.default_rng(seed).normal(0.0, 1.0, size=embeddings.shape)
    pairs = to_pair_arrays(generate_pairs(labels, n_pairs=40, seed=seed))
    return PairwiseComponents(embeddings, pairs, metric=metric)


class TestSearchCost:
    def test_sums_binomials(self):
        assert search_cost(6, 1) == 6
        assert search_cost(6, 2) == 6 + 15
        assert search_cost(4, 4) == 15


class TestExhaustiveSearch:
    def test_single_dimension_scores_every_candidate(self):
        comps = random_components(seed=4)
        found = exhaustive_search(comps, 1)
        assert found.evaluations == 6
        errors = [comps.score((d,)).errors for d in range(6)]
        assert found.errors == min(errors)
        assert found.dimensions == (int(np.argmin(errors)),)

    def test_reports_best_of_every_size(self, components):
        found = exhaustive_search(components, 3)
        assert [len(dims) for dims, _ in found.per_size] == [1, 2, 3]
        assert found.errors == min(result.errors for _, result in found.per_size)
        assert found.evaluations == search_cost(8, 3)

    def test_finds_signal_pair(self, components):
        found = exhaustive_search(components, 2)
        assert found.dimensions == (2, 5)

    def test_small_chunks_do_not_change_result(self, components):
        whole = exhaustive_search(components, 2)
        chunked = exhaustive_search(components, 2, chunk_size=3, n_jobs=2)
        assert chunked.dimensions == whole.dimensions
        assert chunked.errors == whole.errors

    def test_refuses_oversized_search(self, components):
        with pytest.raises(SearchTooLarge):
            exhaustive_search(components, 3, max_evaluations=search_cost(8, 3) - 1)

    def test_candidate_pool_restricts_search(self, components):
        found = exhaustive_search(components, 2, candidates=[0, 1, 3])
        assert set(found.dimensions) <= {0, 1, 3}
        assert found.evaluations == search_cost(3, 2)

    @pytest.mark.parametrize("k", [0, 9])
    def test_rejects_bad_size(self, components, k):
        with pytest.raises(InvalidParameter):
            exhaustive_search(components, k)

    def test_rejects_bad_candidates(self, components):
        with pytest.raises(InvalidParameter):
            exhaustive_search(components, 1, candidates=[0, 8])
        with pytest.raises(InvalidParameter):
            exhaustive_search(components, 1, candidates=[1, 1])


class TestGreedySearch:
    def test_matches_exhaustive_for_one_dimension(self):
        comps = random_components(seed=4)
        greedy = greedy_search(comps, 1)
        exhaustive = exhaustive_search(comps, 1)
        assert greedy.dimensions == exhaustive.dimensions
        assert greedy.accuracy == exhaustive.accuracy
        assert greedy.evaluations == 6

    @pytest.mark.parametrize("seed", range(6))
    @pytest.mark.parametrize("metric", ["euclidean", "cosine"])
    def test_never_beats_exhaustive(self, seed, metric):
        comps = random_components(seed=seed, metric=metric)
        exhaustive = exhaustive_search(comps, 3)
        greedy = greedy_search(comps, 3)
        for dims, result in greedy.per_size:
            _, best = exhaustive.best_of_size(len(dims))
            assert result.errors >= best.errors
        assert greedy.accuracy <= exhaustive.accuracy

    def test_order_tracks_selection_sequence(self, components):
        found = greedy_search(components, 2)
        assert sorted(found.order) == list(found.dimensions)
        assert found.order[0] in (2, 5)

    def test_stops_when_nothing_improves(self):
        embeddings = np.zeros((4, 5))
        embeddings[:, 0] = [0.0, 0.0, 5.0, 5.0]
        pairs = to_pair_arrays(generate_pairs(["a", "a", "b", "b"], n_pairs=8, seed=0))
        comps = PairwiseComponents(embeddings, pairs)
        found = greedy_search(comps, 4)
        assert found.dimensions == (0,)
        assert found.accuracy == 1.0


class TestBestOverSizes:
    @pytest.fixture()
    def one_perfect_dimension(self):
        # Dimension 0 separates identities perfectly; the others are loud noise
        rng = np.random.default_rng(0)
        labels = np.repeat(np.arange(6), 3)
        embeddings = np.column_stack([labels * 10.0, rng.normal(0.0, 5.0, size=(18, 2))])
        first, second = np.triu_indices(18, k=1)
        pairs = PairArrays(first, second, labels[first] == labels[second])
        return PairwiseComponents(embeddings, pairs)

    def test_exhaustive_keeps_smaller_subset_when_it_scores_better(self, one_perfect_dimension):
        found = exhaustive_search(one_perfect_dimension, 2)
        assert found.dimensions == (0,)
        assert found.accuracy == 1.0
        assert len(found.per_size) == 2

    def test_greedy_never_beats_exhaustive_for_same_k(self, one_perfect_dimension):
        greedy = greedy_search(one_perfect_dimension, 2)
        exhaustive = exhaustive_search(one_perfect_dimension, 2)
        assert greedy.dimensions == (0,)
        assert greedy.accuracy <= exhaustive.accuracy

    def test_full_width_is_never_worse_than_all_dimensions(self, clustered):
        embeddings, pairs = clustered
        components = PairwiseComponents(embeddings, pairs)
        found = exhaustive_search(components, 8)
        assert found.best_of_size(8)[0] == tuple(range(8))
        assert found.errors <= components.score_state(components.full_state()).errors
