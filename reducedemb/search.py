"""
Best-subset search over embedding dimensions.

Two searches share one scoring path (PairwiseComponents.score), so their
results are directly comparable:

- exhaustive_search: enumerates every subset of each size 1..k and keeps the
  best of them all. The number of evaluations is sum(C(n, i) for i in 1..k)
  for a pool of n candidate dimensions, which grows exponentially; the search
  refuses to start when this exceeds `max_evaluations`.
- greedy_search: forward selection, at most k * n evaluations. It may stop
  before k dimensions, so its metric never exceeds the exhaustive optimum
  over subsets of at most k dimensions.

Subsets are compared on error count (false accepts + false rejects); ties go
to the smaller subset, then the lexicographically lowest one, or the lowest
index for greedy steps.
"""

import itertools
import logging
import math
from dataclasses import dataclass, field

import numpy as np
from joblib import Parallel, delayed

import config
from reducedemb.errors import InvalidParameter, SearchTooLarge

logger = logging.getLogger(__name__)


@dataclass
class SubsetSearchResult:
    """
    Attributes:
        method: "exhaustive" or "greedy"
        dimensions: Selected dimensions, sorted ascending
        order: Dimensions in the order they were chosen
        result: EvaluationResult of the selected subset
        per_size: (dimensions, EvaluationResult) for each subset size reached
        evaluations: Number of subsets scored
    """

    method: str
    dimensions: tuple
    order: tuple
    result: object
    per_size: list = field(default_factory=list)
    evaluations: int = 0

    @property
    def accuracy(self):
        return self.result.accuracy

    @property
    def errors(self):
        return self.result.errors

    def best_of_size(self, size):
        return self.per_size[size - 1]


def search_cost(n_candidates, k):
    """Number of subsets an exhaustive search over sizes 1..k evaluates."""
    return sum(math.comb(n_candidates, size) for size in range(1, k + 1))


def check_candidates(candidates, dimension):
    if candidates is None:
        return tuple(range(dimension))
    pool = sorted(int(c) for c in candidates)
    if len(set(pool)) != len(pool):
        raise InvalidParameter("candidate dimensions contain duplicates")
    if pool and (pool[0] < 0 or pool[-1] >= dimension):
        raise InvalidParameter(f"candidate dimensions must lie in [0, {dimension})")
    return tuple(pool)


def check_search_cost(n_candidates, k, max_evaluations=config.MAX_SUBSET_EVALUATIONS):
    """
    Return the exhaustive search cost, refusing searches above max_evaluations.

    Raises:
        SearchTooLarge: If the search would score more than max_evaluations subsets
    """
    cost = search_cost(n_candidates, k)
    if cost > max_evaluations:
        raise SearchTooLarge(
            f"exhaustive search over {n_candidates} dimensions up to size {k} needs {cost} evaluations, "
            f"limit is {max_evaluations}",
            dimension=n_candidates
        )
    return cost


def check_subset_size(k, n_candidates):
    if isinstance(k, bool) or not isinstance(k, (int, np.integer)) or not 1 <= k <= n_candidates:
        raise InvalidParameter(f"subset size must be in [1, {n_candidates}], got {k!r}")
    return int(k)


def _best_in_chunk(components, chunk):
    best = None
    for dims in chunk:
        res = components.score(dims)
        if best is None or res.errors < best[1].errors:
            best = (dims, res)
    return best


def best_subset_of_size(components, candidates, size, n_jobs=config.N_JOBS,
                        chunk_size=config.SUBSET_CHUNK_SIZE):
    """
    Score every subset of one size and return the best (dims, result).

    Combinations are produced lazily in lexicographic order and handed out in
    chunks, so memory stays bounded by the chunk size.
    """
    combos = itertools.combinations(candidates, size)
    chunks = iter(lambda: list(itertools.islice(combos, chunk_size)), [])

    best = None
    # joblib returns results in submission order, preserving the tie-break
    for chunk_best in Parallel(n_jobs=n_jobs, prefer="threads")(
            delayed(_best_in_chunk)(components, chunk) for chunk in chunks):
        if best is None or chunk_best[1].errors < best[1].errors:
            best = chunk_best
    return best


def exhaustive_search(components, k, candidates=None, max_evaluations=config.MAX_SUBSET_EVALUATIONS,
                      n_jobs=config.N_JOBS, chunk_size=config.SUBSET_CHUNK_SIZE):
    """
    Find the best subset of at most k dimensions.

    Args:
        components: PairwiseComponents of the full embeddings
        k: Largest subset size
        candidates: Optional pool of dimensions to draw from (pruning)
        max_evaluations: Refuse searches scoring more subsets than this

    Returns:
        SubsetSearchResult: The best subset over all sizes 1..k, with the
            best subset of each size in `per_size`

    Raises:
        InvalidParameter: If k is outside [1, len(candidates)]
        SearchTooLarge: If the search would exceed max_evaluations
    """
    pool = check_candidates(candidates, components.dimension)
    k = check_subset_size(k, len(pool))

    cost = check_search_cost(len(pool), k, max_evaluations)
    logger.info("Exhaustive search: %d candidates, sizes 1..%d, %d evaluations", len(pool), k, cost)

    per_size = []
    for size in range(1, k + 1):
        dims, res = best_subset_of_size(components, pool, size, n_jobs=n_jobs, chunk_size=chunk_size)
        per_size.append((dims, res))
        logger.info("Best subset with %d elements: %s with a total of %d errors", size, list(dims), res.errors)

    # Strict comparison in size order keeps the smallest subset among ties
    dims, best = per_size[0]
    for size_dims, res in per_size[1:]:
        if res.errors < best.errors:
            dims, best = size_dims, res

    return SubsetSearchResult(
        method="exhaustive",
        dimensions=dims,
        order=dims,
        result=components.score(dims, with_roc=True),
        per_size=per_size,
        evaluations=cost,
    )


def _extension_errors(components, state, dim):
    return components.score_state(state + components.column(dim)).errors


def greedy_search(components, k, candidates=None, n_jobs=config.N_JOBS):
    """
    Forward selection of up to k dimensions.

    Each step scores every remaining candidate added to the current subset and
    keeps the one with the fewest errors. The first step always adds a
    dimension; later steps stop early when no candidate strictly improves.

    Returns:
        SubsetSearchResult: Selected subset with its per-step history
    """
    pool = check_candidates(candidates, components.dimension)
    k = check_subset_size(k, len(pool))

    selected = []
    state = components.empty_state()
    current_errors = None
    per_size = []
    evaluations = 0

    for step in range(1, k + 1):
        remaining = [c for c in pool if c not in selected]
        errors = Parallel(n_jobs=n_jobs, prefer="threads")(
            delayed(_extension_errors)(components, state, c) for c in remaining
        )
        evaluations += len(remaining)

        # remaining is ascending, so argmin picks the lowest index among ties
        best = int(np.argmin(errors))
        if current_errors is not None and errors[best] >= current_errors:
            logger.info("Greedy search stopped after %d elements: no candidate improves", len(selected))
            break

        selected.append(remaining[best])
        state = state + components.column(remaining[best])
        current_errors = errors[best]

        dims = tuple(sorted(selected))
        per_size.append((dims, components.score(dims)))
        logger.info("Best subset with %d elements: %s with a total of %d errors",
                    step, selected, per_size[-1][1].errors)

    dims = tuple(sorted(selected))
    return SubsetSearchResult(
        method="greedy",
        dimensions=dims,
        order=tuple(selected),
        result=components.score(dims, with_roc=True),
        per_size=per_size,
        evaluations=evaluations,
    )
