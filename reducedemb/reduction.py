"""
This module implements the reduction strategies.

Every strategy maps the full embedding matrix (n_records, D) to a Reduction:
a ReductionSpec describing what was chosen, and a `reduce` function that is
applied uniformly to every record. Strategies form a closed set keyed by
Method. build_reduction() dispatches on Method when only the Reduction is
needed; callers that also want the search result or the fitted quantizer
call the strategy function directly.

Strategies:
- TRUNCATE: keep dimensions [0, k)
- TRUNCATE_RELATIVE: keep the first round(p * D) dimensions
- RANDOM: keep k seeded, uniformly sampled dimensions
- BEST_FULL: keep the best subset of at most k dimensions (exhaustive search)
- BEST_GREEDY: keep the subset found by greedy forward selection
- QUANT: keep every dimension, quantized to a fixed bit width
- PROPOSED: select dimensions, then quantize the retained ones
"""

import logging
from dataclasses import dataclass, field
from enum import Enum

import numpy as np

import config
from reducedemb.errors import InvalidParameter
from reducedemb.quantization import AffineQuantizer
from reducedemb.search import exhaustive_search, greedy_search
from reducedemb.verification import PairwiseComponents

logger = logging.getLogger(__name__)


class Method(Enum):
    TRUNCATE = "truncate"
    TRUNCATE_RELATIVE = "truncate-rel"
    RANDOM = "random"
    BEST_FULL = "best-full"
    BEST_GREEDY = "best-greedy"
    QUANT = "quant"
    PROPOSED = "proposed"


@dataclass(frozen=True)
class ReductionSpec:
    """
    Attributes:
        method: Strategy tag
        dimension: Width D of the full embedding
        params: Strategy parameters (k, fraction, seed, bits, mode, ...)
        dimensions: Selected dimensions in ascending order, None when all are kept
        quantization: QuantizationParams when values are quantized
    """

    method: Method
    dimension: int
    params: dict = field(default_factory=dict)
    dimensions: tuple = None
    quantization: object = None

    @property
    def size(self):
        return self.dimension if self.dimensions is None else len(self.dimensions)

    def as_dict(self):
        row = {"method": self.method.value, "size": self.size, **self.params}
        if self.dimensions is not None:
            row["dimensions"] = list(self.dimensions)
        if self.quantization is not None:
            row["quantization"] = self.quantization.as_dict()
        return row


@dataclass(frozen=True)
class Reduction:
    spec: ReductionSpec
    reduce: object

    def apply(self, embeddings):
        """Reduce a matrix of embeddings; rows containing NaN stay NaN."""
        embeddings = np.asarray(embeddings, dtype=np.float64)
        valid = ~np.isnan(embeddings).any(axis=1)
        reduced = np.full((embeddings.shape[0], self.spec.size), np.nan)
        if valid.any():
            reduced[valid] = self.reduce(embeddings[valid])
        return reduced


def observed_rows(embeddings):
    embeddings = np.asarray(embeddings, dtype=np.float64)
    if embeddings.ndim != 2:
        raise InvalidParameter("embeddings must be a 2D matrix")
    return embeddings[~np.isnan(embeddings).any(axis=1)]


def check_amount(k, dimension, what="dimension count"):
    if isinstance(k, bool) or not isinstance(k, (int, np.integer)) or not 1 <= k <= dimension:
        raise InvalidParameter(f"{what} must be in [1, {dimension}], got {k!r}", dimension=k)
    return int(k)


def check_fraction(fraction):
    if not isinstance(fraction, (int, float, np.floating)) or not 0 < fraction <= 1:
        raise InvalidParameter(f"fraction must be in (0, 1], got {fraction!r}")
    return float(fraction)


def relative_size(fraction, dimension):
    """round(fraction * dimension), rounding halves up."""
    k = int(np.floor(check_fraction(fraction) * dimension + 0.5))
    if k == 0:
        raise InvalidParameter(f"fraction {fraction} keeps no dimension out of {dimension}")
    return k


def check_dimensions(dims, dimension):
    dims = [int(d) for d in dims]
    if not dims:
        raise InvalidParameter("a selection must keep at least one dimension")
    if len(set(dims)) != len(dims):
        raise InvalidParameter("selected dimensions contain duplicates")
    if min(dims) < 0 or max(dims) >= dimension:
        raise InvalidParameter(f"selected dimensions must lie in [0, {dimension})")
    return tuple(sorted(dims))


def selection(method, dimension, dims, **params):
    """Build a Reduction keeping `dims` in their original relative order."""
    dims = check_dimensions(dims, dimension)
    index = np.asarray(dims, dtype=np.intp)

    def reduce(x):
        return np.asarray(x, dtype=np.float64)[..., index]

    spec = ReductionSpec(method, dimension, params, dimensions=dims)
    return Reduction(spec, reduce)


def truncate(embeddings, k):
    dimension = np.shape(embeddings)[1]
    k = check_amount(k, dimension)
    return selection(Method.TRUNCATE, dimension, range(k), k=k)


def truncate_relative(embeddings, fraction):
    dimension = np.shape(embeddings)[1]
    k = relative_size(fraction, dimension)
    return selection(Method.TRUNCATE_RELATIVE, dimension, range(k), fraction=float(fraction), k=k)


def sample_dimensions(dimension, k, seed):
    """Draw k distinct dimensions uniformly; the same seed gives the same draw."""
    rng = np.random.default_rng(seed)
    return sorted(int(d) for d in rng.choice(dimension, size=k, replace=False))


def random_dimensions(embeddings, k, seed=config.RANDOM_STATE):
    dimension = np.shape(embeddings)[1]
    k = check_amount(k, dimension)
    return selection(Method.RANDOM, dimension, sample_dimensions(dimension, k, seed), k=k, seed=seed)


def best_elements_full(embeddings, pairs, k, metric=config.DISTANCE_METRIC, candidates=None,
                       max_evaluations=config.MAX_SUBSET_EVALUATIONS, n_jobs=config.N_JOBS):
    components = PairwiseComponents(embeddings, pairs, metric=metric)
    found = exhaustive_search(components, k, candidates=candidates, max_evaluations=max_evaluations,
                              n_jobs=n_jobs)
    return selection(Method.BEST_FULL, components.dimension, found.dimensions,
                     k=int(k), metric=metric, accuracy=found.accuracy), found


def best_elements_greedy(embeddings, pairs, k, metric=config.DISTANCE_METRIC, candidates=None,
                         n_jobs=config.N_JOBS):
    components = PairwiseComponents(embeddings, pairs, metric=metric)
    found = greedy_search(components, k, candidates=candidates, n_jobs=n_jobs)
    return selection(Method.BEST_GREEDY, components.dimension, found.dimensions,
                     k=int(k), metric=metric, accuracy=found.accuracy), found


def quantize(embeddings, bits, mode=config.QUANT_MODE):
    """
    Quantize every dimension; reduce() returns the dequantized approximation
    so results stay on the same scale as unquantized strategies.
    """
    observed = observed_rows(embeddings)
    quantizer = AffineQuantizer(bits, mode=mode).fit(observed)
    spec = ReductionSpec(Method.QUANT, observed.shape[1], {"bits": quantizer.bits, "mode": mode},
                         quantization=quantizer.params())
    return Reduction(spec, quantizer.round_trip), quantizer


def proposed(embeddings, pairs=None, k=None, bits=config.PROPOSED_BITS, dimensions=None,
             mode=config.QUANT_MODE, metric=config.DISTANCE_METRIC, n_jobs=config.N_JOBS):
    """
    Select dimensions, then quantize the retained ones.

    Args:
        embeddings: Full embedding matrix
        pairs: Pair labels, required when dimensions must be searched
        k: Number of dimensions for the greedy selection
        bits: Quantization bit width for the retained dimensions
        dimensions: Fixed selection; when None a greedy search of size k runs

    Returns:
        tuple: (Reduction, AffineQuantizer)
    """
    observed = observed_rows(embeddings)
    dimension = observed.shape[1]
    if dimensions is None:
        if k is None or pairs is None:
            raise InvalidParameter("proposed needs either fixed dimensions or k together with pairs")
        chosen, _ = best_elements_greedy(embeddings, pairs, k, metric=metric, n_jobs=n_jobs)
        dimensions = chosen.spec.dimensions

    dims = check_dimensions(dimensions, dimension)
    index = np.asarray(dims, dtype=np.intp)
    quantizer = AffineQuantizer(bits, mode=mode).fit(observed[:, index])

    def reduce(x):
        return quantizer.round_trip(np.asarray(x, dtype=np.float64)[..., index])

    spec = ReductionSpec(Method.PROPOSED, dimension, {"k": len(dims), "bits": quantizer.bits, "mode": mode},
                         dimensions=dims, quantization=quantizer.params())
    return Reduction(spec, reduce), quantizer


def build_reduction(method, embeddings, pairs=None, **params):
    """
    Build a Reduction for any Method.

    Search and quantization strategies return extra detail (search result or
    fitted quantizer); this function returns only the Reduction.
    """
    method = Method(method)
    if method is Method.TRUNCATE:
        return truncate(embeddings, **params)
    if method is Method.TRUNCATE_RELATIVE:
        return truncate_relative(embeddings, **params)
    if method is Method.RANDOM:
        return random_dimensions(embeddings, **params)
    if method is Method.BEST_FULL:
        return best_elements_full(embeddings, pairs, **params)[0]
    if method is Method.BEST_GREEDY:
        return best_elements_greedy(embeddings, pairs, **params)[0]
    if method is Method.QUANT:
        return quantize(embeddings, **params)[0]
    return proposed(embeddings, pairs, **params)[0]
