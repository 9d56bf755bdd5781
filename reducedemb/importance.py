"""
Per-dimension importance profiling (the source data for heatmaps).

Modes:
- separation: sum over impostor pairs of (a_j - b_j)^2 minus the same sum
  over genuine pairs, min-max normalized to [0, 1]. High values mark
  dimensions that spread different people apart while keeping the same
  person together.
- ablation: accuracy of the full embedding minus accuracy without dimension j.
- solo: accuracy of dimension j alone minus the accuracy of the empty
  representation (every pair at distance zero).

The scores are returned as an array aligned with dimension index; rendering
is left to the caller.
"""

import logging

import numpy as np
from joblib import Parallel, delayed

import config
from reducedemb.errors import DegeneratePairSet, InvalidParameter
from reducedemb.verification import PairwiseComponents

logger = logging.getLogger(__name__)


def normalize_scores(scores):
    lo, hi = np.min(scores), np.max(scores)
    if hi == lo:
        return np.zeros_like(scores, dtype=np.float64)
    return (scores - lo) / (hi - lo)


def separation_scores(embeddings, pairs, dims):
    embeddings = np.asarray(embeddings, dtype=np.float64)
    genuine = np.asarray(pairs.genuine, dtype=bool)
    if genuine.all() or not genuine.any():
        raise DegeneratePairSet("importance profiling needs both genuine and impostor pairs")
    diff = (embeddings[pairs.first][:, dims] - embeddings[pairs.second][:, dims]) ** 2
    impact = diff[~genuine].sum(axis=0) - diff[genuine].sum(axis=0)
    return normalize_scores(impact)


def ablation_scores(components, dims, n_jobs):
    full = components.full_state()
    baseline = components.score_state(full).accuracy
    accuracies = Parallel(n_jobs=n_jobs, prefer="threads")(
        delayed(lambda j: components.score_state(full - components.column(j)).accuracy)(j) for j in dims
    )
    return baseline - np.asarray(accuracies)


def solo_scores(components, dims, n_jobs):
    baseline = components.score_state(components.empty_state()).accuracy
    accuracies = Parallel(n_jobs=n_jobs, prefer="threads")(
        delayed(lambda j: components.score_state(components.column(j)).accuracy)(j) for j in dims
    )
    return np.asarray(accuracies) - baseline


def profile(embeddings, pairs, mode=config.HEATMAP_MODE, dimensions=None,
            metric=config.DISTANCE_METRIC, n_jobs=config.N_JOBS):
    """
    Score each dimension's contribution to verification accuracy.

    Args:
        embeddings: Matrix of shape (n_records, D)
        pairs: PairArrays with record indices and genuine flags
        mode: "separation", "ablation" or "solo"
        dimensions: Profile only the first `dimensions` dimensions (default: all D)
        metric: Distance metric for the accuracy-based modes

    Returns:
        numpy.ndarray: One score per profiled dimension, in index order
    """
    if mode not in config.HEATMAP_MODES:
        raise InvalidParameter(f"unknown profile mode {mode!r}, expected one of {config.HEATMAP_MODES}")

    dimension = np.shape(embeddings)[1]
    if dimensions is None:
        dimensions = dimension
    if isinstance(dimensions, bool) or not isinstance(dimensions, (int, np.integer)) \
            or not 1 <= dimensions <= dimension:
        raise InvalidParameter(f"profiled dimensions must be in [1, {dimension}], got {dimensions!r}")
    dims = np.arange(dimensions)

    logger.info("Profiling %d dimensions (%s)", dimensions, mode)
    if mode == "separation":
        return separation_scores(embeddings, pairs, dims)

    components = PairwiseComponents(embeddings, pairs, metric=metric)
    if mode == "ablation":
        return ablation_scores(components, dims, n_jobs)
    return solo_scores(components, dims, n_jobs)
