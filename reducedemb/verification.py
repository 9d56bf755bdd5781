"""
This module implements pairwise face verification evaluation.

Key concepts:
- Genuine pairs: Two images of the same person (should have a small distance)
- Impostor pairs: Two images of different people (should have a large distance)
- Decision rule: a pair is accepted as genuine when distance <= threshold
- Best threshold: the observed distance minimizing false accepts + false rejects
- Equal Error Rate (EER): The point where false accept rate equals false reject rate
- ROC-AUC: Area under the ROC curve measuring verification performance
"""

import logging
from dataclasses import dataclass, field

import numpy as np
from joblib import Parallel, delayed
from sklearn.metrics import roc_curve, roc_auc_score

import config
from reducedemb.errors import DegeneratePairSet, InvalidParameter

logger = logging.getLogger(__name__)


def check_metric(metric):
    if metric not in config.DISTANCE_METRICS:
        raise InvalidParameter(f"unknown distance metric {metric!r}, expected one of {config.DISTANCE_METRICS}")
    return metric


def _cosine_distance(dot, norm_a, norm_b):
    denom = np.sqrt(norm_a * norm_b)
    # Zero vectors carry no direction; treat them as orthogonal to everything
    with np.errstate(divide="ignore", invalid="ignore"):
        dist = 1.0 - np.where(denom > 0, dot / denom, 0.0)
    return dist


def _distance_chunk(a, b, metric):
    if metric == "euclidean":
        return np.sqrt(np.sum((a - b) ** 2, axis=1))
    return _cosine_distance(np.sum(a * b, axis=1), np.sum(a * a, axis=1), np.sum(b * b, axis=1))


def pair_distances(embeddings, pairs, metric=config.DISTANCE_METRIC, n_jobs=config.N_JOBS,
                   chunk_size=config.PAIR_CHUNK_SIZE):
    """
    Compute the distance of every labeled pair.

    Args:
        embeddings: Matrix of shape (n_records, d), one representation per record
        pairs: PairArrays with record indices and genuine flags
        metric: "euclidean" or "cosine" (1 - cosine similarity)
        n_jobs: joblib worker threads
        chunk_size: Pairs handled per parallel task

    Returns:
        numpy.ndarray: Distances aligned with the pairs
    """
    check_metric(metric)
    embeddings = np.asarray(embeddings, dtype=np.float64)
    n_pairs = len(pairs.first)
    if n_pairs == 0:
        return np.empty(0)

    bounds = [(start, min(start + chunk_size, n_pairs)) for start in range(0, n_pairs, chunk_size)]
    if len(bounds) == 1:
        return _distance_chunk(embeddings[pairs.first], embeddings[pairs.second], metric)

    chunks = Parallel(n_jobs=n_jobs, prefer="threads")(
        delayed(_distance_chunk)(embeddings[pairs.first[lo:hi]], embeddings[pairs.second[lo:hi]], metric)
        for lo, hi in bounds
    )
    return np.concatenate(chunks)


@dataclass
class EvaluationResult:
    """
    Outcome of scoring one representation against the pair labels.

    Attributes:
        accuracy: 1 - (false_accepts + false_rejects) / n_pairs at the best threshold
        threshold: Distance threshold achieving the accuracy
        false_accepts: Impostor pairs with distance <= threshold
        false_rejects: Genuine pairs with distance > threshold
        n_genuine: Number of genuine pairs
        n_impostor: Number of impostor pairs
        eer: Equal error rate, when ROC statistics were requested
        auc: ROC-AUC of the negated distances, when requested
        curve: Dict of thresholds/far/frr arrays, when requested
    """

    accuracy: float
    threshold: float
    false_accepts: int
    false_rejects: int
    n_genuine: int
    n_impostor: int
    eer: float = None
    auc: float = None
    curve: dict = field(default=None, repr=False)

    @property
    def errors(self):
        return self.false_accepts + self.false_rejects

    @property
    def n_pairs(self):
        return self.n_genuine + self.n_impostor

    @property
    def far(self):
        return self.false_accepts / self.n_impostor

    @property
    def frr(self):
        return self.false_rejects / self.n_genuine

    @property
    def false_discovery_rate(self):
        accepted = self.false_accepts + (self.n_genuine - self.false_rejects)
        return self.false_accepts / accepted if accepted else 0.0

    @property
    def false_omission_rate(self):
        rejected = self.false_rejects + (self.n_impostor - self.false_accepts)
        return self.false_rejects / rejected if rejected else 0.0

    def as_dict(self):
        row = {
            "accuracy": self.accuracy,
            "threshold": self.threshold,
            "fp": self.false_accepts,
            "fn": self.false_rejects,
            "errors": self.errors,
            "far": self.far,
            "frr": self.frr,
            "fdr": self.false_discovery_rate,
            "for": self.false_omission_rate,
        }
        if self.eer is not None:
            row["eer"] = self.eer
        if self.auc is not None:
            row["auc"] = self.auc
        return row


def sweep_thresholds(distances, genuine):
    """
    Count errors at every candidate threshold.

    Candidates are the sorted distinct observed distances, so no optimum
    between two samples is missed.

    Returns:
        tuple: (thresholds, false_accepts, false_rejects) arrays

    Raises:
        DegeneratePairSet: If there are no genuine or no impostor pairs
    """
    distances = np.asarray(distances, dtype=np.float64)
    genuine = np.asarray(genuine, dtype=bool)
    same = np.sort(distances[genuine])
    diff = np.sort(distances[~genuine])
    if same.size == 0 or diff.size == 0:
        raise DegeneratePairSet(
            f"pair set has {same.size} genuine and {diff.size} impostor pairs; no threshold is meaningful"
        )

    thresholds = np.unique(distances)
    false_rejects = same.size - np.searchsorted(same, thresholds, side="right")
    false_accepts = np.searchsorted(diff, thresholds, side="right")
    return thresholds, false_accepts, false_rejects


def calculate_eer(fpr, tpr, thresholds):
    """
    Calculate the Equal Error Rate (EER) from ROC curve data.

    Args:
        fpr: False positive rates at different thresholds
        tpr: True positive rates at different thresholds
        thresholds: Threshold values corresponding to FPR/TPR points

    Returns:
        tuple: (eer, threshold) where eer is the equal error rate and
               threshold is the operating point that achieves this EER
    """
    # False negative rate is complement of true positive rate
    fnr = 1 - tpr

    # Find the point where FNR and FPR are closest (ideally equal)
    idx = np.nanargmin(np.absolute(fnr - fpr))

    return fpr[idx], thresholds[idx]


def evaluate_distances(distances, genuine, with_curve=False, with_roc=False):
    """
    Derive the verification summary from precomputed pair distances.

    Args:
        distances: Distance per pair
        genuine: Boolean genuine flag per pair
        with_curve: Attach the full FAR/FRR curve
        with_roc: Compute EER and ROC-AUC with scikit-learn

    Returns:
        EvaluationResult: Best-threshold accuracy and error counts
    """
    genuine = np.asarray(genuine, dtype=bool)
    thresholds, false_accepts, false_rejects = sweep_thresholds(distances, genuine)
    n_genuine = int(genuine.sum())
    n_impostor = int(genuine.size - n_genuine)

    # argmin returns the first minimum, i.e. the lowest threshold among ties
    best = int(np.argmin(false_accepts + false_rejects))
    errors = int(false_accepts[best] + false_rejects[best])

    result = EvaluationResult(
        accuracy=1.0 - errors / genuine.size,
        threshold=float(thresholds[best]),
        false_accepts=int(false_accepts[best]),
        false_rejects=int(false_rejects[best]),
        n_genuine=n_genuine,
        n_impostor=n_impostor,
    )

    if with_roc:
        # Similarity score is the negated distance
        scores = -np.asarray(distances, dtype=np.float64)
        fpr, tpr, roc_thresholds = roc_curve(genuine, scores)
        eer, _ = calculate_eer(fpr, tpr, roc_thresholds)
        result.eer = float(eer)
        result.auc = float(roc_auc_score(genuine, scores))

    if with_curve:
        result.curve = {
            "thresholds": thresholds,
            "far": false_accepts / n_impostor,
            "frr": false_rejects / n_genuine,
        }

    return result


def evaluate(embeddings, pairs, metric=config.DISTANCE_METRIC, with_curve=False, with_roc=True,
             n_jobs=config.N_JOBS):
    """
    Score one representation of every record against the pair labels.

    Args:
        embeddings: Matrix of shape (n_records, d)
        pairs: PairArrays with record indices and genuine flags
        metric: Dataset-wide distance metric
        with_curve: Attach the full FAR/FRR curve
        with_roc: Compute EER and ROC-AUC
        n_jobs: joblib worker threads for the distance computation

    Returns:
        EvaluationResult: Verification summary
    """
    distances = pair_distances(embeddings, pairs, metric=metric, n_jobs=n_jobs)
    return evaluate_distances(distances, pairs.genuine, with_curve=with_curve, with_roc=with_roc)


class PairwiseComponents:
    """
    Per-dimension pair contributions for fast subset scoring.

    For euclidean distance each pair stores (a_j - b_j)^2 per dimension; for
    cosine it stores a_j*b_j, a_j^2 and b_j^2. The distance of any subset of
    dimensions is then a column sum, so subset searches and the importance
    profiler never touch the embeddings again.

    A "state" is the summed contribution of a subset, shape (channels, n_pairs).
    """

    def __init__(self, embeddings, pairs, metric=config.DISTANCE_METRIC):
        self.metric = check_metric(metric)
        embeddings = np.asarray(embeddings, dtype=np.float64)
        a = embeddings[pairs.first]
        b = embeddings[pairs.second]

        if metric == "euclidean":
            self.components = ((a - b) ** 2)[np.newaxis]
        else:
            self.components = np.stack([a * b, a * a, b * b])

        self.genuine = np.asarray(pairs.genuine, dtype=bool)
        self.dimension = embeddings.shape[1]

        # Fail early rather than inside a search
        if self.genuine.all() or not self.genuine.any():
            raise DegeneratePairSet(
                f"pair set has {int(self.genuine.sum())} genuine and "
                f"{int((~self.genuine).sum())} impostor pairs; no threshold is meaningful"
            )

    @property
    def n_pairs(self):
        return self.genuine.size

    def empty_state(self):
        return np.zeros(self.components.shape[:2])

    def full_state(self):
        return self.components.sum(axis=2)

    def state(self, dims):
        dims = np.asarray(sorted(dims), dtype=np.intp)
        if dims.size == 0:
            return self.empty_state()
        return self.components[:, :, dims].sum(axis=2)

    def column(self, dim):
        return self.components[:, :, dim]

    def distances(self, state):
        if self.metric == "euclidean":
            return np.sqrt(np.maximum(state[0], 0.0))
        return _cosine_distance(state[0], state[1], state[2])

    def score_state(self, state, with_roc=False):
        return evaluate_distances(self.distances(state), self.genuine, with_roc=with_roc)

    def score(self, dims, with_roc=False):
        """Evaluate the representation made of the given dimensions."""
        return self.score_state(self.state(dims), with_roc=with_roc)
