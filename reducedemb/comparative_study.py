# reducedemb/comparative_study.py
import logging

import numpy as np
from tqdm import tqdm

import config
from reducedemb.errors import InvalidParameter
from reducedemb.metrics import compare_strategies, create_metrics_row
from reducedemb.reduction import (
    Method, best_elements_full, best_elements_greedy, build_reduction, check_amount, observed_rows,
    proposed, quantize, selection
)
from reducedemb.verification import evaluate

logger = logging.getLogger(__name__)


def evaluate_reduction(reduction, embeddings, pairs, metric=config.DISTANCE_METRIC, with_roc=True):
    return evaluate(reduction.apply(embeddings), pairs, metric=metric, with_roc=with_roc)


def baseline_row(embeddings, pairs, metric=config.DISTANCE_METRIC):
    result = evaluate(embeddings, pairs, metric=metric)
    return create_metrics_row(None, result, embedding_dimensions=np.shape(embeddings)[1])


def truncation_study(embeddings, pairs, sizes=None, metric=config.DISTANCE_METRIC, verbose=config.VERBOSE):
    dimension = np.shape(embeddings)[1]
    if sizes is None:
        sizes = range(dimension, 0, -1)

    rows = []
    for k in tqdm(sizes, desc="Truncation", disable=not verbose):
        reduction = build_reduction(Method.TRUNCATE, embeddings, k=k)
        result = evaluate_reduction(reduction, embeddings, pairs, metric)
        rows.append(create_metrics_row(reduction.spec, result))
    return compare_strategies(rows, sort=False)


def relative_truncation_study(embeddings, pairs, percents=None, metric=config.DISTANCE_METRIC,
                              verbose=config.VERBOSE):
    if percents is None:
        percents = config.RELATIVE_PERCENT_RANGE

    rows = []
    for percent in tqdm(percents, desc="Relative truncation", disable=not verbose):
        reduction = build_reduction(Method.TRUNCATE_RELATIVE, embeddings, fraction=percent / 100.0)
        result = evaluate_reduction(reduction, embeddings, pairs, metric)
        rows.append(create_metrics_row(reduction.spec, result, percent=percent))
    return compare_strategies(rows, sort=False)


def random_trials_study(embeddings, pairs, k, trials=config.RANDOM_TRIALS, seed=config.RANDOM_STATE,
                        metric=config.DISTANCE_METRIC, verbose=config.VERBOSE):
    """Evaluate `trials` independent random draws of k dimensions (seeds seed..seed+trials-1)."""
    if trials < 1:
        raise InvalidParameter(f"number of trials must be positive, got {trials}")

    rows = []
    for trial in tqdm(range(trials), desc=f"Random {k} dims", disable=not verbose):
        reduction = build_reduction(Method.RANDOM, embeddings, k=k, seed=seed + trial)
        result = evaluate_reduction(reduction, embeddings, pairs, metric, with_roc=False)
        rows.append(create_metrics_row(reduction.spec, result, trial=trial))
    return compare_strategies(rows, sort=False)


def random_full_study(embeddings, pairs, sizes=None, seed=config.RANDOM_STATE,
                      resample=config.RANDOM_FULL_RESAMPLE, metric=config.DISTANCE_METRIC,
                      verbose=config.VERBOSE):
    """
    Evaluate one random selection per size.

    Without resampling every size keeps a prefix of one seeded permutation, so
    smaller selections are nested in larger ones. With resampling each size k
    draws a fresh subset with seed + k.
    """
    dimension = np.shape(embeddings)[1]
    if sizes is None:
        sizes = range(dimension, 0, -1)
    permutation = np.random.default_rng(seed).permutation(dimension)

    rows = []
    for k in tqdm(sizes, desc="Random dimensions", disable=not verbose):
        k = check_amount(k, dimension)
        if resample:
            reduction = build_reduction(Method.RANDOM, embeddings, k=k, seed=seed + k)
        else:
            reduction = selection(Method.RANDOM, dimension, permutation[:k], k=k, seed=seed)
        result = evaluate_reduction(reduction, embeddings, pairs, metric, with_roc=False)
        rows.append(create_metrics_row(reduction.spec, result, resample=resample))
    return compare_strategies(rows, sort=False)


def quantization_study(embeddings, pairs, bits_list=None, mode=config.QUANT_MODE,
                       metric=config.DISTANCE_METRIC, verbose=config.VERBOSE):
    """Evaluate the original embeddings followed by each quantization bit width."""
    if bits_list is None:
        bits_list = config.QUANT_BITS_RANGE
    observed = observed_rows(embeddings)

    rows = [baseline_row(embeddings, pairs, metric)]
    for bits in tqdm(bits_list, desc="Quantization", disable=not verbose):
        reduction, quantizer = quantize(embeddings, bits, mode=mode)
        codes = quantizer.quantize(observed)
        result = evaluate_reduction(reduction, embeddings, pairs, metric)
        rows.append(create_metrics_row(
            reduction.spec, result,
            min_code=int(codes.min()), max_code=int(codes.max()),
            max_error=float(np.max(quantizer.params().max_error))
        ))
    return compare_strategies(rows, sort=False)


def subset_search_study(embeddings, pairs, k, exhaustive=True, candidates=None,
                        metric=config.DISTANCE_METRIC, max_evaluations=config.MAX_SUBSET_EVALUATIONS):
    """
    Run a best-subset search and report the best subset of each size reached.

    Returns:
        tuple: (DataFrame with one row per subset size, Reduction, SubsetSearchResult)
    """
    if exhaustive:
        reduction, found = best_elements_full(embeddings, pairs, k, metric=metric, candidates=candidates,
                                              max_evaluations=max_evaluations)
    else:
        reduction, found = best_elements_greedy(embeddings, pairs, k, metric=metric, candidates=candidates)

    rows = []
    for dims, result in found.per_size:
        rows.append({"method": found.method, "elements": len(dims), "indices": list(dims), **result.as_dict()})
    logger.info("%s search scored %d subsets", found.method, found.evaluations)
    return compare_strategies(rows, sort=False), reduction, found


def proposed_study(embeddings, pairs, k=None, bits=config.PROPOSED_BITS, dimensions=None,
                   mode=config.QUANT_MODE, metric=config.DISTANCE_METRIC):
    """Compare the original embeddings with the select-then-quantize representation."""
    reduction, quantizer = proposed(embeddings, pairs, k=k, bits=bits, dimensions=dimensions,
                                    mode=mode, metric=metric)
    result = evaluate_reduction(reduction, embeddings, pairs, metric)
    rows = [baseline_row(embeddings, pairs, metric), create_metrics_row(reduction.spec, result)]
    return compare_strategies(rows, sort=False), reduction, quantizer
