"""
This module turns verification results into comparable reports: per-strategy
rows, comparison tables sorted by accuracy, bootstrap confidence intervals
and printed summaries.
"""

import numpy as np
import pandas as pd

import config


def calculate_confidence_intervals(distances, genuine, threshold, n_bootstrap=config.BOOTSTRAP_ITERATIONS,
                                   confidence_level=config.CONFIDENCE_LEVEL, seed=config.RANDOM_STATE):
    """
    Compute a confidence interval for verification accuracy using bootstrap sampling.

    The decision threshold is held fixed; pairs are resampled with replacement
    and the fraction of correctly decided pairs is recomputed each time.

    Args:
        distances: Distance per pair
        genuine: Boolean genuine flag per pair
        threshold: Decision threshold (accept when distance <= threshold)
        n_bootstrap: Number of bootstrap iterations
        confidence_level: Desired confidence level (default 0.95 for 95% CI)
        seed: Seed for the resampling generator

    Returns:
        dict: Dictionary containing mean accuracy, lower/upper bounds, and std
    """
    correct = (np.asarray(distances) <= threshold) == np.asarray(genuine, dtype=bool)
    n_samples = correct.size

    # Handle edge case of an empty pair set
    if n_samples == 0 or n_bootstrap <= 0:
        return {"accuracy": 0.0, "lower_bound": 0.0, "upper_bound": 0.0,
                "confidence_level": confidence_level, "std": 0.0}

    rng = np.random.default_rng(seed)
    bootstrap_accuracies = np.empty(n_bootstrap)

    # Perform bootstrap resampling
    for i in range(n_bootstrap):
        indices = rng.integers(0, n_samples, size=n_samples)
        bootstrap_accuracies[i] = correct[indices].mean()

    # Calculate percentile-based confidence intervals
    alpha = 1 - confidence_level
    lower_bound = np.percentile(bootstrap_accuracies, (alpha / 2) * 100)
    upper_bound = np.percentile(bootstrap_accuracies, (1 - alpha / 2) * 100)

    return {
        "accuracy": float(np.mean(bootstrap_accuracies)),
        "lower_bound": float(lower_bound),
        "upper_bound": float(upper_bound),
        "confidence_level": confidence_level,
        "std": float(np.std(bootstrap_accuracies))
    }


def create_metrics_row(spec, result, **extra):
    """
    Flatten a reduction spec and its evaluation into one table row.

    Args:
        spec: ReductionSpec of the evaluated representation, or None for the
            unreduced baseline
        result: EvaluationResult
        extra: Additional columns (e.g. trial number, seed)

    Returns:
        dict: Row ready for pandas
    """
    row = {}
    if spec is not None:
        row["method"] = spec.method.value
        row["embedding_dimensions"] = spec.size
        for key in ("k", "fraction", "seed", "bits", "mode"):
            if key in spec.params:
                row[key] = spec.params[key]
        if spec.dimensions is not None and spec.size < spec.dimension:
            row["indices"] = list(spec.dimensions)
    else:
        row["method"] = "original"
    row.update(extra)
    row.update(result.as_dict())
    return row


def compare_strategies(rows, sort=True):
    """
    Aggregate result rows into a comparison DataFrame.

    Args:
        rows: List of dicts from create_metrics_row
        sort: Sort by accuracy, best first

    Returns:
        pd.DataFrame: One row per evaluated representation
    """
    # Handle empty input
    if not rows:
        return pd.DataFrame()

    df = pd.DataFrame(rows)
    if sort:
        df = df.sort_values("accuracy", ascending=False, kind="stable").reset_index(drop=True)
    return df


def summarize_trials(df, group="k"):
    """Mean, std, min and max accuracy across repeated random trials."""
    if df.empty:
        return df
    return df.groupby(group)["accuracy"].agg(["mean", "std", "min", "max", "count"]).reset_index()


def print_metrics_summary(result, title):
    print(f"\n{title}")
    print(f"  Accuracy:  {result.accuracy:.4f} ({result.errors} errors of {result.n_pairs} pairs)")
    print(f"  Threshold: {result.threshold:.6f}")
    print(f"  FP/FN:     {result.false_accepts}/{result.false_rejects}")
    if result.eer is not None:
        print(f"  EER:       {result.eer:.4f}")
    if result.auc is not None:
        print(f"  AUC:       {result.auc:.4f}")
