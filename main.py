# main.py
import argparse
import logging
import os
import sys

import pandas as pd

import config
from reducedemb.cache import EmbeddingCache
from reducedemb.comparative_study import (
    proposed_study, quantization_study, random_full_study, random_trials_study,
    relative_truncation_study, subset_search_study, truncation_study
)
from reducedemb.errors import InvalidParameter, ReducedEmbError
from reducedemb.extractor import TorchScriptExtractor
from reducedemb.importance import profile
from reducedemb.metrics import calculate_confidence_intervals, print_metrics_summary, summarize_trials
from reducedemb.preprocessing import DatasetLoader
from reducedemb.search import check_candidates, check_search_cost, check_subset_size
from reducedemb.utils import export_embeddings, save_metrics_to_json, save_model, save_table, setup_logging
from reducedemb.verification import evaluate, pair_distances

logger = logging.getLogger("reducedemb")

ACTIONS = [
    "cache", "extract-emb", "truncate-embedding-size", "truncate-embedding-size-rel",
    "random-dimensions", "random-dimensions-full", "best-elements-full", "best-elements-greedy",
    "heatmap", "quant", "proposed",
]

# Actions whose --amount is mandatory
AMOUNT_REQUIRED = {"random-dimensions", "best-elements-full", "best-elements-greedy"}


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Evaluate strategies for shrinking face embeddings while preserving verification accuracy."
    )
    parser.add_argument("--data", required=True, choices=sorted(config.DATASETS),
                        help="Dataset complexity class: easy (LFW) or hard (CPLFW).")
    parser.add_argument("--lfwpath", help="Root directory of the LFW images (required for --data easy).")
    parser.add_argument("--cplfwpath", help="Root directory of the CPLFW images (required for --data hard).")
    parser.add_argument("--action", required=True, choices=ACTIONS)
    parser.add_argument("--amount", type=int,
                        help="Dimension count, percentage (truncate-embedding-size-rel) or bit width (quant).")
    parser.add_argument("--pairs", help="Override the configured pairs file.")
    parser.add_argument("--candidates", type=int,
                        help="Restrict best-elements searches to the first N dimensions.")
    parser.add_argument("--metric", choices=config.DISTANCE_METRICS, default=config.DISTANCE_METRIC)
    parser.add_argument("--seed", type=int, default=config.RANDOM_STATE)
    parser.add_argument("--quant-mode", choices=config.QUANT_MODES, default=config.QUANT_MODE)
    parser.add_argument("--heatmap-mode", choices=config.HEATMAP_MODES, default=config.HEATMAP_MODE)
    parser.add_argument("--model", default=config.EXTRACTOR_MODEL_FILE, help="TorchScript embedding model.")
    parser.add_argument("--cache-file", help="Embedding cache file (default: data/cache-<dataset>.json).")
    parser.add_argument("--force", action="store_true", help="Re-extract embeddings even when cached.")
    args = parser.parse_args(argv)

    flag = config.DATASETS[args.data]['path_flag']
    if getattr(args, flag.lstrip("-")) is None:
        parser.error(f"--data {args.data} requires {flag}")
    if args.action in AMOUNT_REQUIRED and args.amount is None:
        parser.error(f"--action {args.action} requires --amount")
    return args


def validate_amount(action, amount, dimension):
    """Reject out-of-range parameters before any work starts."""
    if amount is None or action in ("cache", "extract-emb"):
        return
    if action == "truncate-embedding-size-rel":
        low, high, what = 1, 100, "percentage"
    elif action == "quant":
        low, high, what = 1, config.MAX_QUANT_BITS, "bit width"
    else:
        low, high, what = 1, dimension, "dimension count"
    if not low <= amount <= high:
        raise InvalidParameter(f"--amount for {action} is a {what} in [{low}, {high}], got {amount}",
                               dimension=amount)


def search_candidates(args, dimension):
    if args.candidates is None:
        return None
    if not 1 <= args.candidates <= dimension:
        raise InvalidParameter(f"--candidates must be in [1, {dimension}], got {args.candidates}")
    return range(args.candidates)



def validate_search(args, dimension):
    """Check subset size, candidate pool and search cost before any extraction."""
    if args.action not in ("best-elements-full", "best-elements-greedy"):
        return
    pool = check_candidates(search_candidates(args, dimension), dimension)
    k = check_subset_size(args.amount, len(pool))
    if args.action == "best-elements-full":
        check_search_cost(len(pool), k)


def run_best_elements(args, dataset, embeddings, pairs, exhaustive):
    candidates = search_candidates(args, dataset.dimension)
    df, reduction, found = subset_search_study(embeddings, pairs, args.amount, exhaustive=exhaustive,
                                               candidates=candidates, metric=args.metric)
    print_metrics_summary(found.result, f"Best {len(found.dimensions)} dimensions ({found.method})")
    print(f"  Indices:   {list(found.dimensions)}")
    save_model(reduction.spec, f"{dataset.name}_{found.method}_{args.amount}")
    return df


def run_heatmap(args, dataset, embeddings, pairs):
    scores = profile(embeddings, pairs, mode=args.heatmap_mode, dimensions=args.amount, metric=args.metric)
    return pd.DataFrame({"idx": range(len(scores)), "score": scores})


def run_proposed(args, dataset, embeddings, pairs):
    dimensions = None if args.amount else config.PROPOSED_DIMENSIONS
    df, reduction, quantizer = proposed_study(embeddings, pairs, k=args.amount, dimensions=dimensions,
                                              mode=args.quant_mode, metric=args.metric)

    reduced = reduction.apply(embeddings)
    result = evaluate(reduced, pairs, metric=args.metric)
    distances = pair_distances(reduced, pairs, metric=args.metric)
    ci = calculate_confidence_intervals(distances, pairs.genuine, result.threshold)
    print_metrics_summary(result, f"Proposed: {reduction.spec.size} dimensions at {quantizer.bits} bits")
    print(f"  CI ({ci['confidence_level']:.0%}): [{ci['lower_bound']:.4f}, {ci['upper_bound']:.4f}]")

    save_metrics_to_json({"spec": reduction.spec.as_dict(), "result": result.as_dict(), "confidence_interval": ci},
                         os.path.join(config.METRICS_PATH, f"{dataset.name}_proposed.json"))
    save_model(quantizer, f"{dataset.name}_proposed_quantizer")
    return df, reduction, quantizer


def run_extract(args, dataset, embeddings, pairs):
    df, reduction, quantizer = run_proposed(args, dataset, embeddings, pairs)
    export_embeddings(dataset, reduction, quantizer, dataset.name)
    return df


def run_action(args, dataset, embeddings, pairs):
    amount = args.amount
    if args.action == "truncate-embedding-size":
        return truncation_study(embeddings, pairs, sizes=[amount] if amount else None, metric=args.metric)
    if args.action == "truncate-embedding-size-rel":
        return relative_truncation_study(embeddings, pairs, percents=[amount] if amount else None,
                                         metric=args.metric)
    if args.action == "random-dimensions":
        df = random_trials_study(embeddings, pairs, amount, seed=args.seed, metric=args.metric)
        print("\nRandom trials summary:")
        print(summarize_trials(df).to_string(index=False))
        return df
    if args.action == "random-dimensions-full":
        return random_full_study(embeddings, pairs, sizes=[amount] if amount else None, seed=args.seed,
                                 metric=args.metric)
    if args.action == "best-elements-full":
        return run_best_elements(args, dataset, embeddings, pairs, exhaustive=True)
    if args.action == "best-elements-greedy":
        return run_best_elements(args, dataset, embeddings, pairs, exhaustive=False)
    if args.action == "heatmap":
        return run_heatmap(args, dataset, embeddings, pairs)
    if args.action == "quant":
        return quantization_study(embeddings, pairs, bits_list=[amount] if amount else None,
                                  mode=args.quant_mode, metric=args.metric)
    if args.action == "proposed":
        return run_proposed(args, dataset, embeddings, pairs)[0]
    return run_extract(args, dataset, embeddings, pairs)


def run(args):
    # 1. DATASET
    validate_amount(args.action, args.amount, config.EMBEDDING_DIM)
    validate_search(args, config.EMBEDDING_DIM)
    root = getattr(args, config.DATASETS[args.data]['path_flag'].lstrip("-"))
    loader = DatasetLoader()
    dataset = loader.load_dataset(args.data, root, pairs_file=args.pairs)

    # 2. EMBEDDINGS
    extractor = TorchScriptExtractor(args.model)
    cache = EmbeddingCache(extractor, path=args.cache_file or config.CACHE_FILE_TEMPLATE.format(name=dataset.name))
    summary = cache.populate(dataset, force=args.force)

    if args.action == "cache":
        print(f"\nCached {dataset.name}: {summary['embedded']} embedded, "
              f"{summary['extracted']} extracted, {summary['excluded']} excluded")
        return summary

    # 3. REDUCTION AND EVALUATION
    embeddings = dataset.embedding_matrix()
    pairs = dataset.pair_arrays()
    df = run_action(args, dataset, embeddings, pairs)

    print(f"\n{dataset.name} - {args.action}:")
    print(df.to_string(index=False))
    save_table(df, f"{dataset.name}_{args.action}")
    return df


def main(argv=None):
    args = parse_args(argv)
    setup_logging()
    try:
        run(args)
    except ReducedEmbError as exc:
        logger.error("Run failed: %s", exc.diagnostic())
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
