# reducedemb/utils.py
import json
import logging
import os

import joblib
import numpy as np

import config

logger = logging.getLogger(__name__)


def setup_logging(log_file=config.LOG_FILE, verbose=config.VERBOSE):
    """Log to the console and to the experiment log file."""
    level = logging.INFO if verbose else logging.WARNING
    handlers = [logging.StreamHandler()]
    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )


def to_jsonable(value):
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, np.generic):
        return value.item()
    return value


def save_metrics_to_json(metrics, path):
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, "w") as fh:
        json.dump(to_jsonable(metrics), fh, indent=2)
    logger.info("Metrics saved: %s", path)
    return path


def save_table(df, name, directory=config.METRICS_PATH):
    """Write a result table as ';'-separated CSV."""
    os.makedirs(directory, exist_ok=True)
    path = os.path.join(directory, f"{name}.csv")
    df.to_csv(path, sep=";", index=False)
    logger.info("Table saved: %s", path)
    return path


def save_model(model, name, directory=config.REDUCTIONS_PATH):
    """Persist a fitted quantizer or reduction spec with joblib."""
    os.makedirs(directory, exist_ok=True)
    path = os.path.join(directory, f"{name}.joblib")
    joblib.dump(model, path)
    logger.info("Model saved: %s", path)
    return path


def load_model(name, directory=config.REDUCTIONS_PATH):
    return joblib.load(os.path.join(directory, f"{name}.joblib"))


def export_embeddings(dataset, reduction, quantizer, name, directory=config.EMBEDDINGS_PATH):
    """
    Write the pair embeddings of a dataset in full and in compressed form.

    The full file holds [genuine, embedding1, embedding2] per pair; the
    compressed file holds the same pairs as integer codes of the retained
    dimensions.

    Returns:
        tuple: (full_path, compressed_path)
    """
    os.makedirs(directory, exist_ok=True)
    index = np.asarray(reduction.spec.dimensions, dtype=np.intp)
    full, compressed = [], []
    for pair in dataset.pairs:
        first, second = dataset.records[pair.first], dataset.records[pair.second]
        if not (first.usable and second.usable):
            continue
        full.append([pair.genuine, first.embedding.tolist(), second.embedding.tolist()])
        compressed.append([
            pair.genuine,
            quantizer.quantize(first.embedding[index]).tolist(),
            quantizer.quantize(second.embedding[index]).tolist(),
        ])

    full_path = os.path.join(directory, f"{name}_full.json")
    compressed_path = os.path.join(directory, f"{name}_proposed.json")
    with open(full_path, "w") as fh:
        json.dump(full, fh)
    with open(compressed_path, "w") as fh:
        json.dump(compressed, fh)
    logger.info("Exported %d pairs to %s and %s", len(full), full_path, compressed_path)
    return full_path, compressed_path
