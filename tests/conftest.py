"""Shared fixtures: small synthetic verification datasets and a fake extractor."""

import os

import numpy as np
import pytest

from reducedemb.extractor import FunctionExtractor
from reducedemb.records import Dataset, PairArrays, generate_pairs


def make_embeddings(n_identities=8, per_identity=4, dimension=8, signal=(2, 5), seed=0):
    """Identity-clustered embeddings where only the `signal` dimensions separate people."""
    rng = np.random.default_rng(seed)
    labels = np.repeat(np.arange(n_identities), per_identity)
    embeddings = rng.normal(0.0, 1.0, size=(labels.size, dimension))
    centers = rng.normal(0.0, 3.0, size=(n_identities, len(signal)))
    embeddings[:, list(signal)] = centers[labels] + rng.normal(0.0, 0.1, size=(labels.size, len(signal)))
    return embeddings, labels


def to_pair_arrays(pairs):
    return PairArrays(
        np.array([p.first for p in pairs], dtype=np.intp),
        np.array([p.second for p in pairs], dtype=np.intp),
        np.array([p.genuine for p in pairs], dtype=bool),
    )


@pytest.fixture()
def clustered():
    """(embeddings, pairs) with 8 dimensions, dims 2 and 5 carrying identity."""
    embeddings, labels = make_embeddings()
    pairs = generate_pairs(labels, n_pairs=120, seed=1)
    return embeddings, to_pair_arrays(pairs)


@pytest.fixture()
def clustered_dataset():
    embeddings, labels = make_embeddings()
    pairs = generate_pairs(labels, n_pairs=60, seed=1)
    return Dataset.from_embeddings(embeddings, labels, pairs, name="synthetic")


@pytest.fixture()
def image_files(tmp_path):
    """Four small files with distinct contents standing in for face images."""
    paths = []
    for i in range(4):
        path = tmp_path / "images" / f"face_{i}.jpg"
        path.parent.mkdir(exist_ok=True)
        path.write_bytes(f"image-{i}".encode() * 10)
        paths.append(str(path))
    return paths


class CountingExtractor(FunctionExtractor):
    """Deterministic extractor deriving the embedding from the file name."""

    def __init__(self, dimension=4, name="fake:v1", fail_on=(), width=None):
        super().__init__(self._embed, name)
        self.dimension = dimension
        self.fail_on = set(fail_on)
        self.width = width or dimension
        self.calls = []

    def _embed(self, path):
        self.calls.append(path)
        if os.path.basename(path) in self.fail_on:
            raise OSError(f"cannot decode {path}")
        seed = sum(os.path.basename(path).encode())
        return np.random.default_rng(seed).normal(size=self.width)


@pytest.fixture()
def extractor():
    return CountingExtractor()
