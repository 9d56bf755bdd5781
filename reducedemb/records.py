"""
Record store for verification datasets.

A dataset is a list of records (one per distinct image) plus a fixed set of
labeled pairs that reference records by index. Reduction strategies never
touch this store; they consume the matrix returned by embedding_matrix().
"""

import hashlib
import logging
from collections import namedtuple
from dataclasses import dataclass
from enum import Enum

import numpy as np

import config
from reducedemb.errors import DimensionMismatch, InvalidParameter

logger = logging.getLogger(__name__)

PairArrays = namedtuple("PairArrays", ["first", "second", "genuine"])


class RecordStatus(Enum):
    UNCACHED = "uncached"
    CACHED = "cached"
    EMBEDDED = "embedded"


def compute_fingerprint(path, chunk_size=1 << 20):
    """Return the SHA-256 hex digest of the file at `path`."""
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


@dataclass
class Record:
    identity: str
    path: str
    fingerprint: str = None
    embedding: np.ndarray = None
    status: RecordStatus = RecordStatus.UNCACHED
    excluded: str = None

    @property
    def usable(self):
        return self.excluded is None and self.status is RecordStatus.EMBEDDED

    def ensure_fingerprint(self):
        if self.fingerprint is None:
            self.fingerprint = compute_fingerprint(self.path)
        return self.fingerprint

    def attach(self, embedding, dimension):
        """Store an embedding on the record after checking its width."""
        embedding = np.asarray(embedding, dtype=np.float64).ravel()
        if embedding.shape[0] != dimension:
            raise DimensionMismatch(
                f"expected {dimension} values, got {embedding.shape[0]}",
                record=self.path, dimension=embedding.shape[0]
            )
        self.embedding = embedding
        self.status = RecordStatus.EMBEDDED
        return embedding


@dataclass(frozen=True)
class PairLabel:
    first: int
    second: int
    genuine: bool


class Dataset:
    """
    Records and labeled pairs of one verification dataset.

    Attributes:
        name: Dataset name, used for cache and output file names
        records: List of Record, one per distinct image
        pairs: Tuple of PairLabel referencing records by index
        dimension: Embedding width D shared by every record
    """

    def __init__(self, name, records, pairs, dimension=config.EMBEDDING_DIM):
        if dimension <= 0:
            raise InvalidParameter(f"embedding dimension must be positive, got {dimension}")
        self.name = name
        self.records = list(records)
        self.pairs = tuple(pairs)
        self.dimension = dimension

        for pair in self.pairs:
            for idx in (pair.first, pair.second):
                if not 0 <= idx < len(self.records):
                    raise InvalidParameter(f"pair references unknown record {idx}")

    @classmethod
    def from_embeddings(cls, embeddings, identities, pairs, name="memory"):
        """Build an already-embedded dataset from an (n, D) matrix."""
        embeddings = np.asarray(embeddings, dtype=np.float64)
        if embeddings.ndim != 2:
            raise InvalidParameter("embeddings must be a 2D matrix")
        dimension = embeddings.shape[1]
        records = []
        for i, (identity, row) in enumerate(zip(identities, embeddings)):
            record = Record(identity=str(identity), path=f"{name}/{i}")
            record.attach(row, dimension)
            records.append(record)
        return cls(name, records, pairs, dimension=dimension)

    def __len__(self):
        return len(self.records)

    def images(self):
        return [record.path for record in self.records]

    def exclude(self, index, reason):
        record = self.records[index]
        record.excluded = reason
        logger.warning("Excluding %s: %s", record.path, reason)

    @property
    def excluded(self):
        return [r for r in self.records if r.excluded is not None]

    def check_usable(self):
        """Raise if every record has been excluded."""
        if self.records and not any(r.usable for r in self.records):
            raise DimensionMismatch(
                f"all {len(self.records)} records of {self.name} were excluded",
                stage="dataset", dimension=self.dimension
            )

    def embedding_matrix(self):
        """
        Return an (n_records, D) matrix of embeddings.

        Rows of records without a usable embedding are NaN; pair_arrays()
        never references them.
        """
        matrix = np.full((len(self.records), self.dimension), np.nan)
        for i, record in enumerate(self.records):
            if record.usable:
                matrix[i] = record.embedding
        return matrix

    def pair_arrays(self):
        """Return pair indices and labels, dropping pairs with an excluded record."""
        usable = [r.usable for r in self.records]
        kept = [p for p in self.pairs if usable[p.first] and usable[p.second]]
        dropped = len(self.pairs) - len(kept)
        if dropped:
            logger.warning("Dropped %d of %d pairs referencing excluded records", dropped, len(self.pairs))
        return PairArrays(
            np.array([p.first for p in kept], dtype=np.intp),
            np.array([p.second for p in kept], dtype=np.intp),
            np.array([p.genuine for p in kept], dtype=bool),
        )

    def statistics(self):
        genuine = sum(1 for p in self.pairs if p.genuine)
        return {
            "name": self.name,
            "n_records": len(self.records),
            "n_identities": len({r.identity for r in self.records}),
            "n_pairs": len(self.pairs),
            "n_genuine": genuine,
            "n_impostor": len(self.pairs) - genuine,
            "n_excluded": len(self.excluded),
            "dimension": self.dimension,
        }


def generate_pairs(labels, n_pairs=1000, seed=config.RANDOM_STATE):
    """
    Generate balanced genuine and impostor pairs from identity labels.

    Half of the pairs join two different records of the same identity, the
    other half join records of different identities.

    Args:
        labels: Sequence of identity labels, one per record
        n_pairs: Total number of pairs (half genuine, half impostor)
        seed: Seed for numpy's default_rng

    Returns:
        list: PairLabel objects, genuine pairs first

    Raises:
        InvalidParameter: If no identity has two records or only one identity exists
    """
    labels = np.asarray(labels)
    rng = np.random.default_rng(seed)
    unique_labels = np.unique(labels)

    # Need at least one identity with two images, and two identities overall
    repeated = [lab for lab in unique_labels if np.sum(labels == lab) >= 2]
    if not repeated or len(unique_labels) < 2:
        raise InvalidParameter("labels cannot produce both genuine and impostor pairs")

    pairs = []
    while len(pairs) < n_pairs // 2:
        label = repeated[rng.integers(len(repeated))]
        idx = np.flatnonzero(labels == label)
        i, j = rng.choice(idx, 2, replace=False)
        pairs.append(PairLabel(int(i), int(j), True))

    while len(pairs) < n_pairs:
        i, j = rng.choice(len(labels), 2, replace=False)
        if labels[i] != labels[j]:
            pairs.append(PairLabel(int(i), int(j), False))

    return pairs
