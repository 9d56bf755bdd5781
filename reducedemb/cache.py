"""
This module implements the content-addressed embedding cache.

Key concepts:
- Fingerprint: SHA-256 of the source image bytes, used as the cache key
- Extractor identity: entries written by another extractor are stale
- Checksum: each entry carries a digest over fingerprint, extractor and values
- Single writer per key: concurrent requests for one fingerprint call the
  extractor once, while unrelated fingerprints proceed in parallel
"""

import hashlib
import json
import logging
import os
import threading

import numpy as np
from joblib import Parallel, delayed
from tqdm import tqdm

import config
from reducedemb.errors import CacheCorruption, DimensionMismatch, ExtractionError
from reducedemb.records import RecordStatus

logger = logging.getLogger(__name__)

CACHE_FORMAT = 1


def entry_checksum(fingerprint, extractor, embedding):
    digest = hashlib.sha256(f"{fingerprint}:{extractor}:".encode())
    digest.update(np.asarray(embedding, dtype=np.float64).tobytes())
    return digest.hexdigest()


def make_entry(fingerprint, extractor, embedding, source=None):
    embedding = [float(v) for v in np.asarray(embedding, dtype=np.float64).ravel()]
    return {
        "fingerprint": fingerprint,
        "extractor": extractor,
        "source": source,
        "embedding": embedding,
        "checksum": entry_checksum(fingerprint, extractor, embedding),
    }


class EmbeddingCache:
    """
    Persistent fingerprint -> embedding store with per-key write coordination.

    Attributes:
        extractor: Callable `extractor(path) -> vector` with a `name` attribute
        path: JSON file backing the cache, or None for an in-memory cache
        dimension: Expected embedding width D
        extractions: Number of extractor calls issued by this instance
    """

    def __init__(self, extractor, path=None, dimension=config.EMBEDDING_DIM,
                 n_jobs=config.N_JOBS, verbose=config.VERBOSE):
        self.extractor = extractor
        self.extractor_id = extractor.name
        self.path = path
        self.dimension = dimension
        self.n_jobs = n_jobs
        self.verbose = verbose
        self.extractions = 0

        self._entries = {}
        self._lock = threading.Lock()  # guards _entries, _key_locks and counters
        self._key_locks = {}
        self._refreshed = set()
        self._dirty = False

        if path is not None:
            self.load()

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def __contains__(self, fingerprint):
        with self._lock:
            return fingerprint in self._entries

    # -- Persistence ---------------------------------------------------------

    def load(self):
        """Read the backing file; an unreadable file leaves the cache empty."""
        if not os.path.exists(self.path):
            logger.info("No cache file at %s, starting empty", self.path)
            return

        try:
            with open(self.path) as fh:
                payload = json.load(fh)
        except (OSError, ValueError) as exc:
            logger.warning("Cache file %s is unreadable (%s), starting empty", self.path, exc)
            return

        if not isinstance(payload, dict):
            payload = {}
        entries = payload.get("entries")
        if payload.get("format") != CACHE_FORMAT or not isinstance(entries, dict):
            logger.warning("Cache file %s has an unknown layout, starting empty", self.path)
            return

        with self._lock:
            self._entries = entries
        logger.info("Loaded %d embeddings from cache %s", len(entries), self.path)

    def save(self):
        """Atomically write the cache file if anything changed."""
        if self.path is None:
            return
        with self._lock:
            if not self._dirty:
                return
            payload = {"format": CACHE_FORMAT, "entries": dict(self._entries)}

        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        try:
            with open(tmp_path, "w") as fh:
                json.dump(payload, fh)
            os.replace(tmp_path, self.path)
        finally:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)

        with self._lock:
            self._dirty = False
        logger.info("Saved %d embeddings to %s", len(payload["entries"]), self.path)

    # -- Entry access --------------------------------------------------------

    def _key_lock(self, fingerprint):
        with self._lock:
            return self._key_locks.setdefault(fingerprint, threading.Lock())

    def validate(self, fingerprint, entry):
        """
        Check a stored entry and return its embedding.

        Raises:
            CacheCorruption: If the entry is malformed, belongs to another
                fingerprint or extractor, has the wrong width or fails its checksum
        """
        if not isinstance(entry, dict):
            raise CacheCorruption("entry is not a mapping", record=fingerprint)
        if entry.get("fingerprint") != fingerprint:
            raise CacheCorruption(
                f"entry fingerprint {entry.get('fingerprint')!r} does not match key", record=fingerprint
            )
        if entry.get("extractor") != self.extractor_id:
            raise CacheCorruption(
                f"entry written by extractor {entry.get('extractor')!r}, expected {self.extractor_id!r}",
                record=fingerprint
            )
        try:
            embedding = np.asarray(entry["embedding"], dtype=np.float64)
        except (KeyError, TypeError, ValueError) as exc:
            raise CacheCorruption(f"entry embedding unreadable: {exc}", record=fingerprint) from exc
        if embedding.ndim != 1 or embedding.shape[0] != self.dimension:
            raise CacheCorruption("entry has the wrong width", record=fingerprint, dimension=embedding.size)
        if entry.get("checksum") != entry_checksum(fingerprint, self.extractor_id, embedding):
            raise CacheCorruption("entry checksum mismatch", record=fingerprint)
        return embedding

    def lookup(self, fingerprint):
        """Return the cached embedding, or None on miss or rejected entry."""
        with self._lock:
            entry = self._entries.get(fingerprint)
        if entry is None:
            return None

        try:
            return self.validate(fingerprint, entry)
        except CacheCorruption as exc:
            logger.warning("Discarding cache entry: %s", exc.diagnostic())
            with self._lock:
                if self._entries.get(fingerprint) is entry:
                    del self._entries[fingerprint]
                    self._dirty = True
            return None

    def _store(self, fingerprint, embedding, source):
        entry = make_entry(fingerprint, self.extractor_id, embedding, source=source)
        with self._lock:
            self._entries[fingerprint] = entry
            self._dirty = True

    def _extract(self, record):
        try:
            embedding = self.extractor(record.path)
        except Exception as exc:
            raise ExtractionError(f"extractor failed: {exc}", record=record.path) from exc
        if embedding is None:
            raise ExtractionError("extractor returned no embedding", record=record.path)

        embedding = np.asarray(embedding, dtype=np.float64).ravel()
        with self._lock:
            self.extractions += 1
        if embedding.shape[0] != self.dimension:
            raise DimensionMismatch(
                f"extractor returned {embedding.shape[0]} values, dataset uses {self.dimension}",
                record=record.path, dimension=embedding.shape[0]
            )
        return embedding

    def get_or_extract(self, record, force=False):
        """
        Return the record's embedding, extracting it only on a cache miss.

        Args:
            record: Record to populate
            force: Re-extract even when a valid entry exists (once per
                fingerprint for the lifetime of this cache)

        Returns:
            numpy.ndarray: The embedding, also attached to the record

        Raises:
            ExtractionError: If the image cannot be read or the extractor fails
            DimensionMismatch: If the extractor returns the wrong width
        """
        try:
            fingerprint = record.ensure_fingerprint()
        except OSError as exc:
            raise ExtractionError(f"cannot read image: {exc}", record=record.path) from exc

        with self._key_lock(fingerprint):
            refresh = force and fingerprint not in self._refreshed
            embedding = None if refresh else self.lookup(fingerprint)
            if embedding is None:
                embedding = self._extract(record)
                self._store(fingerprint, embedding, record.path)
                if force:
                    self._refreshed.add(fingerprint)
            record.status = RecordStatus.CACHED

        return record.attach(embedding, self.dimension)

    def populate(self, dataset, force=False):
        """
        Embed every record of a dataset, excluding records that fail.

        Records are processed in parallel threads; the cache file is written
        once at the end.

        Returns:
            dict: Counts of embedded, newly extracted and excluded records

        Raises:
            DimensionMismatch: If every record ended up excluded
        """
        before = self.extractions

        def populate_one(index):
            record = dataset.records[index]
            if record.usable and not force:
                return index, None
            try:
                self.get_or_extract(record, force=force)
            except ExtractionError as exc:
                return index, exc.diagnostic()
            return index, None

        indices = tqdm(range(len(dataset.records)), desc=f"Caching {dataset.name}",
                       disable=not self.verbose)
        results = Parallel(n_jobs=self.n_jobs, prefer="threads")(
            delayed(populate_one)(i) for i in indices
        )

        excluded = 0
        for index, failure in results:
            if failure is not None:
                dataset.exclude(index, failure)
                excluded += 1

        self.save()

        summary = {
            "embedded": sum(1 for r in dataset.records if r.usable),
            "extracted": self.extractions - before,
            "excluded": excluded,
        }
        logger.info("Cache populated: %(embedded)d embedded, %(extracted)d extracted, %(excluded)d excluded",
                    summary)
        dataset.check_usable()
        return summary
