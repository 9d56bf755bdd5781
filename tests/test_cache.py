"""Tests for the fingerprint-keyed embedding cache."""

import json
import os
import threading

import numpy as np
import pytest

from conftest import CountingExtractor
from reducedemb.cache import CACHE_FORMAT, EmbeddingCache, make_entry
from reducedemb.errors import CacheCorruption, DimensionMismatch, ExtractionError
from reducedemb.records import Dataset, PairLabel, Record, RecordStatus, compute_fingerprint


def image_dataset(paths, dimension=4):
    records = [Record(identity=f"id{i // 2}", path=p) for i, p in enumerate(paths)]
    pairs = [PairLabel(0, 1, True), PairLabel(0, 2, False), PairLabel(2, 3, True), PairLabel(1, 3, False)]
    return Dataset("faces", records, pairs, dimension=dimension)


def new_cache(extractor, path, dimension=4):
    return EmbeddingCache(extractor, path=str(path), dimension=dimension, n_jobs=2, verbose=False)


class TestGetOrExtract:
    def test_second_lookup_hits_cache(self, tmp_path, image_files, extractor):
        cache = new_cache(extractor, tmp_path / "cache.json")
        record = Record("a", image_files[0])
        first = cache.get_or_extract(record)
        again = cache.get_or_extract(Record("a", image_files[0]))
        np.testing.assert_array_equal(first, again)
        assert cache.extractions == 1
        assert record.status is RecordStatus.EMBEDDED

    def test_identical_content_shares_entry(self, tmp_path, image_files, extractor):
        copy = tmp_path / "copy.jpg"
        copy.write_bytes(open(image_files[0], "rb").read())
        cache = new_cache(extractor, tmp_path / "cache.json")
        cache.get_or_extract(Record("a", image_files[0]))
        cache.get_or_extract(Record("a", str(copy)))
        assert cache.extractions == 1
        assert len(cache) == 1

    def test_force_reextracts_once(self, tmp_path, image_files, extractor):
        cache = new_cache(extractor, tmp_path / "cache.json")
        cache.get_or_extract(Record("a", image_files[0]))
        cache.get_or_extract(Record("a", image_files[0]), force=True)
        cache.get_or_extract(Record("a", image_files[0]), force=True)
        assert cache.extractions == 2

    def test_missing_image_is_extraction_error(self, tmp_path, extractor):
        cache = new_cache(extractor, tmp_path / "cache.json")
        with pytest.raises(ExtractionError):
            cache.get_or_extract(Record("a", str(tmp_path / "missing.jpg")))

    def test_extractor_failure_is_wrapped(self, tmp_path, image_files):
        extractor = CountingExtractor(fail_on={"face_0.jpg"})
        cache = new_cache(extractor, tmp_path / "cache.json")
        with pytest.raises(ExtractionError) as info:
            cache.get_or_extract(Record("a", image_files[0]))
        assert info.value.record == image_files[0]

    def test_wrong_width(self, tmp_path, image_files):
        cache = new_cache(CountingExtractor(width=3), tmp_path / "cache.json")
        with pytest.raises(DimensionMismatch):
            cache.get_or_extract(Record("a", image_files[0]))

    def test_concurrent_requests_extract_once(self, tmp_path, image_files):
        gate = threading.Event()
        extractor = CountingExtractor()
        inner = extractor.fn

        def slow(path):
            gate.wait(timeout=5)
            return inner(path)

        extractor.fn = slow
        cache = new_cache(extractor, tmp_path / "cache.json")
        results = []
        threads = [threading.Thread(target=lambda: results.append(cache.get_or_extract(Record("a", image_files[0]))))
                   for _ in range(8)]
        for thread in threads:
            thread.start()
        gate.set()
        for thread in threads:
            thread.join()

        assert cache.extractions == 1
        assert len(results) == 8
        for result in results:
            np.testing.assert_array_equal(result, results[0])


class TestPersistence:
    def test_populate_is_idempotent_across_instances(self, tmp_path, image_files, extractor):
        path = tmp_path / "cache.json"
        summary = new_cache(extractor, path).populate(image_dataset(image_files))
        assert summary == {"embedded": 4, "extracted": 4, "excluded": 0}

        second = CountingExtractor()
        dataset = image_dataset(image_files)
        summary = new_cache(second, path).populate(dataset)
        assert summary == {"embedded": 4, "extracted": 0, "excluded": 0}
        assert second.calls == []
        assert dataset.embedding_matrix().shape == (4, 4)

    def test_file_layout(self, tmp_path, image_files, extractor):
        path = tmp_path / "cache.json"
        new_cache(extractor, path).populate(image_dataset(image_files))
        payload = json.loads(path.read_text())
        assert payload["format"] == CACHE_FORMAT
        fingerprint = compute_fingerprint(image_files[0])
        entry = payload["entries"][fingerprint]
        assert entry["extractor"] == "fake:v1"
        assert entry["source"] == image_files[0]
        assert len(entry["embedding"]) == 4

    def test_tampered_fingerprint_triggers_reextraction(self, tmp_path, image_files, extractor):
        path = tmp_path / "cache.json"
        new_cache(extractor, path).populate(image_dataset(image_files))
        payload = json.loads(path.read_text())
        fingerprint = compute_fingerprint(image_files[0])
        payload["entries"][fingerprint]["fingerprint"] = "0" * 64
        path.write_text(json.dumps(payload))

        second = CountingExtractor()
        summary = new_cache(second, path).populate(image_dataset(image_files))
        assert summary["extracted"] == 1
        assert second.calls == [image_files[0]]

    def test_tampered_values_fail_checksum(self, tmp_path, image_files, extractor):
        cache = new_cache(extractor, tmp_path / "cache.json")
        fingerprint = compute_fingerprint(image_files[0])
        entry = make_entry(fingerprint, "fake:v1", np.ones(4))
        entry["embedding"][0] = 2.0
        with pytest.raises(CacheCorruption):
            cache.validate(fingerprint, entry)

    def test_other_extractor_version_is_stale(self, tmp_path, image_files, extractor):
        path = tmp_path / "cache.json"
        new_cache(extractor, path).populate(image_dataset(image_files))
        upgraded = CountingExtractor(name="fake:v2")
        summary = new_cache(upgraded, path).populate(image_dataset(image_files))
        assert summary["extracted"] == 4

    def test_failed_write_is_retried(self, tmp_path, image_files, extractor, monkeypatch):
        path = tmp_path / "cache.json"
        cache = new_cache(extractor, path)
        cache.get_or_extract(Record("a", image_files[0]))

        def refuse(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", refuse)
        with pytest.raises(OSError):
            cache.save()
        assert not path.exists()
        assert not (tmp_path / "cache.json.tmp").exists()

        monkeypatch.undo()
        cache.save()
        assert len(json.loads(path.read_text())["entries"]) == 1

    def test_unreadable_file_starts_empty(self, tmp_path, extractor):
        path = tmp_path / "cache.json"
        path.write_text("{not json")
        assert len(new_cache(extractor, path)) == 0

    @pytest.mark.parametrize("payload", [[1, 2], {"format": 99, "entries": {}}, {"format": 1}])
    def test_unknown_layout_starts_empty(self, tmp_path, extractor, payload):
        path = tmp_path / "cache.json"
        path.write_text(json.dumps(payload))
        assert len(new_cache(extractor, path)) == 0


class TestPopulate:
    def test_failed_records_are_excluded(self, tmp_path, image_files):
        extractor = CountingExtractor(fail_on={"face_3.jpg"})
        dataset = image_dataset(image_files)
        summary = new_cache(extractor, tmp_path / "cache.json").populate(dataset)
        assert summary == {"embedded": 3, "extracted": 3, "excluded": 1}
        assert dataset.records[3].excluded.startswith("[extraction]")
        pairs = dataset.pair_arrays()
        assert len(pairs.first) == 2
        assert np.isnan(dataset.embedding_matrix()[3]).all()

    def test_all_records_excluded(self, tmp_path, image_files):
        extractor = CountingExtractor(width=7)
        with pytest.raises(DimensionMismatch):
            new_cache(extractor, tmp_path / "cache.json").populate(image_dataset(image_files))

    def test_already_embedded_records_are_skipped(self, tmp_path, clustered_dataset, extractor):
        cache = EmbeddingCache(extractor, path=None, dimension=8, verbose=False)
        summary = cache.populate(clustered_dataset)
        assert summary["extracted"] == 0
        assert extractor.calls == []
