"""Tests for the command line driver."""

import pytest

import main
from conftest import CountingExtractor
from reducedemb.errors import InvalidParameter, SearchTooLarge


@pytest.fixture()
def lfw_tree(tmp_path):
    root = tmp_path / "lfw"
    for name, number in [("Alice", 1), ("Alice", 2), ("Bob", 1), ("Bob", 2)]:
        folder = root / name
        folder.mkdir(parents=True, exist_ok=True)
        (folder / f"{name}_{number:04d}.jpg").write_bytes(f"{name}{number}".encode() * 20)
    pairs_file = tmp_path / "pairs.txt"
    pairs_file.write_text("Alice\t1\t2\nBob\t1\t2\nAlice\t1\tBob\t1\nAlice\t2\tBob\t2\n")
    return str(root), str(pairs_file)


@pytest.fixture()
def fake_extractor():
    return CountingExtractor(dimension=512)


@pytest.fixture()
def quiet_run(monkeypatch, fake_extractor):
    """Keep the driver away from the real model, log file and results directory."""
    saved = {}
    monkeypatch.setattr(main, "setup_logging", lambda: None)
    monkeypatch.setattr(main, "TorchScriptExtractor", lambda model: fake_extractor)
    monkeypatch.setattr(main, "save_table", lambda df, name: saved.setdefault(name, df))
    return saved


class TestParseArgs:
    def test_requires_dataset_path(self):
        with pytest.raises(SystemExit) as info:
            main.parse_args(["--data", "easy", "--action", "cache"])
        assert info.value.code == 2

    def test_requires_amount_for_searches(self):
        with pytest.raises(SystemExit):
            main.parse_args(["--data", "hard", "--cplfwpath", "/x", "--action", "best-elements-greedy"])

    def test_rejects_unknown_action(self):
        with pytest.raises(SystemExit):
            main.parse_args(["--data", "easy", "--lfwpath", "/x", "--action", "pca"])

    def test_defaults(self):
        args = main.parse_args(["--data", "easy", "--lfwpath", "/x", "--action", "quant"])
        assert args.amount is None
        assert args.metric == "euclidean"
        assert args.force is False


class TestValidateAmount:
    @pytest.mark.parametrize("action, amount", [
        ("truncate-embedding-size", 0),
        ("truncate-embedding-size", 513),
        ("truncate-embedding-size-rel", 101),
        ("quant", 33),
        ("best-elements-full", -1),
    ])
    def test_rejects(self, action, amount):
        with pytest.raises(InvalidParameter):
            main.validate_amount(action, amount, 512)

    def test_accepts_in_range(self):
        main.validate_amount("quant", 32, 512)
        main.validate_amount("truncate-embedding-size-rel", 100, 512)
        main.validate_amount("heatmap", 512, 512)


class TestMain:
    def test_invalid_dataset_path_exits_with_one(self, tmp_path, quiet_run):
        code = main.main(["--data", "easy", "--lfwpath", str(tmp_path / "missing"), "--action", "cache"])
        assert code == 1

    def test_invalid_amount_fails_before_loading(self, tmp_path, quiet_run):
        code = main.main(["--data", "easy", "--lfwpath", str(tmp_path / "missing"),
                          "--action", "quant", "--amount", "40"])
        assert code == 1

    def test_truncation_run(self, tmp_path, lfw_tree, quiet_run):
        root, pairs_file = lfw_tree
        cache_file = tmp_path / "cache.json"
        code = main.main(["--data", "easy", "--lfwpath", root, "--pairs", pairs_file,
                          "--cache-file", str(cache_file), "--action", "truncate-embedding-size",
                          "--amount", "16"])
        assert code == 0
        assert cache_file.exists()
        df = quiet_run["lfw_truncate-embedding-size"]
        assert list(df["embedding_dimensions"]) == [16]

    def test_cache_action(self, tmp_path, lfw_tree, quiet_run):
        root, pairs_file = lfw_tree
        code = main.main(["--data", "easy", "--lfwpath", root, "--pairs", pairs_file,
                          "--cache-file", str(tmp_path / "cache.json"), "--action", "cache"])
        assert code == 0
        assert quiet_run == {}


class TestSearchParameters:
    @pytest.mark.parametrize("extra", [
        ["--action", "best-elements-full", "--amount", "10", "--candidates", "5"],
        ["--action", "best-elements-greedy", "--amount", "3", "--candidates", "600"],
        ["--action", "best-elements-full", "--amount", "4"],
    ])
    def test_rejected_before_extraction(self, tmp_path, lfw_tree, quiet_run, fake_extractor, extra):
        root, pairs_file = lfw_tree
        cache_file = tmp_path / "cache.json"
        code = main.main(["--data", "easy", "--lfwpath", root, "--pairs", pairs_file,
                          "--cache-file", str(cache_file)] + extra)
        assert code == 1
        assert fake_extractor.calls == []
        assert not cache_file.exists()

    def test_oversized_search_is_search_too_large(self):
        args = main.parse_args(["--data", "easy", "--lfwpath", "/x", "--action", "best-elements-full",
                                "--amount", "4"])
        with pytest.raises(SearchTooLarge):
            main.validate_search(args, 512)

    def test_small_search_passes(self):
        args = main.parse_args(["--data", "easy", "--lfwpath", "/x", "--action", "best-elements-full",
                                "--amount", "2", "--candidates", "16"])
        main.validate_search(args, 512)
