"""Tests for the CLI entry point."""

from __future__ import annotations

import io
import json

import pytest

import context_for_clankers.cli as cli
from context_for_clankers.cli import main
from context_for_clankers.memory import MemoryManager


@pytest.fixture()
def patched_manager(settings, backend, embedding_port, monkeypatch):
    """
    Every ``main`` call runs its own event loop, so hand it a fresh
    MemoryManager over the shared in-memory backend instead of one that
    touches the filesystem.
    """

    def _factory(args):  # noqa: ARG001
        return MemoryManager(settings=settings, backend=backend, embeddings=embedding_port)

    monkeypatch.setattr(cli, "_make_manager", _factory)
    return _factory


def stored_ids(capsys) -> list[str]:
    main(["list", "--json"])
    return [m["id"] for m in json.loads(capsys.readouterr().out)]


class TestCLI:
    def test_count_empty(self, patched_manager, capsys):
        rc = main(["count"])
        assert rc == 0
        assert capsys.readouterr().out.strip() == "0"

    def test_store_and_count(self, patched_manager, capsys):
        rc = main(["store", "Hello from the CLI test."])
        assert rc == 0
        assert capsys.readouterr().out.startswith("Stored memory ")

        main(["count"])
        assert capsys.readouterr().out.strip() == "1"

    def test_store_reads_stdin(self, patched_manager, capsys, monkeypatch):
        monkeypatch.setattr("sys.stdin", io.StringIO("Text piped in through stdin."))
        assert main(["store"]) == 0
        capsys.readouterr()
        main(["list"])
        assert "Text piped in through stdin." in capsys.readouterr().out

    def test_store_missing_text_returns_error(self, patched_manager, capsys, monkeypatch):
        monkeypatch.setattr("sys.stdin", io.StringIO(""))
        assert main(["store"]) == 1

    def test_store_invalid_tag_returns_error(self, patched_manager, capsys):
        rc = main(["store", "Content with a reserved tag.", "--tags", "system"])
        assert rc == 1
        assert capsys.readouterr().err.startswith("Error: ")

    def test_search_empty_store(self, patched_manager, capsys):
        assert main(["search", "anything"]) == 0
        assert "No memories found" in capsys.readouterr().out

    def test_store_and_search(self, patched_manager, capsys):
        main(["store", "The favourite colour is green.", "--tags", "prefs"])
        capsys.readouterr()

        assert main(["search", "favourite colour"]) == 0
        out = capsys.readouterr().out
        assert "The favourite colour is green." in out
        assert "similarity=" in out

    def test_search_json_output(self, patched_manager, capsys):
        main(["store", "Paris is the capital of France."])
        capsys.readouterr()

        main(["search", "--json", "capital"])
        results = json.loads(capsys.readouterr().out)
        assert [r["content"] for r in results] == ["Paris is the capital of France."]
        assert results[0]["rank"] == 1

    def test_list_empty(self, patched_manager, capsys):
        assert main(["list"]) == 0
        assert "No memories stored" in capsys.readouterr().out

    def test_store_and_delete(self, patched_manager, capsys):
        main(["store", "To be deleted via CLI."])
        capsys.readouterr()
        [mem_id] = stored_ids(capsys)

        assert main(["delete", mem_id]) == 0
        assert capsys.readouterr().out.strip() == f"Deleted memory {mem_id}."

        main(["count"])
        assert capsys.readouterr().out.strip() == "0"

    def test_delete_unknown_id(self, patched_manager, capsys):
        assert main(["delete", "missing"]) == 1

    def test_touch_and_context(self, patched_manager, capsys):
        main(["store", "Retry budget doubles after each failure.", "--source", "src/retry.py"])
        main(["touch", "src/retry.py"])
        capsys.readouterr()

        assert main(["context", "retry budget", "--active-file", "src/retry.py", "--json"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["included_files"] == ["src/retry.py"]
        assert "Retry budget doubles" in data["content"]

    def test_index_files(self, patched_manager, capsys, tmp_path):
        source = tmp_path / "app.py"
        source.write_text("def handler(event):\n    return event['body']\n", encoding="utf-8")
        assert main(["index", str(source)]) == 0
        assert capsys.readouterr().out.strip() == "Indexed 1 file(s), failed 0."

    def test_compress_below_threshold(self, patched_manager, capsys):
        main(["store", "Nothing here needs compressing."])
        capsys.readouterr()
        assert main(["compress"]) == 0
        assert capsys.readouterr().out.strip() == "Compressed 0 memories, skipped 1, failed 0."

    def test_stats(self, patched_manager, capsys):
        main(["store", "Memory counted by stats."])
        capsys.readouterr()
        assert main(["stats"]) == 0
        assert json.loads(capsys.readouterr().out)["store"]["total_vectors"] == 1
