"""Tests for atomic JSON file helpers."""

import json
from pathlib import Path

import pytest

from shiftdeck.lib.files import atomic_write_json, read_json


class TestAtomicWriteJson:
    """Tests for atomic_write_json."""

    def test_creates_parents_and_writes(self, tmp_path: Path) -> None:
        """Missing parent directories are created."""
        path = tmp_path / "a" / "b" / "state.json"

        atomic_write_json(path, {"b": 1, "a": [1, 2]})

        assert json.loads(path.read_text(encoding="utf-8")) == {"a": [1, 2], "b": 1}

    def test_leaves_no_temp_files(self, tmp_path: Path) -> None:
        """Only the destination file remains after a write."""
        path = tmp_path / "state.json"

        atomic_write_json(path, {"x": 1})
        atomic_write_json(path, {"x": 2})

        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]
        assert read_json(path) == {"x": 2}

    def test_unserializable_payload_keeps_old_content(self, tmp_path: Path) -> None:
        """A failed write leaves the previous document untouched."""
        path = tmp_path / "state.json"
        atomic_write_json(path, {"x": 1})

        with pytest.raises(TypeError):
            atomic_write_json(path, {"x": object()})

        assert read_json(path) == {"x": 1}


class TestReadJson:
    """Tests for read_json."""

    def test_missing_file_returns_none(self, tmp_path: Path) -> None:
        """A missing file reads as None."""
        assert read_json(tmp_path / "missing.json") is None

    def test_blank_file_returns_none(self, tmp_path: Path) -> None:
        """A whitespace-only file reads as None."""
        path = tmp_path / "blank.json"
        path.write_text("\n", encoding="utf-8")

        assert read_json(path) is None

    def test_invalid_json_raises(self, tmp_path: Path) -> None:
        """Invalid content raises JSONDecodeError."""
        path = tmp_path / "bad.json"
        path.write_text("{", encoding="utf-8")

        with pytest.raises(json.JSONDecodeError):
            read_json(path)
