"""Tests for advancement.config."""
from __future__ import annotations

from pathlib import Path

import orjson
import pytest

from advancement.config import DEFAULT_CONFIG, config_from_dict, load_config
from advancement.hierarchy.types import HierarchyBounds


class TestLoadConfig:
    def test_defaults(self) -> None:
        assert load_config(None) is DEFAULT_CONFIG
        assert DEFAULT_CONFIG.bounds() == HierarchyBounds(20, 10)

    def test_from_file(self, tmp_path: Path) -> None:
        path = tmp_path / "advancement.json"
        path.write_bytes(orjson.dumps({"max_main_number": 25, "undo_note_prefix": "Reverted: "}))
        config = load_config(path)
        assert config.max_main_number == 25
        assert config.max_wrapped_number == 10
        assert config.undo_note_prefix == "Reverted: "

    def test_non_object_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "advancement.json"
        path.write_bytes(b"[1, 2]")
        with pytest.raises(ValueError, match="JSON object"):
            load_config(path)


class TestConfigFromDict:
    def test_unknown_key(self) -> None:
        with pytest.raises(ValueError, match="max_main"):
            config_from_dict({"max_main": 5})

    @pytest.mark.parametrize("value", ["20", 2.5, True])
    def test_non_int_bound(self, value: object) -> None:
        with pytest.raises(ValueError, match="integer"):
            config_from_dict({"max_wrapped_number": value})

    def test_bound_below_one(self) -> None:
        with pytest.raises(ValueError):
            config_from_dict({"max_main_number": 0})
