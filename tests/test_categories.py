"""Tests for category table loading."""

from __future__ import annotations

import json
import logging

import pytest

from imageclassify.ml.categories import PLACEHOLDER_SIZE, CategorySource, CategoryTable, load_categories


class TestLoadCategories:
    def test_loads_json_list(self) -> None:
        table = load_categories({"categories": json.dumps(["tench", "goldfish"])})

        assert table.source is CategorySource.LOADED
        assert table.names == ("tench", "goldfish")
        assert table.label(1) == "goldfish"

    @pytest.mark.parametrize(
        "metadata",
        [
            {},
            {"author": "someone"},
            {"categories": "not json"},
            {"categories": json.dumps({"0": "tench"})},
            {"categories": json.dumps([1, 2, 3])},
            {"categories": "[]"},
        ],
    )
    def test_falls_back_to_placeholder(self, metadata: dict[str, str]) -> None:
        table = load_categories(metadata)

        assert table.is_synthesized
        assert len(table) == PLACEHOLDER_SIZE

    def test_fallback_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING, logger="imageclassify.ml.categories"):
            load_categories({})

        assert "placeholder categories" in caplog.text


class TestCategoryTable:
    def test_placeholder_names(self) -> None:
        table = CategoryTable.synthesized()

        assert table.label(0) == "Named[0]"
        assert table.label(PLACEHOLDER_SIZE - 1) == f"Named[{PLACEHOLDER_SIZE - 1}]"

    @pytest.mark.parametrize("index", [-1, 2])
    def test_out_of_range_index_raises(self, index: int) -> None:
        table = CategoryTable.loaded(["a", "b"])

        with pytest.raises(IndexError, match="outside table of 2"):
            table.label(index)
