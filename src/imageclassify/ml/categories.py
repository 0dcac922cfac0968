"""Category tables read from ONNX model metadata."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from pydantic import TypeAdapter, ValidationError

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

logger = logging.getLogger(__name__)

CATEGORIES_METADATA_KEY = "categories"
PLACEHOLDER_SIZE = 10_000

_CATEGORY_LIST = TypeAdapter(list[str])


class CategorySource(StrEnum):
    LOADED = "loaded"
    SYNTHESIZED = "synthesized"


@dataclass(frozen=True)
class CategoryTable:
    """Ordered category names indexed by the model's output class indices."""

    names: tuple[str, ...]
    source: CategorySource

    @classmethod
    def loaded(cls, names: Sequence[str]) -> CategoryTable:
        return cls(names=tuple(names), source=CategorySource.LOADED)

    @classmethod
    def synthesized(cls, size: int = PLACEHOLDER_SIZE) -> CategoryTable:
        """Build a placeholder table of ``Named[<index>]`` entries."""
        return cls(names=tuple(f"Named[{i}]" for i in range(size)), source=CategorySource.SYNTHESIZED)

    @property
    def is_synthesized(self) -> bool:
        return self.source is CategorySource.SYNTHESIZED

    def __len__(self) -> int:
        return len(self.names)

    def label(self, index: int) -> str:
        if not 0 <= index < len(self.names):
            raise IndexError(f"Category index {index} outside table of {len(self.names)} {self.source} categories")
        return self.names[index]


def load_categories(metadata: Mapping[str, str]) -> CategoryTable:
    """Parse the JSON category list stored in a model's custom metadata.

    Falls back to a synthesized placeholder table when the entry is missing,
    is not a JSON list of strings, or is empty.
    """
    raw = metadata.get(CATEGORIES_METADATA_KEY)
    if raw is None:
        logger.warning("Model metadata has no '%s' entry, using placeholder categories", CATEGORIES_METADATA_KEY)
        return CategoryTable.synthesized()

    try:
        names = _CATEGORY_LIST.validate_json(raw)
    except ValidationError as exc:
        logger.warning("Could not parse category metadata (%s), using placeholder categories", exc.errors()[0]["msg"])
        return CategoryTable.synthesized()

    if not names:
        logger.warning("Model metadata has an empty category list, using placeholder categories")
        return CategoryTable.synthesized()

    logger.info("Loaded %d categories from model metadata", len(names))
    return CategoryTable.loaded(names)
