"""Shared fixtures: tiny ONNX classifiers built on the fly.

The fixture models mean-pool each RGB channel and return the top-k channels,
so a solid-color image yields predictable scores (the channel intensities)
and class indices (0 = red, 1 = green, 2 = blue).
"""

from __future__ import annotations

import io
import json
from typing import TYPE_CHECKING

import onnx
import pytest
from onnx import TensorProto, helper
from PIL import Image

from imageclassify.config import Settings
from imageclassify.ml.model_manager import MODEL_REGISTRY, OnnxModelManager

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

RGB_CATEGORIES = ["red", "green", "blue"]
INPUT_SIZE = 8


def build_tiny_model(
    path: Path,
    *,
    categories: list[str] | str | None = None,
    size: int | str = INPUT_SIZE,
    top_k: int = 3,
) -> Path:
    """Write a mean-pool + TopK classifier to ``path``.

    ``categories`` is stored as the ``categories`` metadata entry: lists are
    JSON encoded, strings are stored verbatim, ``None`` leaves it out.
    """
    model_input = helper.make_tensor_value_info("input", TensorProto.FLOAT, [1, 3, size, size])
    scores = helper.make_tensor_value_info("scores", TensorProto.FLOAT, [1, top_k])
    indices = helper.make_tensor_value_info("indices", TensorProto.INT64, [1, top_k])
    k = helper.make_tensor("k", TensorProto.INT64, [1], [top_k])

    graph = helper.make_graph(
        [
            helper.make_node("ReduceMean", ["input"], ["pooled"], axes=[2, 3], keepdims=0),
            helper.make_node("TopK", ["pooled", "k"], ["scores", "indices"], axis=-1, largest=1, sorted=1),
        ],
        "tiny-classifier",
        [model_input],
        [scores, indices],
        initializer=[k],
    )
    model = helper.make_model(graph, opset_imports=[helper.make_opsetid("", 13)])
    model.ir_version = 8
    if categories is not None:
        raw = categories if isinstance(categories, str) else json.dumps(categories)
        helper.set_model_props(model, {"categories": raw})
    onnx.save(model, str(path))
    return path


def png_bytes(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "default",
        "model": "mobilenet_v3_small",
        "models_repo": None,
        "intra_op_threads": 0,
        "inter_op_threads": 1,
        "max_concurrent": 2,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


@pytest.fixture()
def models_dir(tmp_path: Path) -> Path:
    """A models directory holding a tiny classifier for every known weight."""
    directory = tmp_path / "models"
    directory.mkdir()
    for spec in MODEL_REGISTRY.values():
        build_tiny_model(directory / spec.filename, categories=RGB_CATEGORIES)
    return directory


@pytest.fixture()
def settings(models_dir: Path) -> Settings:
    return make_settings(models_dir=str(models_dir))


@pytest.fixture()
def manager(settings: Settings) -> Iterator[OnnxModelManager]:
    mgr = OnnxModelManager(settings)
    yield mgr
    mgr.shutdown()


@pytest.fixture()
def red_square() -> Image.Image:
    return Image.new("RGB", (10, 10), (255, 0, 0))

