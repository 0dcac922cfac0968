"""Image classification service.

``ClassifierService`` turns any supported image input into a mapping of
category name to confidence using a session leased from the process-wide
``OnnxModelManager``.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

import numpy as np

from imageclassify.ml.model_manager import ModelWeight, get_model_manager
from imageclassify.ml.preprocessing import fit_to_input, load_image, to_tensor
from imageclassify.ml.providers import DeviceClass

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import ArrayLike

    from imageclassify.config import Settings
    from imageclassify.ml.categories import CategoryTable
    from imageclassify.ml.model_manager import LoadedModel, OnnxModelManager
    from imageclassify.ml.preprocessing import ImageSource
    from imageclassify.ml.providers import ProviderPlan

logger = logging.getLogger(__name__)


def decode_predictions(scores: ArrayLike, indices: ArrayLike, categories: CategoryTable) -> dict[str, float]:
    """Zip score and class-index outputs into a label -> confidence mapping.

    Order and count follow the model output. If two indices map to the same
    label, the first score wins.

    Raises:
        ValueError: If the two outputs differ in length.
        IndexError: If an index falls outside ``categories``.
    """
    flat_scores = np.asarray(scores, dtype=np.float32).ravel()
    flat_indices = np.asarray(indices).ravel()
    if flat_scores.shape != flat_indices.shape:
        raise ValueError(f"Model returned {flat_scores.size} scores but {flat_indices.size} class indices")

    result: dict[str, float] = {}
    for score, index in zip(flat_scores.tolist(), flat_indices.tolist(), strict=True):
        result.setdefault(categories.label(int(index)), float(score))
    return result


class ClassifierService:
    """Classifies images with a shared ONNX Runtime session.

    Args:
        weight: Which known model to run.
        device: Device class used to choose the execution provider.
        manager: Session store to lease from. Defaults to the process-wide one.
        settings: Settings for the process-wide manager when it is created here.
        log_sink: Receives every lifecycle and timing line as text.
        reuse: Only borrow an already-loaded session instead of loading one.

    Raises:
        SessionNotLoadedError: With ``reuse=True`` when no session is loaded.
    """

    def __init__(
        self,
        weight: ModelWeight = ModelWeight.MOBILENET_V3_SMALL,
        device: DeviceClass = DeviceClass.DEFAULT,
        *,
        manager: OnnxModelManager | None = None,
        settings: Settings | None = None,
        log_sink: Callable[[str], None] | None = None,
        reuse: bool = False,
    ) -> None:
        self._manager = manager if manager is not None else get_model_manager(settings)
        self._log_sink = log_sink
        self._max_pixels = (settings or self._manager.settings).max_image_pixels

        model = self._manager.borrow(weight, device) if reuse else self._manager.acquire(weight, device)
        self._model: LoadedModel | None = model
        self._weight = model.weight
        self._device = model.device
        self._categories = model.categories
        self._input_size = (model.input_height, model.input_width)
        self._provider_plan = model.provider_plan

        if reuse:
            self._log("[ClassifierService][init] reusing %s on %s", model.weight, model.device)
        else:
            self._log(
                "[ClassifierService][init] %s on %s via %s", model.weight, model.device, model.provider_plan.selected
            )

    @classmethod
    def from_store(
        cls,
        manager: OnnxModelManager,
        weight: ModelWeight = ModelWeight.MOBILENET_V3_SMALL,
        device: DeviceClass = DeviceClass.DEFAULT,
        log_sink: Callable[[str], None] | None = None,
    ) -> ClassifierService:
        """Create a service over a session someone else already loaded."""
        return cls(weight, device, manager=manager, log_sink=log_sink, reuse=True)

    # -- Properties ---------------------------------------------------------

    @property
    def weight(self) -> ModelWeight:
        return self._weight

    @property
    def device(self) -> DeviceClass:
        return self._device

    @property
    def categories(self) -> CategoryTable:
        return self._categories

    @property
    def input_size(self) -> tuple[int, int]:
        """Declared model input as (height, width)."""
        return self._input_size

    @property
    def provider_plan(self) -> ProviderPlan:
        return self._provider_plan

    @property
    def disposed(self) -> bool:
        return self._model is None

    # -- Inference ----------------------------------------------------------

    def classify(self, image: ImageSource) -> dict[str, float]:
        """Classify an image given as bytes, a stream, a path, or a ``PIL.Image``.

        Raises:
            ImageDecodeError: If the input is not a decodable image.
            RuntimeError: If the service has been disposed.
        """
        model = self._model
        if model is None:
            raise RuntimeError("ClassifierService has been disposed")

        decoded = load_image(image, max_pixels=self._max_pixels)

        start = time.perf_counter()
        tensor = to_tensor(fit_to_input(decoded, model.input_height, model.input_width))
        outputs = model.session.run(None, {model.input_name: tensor}, model.run_options)
        if len(outputs) < 2:
            raise ValueError(f"Model returned {len(outputs)} outputs, expected scores and class indices")
        result = decode_predictions(outputs[0], outputs[1], model.categories)
        elapsed_ms = (time.perf_counter() - start) * 1000

        self._log("[ClassifierService][classify][SPEED] %.1fms", elapsed_ms)
        return result

    async def classify_async(self, image: ImageSource) -> dict[str, float]:
        """Awaitable form of ``classify``; runs synchronously on the calling thread."""
        return self.classify(image)

    # -- Lifecycle ----------------------------------------------------------

    def dispose(self) -> None:
        """Return the session lease and drop the reference to it. Safe to call more than once."""
        if self._model is None:
            return
        self._manager.release(self._model)
        self._model = None
        self._log("[ClassifierService][dispose] disposed")

    def __enter__(self) -> ClassifierService:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.dispose()

    def _log(self, message: str, *args: object) -> None:
        logger.info(message, *args)
        if self._log_sink is not None:
            self._log_sink(message % args)
