"""Model manager: locate, load, share, and release ONNX classification sessions.

Sessions are expensive to build (model load + graph compile) and cheap to
run, so one ``OnnxModelManager`` per process owns them. Classifier instances
take leases with ``acquire`` (loading on first use) or ``borrow`` (reuse
only) and hand them back with ``release``; the session is dropped when the
last lease is returned.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, RunOptions, SessionOptions

from imageclassify.ml.categories import CategoryTable, load_categories
from imageclassify.ml.providers import DeviceClass, ProviderPlan, build_session_options, plan_providers

if TYPE_CHECKING:
    from imageclassify.config import Settings

logger = logging.getLogger(__name__)


class SessionNotLoadedError(LookupError):
    """Raised when reusing a session that no one has loaded yet."""


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


class ModelWeight(StrEnum):
    MOBILENET_V3_SMALL = "mobilenet_v3_small"
    MOBILENET_V3_LARGE = "mobilenet_v3_large"
    RESNET18 = "resnet18"


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX classification model."""

    weight: ModelWeight
    filename: str
    description: str
    license: str


MODEL_REGISTRY: dict[ModelWeight, ModelSpec] = {
    ModelWeight.MOBILENET_V3_SMALL: ModelSpec(
        weight=ModelWeight.MOBILENET_V3_SMALL,
        filename="mobilenet_v3_small.onnx",
        description="MobileNetV3 Small, ImageNet-1k",
        license="BSD-3-Clause",
    ),
    ModelWeight.MOBILENET_V3_LARGE: ModelSpec(
        weight=ModelWeight.MOBILENET_V3_LARGE,
        filename="mobilenet_v3_large.onnx",
        description="MobileNetV3 Large, ImageNet-1k",
        license="BSD-3-Clause",
    ),
    ModelWeight.RESNET18: ModelSpec(
        weight=ModelWeight.RESNET18,
        filename="resnet18.onnx",
        description="ResNet-18, ImageNet-1k",
        license="BSD-3-Clause",
    ),
}


# ---------------------------------------------------------------------------
# Loaded sessions
# ---------------------------------------------------------------------------


@dataclass
class LoadedModel:
    """A compiled inference session together with everything needed to run it."""

    weight: ModelWeight
    device: DeviceClass
    session: InferenceSession
    session_options: SessionOptions
    run_options: RunOptions
    input_name: str
    input_height: int
    input_width: int
    categories: CategoryTable
    provider_plan: ProviderPlan


@dataclass
class _SessionEntry:
    model: LoadedModel
    leases: int = 0


class OnnxModelManager:
    """Loads ONNX classification sessions once and shares them by lease."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)

        # Guards _sessions and _load_locks; never held while a model loads.
        self._lock = threading.Lock()
        self._sessions: dict[tuple[ModelWeight, DeviceClass], _SessionEntry] = {}
        # One per key, held for the whole load so two callers never build the same session.
        self._load_locks: dict[tuple[ModelWeight, DeviceClass], threading.Lock] = {}

    # -- Public API ---------------------------------------------------------

    @property
    def settings(self) -> Settings:
        return self._settings

    def ensure_downloaded(self, weight: ModelWeight) -> Path:
        """Return the local model file, downloading it from HuggingFace if needed."""
        spec = self._get_spec(weight)

        local = self._models_dir / spec.filename
        if local.exists():
            return local

        repo_id = self._settings.models_repo
        if repo_id is None:
            raise FileNotFoundError(f"Model file {local} not found and IMAGECLASSIFY_MODELS_REPO is not set")

        self._models_dir.mkdir(parents=True, exist_ok=True)
        downloaded = Path(
            hf_hub_download(
                repo_id=repo_id,
                filename=spec.filename,
                local_dir=str(self._models_dir),
            )
        )
        logger.info("Downloaded %s to %s", weight, downloaded)
        return downloaded

    def acquire(self, weight: ModelWeight, device: DeviceClass) -> LoadedModel:
        """Lease a session, loading it if this process has none yet."""
        key = (self._get_spec(weight).weight, DeviceClass(device))
        with self._lock:
            model = self._lease(key)
            if model is not None:
                return model
            load_lock = self._load_locks.setdefault(key, threading.Lock())

        with load_lock:
            with self._lock:
                model = self._lease(key)
                if model is not None:
                    return model
            model = self._load(*key)
            with self._lock:
                self._sessions[key] = _SessionEntry(model=model, leases=1)
            logger.debug("Acquired %s on %s (1 lease)", weight, device)
            return model

    def borrow(self, weight: ModelWeight, device: DeviceClass) -> LoadedModel:
        """Lease an already-loaded session without loading anything.

        Raises:
            SessionNotLoadedError: If no session is loaded for ``weight`` on ``device``.
        """
        key = (self._get_spec(weight).weight, DeviceClass(device))
        with self._lock:
            model = self._lease(key)
        if model is None:
            raise SessionNotLoadedError(f"No session loaded for {weight} on {device}")
        return model

    def release(self, model: LoadedModel) -> None:
        """Return a lease; the session is dropped when none remain."""
        key = (model.weight, model.device)
        with self._lock:
            entry = self._sessions.get(key)
            if entry is None or entry.model is not model:
                logger.warning("Release of %s on %s ignored: not managed here", model.weight, model.device)
                return
            entry.leases -= 1
            if entry.leases > 0:
                return
            del self._sessions[key]
            logger.info("Released session for %s on %s", model.weight, model.device)

    def lease_count(self, weight: ModelWeight, device: DeviceClass) -> int:
        with self._lock:
            entry = self._sessions.get((weight, device))
            return 0 if entry is None else entry.leases

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._lock:
            return sorted({weight.value for weight, _device in self._sessions})

    def shutdown(self) -> None:
        """Drop all sessions regardless of outstanding leases."""
        with self._lock:
            self._sessions.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    def _lease(self, key: tuple[ModelWeight, DeviceClass]) -> LoadedModel | None:
        # Caller holds self._lock.
        entry = self._sessions.get(key)
        if entry is None:
            return None
        entry.leases += 1
        logger.debug("Acquired %s on %s (%d leases)", key[0], key[1], entry.leases)
        return entry.model

    @staticmethod
    def _get_spec(weight: ModelWeight) -> ModelSpec:
        try:
            return MODEL_REGISTRY[ModelWeight(weight)]
        except ValueError:
            raise KeyError(f"Unknown model: {weight}") from None

    def _load(self, weight: ModelWeight, device: DeviceClass) -> LoadedModel:
        model_path = self.ensure_downloaded(weight)
        session_options = build_session_options(device, self._settings)
        plan = plan_providers(device)
        session, plan = self._create_session(model_path, session_options, plan)

        model_input = session.get_inputs()[0]
        height, width = self._spatial_dims(model_input.shape)
        categories = load_categories(session.get_modelmeta().custom_metadata_map)

        logger.info(
            "Loaded session for %s (input=%s %dx%d, categories=%d %s, provider=%s)",
            weight,
            model_input.name,
            height,
            width,
            len(categories),
            categories.source,
            plan.selected,
        )
        return LoadedModel(
            weight=weight,
            device=device,
            session=session,
            session_options=session_options,
            run_options=RunOptions(),
            input_name=model_input.name,
            input_height=height,
            input_width=width,
            categories=categories,
            provider_plan=plan,
        )

    @staticmethod
    def _create_session(
        model_path: Path, session_options: SessionOptions, plan: ProviderPlan
    ) -> tuple[InferenceSession, ProviderPlan]:
        try:
            session = InferenceSession(str(model_path), sess_options=session_options, providers=list(plan.providers))
        except Exception as exc:
            if not plan.uses_hardware:
                raise
            logger.warning("Could not attach %s (%s), falling back to CPU", plan.selected, exc)
            plan = plan.with_failure(plan.selected, str(exc))
            session = InferenceSession(str(model_path), sess_options=session_options, providers=list(plan.providers))
        return session, plan

    def _spatial_dims(self, shape: list[int | str | None]) -> tuple[int, int]:
        dims = shape[2:4]
        if len(dims) == 2 and all(isinstance(d, int) and d > 0 for d in dims):
            return dims[0], dims[1]  # type: ignore[return-value]
        size = self._settings.default_input_size
        logger.warning("Model input shape %s has symbolic spatial dims, using %dx%d", shape, size, size)
        return size, size


_default_manager: OnnxModelManager | None = None
_default_lock = threading.Lock()


def get_model_manager(settings: Settings | None = None) -> OnnxModelManager:
    """Return the process-wide model manager, creating it on first use."""
    global _default_manager
    with _default_lock:
        if _default_manager is None:
            if settings is None:
                from imageclassify.config import get_settings

                settings = get_settings()
            _default_manager = OnnxModelManager(settings)
        return _default_manager
