"""Execution provider selection and session options per device class.

Each device class has a prioritized list of hardware providers. Every
candidate is checked against the providers compiled into the installed
onnxruntime build and yields a ``ProviderAttempt``; the first one that can be
attached is adopted and the CPU provider is always kept as the final fallback.
"""

from __future__ import annotations

import logging
import platform
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import TYPE_CHECKING

from onnxruntime import ExecutionMode, GraphOptimizationLevel, SessionOptions, get_available_providers

if TYPE_CHECKING:
    from collections.abc import Iterable

    from imageclassify.config import Settings

logger = logging.getLogger(__name__)

CPU_PROVIDER = "CPUExecutionProvider"
NNAPI_PROVIDER = "NnapiExecutionProvider"
COREML_PROVIDER = "CoreMLExecutionProvider"
DML_PROVIDER = "DmlExecutionProvider"

ProviderEntry = str | tuple[str, dict[str, str]]


class DeviceClass(StrEnum):
    ANDROID = "android"
    IOS = "ios"
    MACOS = "macos"
    WINDOWS = "windows"
    DEFAULT = "default"


_CANDIDATES: dict[DeviceClass, list[tuple[str, dict[str, str]]]] = {
    DeviceClass.ANDROID: [(NNAPI_PROVIDER, {"NNAPI_FLAG_USE_NCHW": "1"})],
    DeviceClass.IOS: [(COREML_PROVIDER, {"MLComputeUnits": "CPUAndNeuralEngine"})],
    DeviceClass.MACOS: [(COREML_PROVIDER, {"MLComputeUnits": "CPUAndNeuralEngine"})],
    DeviceClass.WINDOWS: [(DML_PROVIDER, {"device_id": "0"})],
    DeviceClass.DEFAULT: [],
}

# The Python binding builds the NNAPI provider with flags=0 and never reads
# provider options, so NNAPI_FLAG_USE_NCHW above is requested but not applied.
_ATTACH_NOTES: dict[str, str] = {
    NNAPI_PROVIDER: "NNAPI_FLAG_USE_NCHW ignored by the onnxruntime Python binding; NNAPI keeps its default NHWC layout",
}


@dataclass(frozen=True)
class ProviderAttempt:
    """Outcome of trying to attach a single execution provider."""

    provider: str
    attached: bool
    reason: str = ""


@dataclass(frozen=True)
class ProviderPlan:
    """Ordered providers for a session plus the attempts that produced them."""

    device: DeviceClass
    providers: tuple[ProviderEntry, ...]
    attempts: tuple[ProviderAttempt, ...] = ()

    @property
    def selected(self) -> str:
        """Name of the preferred provider (the first in the list)."""
        first = self.providers[0]
        return first if isinstance(first, str) else first[0]

    @property
    def uses_hardware(self) -> bool:
        return self.selected != CPU_PROVIDER

    def with_failure(self, provider: str, reason: str) -> ProviderPlan:
        """Return a CPU-only plan recording that ``provider`` could not be used."""
        attempts = tuple(
            ProviderAttempt(provider, attached=False, reason=reason) if a.provider == provider else a
            for a in self.attempts
        )
        return replace(self, providers=(CPU_PROVIDER,), attempts=attempts)

    def report(self) -> str:
        if not self.attempts:
            return f"device={self.device}: no hardware provider requested, using {self.selected}"
        parts = []
        for attempt in self.attempts:
            if attempt.attached and attempt.reason:
                parts.append(f"{attempt.provider}=attached ({attempt.reason})")
            elif attempt.attached:
                parts.append(f"{attempt.provider}=attached")
            else:
                parts.append(f"{attempt.provider}=failed ({attempt.reason})")
        return f"device={self.device}: {', '.join(parts)}; using {self.selected}"


def has_neural_engine() -> bool:
    """Whether the host exposes an Apple Neural Engine."""
    machine = platform.machine()
    return machine == "arm64" or machine.startswith(("iPhone", "iPad"))


def plan_providers(device: DeviceClass, available: Iterable[str] | None = None) -> ProviderPlan:
    """Pick the execution providers for ``device``.

    Args:
        device: Target device class.
        available: Provider names to check against. Defaults to the providers
            compiled into the installed onnxruntime package.
    """
    names = set(get_available_providers() if available is None else available)
    providers: list[ProviderEntry] = []
    attempts: list[ProviderAttempt] = []

    for name, options in _CANDIDATES[device]:
        if name not in names:
            attempts.append(ProviderAttempt(name, attached=False, reason="not available in this onnxruntime build"))
            continue
        if name == COREML_PROVIDER and not has_neural_engine():
            attempts.append(ProviderAttempt(name, attached=False, reason="host has no Apple Neural Engine"))
            continue
        note = _ATTACH_NOTES.get(name, "")
        if note:
            logger.warning("%s: %s", name, note)
        attempts.append(ProviderAttempt(name, attached=True, reason=note))
        providers.append((name, dict(options)))
        break

    providers.append(CPU_PROVIDER)
    plan = ProviderPlan(device=device, providers=tuple(providers), attempts=tuple(attempts))
    logger.info("Provider plan %s", plan.report())
    return plan


def build_session_options(device: DeviceClass, settings: Settings) -> SessionOptions:
    opts = SessionOptions()
    opts.graph_optimization_level = GraphOptimizationLevel.ORT_ENABLE_ALL
    opts.execution_mode = ExecutionMode.ORT_PARALLEL
    opts.enable_mem_pattern = True
    opts.enable_mem_reuse = True
    opts.enable_profiling = False
    opts.intra_op_num_threads = settings.intra_op_threads
    opts.inter_op_num_threads = settings.inter_op_threads

    if device == DeviceClass.WINDOWS:
        # DirectML does not support memory patterns or parallel execution
        opts.enable_mem_pattern = False
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
    return opts
