"""ONNX model lifecycle for the neural and geometric embedding backends.

Weights come from the HuggingFace Hub. Sessions are created on first use,
kept while they are being used, and dropped once idle for ``model_ttl``
seconds. Detectors and recognizers never hold a session themselves: they
ask the manager for it on every call, so an evicted model is transparently
reloaded.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from enum import StrEnum
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import ExecutionMode, GraphOptimizationLevel, InferenceSession, SessionOptions

if TYPE_CHECKING:
    from collections.abc import Callable

    from facepay.config import Settings

logger = logging.getLogger(__name__)


class ModelTask(StrEnum):
    FACE_DETECTION = "face_detection"
    FACE_RECOGNITION = "face_recognition"


@dataclass(frozen=True)
class ModelSpec:
    """Where a model lives on the Hub and what it is for."""

    name: str
    repo_id: str
    filename: str
    subfolder: str | None
    task: ModelTask
    license: str
    insightface: bool
    # Descriptor length for recognizers whose ONNX graph has a symbolic output shape.
    output_dim: int | None = None


def _detector(name: str) -> ModelSpec:
    return ModelSpec(
        name=name,
        repo_id="danielcopper/recognizex-models",
        filename=f"{name}.onnx",
        subfolder=None,
        task=ModelTask.FACE_DETECTION,
        license="MIT",
        insightface=False,
    )


MODEL_REGISTRY: dict[str, ModelSpec] = {
    spec.name: spec
    for spec in (
        _detector("retinaface_resnet34"),
        _detector("retinaface_mobilenetv2"),
        ModelSpec(
            name="auraface_v1",
            repo_id="fal/AuraFace-v1",
            filename="glintr100.onnx",
            subfolder=None,
            task=ModelTask.FACE_RECOGNITION,
            license="Apache-2.0",
            insightface=False,
            output_dim=512,
        ),
        ModelSpec(
            name="w600k_r50",
            repo_id="public-data/insightface",
            filename="w600k_r50.onnx",
            subfolder="models/buffalo_l",
            task=ModelTask.FACE_RECOGNITION,
            license="Non-commercial (InsightFace)",
            insightface=True,
            output_dim=512,
        ),
    )
}


class ModelManager(Protocol):
    """What the embedding backends and the API need from model management."""

    def spec(self, model_name: str) -> ModelSpec:
        """Registry entry for ``model_name``.

        Raises:
            KeyError: If the model is not registered.
        """
        ...

    def session_for(self, task: ModelTask, model_name: str) -> InferenceSession:
        """Session for a model registered under ``task``, loading it if needed."""
        ...

    def loaded_models(self) -> list[str]:
        ...

    def evict_idle(self) -> list[str]:
        """Drop sessions unused for longer than the TTL and return their names."""
        ...

    def shutdown(self) -> None:
        ...


def session_source(manager: ModelManager, task: ModelTask, model_name: str) -> Callable[[], InferenceSession]:
    """Bind ``manager.session_for`` to one model, for components that run it repeatedly."""
    return partial(manager.session_for, task, model_name)


async def evict_idle_periodically(manager: ModelManager, interval: float) -> None:
    """Call ``manager.evict_idle`` every ``interval`` seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        evicted = await asyncio.to_thread(manager.evict_idle)
        if evicted:
            logger.info("Idle models unloaded: %s", ", ".join(evicted))


@dataclass
class _LoadedModel:
    session: InferenceSession
    last_used: float


class OnnxModelManager:
    """Thread-safe cache of ONNX Runtime sessions keyed by model name."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._loaded: dict[str, _LoadedModel] = {}
        self._paths: dict[str, Path] = {}

        self._providers = execution_providers(settings)
        self._options = session_options(settings)

    def spec(self, model_name: str) -> ModelSpec:
        try:
            return MODEL_REGISTRY[model_name]
        except KeyError:
            raise KeyError(f"Unknown model: {model_name}") from None

    def model_path(self, model_name: str) -> Path:
        """Local path of the model weights, downloading them on first request.

        Raises:
            KeyError: If the model is not registered.
            RuntimeError: If the model needs the InsightFace license and it was not accepted.
        """
        spec = self.spec(model_name)
        if spec.insightface and not self._settings.accept_insightface_license:
            raise RuntimeError(f"Model '{model_name}' requires FACEPAY_ACCEPT_INSIGHTFACE_LICENSE=true")

        known = self._paths.get(model_name)
        if known is not None and known.exists():
            return known

        path = Path(
            hf_hub_download(
                repo_id=spec.repo_id,
                filename=spec.filename,
                subfolder=spec.subfolder,
                local_dir=str(self._models_dir),
            )
        )
        self._paths[model_name] = path
        logger.info("Fetched %s (%s) into %s", model_name, spec.license, path)
        return path

    def session_for(self, task: ModelTask, model_name: str) -> InferenceSession:
        spec = self.spec(model_name)
        if spec.task != task:
            raise ValueError(f"Model '{model_name}' is a {spec.task} model, not {task}")

        with self._lock:
            loaded = self._loaded.get(model_name)
            if loaded is not None:
                loaded.last_used = time.monotonic()
                return loaded.session

        # Loading happens outside the lock; a concurrent loader may win the race.
        session = InferenceSession(
            str(self.model_path(model_name)),
            sess_options=self._options,
            providers=self._providers,
        )
        with self._lock:
            loaded = self._loaded.setdefault(model_name, _LoadedModel(session, time.monotonic()))
            loaded.last_used = time.monotonic()
            if loaded.session is session:
                logger.info("Loaded %s on %s", model_name, self._settings.device)
            return loaded.session

    def loaded_models(self) -> list[str]:
        with self._lock:
            return list(self._loaded)

    def evict_idle(self) -> list[str]:
        ttl = self._settings.model_ttl
        if ttl == 0:
            return []

        cutoff = time.monotonic() - ttl
        with self._lock:
            idle = [name for name, loaded in self._loaded.items() if loaded.last_used < cutoff]
            for name in idle:
                del self._loaded[name]
        return idle

    def shutdown(self) -> None:
        with self._lock:
            self._loaded.clear()
        logger.info("Model sessions released")


def execution_providers(settings: Settings) -> list[str | tuple[str, dict[str, object]]]:
    """ONNX Runtime providers for ``settings.device``, always ending with the CPU provider."""
    if settings.device == "cuda":
        cuda_options: dict[str, object] = {
            "device_id": 0,
            "gpu_mem_limit": settings.gpu_mem_limit,
            "arena_extend_strategy": "kSameAsRequested",
        }
        return [("CUDAExecutionProvider", cuda_options), "CPUExecutionProvider"]
    if settings.device == "openvino":
        return [("OpenVINOExecutionProvider", {"device_type": "CPU"}), "CPUExecutionProvider"]
    return ["CPUExecutionProvider"]


def session_options(settings: Settings) -> SessionOptions:
    options = SessionOptions()
    options.intra_op_num_threads = settings.intra_op_threads
    options.inter_op_num_threads = settings.inter_op_threads
    options.execution_mode = ExecutionMode.ORT_SEQUENTIAL
    options.enable_mem_pattern = True
    options.enable_mem_reuse = True
    if settings.device == "openvino":
        # OpenVINO optimises the graph itself.
        options.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
    return options
