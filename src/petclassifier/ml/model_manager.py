"""Model manager: locate, load and cache the ONNX pet classification models.

Each model is resolved from the bundled models directory (falling back to a
HuggingFace download when allowed), wrapped in an ONNX InferenceSession and an
OnnxImageClassifier, and cached for the lifetime of the manager. Construction
runs at most once per model, even when several threads ask for it together.
Any failure along the way is a ModelLoadError: there is no fallback model.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from petclassifier.ml.image_classifier import OnnxImageClassifier
from petclassifier.ml.preprocessing import PilImagePreprocessor

if TYPE_CHECKING:
    from petclassifier.config import Settings
    from petclassifier.ml.image_classifier import ImageClassifier
    from petclassifier.ml.preprocessing import ImagePreprocessor

logger = logging.getLogger(__name__)


class ModelLoadError(RuntimeError):
    """A model artifact is missing, corrupt, or otherwise unusable."""


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def get_classifier(self, model_name: str) -> ImageClassifier:
        """Return a cached or newly constructed classifier."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def shutdown(self) -> None:
        """Release all cached models."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


class ModelTask(StrEnum):
    PET_GATE = "pet_gate"
    PET_SPECIES = "pet_species"


IMAGENET_MEAN = (0.485, 0.456, 0.406)
IMAGENET_STD = (0.229, 0.224, 0.225)


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX classification model."""

    name: str
    filename: str
    task: ModelTask
    labels: tuple[str, ...]
    input_size: int = 224
    mean: tuple[float, float, float] = IMAGENET_MEAN
    std: tuple[float, float, float] = IMAGENET_STD
    outputs_logits: bool = True


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "pet_gate_v1": ModelSpec(
        name="pet_gate_v1",
        filename="pet_gate_v1.onnx",
        task=ModelTask.PET_GATE,
        labels=("not_pets", "pets"),
    ),
    "pet_species_v1": ModelSpec(
        name="pet_species_v1",
        filename="pet_species_v1.onnx",
        task=ModelTask.PET_SPECIES,
        labels=("cat", "dog", "hamster", "parrot"),
    ),
}


def get_model_spec(model_name: str, task: ModelTask | None = None) -> ModelSpec:
    """Look up a registered model, optionally requiring it to serve ``task``."""
    try:
        spec = MODEL_REGISTRY[model_name]
    except KeyError:
        raise ModelLoadError(f"Unknown model: {model_name}") from None
    if task is not None and spec.task != task:
        raise ModelLoadError(f"Model '{model_name}' is a {spec.task} model, expected {task}")
    return spec


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Resolves, loads and caches ONNX classifiers."""

    def __init__(self, settings: Settings, preprocessor: ImagePreprocessor | None = None) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._preprocessor = preprocessor or PilImagePreprocessor()

        # Held for the whole construction so concurrent first callers build once.
        self._load_lock = threading.Lock()
        self._sessions: dict[str, InferenceSession] = {}
        self._classifiers: dict[str, OnnxImageClassifier] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def ensure_available(self, model_name: str) -> Path:
        """Return the local path of a model, downloading it if permitted."""
        spec = get_model_spec(model_name)

        bundled = self._models_dir / spec.filename
        if bundled.is_file():
            return bundled

        if not self._settings.allow_download:
            raise ModelLoadError(f"Model file for '{model_name}' not found at {bundled}")

        try:
            self._models_dir.mkdir(parents=True, exist_ok=True)
            downloaded = Path(
                hf_hub_download(
                    repo_id=self._settings.models_repo,
                    filename=spec.filename,
                    local_dir=str(self._models_dir),
                )
            )
        except Exception as exc:
            raise ModelLoadError(f"Failed to download model '{model_name}': {exc}") from exc

        logger.info("Downloaded %s to %s", model_name, downloaded)
        return downloaded

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached InferenceSession, creating one if needed."""
        with self._load_lock:
            return self._get_or_create_session(model_name)

    def get_classifier(self, model_name: str) -> OnnxImageClassifier:
        """Return a cached classifier, creating it (and its session) if needed."""
        with self._load_lock:
            classifier = self._classifiers.get(model_name)
            if classifier is not None:
                return classifier

            session = self._get_or_create_session(model_name)
            try:
                classifier = OnnxImageClassifier(get_model_spec(model_name), session, self._preprocessor)
            except Exception as exc:
                raise ModelLoadError(f"Model '{model_name}' has no usable input: {exc}") from exc
            self._classifiers[model_name] = classifier
            return classifier

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._load_lock:
            return list(self._sessions.keys())

    def shutdown(self) -> None:
        """Clear all cached sessions and classifiers."""
        with self._load_lock:
            self._classifiers.clear()
            self._sessions.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    def _get_or_create_session(self, model_name: str) -> InferenceSession:
        session = self._sessions.get(model_name)
        if session is not None:
            return session

        spec = get_model_spec(model_name)
        model_path = self.ensure_available(model_name)
        try:
            session = InferenceSession(
                str(model_path),
                sess_options=self._session_options,
                providers=self._providers,
            )
        except Exception as exc:
            raise ModelLoadError(f"Failed to load model '{model_name}' from {model_path}: {exc}") from exc

        self._check_outputs(spec, session)
        self._sessions[model_name] = session
        logger.info("Loaded session for %s", model_name)
        return session

    @staticmethod
    def _check_outputs(spec: ModelSpec, session: InferenceSession) -> None:
        outputs = session.get_outputs()
        if not outputs:
            raise ModelLoadError(f"Model '{spec.name}' declares no outputs")
        width = outputs[0].shape[-1] if outputs[0].shape else None
        # Symbolic dimensions come back as strings or None.
        if isinstance(width, int) and width != len(spec.labels):
            raise ModelLoadError(f"Model '{spec.name}' has {width} outputs but {len(spec.labels)} labels")

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
