"""Image classification models run through ONNX Runtime."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

    from petclassifier.ml.model_manager import ModelSpec
    from petclassifier.ml.preprocessing import ImagePreprocessor


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    label: str
    confidence: float

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence for '{self.label}' out of range: {self.confidence}")

    @property
    def confidence_percentage(self) -> str:
        return f"{self.confidence * 100:.1f}%"


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(self, image: NDArray[np.uint8]) -> list[ClassificationResult]:
        """Classify an image and return ranked tags.

        Args:
            image: HxWx3 RGB uint8 array.

        Returns:
            List of classification results sorted by confidence (descending).
        """
        ...


def select_best(results: Sequence[ClassificationResult]) -> ClassificationResult | None:
    """Return the highest-confidence result, preferring the earliest on ties."""
    if not results:
        return None
    return max(results, key=lambda result: result.confidence)


def _softmax(logits: NDArray[np.float32]) -> NDArray[np.float32]:
    shifted = logits - np.max(logits)
    exp = np.exp(shifted)
    return exp / np.sum(exp)


class OnnxImageClassifier:
    """Runs a single-label ONNX classification model over RGB images."""

    def __init__(self, spec: ModelSpec, session: InferenceSession, preprocessor: ImagePreprocessor) -> None:
        self._spec = spec
        self._session = session
        self._preprocessor = preprocessor
        self._input_name = session.get_inputs()[0].name

    @property
    def model_name(self) -> str:
        return self._spec.name

    def classify(self, image: NDArray[np.uint8]) -> list[ClassificationResult]:
        tensor = self._preprocessor.preprocess_for_classification(
            image,
            self._spec.input_size,
            self._spec.mean,
            self._spec.std,
        )
        outputs = self._session.run(None, {self._input_name: tensor})
        scores = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
        if scores.size != len(self._spec.labels):
            raise RuntimeError(
                f"Model '{self._spec.name}' returned {scores.size} scores for {len(self._spec.labels)} labels"
            )

        if self._spec.outputs_logits:
            scores = _softmax(scores)
        scores = np.clip(scores, 0.0, 1.0)

        results = [
            ClassificationResult(label=label, confidence=float(score))
            for label, score in zip(self._spec.labels, scores, strict=True)
        ]
        # Stable sort: equal scores keep model output order.
        results.sort(key=lambda result: result.confidence, reverse=True)
        return results
