"""Pet analysis: gate-then-species classification of a single image.

The gate model decides pet vs. not pet; only a positive gate runs the species
model. Invalid input and inference failures never raise out of ``classify``:
they come back as a not-a-pet response tagged with the reason. The one
exception is ModelLoadError, which means the models cannot be used at all.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from petclassifier.ml.image_classifier import select_best
from petclassifier.ml.model_manager import ModelLoadError, ModelTask, get_model_spec
from petclassifier.ml.preprocessing import PilImagePreprocessor

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

    from petclassifier.config import Settings
    from petclassifier.ml.image_classifier import ClassificationResult
    from petclassifier.ml.inference import InferencePool
    from petclassifier.ml.model_manager import ModelManager
    from petclassifier.ml.preprocessing import ImageInput, ImagePreprocessor

logger = logging.getLogger(__name__)

NOT_A_PET_NAME = "not domestic"


class AnalysisOutcome(StrEnum):
    PET = "pet"
    NOT_PET = "not_pet"
    INVALID_IMAGE = "invalid_image"
    INFERENCE_FAILED = "inference_failed"


@dataclass(frozen=True)
class AnalysisResponse:
    """Result of analysing one image.

    ``name`` is the species label for pets and ``NOT_A_PET_NAME`` otherwise;
    ``outcome`` tells a genuine "not a pet" apart from a failed analysis.
    ``classification`` is the top candidate of the last stage that ran.
    """

    name: str
    is_pet: bool
    outcome: AnalysisOutcome
    classification: ClassificationResult | None = None

    @classmethod
    def pet(cls, classification: ClassificationResult) -> AnalysisResponse:
        return cls(
            name=classification.label,
            is_pet=True,
            outcome=AnalysisOutcome.PET,
            classification=classification,
        )

    @classmethod
    def not_pet(
        cls,
        outcome: AnalysisOutcome = AnalysisOutcome.NOT_PET,
        classification: ClassificationResult | None = None,
    ) -> AnalysisResponse:
        if outcome is AnalysisOutcome.PET:
            raise ValueError("A not-pet response cannot carry the PET outcome")
        return cls(name=NOT_A_PET_NAME, is_pet=False, outcome=outcome, classification=classification)

    @property
    def failed(self) -> bool:
        return self.outcome in (AnalysisOutcome.INVALID_IMAGE, AnalysisOutcome.INFERENCE_FAILED)


class PetAnalyzer:
    """Classifies whether an image shows a pet and, if so, which species."""

    def __init__(
        self,
        settings: Settings,
        model_manager: ModelManager,
        inference_pool: InferencePool,
        preprocessor: ImagePreprocessor | None = None,
    ) -> None:
        self._settings = settings
        self._models = model_manager
        self._pool = inference_pool
        self._preprocessor = preprocessor or PilImagePreprocessor()
        self._check_model_setup()

    async def warm_up(self) -> None:
        """Load both models now so a broken artifact fails at startup."""
        for model_name in (self._settings.gate_model, self._settings.species_model):
            await self._pool.run(self._models.get_classifier, model_name)
        logger.info("Models ready: %s", ", ".join(self._models.get_loaded_models()))

    async def classify(self, image: ImageInput | None) -> AnalysisResponse:
        """Analyse an image.

        Raises:
            ModelLoadError: If a model cannot be loaded. Every other failure is
                reported through the returned response.
        """
        if image is None:
            logger.warning("No image provided for analysis")
            return AnalysisResponse.not_pet(AnalysisOutcome.INVALID_IMAGE)

        try:
            pixels = await self._pool.run(self._preprocessor.decode_image, image)
        except Exception as exc:
            logger.warning("Invalid image provided for analysis: %s", exc)
            return AnalysisResponse.not_pet(AnalysisOutcome.INVALID_IMAGE)

        gate = await self._run_stage(self._settings.gate_model, pixels)
        if gate is None:
            return AnalysisResponse.not_pet(AnalysisOutcome.INFERENCE_FAILED)

        if gate.label != self._settings.pet_label:
            logger.info("Not a pet: '%s' (%s)", gate.label, gate.confidence_percentage)
            return AnalysisResponse.not_pet(AnalysisOutcome.NOT_PET, gate)

        species = await self._run_stage(self._settings.species_model, pixels)
        if species is None:
            return AnalysisResponse.not_pet(AnalysisOutcome.INFERENCE_FAILED)

        logger.info("Pet detected: '%s' (%s)", species.label, species.confidence_percentage)
        return AnalysisResponse.pet(species)

    async def _run_stage(self, model_name: str, pixels: NDArray[np.uint8]) -> ClassificationResult | None:
        try:
            results = await self._pool.run(self._infer, model_name, pixels)
        except ModelLoadError:
            raise
        except Exception:
            logger.exception("Inference failed for %s", model_name)
            return None

        best = select_best(results)
        if best is None:
            logger.warning("%s returned no classifications", model_name)
        return best

    def _check_model_setup(self) -> None:
        """Reject a gate/species configuration that could never report a pet."""
        gate = get_model_spec(self._settings.gate_model, ModelTask.PET_GATE)
        get_model_spec(self._settings.species_model, ModelTask.PET_SPECIES)
        if self._settings.pet_label not in gate.labels:
            raise ModelLoadError(
                f"Pet label '{self._settings.pet_label}' is not produced by '{gate.name}' (labels: {', '.join(gate.labels)})"
            )

    def _infer(self, model_name: str, pixels: NDArray[np.uint8]) -> list[ClassificationResult]:
        return self._models.get_classifier(model_name).classify(pixels)
