"""Analyzer lifecycle: wire up, optionally warm up, and tear down a PetAnalyzer."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from petclassifier.config import Settings, get_settings
from petclassifier.ml.inference import InferencePool
from petclassifier.ml.model_manager import OnnxModelManager
from petclassifier.ml.pet_analyzer import PetAnalyzer

logger = logging.getLogger(__name__)


@asynccontextmanager
async def open_analyzer(settings: Settings | None = None, *, preload: bool | None = None) -> AsyncIterator[PetAnalyzer]:
    """Create a ready-to-use analyzer and release its resources on exit.

    With ``preload`` (default: ``settings.preload_models``) both models are
    loaded before the analyzer is handed out, so a missing or corrupt artifact
    raises ModelLoadError here instead of on the first ``classify`` call.
    """
    settings = settings or get_settings()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting PetClassifier (device=%s, max_concurrent=%s, gate=%s, species=%s)",
        settings.device,
        settings.max_concurrent,
        settings.gate_model,
        settings.species_model,
    )

    inference_pool = InferencePool(settings)
    model_manager = OnnxModelManager(settings)
    try:
        analyzer = PetAnalyzer(settings, model_manager, inference_pool)
        if settings.preload_models if preload is None else preload:
            await analyzer.warm_up()
        logger.info("PetClassifier ready")
        yield analyzer
    finally:
        logger.info("Shutting down PetClassifier")
        inference_pool.shutdown()
        model_manager.shutdown()
        logger.info("PetClassifier shutdown complete")
