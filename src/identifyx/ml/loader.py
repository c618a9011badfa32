"""Asynchronous model provider used by workflow sessions.

``ModelLoader.load()`` resolves to a ``LoadedModel`` whose ``classify`` is
also awaitable. Both push their blocking work onto the inference pool and
wrap any failure in a domain error the session can report.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from identifyx.ml.image_classifier import OnnxImageClassifier
from identifyx.ml.model_manager import get_spec

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

    from identifyx.ml.image_classifier import ClassificationResult, ImageClassifier
    from identifyx.ml.inference import InferencePool
    from identifyx.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)


class ModelLoadError(RuntimeError):
    """The classifier could not be downloaded or initialized."""


class ClassificationError(RuntimeError):
    """The classifier failed on an image."""


class Model(Protocol):
    """A loaded classifier."""

    @property
    def model_name(self) -> str: ...

    async def classify(self, image: NDArray[np.uint8]) -> list[ClassificationResult]: ...


class ModelProvider(Protocol):
    """Anything that can produce a Model."""

    async def load(self) -> Model: ...


class LoadedModel:
    """Binds a synchronous classifier to the inference pool.

    Every classification marks the shared ONNX session as in use, so the
    model manager keeps it cached while any browser session is classifying.
    """

    def __init__(
        self,
        classifier: ImageClassifier,
        session: InferenceSession,
        manager: ModelManager,
        pool: InferencePool,
    ) -> None:
        self._classifier = classifier
        self._session = session
        self._manager = manager
        self._pool = pool

    @property
    def model_name(self) -> str:
        return self._classifier.model_name

    async def classify(self, image: NDArray[np.uint8]) -> list[ClassificationResult]:
        """Classify an image on the inference pool.

        Raises:
            ClassificationError: If inference fails or no slot frees up in time.
        """
        try:
            self._manager.touch(self.model_name, self._session)
            return await self._pool.run(self._classifier.classify, image)
        except TimeoutError as exc:
            raise ClassificationError("Classifier is busy, try again") from exc
        except Exception as exc:
            logger.exception("Classification with %s failed", self.model_name)
            raise ClassificationError(f"Classification failed: {exc}") from exc


class ModelLoader:
    """Loads the configured classifier through the model manager."""

    def __init__(self, manager: ModelManager, pool: InferencePool, model_name: str, top_k: int) -> None:
        self._manager = manager
        self._pool = pool
        self._model_name = model_name
        self._top_k = top_k

    @property
    def model_name(self) -> str:
        return self._model_name

    async def load(self) -> LoadedModel:
        """Download (if needed) and open the classifier.

        Raises:
            ModelLoadError: If the model is unknown, cannot be fetched, or fails to load.
        """
        try:
            spec = get_spec(self._model_name)
            labels = await self._pool.run(self._manager.get_labels, self._model_name)
            session = await self._pool.run(self._manager.get_session, self._model_name)
            classifier = OnnxImageClassifier(spec, session, labels, self._top_k)
        except TimeoutError as exc:
            raise ModelLoadError("Model loader is busy, try again") from exc
        except Exception as exc:
            logger.exception("Loading model %s failed", self._model_name)
            raise ModelLoadError(f"Could not load model {self._model_name}: {exc}") from exc

        logger.info("Model %s ready (%d labels, top_k=%d)", self._model_name, len(labels), self._top_k)
        return LoadedModel(classifier, session, self._manager, self._pool)
