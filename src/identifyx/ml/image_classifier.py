"""Image classification over an ONNX model."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

from identifyx.ml.preprocessing import preprocess_for_classification

if TYPE_CHECKING:
    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

    from identifyx.ml.model_manager import ModelSpec


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    label: str
    probability: float


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(self, image: NDArray[np.uint8]) -> list[ClassificationResult]:
        """Classify an image and return ranked labels.

        Args:
            image: HxWx3 RGB uint8 array.

        Returns:
            List of classification results sorted by probability (descending).
        """
        ...


def softmax(logits: NDArray[np.float32]) -> NDArray[np.float32]:
    shifted = logits - np.max(logits)
    exp = np.exp(shifted)
    return exp / np.sum(exp)


class OnnxImageClassifier:
    """Runs a single-input ONNX classifier and decodes its top-k labels."""

    def __init__(self, spec: ModelSpec, session: InferenceSession, labels: list[str], top_k: int) -> None:
        self._spec = spec
        self._session = session
        self._labels = labels
        self._top_k = top_k
        self._input_name: str = session.get_inputs()[0].name

    @property
    def model_name(self) -> str:
        return self._spec.name

    def classify(self, image: NDArray[np.uint8]) -> list[ClassificationResult]:
        tensor = preprocess_for_classification(
            image,
            input_size=self._spec.input_size,
            resize_size=self._spec.resize_size,
            mean=self._spec.mean,
            std=self._spec.std,
        )
        outputs = self._session.run(None, {self._input_name: tensor})
        probabilities = softmax(np.asarray(outputs[0], dtype=np.float32).reshape(-1))

        k = min(self._top_k, probabilities.shape[0])
        top = np.argsort(probabilities)[::-1][:k]
        return [
            ClassificationResult(
                label=self._label_for(int(index)),
                probability=min(1.0, max(0.0, float(probabilities[index]))),
            )
            for index in top
        ]

    def _label_for(self, index: int) -> str:
        if index < len(self._labels):
            return self._labels[index]
        return f"class_{index}"
