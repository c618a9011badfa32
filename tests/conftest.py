"""Shared fixtures: tiny encoded images and fake model collaborators."""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import pytest
from PIL import Image

from identifyx.ml.image_classifier import ClassificationResult

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray


def encode_image(fmt: str, size: tuple[int, int] = (32, 24), color: tuple[int, int, int] = (200, 120, 40)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format=fmt)
    return buf.getvalue()


class FakeModel:
    """Stands in for a loaded classifier."""

    model_name = "fake"

    def __init__(self, results: list[ClassificationResult] | None = None, error: Exception | None = None) -> None:
        self.results = results if results is not None else []
        self.error = error
        self.seen: list[NDArray[np.uint8]] = []

    async def classify(self, image: NDArray[np.uint8]) -> list[ClassificationResult]:
        self.seen.append(image)
        if self.error is not None:
            raise self.error
        return self.results


class FakeProvider:
    """Stands in for the model loader."""

    def __init__(self, model: FakeModel | None = None, error: Exception | None = None) -> None:
        self.model = model if model is not None else FakeModel()
        self.error = error
        self.loads = 0

    async def load(self) -> FakeModel:
        self.loads += 1
        if self.error is not None:
            raise self.error
        return self.model


@pytest.fixture()
def jpeg_bytes() -> bytes:
    return encode_image("JPEG")


@pytest.fixture()
def png_bytes() -> bytes:
    return encode_image("PNG")


@pytest.fixture()
def tabby_model() -> FakeModel:
    return FakeModel(results=[ClassificationResult(label="tabby cat", probability=0.87)])
