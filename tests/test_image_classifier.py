"""Tests for preprocessing, the ONNX classifier and the async model loader."""

from __future__ import annotations

from collections.abc import Iterator
from types import SimpleNamespace
from unittest.mock import MagicMock

import numpy as np
import pytest
from conftest import encode_image

from identifyx.config import Settings
from identifyx.ml.image_classifier import ClassificationResult, OnnxImageClassifier, softmax
from identifyx.ml.inference import InferencePool
from identifyx.ml.loader import ClassificationError, LoadedModel, ModelLoader, ModelLoadError
from identifyx.ml.model_manager import MODEL_REGISTRY
from identifyx.ml.preprocessing import decode_image, preprocess_for_classification

LABELS = ["background", "tench", "goldfish", "tabby cat", "Egyptian cat"]


def _fake_onnx_session(logits: list[float]) -> MagicMock:
    session = MagicMock()
    session.get_inputs.return_value = [SimpleNamespace(name="pixel_values")]
    session.run.return_value = [np.asarray([logits], dtype=np.float32)]
    return session


# ---------------------------------------------------------------------------
# Preprocessing
# ---------------------------------------------------------------------------


class TestDecodeImage:
    def test_decodes_to_rgb_array(self) -> None:
        pixels = decode_image(encode_image("PNG", size=(40, 30), color=(10, 20, 30)), max_pixels=10_000)
        assert pixels.dtype == np.uint8
        assert pixels.shape == (30, 40, 3)
        assert tuple(pixels[0, 0]) == (10, 20, 30)

    def test_rejects_garbage(self) -> None:
        with pytest.raises(ValueError, match="Cannot decode"):
            decode_image(b"\x00\x01not an image", max_pixels=10_000)

    def test_rejects_empty(self) -> None:
        with pytest.raises(ValueError, match="Empty"):
            decode_image(b"", max_pixels=10_000)

    def test_rejects_too_many_pixels(self) -> None:
        with pytest.raises(ValueError, match="too large"):
            decode_image(encode_image("PNG", size=(100, 100)), max_pixels=5_000)


class TestPreprocessForClassification:
    def test_output_shape_and_range(self) -> None:
        image = np.full((300, 400, 3), 255, dtype=np.uint8)
        tensor = preprocess_for_classification(
            image, input_size=224, resize_size=256, mean=(0.5, 0.5, 0.5), std=(0.5, 0.5, 0.5)
        )
        assert tensor.shape == (1, 3, 224, 224)
        assert tensor.dtype == np.float32
        assert np.allclose(tensor, 1.0)

    def test_small_images_are_upscaled(self) -> None:
        image = np.zeros((10, 20, 3), dtype=np.uint8)
        tensor = preprocess_for_classification(
            image, input_size=224, resize_size=256, mean=(0.5, 0.5, 0.5), std=(0.5, 0.5, 0.5)
        )
        assert tensor.shape == (1, 3, 224, 224)
        assert np.allclose(tensor, -1.0)


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------


class TestOnnxImageClassifier:
    def test_softmax_sums_to_one(self) -> None:
        probs = softmax(np.asarray([1.0, 2.0, 3.0], dtype=np.float32))
        assert np.isclose(probs.sum(), 1.0)
        assert probs.argmax() == 2

    def test_returns_top_k_sorted(self) -> None:
        session = _fake_onnx_session([0.0, 1.0, 2.0, 6.0, 4.0])
        classifier = OnnxImageClassifier(MODEL_REGISTRY["mobilenet_v2"], session, LABELS, top_k=3)

        results = classifier.classify(np.zeros((32, 32, 3), dtype=np.uint8))

        assert [r.label for r in results] == ["tabby cat", "Egyptian cat", "goldfish"]
        probabilities = [r.probability for r in results]
        assert probabilities == sorted(probabilities, reverse=True)
        assert all(0.0 <= p <= 1.0 for p in probabilities)

    def test_feeds_named_input(self) -> None:
        session = _fake_onnx_session([0.0, 1.0])
        classifier = OnnxImageClassifier(MODEL_REGISTRY["mobilenet_v2"], session, LABELS, top_k=3)

        classifier.classify(np.zeros((32, 32, 3), dtype=np.uint8))

        _output_names, feeds = session.run.call_args.args
        assert list(feeds) == ["pixel_values"]
        assert feeds["pixel_values"].shape == (1, 3, 224, 224)

    def test_top_k_capped_by_output_size(self) -> None:
        session = _fake_onnx_session([0.0, 1.0])
        classifier = OnnxImageClassifier(MODEL_REGISTRY["mobilenet_v2"], session, LABELS, top_k=5)
        assert len(classifier.classify(np.zeros((8, 8, 3), dtype=np.uint8))) == 2

    def test_unlabelled_index_gets_placeholder(self) -> None:
        session = _fake_onnx_session([0.0, 0.0, 0.0, 0.0, 0.0, 9.0])
        classifier = OnnxImageClassifier(MODEL_REGISTRY["mobilenet_v2"], session, LABELS, top_k=1)
        assert classifier.classify(np.zeros((8, 8, 3), dtype=np.uint8))[0].label == "class_5"


# ---------------------------------------------------------------------------
# Async loader
# ---------------------------------------------------------------------------


@pytest.fixture()
def pool() -> Iterator[InferencePool]:
    inference_pool = InferencePool(Settings(max_concurrent=1))
    yield inference_pool
    inference_pool.shutdown()


class TestModelLoader:
    async def test_load_then_classify(self, pool: InferencePool) -> None:
        manager = MagicMock()
        manager.get_labels.return_value = LABELS
        manager.get_session.return_value = _fake_onnx_session([0.0, 0.0, 0.0, 5.0, 1.0])
        loader = ModelLoader(manager, pool, "mobilenet_v2", top_k=1)

        model = await loader.load()
        results = await model.classify(np.zeros((16, 16, 3), dtype=np.uint8))

        assert isinstance(model, LoadedModel)
        assert model.model_name == "mobilenet_v2"
        assert len(results) == 1
        assert isinstance(results[0], ClassificationResult)
        assert results[0].label == "tabby cat"
        manager.get_session.assert_called_once_with("mobilenet_v2")

    async def test_each_classification_marks_model_in_use(self, pool: InferencePool) -> None:
        manager = MagicMock()
        manager.get_labels.return_value = LABELS
        onnx_session = _fake_onnx_session([0.0, 0.0, 0.0, 5.0, 1.0])
        manager.get_session.return_value = onnx_session
        model = await ModelLoader(manager, pool, "mobilenet_v2", top_k=1).load()
        manager.touch.assert_not_called()

        for _ in range(3):
            await model.classify(np.zeros((16, 16, 3), dtype=np.uint8))

        assert manager.touch.call_count == 3
        manager.touch.assert_called_with("mobilenet_v2", onnx_session)

    async def test_download_failure_becomes_model_load_error(self, pool: InferencePool) -> None:
        manager = MagicMock()
        manager.get_labels.side_effect = OSError("connection reset")
        loader = ModelLoader(manager, pool, "mobilenet_v2", top_k=3)

        with pytest.raises(ModelLoadError, match="connection reset"):
            await loader.load()

    async def test_unknown_model_becomes_model_load_error(self, pool: InferencePool) -> None:
        loader = ModelLoader(MagicMock(), pool, "no_such_model", top_k=3)

        with pytest.raises(ModelLoadError, match="Unknown model"):
            await loader.load()

    async def test_inference_failure_becomes_classification_error(self, pool: InferencePool) -> None:
        manager = MagicMock()
        manager.get_labels.return_value = LABELS
        broken = _fake_onnx_session([0.0])
        broken.run.side_effect = RuntimeError("bad input shape")
        manager.get_session.return_value = broken
        model = await ModelLoader(manager, pool, "mobilenet_v2", top_k=3).load()

        with pytest.raises(ClassificationError, match="bad input shape"):
            await model.classify(np.zeros((16, 16, 3), dtype=np.uint8))

    async def test_pool_counters_return_to_zero(self, pool: InferencePool) -> None:
        assert await pool.run(sum, [1, 2, 3]) == 6
        assert pool.active_count == 0
        assert pool.queue_depth == 0
