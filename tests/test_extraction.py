"""Tests for embedding backends and the extractor."""

from __future__ import annotations

import io
import math
from dataclasses import replace
from unittest.mock import MagicMock

import numpy as np
import pytest
from PIL import Image

from facepay.config import Settings
from facepay.domain import EMBEDDING_DIM, Provenance
from facepay.errors import (
    ImageDecodeFailed,
    ModelUnavailable,
    MultipleFacesDetected,
    NoFaceDetected,
    NoUsableSamples,
)
from facepay.ml.backends import (
    GeometricBackend,
    HashFallbackBackend,
    NeuralBackend,
    create_backend,
    fold_to_dim,
    geometric_features,
)
from facepay.ml.extractor import EmbeddingExtractor
from facepay.ml.face_detector import RawDetection
from facepay.ml.face_recognizer import OnnxFaceRecognizer, descriptor_length
from facepay.ml.model_manager import MODEL_REGISTRY
from facepay.ml.preprocessing import PillowPreprocessor

LANDMARKS = np.array([[40, 50], [80, 50], [60, 70], [45, 90], [75, 90]], dtype=np.float32)


def _face(score: float = 0.97, x: float = 20.0) -> RawDetection:
    return RawDetection(
        bbox=np.array([x, 30, x + 80, 130], dtype=np.float32),
        score=score,
        landmarks=LANDMARKS,
    )


def _png(color: tuple[int, int, int]) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (160, 160), color).save(buffer, format="PNG")
    return buffer.getvalue()


class FakeDetector:
    model_name = "fake_detector"

    def __init__(self, *detections: RawDetection) -> None:
        self.detections = list(detections)
        self.calls = 0

    def detect(self, image: np.ndarray) -> list[RawDetection]:
        self.calls += 1
        return list(self.detections)


class FakeRecognizer:
    model_name = "fake_recognizer"
    embedding_dim = 512

    def get_embeddings(self, face_crops: np.ndarray) -> np.ndarray:
        # Descriptor depends on the crop so different faces differ.
        base = np.linspace(0.1, 1.0, 512, dtype=np.float32) + float(face_crops.mean())
        return base[np.newaxis]


def _settings(**overrides: object) -> Settings:
    return Settings(**overrides)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class TestFoldToDim:
    def test_folds_and_normalises(self) -> None:
        folded = fold_to_dim(np.ones(512, dtype=np.float32))
        assert folded.shape == (EMBEDDING_DIM,)
        assert np.linalg.norm(folded) == pytest.approx(1.0)
        assert folded[0] == pytest.approx(1 / math.sqrt(EMBEDDING_DIM))

    def test_block_means(self) -> None:
        vector = np.repeat(np.arange(1, EMBEDDING_DIM + 1, dtype=np.float32), 4)
        folded = fold_to_dim(vector)
        assert folded[1] / folded[0] == pytest.approx(2.0)

    def test_incompatible_size(self) -> None:
        with pytest.raises(ValueError, match="Cannot fold"):
            fold_to_dim(np.ones(100, dtype=np.float32))


class TestNeuralBackend:
    def test_embedding_is_deterministic(self) -> None:
        backend = NeuralBackend(FakeDetector(_face()), FakeRecognizer(), PillowPreprocessor(10**7), 0.8)
        image = np.random.default_rng(1).integers(0, 256, (160, 160, 3), dtype=np.uint8)

        first = backend.embed(image)
        second = backend.embed(image)

        assert first == second
        assert len(first) == EMBEDDING_DIM
        assert backend.provenance is Provenance.NEURAL

    def test_multiple_faces_rejected(self) -> None:
        backend = NeuralBackend(FakeDetector(_face(), _face(x=60)), FakeRecognizer(), PillowPreprocessor(10**7), 0.8)
        with pytest.raises(MultipleFacesDetected):
            backend.embed(np.zeros((160, 160, 3), dtype=np.uint8))

    def test_description_names_models(self) -> None:
        backend = NeuralBackend(FakeDetector(), FakeRecognizer(), PillowPreprocessor(10**7), 0.8)
        assert "fake_detector" in backend.description
        assert "fake_recognizer" in backend.description


class TestGeometricBackend:
    def test_features_padded_deterministically(self) -> None:
        features = geometric_features(_face(), (160, 160, 3))

        assert len(features) == EMBEDDING_DIM
        assert features[19] == pytest.approx(math.sin(1.9) * features[9] * 0.1)
        assert features == geometric_features(_face(), (160, 160, 3))

    def test_position_changes_features(self) -> None:
        assert geometric_features(_face(x=20), (160, 160, 3)) != geometric_features(_face(x=40), (160, 160, 3))

    def test_no_face(self) -> None:
        backend = GeometricBackend(FakeDetector(), 0.8)
        with pytest.raises(NoFaceDetected):
            backend.embed(np.zeros((160, 160, 3), dtype=np.uint8))

    def test_provenance(self) -> None:
        backend = GeometricBackend(FakeDetector(_face()), 0.8)
        assert backend.provenance is Provenance.ENGINEERED
        assert len(backend.embed(np.zeros((160, 160, 3), dtype=np.uint8))) == EMBEDDING_DIM


class TestOnnxFaceRecognizer:
    def test_descriptors_normalised(self) -> None:
        session = MagicMock()
        session.run.return_value = [np.full((1, 512), 3.0, dtype=np.float32)]
        recognizer = OnnxFaceRecognizer("auraface_v1", lambda: session, 512)

        descriptors = recognizer.get_embeddings(np.zeros((1, 3, 112, 112), dtype=np.float32))

        assert descriptors.shape == (1, 512)
        assert np.linalg.norm(descriptors[0]) == pytest.approx(1.0)

    @pytest.mark.parametrize(("shape", "expected"), [([1, 512], 512), (["batch", "dim"], 256)])
    def test_descriptor_length(self, shape: list[object], expected: int) -> None:
        session = MagicMock()
        session.get_outputs.return_value = [MagicMock(shape=shape)]
        assert descriptor_length(session, 256) == expected


class TestHashFallbackBackend:
    def test_identical_pixels_identical_embedding(self) -> None:
        image = np.full((50, 50, 3), 7, dtype=np.uint8)
        backend = HashFallbackBackend()
        assert backend.embed(image) == backend.embed(image.copy())

    def test_single_pixel_change_differs(self) -> None:
        image = np.full((50, 50, 3), 7, dtype=np.uint8)
        changed = image.copy()
        changed[0, 0, 0] = 8
        backend = HashFallbackBackend()
        assert backend.embed(image) != backend.embed(changed)

    def test_values_in_unit_range(self) -> None:
        embedding = HashFallbackBackend().embed(np.zeros((40, 40, 3), dtype=np.uint8))
        assert len(embedding) == EMBEDDING_DIM
        assert all(0.0 <= v <= 1.0 for v in embedding)
        # 32 digest bytes repeat across the vector.
        assert embedding[:32] == embedding[32:64]


class TestCreateBackend:
    def test_neural_by_default(self) -> None:
        manager = MagicMock()
        manager.spec.return_value = MODEL_REGISTRY["auraface_v1"]
        backend = create_backend(_settings(), manager, PillowPreprocessor(10**7))
        assert isinstance(backend, NeuralBackend)
        assert manager.session_for.call_count == 2

    def test_recognizer_width_must_fold(self) -> None:
        manager = MagicMock()
        manager.spec.return_value = replace(MODEL_REGISTRY["auraface_v1"], output_dim=100)
        with pytest.raises(ModelUnavailable, match="not a multiple of 128"):
            create_backend(_settings(embedding_backend="neural"), manager, PillowPreprocessor(10**7))

    def test_graph_width_overrides_declared(self) -> None:
        manager = MagicMock()
        manager.spec.return_value = replace(MODEL_REGISTRY["auraface_v1"], output_dim=100)
        manager.session_for.return_value.get_outputs.return_value = [MagicMock(shape=["batch", 256])]

        backend = create_backend(_settings(embedding_backend="neural"), manager, PillowPreprocessor(10**7))

        assert isinstance(backend, NeuralBackend)

    def test_geometric(self) -> None:
        backend = create_backend(_settings(embedding_backend="geometric"), MagicMock(), PillowPreprocessor(10**7))
        assert isinstance(backend, GeometricBackend)

    def test_hash_needs_no_models(self) -> None:
        manager = MagicMock()
        backend = create_backend(_settings(embedding_backend="hash", allow_hash_fallback=True), manager, PillowPreprocessor(10**7))
        assert isinstance(backend, HashFallbackBackend)
        manager.session_for.assert_not_called()

    def test_hash_must_be_allowed(self) -> None:
        with pytest.raises(ModelUnavailable, match="ALLOW_HASH_FALLBACK"):
            create_backend(_settings(embedding_backend="hash"), MagicMock(), PillowPreprocessor(10**7))

    def test_missing_models_raise_without_fallback(self) -> None:
        manager = MagicMock()
        manager.session_for.side_effect = RuntimeError("download failed")
        with pytest.raises(ModelUnavailable, match="download failed"):
            create_backend(_settings(), manager, PillowPreprocessor(10**7))

    def test_missing_models_fall_back_when_allowed(self, caplog: pytest.LogCaptureFixture) -> None:
        manager = MagicMock()
        manager.session_for.side_effect = RuntimeError("download failed")

        backend = create_backend(_settings(allow_hash_fallback=True), manager, PillowPreprocessor(10**7))

        assert isinstance(backend, HashFallbackBackend)
        assert "falling back" in caplog.text

    def test_explicit_neural_never_falls_back(self) -> None:
        manager = MagicMock()
        manager.session_for.side_effect = RuntimeError("download failed")
        with pytest.raises(ModelUnavailable):
            create_backend(
                _settings(embedding_backend="neural", allow_hash_fallback=True), manager, PillowPreprocessor(10**7)
            )


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------


class TestEmbeddingExtractor:
    def test_extract_decodes_and_embeds(self) -> None:
        extractor = EmbeddingExtractor(HashFallbackBackend(), PillowPreprocessor(10**7))

        embedding = extractor.extract(_png((10, 20, 30)))

        assert embedding == extractor.extract(_png((10, 20, 30)))
        assert embedding != extractor.extract(_png((10, 20, 31)))
        assert extractor.provenance is Provenance.HASH_FALLBACK

    def test_extract_bad_bytes(self) -> None:
        extractor = EmbeddingExtractor(HashFallbackBackend(), PillowPreprocessor(10**7))
        with pytest.raises(ImageDecodeFailed):
            extractor.extract(b"nope")

    def test_average_skips_failed_samples(self) -> None:
        backend = MagicMock()
        backend.embed.side_effect = [
            tuple(1.0 for _ in range(EMBEDDING_DIM)),
            MultipleFacesDetected("two faces"),
            tuple(3.0 for _ in range(EMBEDDING_DIM)),
        ]
        extractor = EmbeddingExtractor(backend, PillowPreprocessor(10**7))

        embedding = extractor.extract_average([_png((1, 1, 1))] * 3)

        assert embedding == tuple(2.0 for _ in range(EMBEDDING_DIM))

    def test_average_with_no_usable_sample(self) -> None:
        extractor = EmbeddingExtractor(GeometricBackend(FakeDetector(_face(), _face(x=60)), 0.8), PillowPreprocessor(10**7))

        with pytest.raises(NoUsableSamples) as excinfo:
            extractor.extract_average([_png((1, 1, 1)), _png((2, 2, 2))])

        assert len(excinfo.value.errors) == 2
        assert isinstance(excinfo.value.errors[0], MultipleFacesDetected)

    def test_average_of_nothing(self) -> None:
        extractor = EmbeddingExtractor(HashFallbackBackend(), PillowPreprocessor(10**7))
        with pytest.raises(NoUsableSamples):
            extractor.extract_average([])
