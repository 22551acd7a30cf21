"""Tests for the inference decision pipeline and the inference pool."""

from __future__ import annotations

import numpy as np
import pytest

from classifyx.config import Settings
from classifyx.ml.inference import (
    InferencePool,
    ModelContractError,
    OutputSizeError,
    ShapeMismatchError,
    argmax,
    predict,
)
from classifyx.ml.variants import VARIANTS

FASHION = VARIANTS["fashion"]
BRAIN = VARIANTS["brain_tumor"]


class _FixedModel:
    """Returns the same scores for every input."""

    def __init__(self, scores: list[float], input_shape: tuple[int | None, ...]) -> None:
        self._scores = np.asarray([scores], dtype=np.float32)
        self.input_shape = input_shape
        self.calls = 0

    def infer(self, tensor: np.ndarray) -> np.ndarray:
        self.calls += 1
        return self._scores


def _zeros(shape: tuple[int, ...]) -> np.ndarray:
    return np.zeros(shape, dtype=np.float32)


class TestArgmax:
    def test_single_maximum(self) -> None:
        assert argmax([0.1, 0.2, 0.9, 0.3]) == 2

    def test_tie_resolves_to_lowest_index(self) -> None:
        assert argmax([0.5, 0.5, 0.1]) == 0
        assert argmax([0.1, 0.4, 0.4, 0.4]) == 1

    def test_accepts_batched_array(self) -> None:
        assert argmax(np.array([[0.0, 1.0, 0.0]], dtype=np.float32)) == 1

    def test_empty_raises(self) -> None:
        with pytest.raises(ValueError):
            argmax([])


class TestPredict:
    def test_fashion_sneaker(self) -> None:
        model = _FixedModel([0, 0, 0, 0, 0, 0, 0, 1, 0, 0], (None, 28, 28, 1))
        assert predict(model, _zeros((1, 28, 28, 1)), FASHION.labels) == "Sneaker"

    def test_brain_tumor_glioma(self) -> None:
        model = _FixedModel([0.7, 0.1, 0.1, 0.1], (1, 150, 150, 3))
        assert predict(model, _zeros((1, 150, 150, 3)), BRAIN.labels) == "Glioma"

    def test_tie_picks_first_label(self) -> None:
        model = _FixedModel([0.1, 0.45, 0.45, 0.0], (None, 150, 150, 3))
        assert predict(model, _zeros((1, 150, 150, 3)), BRAIN.labels) == "Healthy"

    def test_near_uniform_output_still_returns_label(self) -> None:
        model = _FixedModel([0.25, 0.25, 0.2501, 0.2499], (None, 150, 150, 3))
        assert predict(model, _zeros((1, 150, 150, 3)), BRAIN.labels) == "Meningioma"

    def test_deterministic(self) -> None:
        model = _FixedModel([0.1, 0.2, 0.3, 0.4], (None, 150, 150, 3))
        tensor = _zeros((1, 150, 150, 3))
        labels = {predict(model, tensor, BRAIN.labels) for _ in range(5)}
        assert labels == {"Pituitary"}
        assert model.calls == 5

    def test_shape_mismatch_raises_before_inference(self) -> None:
        model = _FixedModel([0.7, 0.1, 0.1, 0.1], (None, 150, 150, 3))
        with pytest.raises(ShapeMismatchError, match="input shape"):
            predict(model, _zeros((1, 28, 28, 1)), BRAIN.labels)
        assert model.calls == 0

    def test_rank_mismatch_raises(self) -> None:
        model = _FixedModel([0.7, 0.1, 0.1, 0.1], (None, 150, 150, 3))
        with pytest.raises(ShapeMismatchError):
            predict(model, _zeros((150, 150, 3)), BRAIN.labels)

    def test_output_size_mismatch_raises(self) -> None:
        model = _FixedModel([0.5, 0.5], (None, 150, 150, 3))
        with pytest.raises(OutputSizeError, match="2 scores for 4 labels"):
            predict(model, _zeros((1, 150, 150, 3)), BRAIN.labels)

    def test_contract_errors_share_base(self) -> None:
        assert issubclass(ShapeMismatchError, ModelContractError)
        assert issubclass(OutputSizeError, ModelContractError)


class TestInferencePool:
    async def test_run_returns_result(self) -> None:
        pool = InferencePool(Settings(max_concurrent=1))
        try:
            result = await pool.run(sum, [1, 2, 3])
            assert result == 6
            assert pool.active_count == 0
            assert pool.queue_depth == 0
        finally:
            pool.shutdown()

    async def test_run_propagates_exceptions(self) -> None:
        pool = InferencePool(Settings(max_concurrent=1))

        def boom() -> None:
            raise OutputSizeError("bad output")

        try:
            with pytest.raises(OutputSizeError):
                await pool.run(boom)
            assert pool.active_count == 0
        finally:
            pool.shutdown()
