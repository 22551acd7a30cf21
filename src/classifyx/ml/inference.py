"""Inference decision pipeline and concurrency layer.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> ONNX inference

Requests beyond the semaphore limit queue with a 5s timeout, then get 503.

A prediction is a single forward pass followed by an arg-max over the score
vector; the winning index is mapped through the variant's ordered labels.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from numpy.typing import NDArray

    from classifyx.config import Settings
    from classifyx.ml.model_manager import LoadedModel

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEMAPHORE_TIMEOUT_SECONDS: float = 5.0


class ModelContractError(RuntimeError):
    """The model and its inputs/outputs disagree on shape."""


class ShapeMismatchError(ModelContractError):
    """The preprocessed tensor does not match the model's input shape."""


class OutputSizeError(ModelContractError):
    """The model produced a different number of scores than there are labels."""


def argmax(scores: Sequence[float] | NDArray[np.float32]) -> int:
    """Index of the maximum score; ties resolve to the lowest index."""
    values = np.asarray(scores, dtype=np.float64).ravel()
    if values.size == 0:
        raise ValueError("argmax of an empty score vector")
    # np.argmax returns the first occurrence of the maximum.
    return int(np.argmax(values))


def check_input_shape(model: LoadedModel, tensor: NDArray[np.float32]) -> None:
    """Raise ShapeMismatchError unless ``tensor`` fits the model's declared input."""
    expected = model.input_shape
    actual = tensor.shape
    if len(expected) != len(actual) or any(
        dim is not None and dim != got for dim, got in zip(expected, actual, strict=True)
    ):
        raise ShapeMismatchError(f"Model expects input shape {expected}, got {actual}")


def predict(model: LoadedModel, tensor: NDArray[np.float32], labels: Sequence[str]) -> str:
    """Run one forward pass and return the label of the highest score.

    Raises:
        ShapeMismatchError: If the tensor does not fit the model input.
        OutputSizeError: If the score vector length differs from ``len(labels)``.
    """
    check_input_shape(model, tensor)
    scores = np.asarray(model.infer(tensor), dtype=np.float32).ravel()
    if scores.size != len(labels):
        raise OutputSizeError(f"Model returned {scores.size} scores for {len(labels)} labels")

    index = argmax(scores)
    logger.debug("Predicted index %d (score %.4f)", index, scores[index])
    return labels[index]


class InferencePool:
    """Manages the semaphore and thread pool for ML inference."""

    def __init__(self, settings: Settings) -> None:
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="onnx-inference",
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Submit a synchronous function to the inference thread pool.

        Acquires the semaphore (with timeout), runs the function in the
        executor, then releases.

        Raises:
            TimeoutError: If the semaphore cannot be acquired within the timeout.
        """
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(
                self._semaphore.acquire(),
                timeout=SEMAPHORE_TIMEOUT_SECONDS,
            )
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

        with self._counter_lock:
            self._active_count += 1
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)
        finally:
            self._semaphore.release()
            with self._counter_lock:
                self._active_count -= 1

    @property
    def active_count(self) -> int:
        """Number of currently running inference tasks."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of requests waiting for a semaphore slot."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Shut down the thread pool executor."""
        self._executor.shutdown(wait=True)
