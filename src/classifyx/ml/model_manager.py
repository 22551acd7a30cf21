"""Model provider: resolve, download and load the classifier's ONNX model.

The model file is looked up under ``models_dir`` first (the deployed asset
root) and fetched from the HuggingFace Hub otherwise. Loading happens once per
process; there is no caching, eviction or reload.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import numpy as np
from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from classifyx.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocols (kept for test mocking)
# ---------------------------------------------------------------------------


class LoadedModel(Protocol):
    """A trained model ready for a forward pass."""

    @property
    def input_shape(self) -> tuple[int | None, ...]:
        """Declared input shape; ``None`` marks a dynamic dimension."""
        ...

    def infer(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        """Run one forward pass and return the raw output tensor."""
        ...


class ModelProvider(Protocol):
    """Protocol for model loading."""

    def load(self, model_filename: str) -> LoadedModel:
        """Resolve and load a model, raising on any failure."""
        ...


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModel:
    """An ONNX Runtime session exposing a single ``infer`` operation."""

    def __init__(self, session: InferenceSession) -> None:
        self._session = session
        model_input = session.get_inputs()[0]
        self._input_name: str = model_input.name
        # Symbolic dims come back as strings (e.g. "batch"); treat them as dynamic.
        self._input_shape = tuple(dim if isinstance(dim, int) else None for dim in model_input.shape)

    @property
    def input_shape(self) -> tuple[int | None, ...]:
        return self._input_shape

    def infer(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        outputs = self._session.run(None, {self._input_name: tensor})
        return np.asarray(outputs[0], dtype=np.float32)


class OnnxModelProvider:
    """Downloads and loads ONNX classifier models."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def ensure_downloaded(self, model_filename: str) -> Path:
        """Return the local model path, downloading from HuggingFace if missing."""
        local = self._models_dir / model_filename
        if local.exists():
            logger.info("Using local model file %s", local)
            return local

        downloaded = Path(
            hf_hub_download(
                repo_id=self._settings.model_repo_id,
                filename=model_filename,
                local_dir=str(self._models_dir),
            )
        )
        logger.info("Downloaded %s to %s", model_filename, downloaded)
        return downloaded

    def load(self, model_filename: str) -> OnnxModel:
        """Create an InferenceSession for the given model file."""
        model_path = self.ensure_downloaded(model_filename)
        session = InferenceSession(
            str(model_path),
            sess_options=self._session_options,
            providers=self._providers,
        )
        model = OnnxModel(session)
        logger.info("Loaded session for %s (input shape %s)", model_filename, model.input_shape)
        return model

    # -- Internal -----------------------------------------------------------

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
