"""
Inference session lifecycle for RMBG ONNX models.

The manager:
 - keeps at most one loaded ONNX Runtime session per process,
 - reuses it while requests keep naming the same model file,
 - tears it down before loading a different file,
 - owns the fixed-shape input/output buffers handed to the operator.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, List, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np
import onnxruntime as ort

from .errors import SessionError

logger = logging.getLogger(__name__)

TENSOR_SIZE = 1024
INPUT_SHAPE: Tuple[int, ...] = (1, 3, TENSOR_SIZE, TENSOR_SIZE)
OUTPUT_SHAPE: Tuple[int, ...] = (1, 1, TENSOR_SIZE, TENSOR_SIZE)
INPUT_LENGTH = int(np.prod(INPUT_SHAPE))


class TensorBinding(NamedTuple):
    input_name: str
    output_name: str


# Naming conventions seen in exported RMBG checkpoints, tried in order.
KNOWN_BINDINGS: Tuple[TensorBinding, ...] = (
    TensorBinding("input", "sigmoid_0"),
    TensorBinding("x", "sigmoid"),
    TensorBinding("input.1", "output.1"),
)

# CUDA -> CoreML -> CPU, best first.
_PROVIDER_PREFERENCE = (
    "CUDAExecutionProvider",
    "CoreMLExecutionProvider",
    "CPUExecutionProvider",
)

_ORT_DTYPES = {
    "tensor(float)": np.float32,
    "tensor(float16)": np.float16,
}

SessionFactory = Callable[[str, List[str]], ort.InferenceSession]


def select_providers(force_cpu: bool = False) -> List[str]:
    """Return the execution providers to request, best first."""
    if force_cpu:
        return ["CPUExecutionProvider"]
    available = set(ort.get_available_providers())
    chosen = [p for p in _PROVIDER_PREFERENCE if p in available]
    return chosen or ["CPUExecutionProvider"]


def _create_ort_session(model_path: str, providers: List[str]) -> ort.InferenceSession:
    options = ort.SessionOptions()
    options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
    return ort.InferenceSession(model_path, sess_options=options, providers=providers)


def _shape_compatible(declared: Sequence[Union[int, str, None]], expected: Tuple[int, ...]) -> bool:
    """Symbolic or missing dimensions are accepted; concrete ones must match."""
    if len(declared) != len(expected):
        return False
    return all(not isinstance(d, int) or d == e for d, e in zip(declared, expected))


class InferenceSession:
    """One loaded model file plus the buffers bound to its named tensors."""

    def __init__(self, model_path: Path, ort_session: ort.InferenceSession, binding: TensorBinding):
        self.model_path = model_path
        self.binding = binding
        self.input_buffer = np.zeros(INPUT_SHAPE, dtype=np.float32)
        self.output_buffer = np.zeros(OUTPUT_SHAPE, dtype=np.float32)
        self._session: Optional[ort.InferenceSession] = ort_session

        inputs = {node.name: node for node in ort_session.get_inputs()}
        self._input_dtype = _ORT_DTYPES.get(inputs[binding.input_name].type, np.float32)

    @property
    def closed(self) -> bool:
        return self._session is None

    def run(self) -> None:
        """Feed the input buffer to the operator and fill the output buffer."""
        if self._session is None:
            raise SessionError(SessionError.NOT_LOADED, "Session has been destroyed")

        feed = self.input_buffer
        if self._input_dtype is not np.float32:
            feed = feed.astype(self._input_dtype)
        try:
            outputs = self._session.run([self.binding.output_name], {self.binding.input_name: feed})
        except Exception as exc:  # noqa: BLE001
            raise SessionError(SessionError.INFERENCE_FAILED, f"Inference failed: {exc}") from exc

        result = np.asarray(outputs[0])
        if result.size != self.output_buffer.size:
            raise SessionError(
                SessionError.SHAPE_MISMATCH,
                f"Model produced {result.shape}, expected {OUTPUT_SHAPE}",
            )
        np.copyto(self.output_buffer, result.reshape(OUTPUT_SHAPE), casting="unsafe")

    def close(self) -> None:
        self._session = None
        self.input_buffer = None
        self.output_buffer = None


class SessionManager:
    """
    Own the single resident inference session.

    Not safe for concurrent use: callers serialize whole requests (see
    `pipeline.BackgroundRemover`), since a model swap mutates the shared
    session while another request might be reading it.
    """

    def __init__(
        self,
        providers: Optional[List[str]] = None,
        bindings: Sequence[TensorBinding] = KNOWN_BINDINGS,
        session_factory: SessionFactory = _create_ort_session,
    ):
        self.providers = providers or select_providers()
        self.bindings = tuple(bindings)
        self._session_factory = session_factory
        self._current: Optional[InferenceSession] = None

    @property
    def model_path(self) -> Optional[Path]:
        return self._current.model_path if self._current is not None else None

    def is_loaded(self, model_path: Path) -> bool:
        return self._current is not None and self._current.model_path == Path(model_path)

    def ensure(self, model_path: Path) -> InferenceSession:
        """
        Return a session bound to `model_path`, loading it if needed.

        A session for a different file is destroyed before the new one is
        built, so only one model's worth of native memory is ever resident.
        """
        model_path = Path(model_path)
        if self._current is not None:
            if self._current.model_path == model_path:
                return self._current
            logger.info("Switching model: unloading %s", self._current.model_path)
            self.destroy()

        self._current = self._load(model_path)
        return self._current

    def _load(self, model_path: Path) -> InferenceSession:
        if not model_path.is_file():
            raise SessionError(SessionError.LOAD_FAILED, f"Model file not found at {model_path}")

        started = time.perf_counter()
        logger.info("Loading ONNX model from %s with providers %s", model_path, self.providers)
        try:
            ort_session = self._session_factory(str(model_path), self.providers)
        except Exception as exc:  # noqa: BLE001
            raise SessionError(
                SessionError.LOAD_FAILED, f"Failed to load ONNX model {model_path.name}: {exc}"
            ) from exc

        binding = self._resolve_binding(ort_session, model_path)
        session = InferenceSession(model_path, ort_session, binding)
        logger.info(
            "Loaded %s (input=%s output=%s) in %.2fs",
            model_path.name,
            binding.input_name,
            binding.output_name,
            time.perf_counter() - started,
        )
        return session

    def _resolve_binding(self, ort_session: ort.InferenceSession, model_path: Path) -> TensorBinding:
        inputs = {node.name: node for node in ort_session.get_inputs()}
        outputs = {node.name: node for node in ort_session.get_outputs()}

        for binding in self.bindings:
            if binding.input_name not in inputs or binding.output_name not in outputs:
                continue
            if not _shape_compatible(inputs[binding.input_name].shape, INPUT_SHAPE):
                raise SessionError(
                    SessionError.LOAD_FAILED,
                    f"{model_path.name} input {binding.input_name!r} has shape "
                    f"{inputs[binding.input_name].shape}, expected {INPUT_SHAPE}",
                )
            if not _shape_compatible(outputs[binding.output_name].shape, OUTPUT_SHAPE):
                raise SessionError(
                    SessionError.LOAD_FAILED,
                    f"{model_path.name} output {binding.output_name!r} has shape "
                    f"{outputs[binding.output_name].shape}, expected {OUTPUT_SHAPE}",
                )
            return binding

        raise SessionError(
            SessionError.UNBOUND_NAMES,
            f"No known tensor names match {model_path.name}: "
            f"inputs={sorted(inputs)} outputs={sorted(outputs)}",
        )

    def run_inference(self, input_tensor: np.ndarray) -> np.ndarray:
        """
        Copy `input_tensor` into the input buffer and run the operator.

        Returns a (1024, 1024) view of the session's output buffer; it is
        overwritten by the next call.
        """
        if self._current is None:
            raise SessionError(SessionError.NOT_LOADED, "No model is loaded")

        data = np.asarray(input_tensor)
        if data.size != INPUT_LENGTH:
            raise SessionError(
                SessionError.SHAPE_MISMATCH,
                f"Input tensor has {data.size} values, expected {INPUT_LENGTH}",
            )

        np.copyto(self._current.input_buffer, data.reshape(INPUT_SHAPE), casting="unsafe")
        started = time.perf_counter()
        self._current.run()
        logger.debug("Inference took %.3fs", time.perf_counter() - started)
        return self._current.output_buffer[0, 0]

    def destroy(self) -> None:
        """Release the loaded session; calling it with nothing loaded is a no-op."""
        if self._current is None:
            return
        logger.info("Destroying session for %s", self._current.model_path)
        self._current.close()
        self._current = None
