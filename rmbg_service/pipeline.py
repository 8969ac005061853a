"""
High-level background-removal pipeline.

`BackgroundRemover.remove_background` is the main entry point used by the
HTTP API and the local CLI. It keeps orchestration simple:
validate -> acquire weights -> load session -> decode -> preprocess ->
inference -> post-process -> RGBA PNG out, broadcasting a status event
before each stage.
"""

from __future__ import annotations

import base64
import binascii
from enum import Enum
import logging
from pathlib import Path
from threading import Lock
import time
from typing import Any, Callable, List, Optional

from PIL import Image

from . import config
from .downloader import ModelDownloader
from .errors import DecodeError, PipelineError
from .postprocessing import Postprocessor
from .preprocessing import Preprocessor, decode_image
from .registry import ModelDescriptor, ModelRegistry
from .session import SessionManager, select_providers

logger = logging.getLogger(__name__)

STATUS_EVENT = "status"
DOWNLOAD_PROGRESS_EVENT = "download_progress"

EventCallback = Callable[[str, Any], None]


class PipelineStatus(str, Enum):
    INITIALIZING = "initializing"
    DOWNLOADING_MODEL = "downloading_model"
    LOADING_MODEL = "loading_model"
    DECODING = "decoding"
    PREPROCESSING = "preprocessing"
    PROCESSING = "processing"
    FINALIZING = "finalizing"
    DONE = "done"
    ERROR = "error"


def _decode_base64(payload: str) -> bytes:
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecodeError(f"Failed to decode base64 image: {exc}") from exc


class BackgroundRemover:
    """
    Sequence the pipeline stages for one request at a time.

    Requests are serialized with a lock held from model acquisition through
    encoding, because the session manager's buffers and model-swap logic
    are not safe under overlapping requests.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        downloader: ModelDownloader,
        sessions: SessionManager,
        preprocessor: Optional[Preprocessor] = None,
        postprocessor: Optional[Postprocessor] = None,
        on_event: Optional[EventCallback] = None,
    ):
        self.registry = registry
        self.downloader = downloader
        self.sessions = sessions
        self.preprocessor = preprocessor or Preprocessor()
        self.postprocessor = postprocessor or Postprocessor()
        self._on_event = on_event
        self._lock = Lock()
        self._emit_status(PipelineStatus.INITIALIZING)

    @classmethod
    def from_settings(
        cls,
        settings: Optional[config.Settings] = None,
        on_event: Optional[EventCallback] = None,
    ) -> "BackgroundRemover":
        settings = settings or config.get_settings()
        models_dir = config.resolve_models_dir(settings)
        logger.info("Using model directory %s", models_dir)
        return cls(
            registry=ModelRegistry(models_dir),
            downloader=ModelDownloader.from_settings(settings),
            sessions=SessionManager(providers=select_providers(settings.force_cpu)),
            postprocessor=Postprocessor(
                compress_level=settings.png_compress_level,
                debug_dir=Path(settings.debug_output_dir) if settings.debug else None,
            ),
            on_event=on_event,
        )

    def _emit(self, event: str, payload: Any) -> None:
        if self._on_event is not None:
            self._on_event(event, payload)

    def _emit_status(self, status: PipelineStatus) -> None:
        logger.debug("status: %s", status.value)
        self._emit(STATUS_EVENT, status.value)

    def _emit_progress(self, downloaded: int, total: int) -> None:
        self._emit(DOWNLOAD_PROGRESS_EVENT, {"downloaded": downloaded, "total": total})

    def list_models(self) -> List[ModelDescriptor]:
        return self.registry.list_models()

    def is_model_installed(self, model_id: str) -> bool:
        return self.registry.is_installed(model_id)

    def remove_background(self, image_base64: str, model_id: str) -> str:
        """
        Remove the background from a base64 image; returns a base64 RGBA PNG.

        Raises:
            PipelineError: tagged failure of whichever stage aborted the request.
        """
        png_bytes = self._run(model_id, lambda: _decode_base64(image_base64))
        return base64.b64encode(png_bytes).decode("ascii")

    def process_image_bytes(self, image_bytes: bytes, model_id: str) -> bytes:
        """Same pipeline for raw image bytes; returns RGBA PNG bytes."""
        return self._run(model_id, lambda: image_bytes)

    def _run(self, model_id: str, read_payload: Callable[[], bytes]) -> bytes:
        with self._lock:
            started = time.perf_counter()
            try:
                png_bytes = self._run_stages(model_id, read_payload)
            except PipelineError as exc:
                logger.warning("Request for %s failed [%s]: %s", model_id, exc.code, exc)
                self._emit_status(PipelineStatus.ERROR)
                raise
            except Exception:
                logger.exception("Request for %s failed unexpectedly", model_id)
                self._emit_status(PipelineStatus.ERROR)
                raise
            self._emit_status(PipelineStatus.DONE)
            logger.info("Removed background with %s in %.2fs", model_id, time.perf_counter() - started)
            return png_bytes

    def _run_stages(self, model_id: str, read_payload: Callable[[], bytes]) -> bytes:
        self.registry.validate(model_id)
        model_path = self.registry.model_path(model_id)

        if not self.registry.is_installed(model_id):
            self._emit_status(PipelineStatus.DOWNLOADING_MODEL)
            self.downloader.acquire(model_id, model_path, on_progress=self._emit_progress)

        if not self.sessions.is_loaded(model_path):
            self._emit_status(PipelineStatus.LOADING_MODEL)
        self.sessions.ensure(model_path)

        self._emit_status(PipelineStatus.DECODING)
        image: Image.Image = decode_image(read_payload())
        width, height = image.size

        self._emit_status(PipelineStatus.PREPROCESSING)
        tensor = self.preprocessor.transform(image)

        self._emit_status(PipelineStatus.PROCESSING)
        raw_output = self.sessions.run_inference(tensor)

        self._emit_status(PipelineStatus.FINALIZING)
        return self.postprocessor.transform(raw_output, image, width, height)

    def shutdown(self) -> None:
        """Release the resident session; safe to call repeatedly."""
        with self._lock:
            self.sessions.destroy()
