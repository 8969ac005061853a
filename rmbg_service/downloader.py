"""
Model weight acquisition.

Weights are streamed into a temporary file next to the destination and
renamed into place only once the whole body has arrived, so an interrupted
transfer can never leave a file that looks like an installed model.
"""

from __future__ import annotations

import logging
import os
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional

import requests

from . import config
from .errors import AcquisitionError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


@dataclass
class DownloadState:
    """Byte counters for one transfer plus the throttle for progress events."""

    total_bytes: int
    on_progress: Optional[ProgressCallback] = None
    interval: float = 0.2
    clock: Callable[[], float] = time.monotonic
    downloaded_bytes: int = 0
    last_emit: float = 0.0

    def start(self) -> None:
        self.last_emit = self.clock()
        self._emit(0, self.total_bytes)

    def advance(self, count: int) -> None:
        self.downloaded_bytes += count
        now = self.clock()
        if now - self.last_emit >= self.interval:
            self.last_emit = now
            self._emit(self.downloaded_bytes, self.total_bytes)

    def finish(self) -> None:
        """Always report completion, regardless of when the last event went out."""
        total = self.total_bytes if self.total_bytes > 0 else self.downloaded_bytes
        self.last_emit = self.clock()
        self._emit(self.downloaded_bytes, total)

    def _emit(self, downloaded: int, total: int) -> None:
        if self.on_progress is not None:
            self.on_progress(downloaded, total)


class ModelDownloader:
    """Fetch ONNX weight files over HTTP and install them atomically."""

    def __init__(
        self,
        url_template: str = config.DEFAULT_MODEL_URL_TEMPLATE,
        token: Optional[str] = None,
        connect_timeout: float = 10,
        read_timeout: float = 60,
        chunk_bytes: int = 1024 * 1024,
        progress_interval: float = 0.2,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.url_template = url_template
        self.token = token
        self.timeout = (connect_timeout, read_timeout)
        self.chunk_bytes = chunk_bytes
        self.progress_interval = progress_interval
        self._session = session or requests.Session()
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Optional[config.Settings] = None) -> "ModelDownloader":
        settings = settings or config.get_settings()
        return cls(
            url_template=settings.model_url_template,
            token=settings.hf_token,
            connect_timeout=settings.download_connect_timeout_seconds,
            read_timeout=settings.download_read_timeout_seconds,
            chunk_bytes=settings.download_chunk_bytes,
            progress_interval=settings.progress_interval_ms / 1000.0,
        )

    def build_url(self, model_id: str) -> str:
        return self.url_template.format(model_id=model_id)

    def _headers(self) -> Dict[str, str]:
        # Only gated variants need the token; public mirrors work without it.
        if self.token:
            return {"Authorization": f"Bearer {self.token}"}
        return {}

    def acquire(
        self,
        model_id: str,
        destination: Path,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Path:
        """
        Download `model_id` and install it at `destination`.

        Raises:
            AcquisitionError: on a non-success response, a connection failure,
                an interrupted transfer, or a failed final rename.
        """
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        url = self.build_url(model_id)
        logger.info("Downloading model %s from %s", model_id, url)

        try:
            response = self._session.get(
                url, headers=self._headers(), stream=True, timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise AcquisitionError(
                AcquisitionError.NETWORK, f"Could not reach model host for {model_id}: {exc}"
            ) from exc

        with response:
            if response.status_code != 200:
                raise AcquisitionError(
                    AcquisitionError.HTTP_STATUS,
                    f"Failed to download {model_id} (HTTP {response.status_code}). "
                    "Make sure HF_TOKEN is set for gated models",
                    http_status=response.status_code,
                )
            total = int(response.headers.get("Content-Length") or 0)
            state = DownloadState(
                total_bytes=total,
                on_progress=on_progress,
                interval=self.progress_interval,
                clock=self._clock,
            )
            # A content-encoded body is decoded while streaming, so its length
            # no longer matches Content-Length.
            encoded = response.headers.get("Content-Encoding", "identity") != "identity"
            tmp_path = self._stream_to_temp(
                response, destination, state, expected_bytes=0 if encoded else total
            )

        state.finish()
        try:
            os.replace(tmp_path, destination)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise AcquisitionError(
                AcquisitionError.INSTALL, f"Failed to move {model_id} into place: {exc}"
            ) from exc

        logger.info("Installed model %s at %s (%d bytes)", model_id, destination, state.downloaded_bytes)
        return destination

    def _stream_to_temp(
        self,
        response: requests.Response,
        destination: Path,
        state: DownloadState,
        expected_bytes: int = 0,
    ) -> Path:
        fd, name = tempfile.mkstemp(
            prefix=f".{destination.name}.", suffix=".part", dir=str(destination.parent)
        )
        tmp_path = Path(name)
        try:
            with os.fdopen(fd, "wb") as out:
                state.start()
                for chunk in response.iter_content(chunk_size=self.chunk_bytes):
                    if not chunk:
                        continue
                    out.write(chunk)
                    state.advance(len(chunk))
            if expected_bytes > 0 and state.downloaded_bytes != expected_bytes:
                raise AcquisitionError(
                    AcquisitionError.INTERRUPTED,
                    f"Download of {destination.name} ended after {state.downloaded_bytes} "
                    f"of {expected_bytes} bytes",
                )
        except (requests.RequestException, OSError) as exc:
            tmp_path.unlink(missing_ok=True)
            logger.warning(
                "Download of %s interrupted after %d bytes: %s",
                destination.name,
                state.downloaded_bytes,
                exc,
            )
            raise AcquisitionError(
                AcquisitionError.INTERRUPTED,
                f"Interrupted while downloading {destination.name}: {exc}",
            ) from exc
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        return tmp_path
