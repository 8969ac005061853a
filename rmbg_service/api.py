"""
FastAPI layer exposing the background-removal pipeline.

Endpoints:
 - GET /health
 - GET /version
 - GET /models
 - GET /models/{model_id}/installed
 - GET /status
 - POST /remove-bg
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from functools import lru_cache
import logging
from threading import Lock
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel

from . import __version__, config
from .errors import PipelineError, UnknownModelError
from .pipeline import DOWNLOAD_PROGRESS_EVENT, STATUS_EVENT, BackgroundRemover

settings = config.get_settings()
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

_HTTP_STATUS_BY_CODE = {
    "validation": 400,
    "decode": 400,
    "unsupported_format": 415,
    "acquisition": 502,
    "session": 500,
    "encode": 500,
}


class StatusBoard:
    """Latest status and download progress, for clients polling GET /status."""

    def __init__(self) -> None:
        self._lock = Lock()
        self.status: Optional[str] = None
        self.downloaded = 0
        self.total = 0

    def __call__(self, event: str, payload: Any) -> None:
        with self._lock:
            if event == STATUS_EVENT:
                self.status = payload
            elif event == DOWNLOAD_PROGRESS_EVENT:
                self.downloaded = payload["downloaded"]
                self.total = payload["total"]

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "status": self.status,
                "downloadProgress": {"downloaded": self.downloaded, "total": self.total},
            }


status_board = StatusBoard()


@lru_cache()
def get_remover() -> BackgroundRemover:
    """Return the process-wide pipeline, created on first use."""
    return BackgroundRemover.from_settings(settings, on_event=status_board)


@asynccontextmanager
async def lifespan(_: FastAPI):
    yield
    if get_remover.cache_info().currsize:
        logger.info("Shutting down: releasing inference session")
        get_remover().shutdown()


app = FastAPI(title="RMBG Background Removal Service", version=__version__, lifespan=lifespan)


class RemoveBgRequest(BaseModel):
    imageBase64: str
    modelId: Optional[str] = None


class RemoveBgResponse(BaseModel):
    imageBase64: str
    modelId: str


class ModelInfo(BaseModel):
    id: str
    name: str
    sizeMB: int
    ram: str
    speed: str
    quality: str
    isDefault: bool
    installed: bool


def _error_detail(exc: PipelineError) -> Dict[str, str]:
    return {"code": exc.code, "message": str(exc)}


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/version")
def version():
    return {"version": __version__}


@app.get("/models", response_model=List[ModelInfo])
def list_models(remover: BackgroundRemover = Depends(get_remover)):
    return [
        ModelInfo(**model.to_dict(), installed=remover.is_model_installed(model.id))
        for model in remover.list_models()
    ]


@app.get("/models/{model_id}/installed")
def model_installed(model_id: str, remover: BackgroundRemover = Depends(get_remover)):
    try:
        installed = remover.is_model_installed(model_id)
    except UnknownModelError as exc:
        raise HTTPException(status_code=404, detail=_error_detail(exc)) from exc
    return {"id": model_id, "installed": installed}


@app.get("/status")
def status():
    return status_board.snapshot()


@app.post("/remove-bg", response_model=RemoveBgResponse)
def remove_bg(body: RemoveBgRequest, remover: BackgroundRemover = Depends(get_remover)):
    model_id = body.modelId or remover.registry.default_model().id
    try:
        result = remover.remove_background(body.imageBase64, model_id)
    except PipelineError as exc:
        raise HTTPException(
            status_code=_HTTP_STATUS_BY_CODE.get(exc.code, 500), detail=_error_detail(exc)
        ) from exc
    except Exception as exc:  # noqa: BLE001
        logger.exception("Background removal failed: %s", exc)
        raise HTTPException(status_code=500, detail="Background removal failed") from exc

    return RemoveBgResponse(imageBase64=result, modelId=model_id)
