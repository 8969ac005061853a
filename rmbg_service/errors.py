"""Custom exceptions for the background-removal pipeline."""

from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    """Base exception for every stage-local pipeline failure."""

    code = "pipeline"


class UnknownModelError(PipelineError):
    """
    Raised when a requested model identifier is not in the catalog.

    Rejected before any network or disk I/O takes place.
    """

    code = "validation"

    def __init__(self, model_id: str):
        super().__init__(f"Unknown model: {model_id!r}")
        self.model_id = model_id


class AcquisitionError(PipelineError):
    """
    Raised when model weights cannot be fetched and installed.

    This can happen when:
    - the host answers with a non-success status (``http_status``)
    - the connection cannot be established (``network``)
    - the transfer breaks off mid-stream (``interrupted``)
    - the finished file cannot be moved into place (``install``)

    No partial file is left behind, so the caller may simply retry.
    """

    code = "acquisition"

    HTTP_STATUS = "http_status"
    NETWORK = "network"
    INTERRUPTED = "interrupted"
    INSTALL = "install"

    def __init__(self, reason: str, message: str, http_status: Optional[int] = None):
        super().__init__(message)
        self.reason = reason
        self.http_status = http_status


class SessionError(PipelineError):
    """
    Raised when the inference session cannot be built or run.

    This can happen when:
    - the weight file is missing or not a loadable model (``load_failed``)
    - none of the known tensor names match the model (``unbound_names``)
    - an input tensor has the wrong length (``shape_mismatch``)
    - the operator itself fails (``inference_failed``)
    - inference is requested before any model is loaded (``not_loaded``)
    """

    code = "session"

    LOAD_FAILED = "load_failed"
    UNBOUND_NAMES = "unbound_names"
    SHAPE_MISMATCH = "shape_mismatch"
    INFERENCE_FAILED = "inference_failed"
    NOT_LOADED = "not_loaded"

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason


class DecodeError(PipelineError):
    """Raised when the input payload cannot be decoded into an image."""

    code = "decode"


class UnsupportedFormatError(DecodeError):
    """Raised when the input is not one of the accepted raster formats."""

    code = "unsupported_format"


class EncodeError(PipelineError):
    """Raised when the composited result cannot be encoded."""

    code = "encode"
