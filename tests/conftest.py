"""Shared fixtures for the rmbg_service test suite."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Iterator, List, Optional, Tuple

import pytest

from rmbg_service.downloader import ModelDownloader
from rmbg_service.pipeline import BackgroundRemover
from rmbg_service.registry import ModelRegistry
from rmbg_service.session import SessionManager

from .helpers import DEFAULT_MODEL_ID, build_mask_model


@pytest.fixture
def models_dir(tmp_path: Path) -> Path:
    path = tmp_path / "models"
    path.mkdir()
    return path


@pytest.fixture
def registry(models_dir: Path) -> ModelRegistry:
    return ModelRegistry(models_dir)


@pytest.fixture
def installed_model(registry: ModelRegistry) -> Path:
    """The default variant installed as a small working model."""
    return build_mask_model(registry.model_path(DEFAULT_MODEL_ID))


@pytest.fixture
def sessions() -> Iterator[SessionManager]:
    manager = SessionManager(providers=["CPUExecutionProvider"])
    yield manager
    manager.destroy()


@pytest.fixture
def events() -> List[Tuple[str, object]]:
    return []


@pytest.fixture
def make_remover(
    registry: ModelRegistry,
    sessions: SessionManager,
    events: List[Tuple[str, object]],
) -> Callable[..., BackgroundRemover]:
    def _make(downloader: Optional[ModelDownloader] = None) -> BackgroundRemover:
        return BackgroundRemover(
            registry=registry,
            downloader=downloader or ModelDownloader(),
            sessions=sessions,
            on_event=lambda event, payload: events.append((event, payload)),
        )

    return _make
