"""Unit tests for ModelDownloader and DownloadState."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple
from unittest.mock import MagicMock

import pytest
import requests

from rmbg_service.downloader import DownloadState, ModelDownloader
from rmbg_service.errors import AcquisitionError
from rmbg_service.registry import ModelRegistry


class FakeResponse:
    """Minimal stand-in for a streamed requests.Response."""

    def __init__(
        self,
        status_code: int = 200,
        chunks: Iterable[bytes] = (),
        headers: Optional[Dict[str, str]] = None,
        fail_after: Optional[int] = None,
    ):
        self.status_code = status_code
        self.headers = headers or {}
        self._chunks = list(chunks)
        self._fail_after = fail_after
        self.closed = False

    def iter_content(self, chunk_size: int = 1) -> Iterator[bytes]:
        for index, chunk in enumerate(self._chunks):
            if self._fail_after is not None and index >= self._fail_after:
                raise requests.exceptions.ChunkedEncodingError("connection reset")
            yield chunk

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc_info) -> None:
        self.closed = True


class FakeClock:
    def __init__(self, step: float):
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        self.now += self.step
        return self.now


def make_downloader(response: FakeResponse, **kwargs) -> Tuple[ModelDownloader, MagicMock]:
    session = MagicMock(spec=requests.Session)
    session.get.return_value = response
    downloader = ModelDownloader(
        url_template="https://models.example/{model_id}?download=true",
        session=session,
        **kwargs,
    )
    return downloader, session


class TestAcquire:
    def test_installs_file_atomically(self, registry: ModelRegistry) -> None:
        response = FakeResponse(chunks=[b"abc", b"def"], headers={"Content-Length": "6"})
        downloader, session = make_downloader(response)
        destination = registry.model_path("model.onnx")

        result = downloader.acquire("model.onnx", destination)

        assert result == destination
        assert destination.read_bytes() == b"abcdef"
        assert registry.is_installed("model.onnx") is True
        assert list(destination.parent.iterdir()) == [destination]
        assert response.closed is True
        session.get.assert_called_once()
        assert session.get.call_args.args[0] == "https://models.example/model.onnx?download=true"
        assert session.get.call_args.kwargs["stream"] is True

    def test_creates_missing_parent_directory(self, tmp_path: Path) -> None:
        downloader, _ = make_downloader(FakeResponse(chunks=[b"x"]))
        destination = tmp_path / "a" / "b" / "model.onnx"

        downloader.acquire("model.onnx", destination)

        assert destination.read_bytes() == b"x"

    def test_sends_bearer_token_when_configured(self, tmp_path: Path) -> None:
        downloader, session = make_downloader(FakeResponse(chunks=[b"x"]), token="hf_abc")

        downloader.acquire("model.onnx", tmp_path / "model.onnx")

        headers = session.get.call_args.kwargs["headers"]
        assert headers == {"Authorization": "Bearer hf_abc"}

    def test_no_auth_header_without_token(self, tmp_path: Path) -> None:
        downloader, session = make_downloader(FakeResponse(chunks=[b"x"]))

        downloader.acquire("model.onnx", tmp_path / "model.onnx")

        assert "Authorization" not in session.get.call_args.kwargs["headers"]

    def test_non_success_status(self, registry: ModelRegistry) -> None:
        downloader, _ = make_downloader(FakeResponse(status_code=401))
        destination = registry.model_path("model.onnx")

        with pytest.raises(AcquisitionError) as exc_info:
            downloader.acquire("model.onnx", destination)

        assert exc_info.value.reason == AcquisitionError.HTTP_STATUS
        assert exc_info.value.http_status == 401
        assert not destination.exists()

    def test_connection_failure(self, tmp_path: Path) -> None:
        session = MagicMock(spec=requests.Session)
        session.get.side_effect = requests.exceptions.ConnectionError("no route")
        downloader = ModelDownloader(session=session)

        with pytest.raises(AcquisitionError) as exc_info:
            downloader.acquire("model.onnx", tmp_path / "model.onnx")

        assert exc_info.value.reason == AcquisitionError.NETWORK

    def test_interrupted_transfer_leaves_nothing_behind(self, registry: ModelRegistry) -> None:
        response = FakeResponse(
            chunks=[b"a" * 10, b"b" * 10, b"c" * 10],
            headers={"Content-Length": "30"},
            fail_after=2,
        )
        downloader, _ = make_downloader(response)
        destination = registry.model_path("model.onnx")

        with pytest.raises(AcquisitionError) as exc_info:
            downloader.acquire("model.onnx", destination)

        assert exc_info.value.reason == AcquisitionError.INTERRUPTED
        assert not destination.exists()
        assert list(destination.parent.iterdir()) == []
        assert registry.is_installed("model.onnx") is False

    def test_short_body_is_not_installed(self, registry: ModelRegistry) -> None:
        response = FakeResponse(chunks=[b"a" * 10, b"b" * 10], headers={"Content-Length": "30"})
        downloader, _ = make_downloader(response)
        destination = registry.model_path("model.onnx")

        with pytest.raises(AcquisitionError, match="20 of 30") as exc_info:
            downloader.acquire("model.onnx", destination)

        assert exc_info.value.reason == AcquisitionError.INTERRUPTED
        assert list(destination.parent.iterdir()) == []
        assert registry.is_installed("model.onnx") is False

    def test_content_encoded_body_skips_length_check(self, tmp_path: Path) -> None:
        response = FakeResponse(
            chunks=[b"a" * 50],
            headers={"Content-Length": "12", "Content-Encoding": "gzip"},
        )
        downloader, _ = make_downloader(response)

        downloader.acquire("model.onnx", tmp_path / "model.onnx")

        assert (tmp_path / "model.onnx").read_bytes() == b"a" * 50

    def test_failing_progress_callback_leaves_nothing_behind(self, registry: ModelRegistry) -> None:
        def broken_callback(downloaded: int, total: int) -> None:
            raise RuntimeError("listener gone")

        downloader, _ = make_downloader(FakeResponse(chunks=[b"abc"], headers={"Content-Length": "3"}))
        destination = registry.model_path("model.onnx")

        with pytest.raises(RuntimeError, match="listener gone"):
            downloader.acquire("model.onnx", destination, on_progress=broken_callback)

        assert list(destination.parent.iterdir()) == []

    def test_failed_rename_cleans_up(
        self, registry: ModelRegistry, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        downloader, _ = make_downloader(FakeResponse(chunks=[b"abc"]))
        destination = registry.model_path("model.onnx")

        def broken_replace(src, dst):
            raise OSError("read-only filesystem")

        monkeypatch.setattr("rmbg_service.downloader.os.replace", broken_replace)

        with pytest.raises(AcquisitionError) as exc_info:
            downloader.acquire("model.onnx", destination)

        assert exc_info.value.reason == AcquisitionError.INSTALL
        assert list(destination.parent.iterdir()) == []


class TestProgress:
    def test_initial_and_final_events(self, tmp_path: Path) -> None:
        events: List[Tuple[int, int]] = []
        response = FakeResponse(chunks=[b"abc", b"def"], headers={"Content-Length": "6"})
        # Clock never advances far enough to emit intermediate events.
        downloader, _ = make_downloader(response, clock=FakeClock(step=0.0))

        downloader.acquire("model.onnx", tmp_path / "model.onnx", on_progress=lambda d, t: events.append((d, t)))

        assert events == [(0, 6), (6, 6)]

    def test_unknown_length_reports_downloaded_as_total_at_end(self, tmp_path: Path) -> None:
        events: List[Tuple[int, int]] = []
        response = FakeResponse(chunks=[b"abcd"])
        downloader, _ = make_downloader(response, clock=FakeClock(step=0.0))

        downloader.acquire("model.onnx", tmp_path / "model.onnx", on_progress=lambda d, t: events.append((d, t)))

        assert events[0] == (0, 0)
        assert events[-1] == (4, 4)

    def test_no_final_event_on_interruption(self, tmp_path: Path) -> None:
        events: List[Tuple[int, int]] = []
        response = FakeResponse(chunks=[b"a", b"b"], headers={"Content-Length": "2"}, fail_after=1)
        downloader, _ = make_downloader(response, clock=FakeClock(step=0.0))

        with pytest.raises(AcquisitionError):
            downloader.acquire("model.onnx", tmp_path / "model.onnx", on_progress=lambda d, t: events.append((d, t)))

        assert events == [(0, 2)]


class TestDownloadState:
    def test_throttles_to_interval(self) -> None:
        events: List[Tuple[int, int]] = []
        clock = FakeClock(step=0.125)
        state = DownloadState(
            total_bytes=100,
            on_progress=lambda d, t: events.append((d, t)),
            interval=0.25,
            clock=clock,
        )

        state.start()
        for _ in range(10):
            state.advance(10)

        # an event every second chunk
        assert events == [(0, 100), (20, 100), (40, 100), (60, 100), (80, 100), (100, 100)]
        assert state.downloaded_bytes == 100

    def test_finish_always_emits(self) -> None:
        events: List[Tuple[int, int]] = []
        state = DownloadState(
            total_bytes=10,
            on_progress=lambda d, t: events.append((d, t)),
            clock=FakeClock(step=0.0),
        )
        state.start()
        state.advance(10)
        state.finish()

        assert events == [(0, 10), (10, 10)]

    def test_without_callback(self) -> None:
        state = DownloadState(total_bytes=5)
        state.start()
        state.advance(5)
        state.finish()
        assert state.downloaded_bytes == 5
