"""Tests for the HTTP transport."""

from __future__ import annotations

import http.client
import io
import json
import socket
import threading
import urllib.error
from email.message import Message

import pytest

from mmm.config import MmmSettings
from mmm.errors import NotFoundError, RequestTimeoutError, TransientApiError
from mmm.transport import RateLimiter, Transport, _simple_exponential_backoff


class FakeResponse(io.BytesIO):
    pass


class BrokenResponse:
    """A response whose body read fails part way through."""

    def __init__(self, error: BaseException) -> None:
        self.error = error
        self.closed = False

    def read(self, *args):
        raise self.error

    def close(self) -> None:
        self.closed = True


def http_error(url: str, code: int, retry_after: str = "") -> urllib.error.HTTPError:
    headers = Message()
    if retry_after:
        headers["Retry-After"] = retry_after
    return urllib.error.HTTPError(url, code, "error", headers, io.BytesIO(b""))


class ScriptedOpener:
    def __init__(self, outcomes) -> None:
        self.outcomes = list(outcomes)
        self.requests = []

    def __call__(self, request, timeout):
        self.requests.append(request)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, BrokenResponse):
            return outcome
        return FakeResponse(outcome)


def make_transport(outcomes, **settings):
    sleeps = []
    opener = ScriptedOpener(outcomes)
    transport = Transport(
        MmmSettings(requests_per_second=0, **settings),
        opener=opener,
        sleep=sleeps.append,
    )
    return transport, opener, sleeps


URL = "https://api.modrinth.com/v2/project/sodium"


class TestGetJson:
    """Tests for JSON requests."""

    def test_decodes_payload(self) -> None:
        """Test that a 200 body is parsed as JSON."""
        transport, opener, _ = make_transport([json.dumps({"title": "Sodium"}).encode()])

        assert transport.get_json(URL, headers={"User-Agent": "test"}) == {"title": "Sodium"}
        assert opener.requests[0].get_header("User-agent") == "test"

    def test_404_is_not_found(self) -> None:
        """Test that a 404 raises NotFoundError without retrying."""
        transport, opener, _ = make_transport([http_error(URL, 404)])

        with pytest.raises(NotFoundError):
            transport.get_json(URL)

        assert len(opener.requests) == 1

    def test_retries_server_errors_with_backoff(self) -> None:
        """Test that 503 and 429 are retried, honoring Retry-After."""
        transport, opener, sleeps = make_transport([http_error(URL, 503), http_error(URL, 429, "5"), b"[]"])

        assert transport.get_json(URL) == []
        assert len(opener.requests) == 3
        assert sleeps == [_simple_exponential_backoff(1), 5.0]

    def test_gives_up_after_max_retries(self) -> None:
        """Test that persistent failures surface with the status."""
        transport, opener, _ = make_transport([http_error(URL, 500)] * 3, max_retries=2)

        with pytest.raises(TransientApiError) as excinfo:
            transport.get_json(URL)

        assert excinfo.value.status == 500
        assert len(opener.requests) == 3

    def test_forbidden_is_not_retried(self) -> None:
        """Test that a 403 fails immediately."""
        transport, opener, _ = make_transport([http_error(URL, 403)])

        with pytest.raises(TransientApiError) as excinfo:
            transport.get_json(URL)

        assert excinfo.value.status == 403
        assert len(opener.requests) == 1

    def test_timeout_is_not_retried(self) -> None:
        """Test that a timeout raises RequestTimeoutError straight away."""
        transport, opener, _ = make_transport([urllib.error.URLError(socket.timeout("timed out"))])

        with pytest.raises(RequestTimeoutError):
            transport.get_json(URL)

        assert len(opener.requests) == 1

    def test_invalid_json(self) -> None:
        """Test that an undecodable body is a TransientApiError."""
        transport, _, _ = make_transport([b"<html>"])

        with pytest.raises(TransientApiError):
            transport.get_json(URL)

    def test_cancelled_before_request(self) -> None:
        """Test that a cancelled run never opens a connection."""
        cancel = threading.Event()
        cancel.set()
        opener = ScriptedOpener([])
        transport = Transport(MmmSettings(), cancel=cancel, opener=opener, sleep=lambda _: None)

        with pytest.raises(RequestTimeoutError):
            transport.get_json(URL)

        assert opener.requests == []


class TestConnectionFailures:
    """Tests for failures raised by http.client below urllib."""

    def test_remote_disconnect_is_retried(self) -> None:
        """Test that a dropped connection is retried and then succeeds."""
        # Arrange
        transport, opener, sleeps = make_transport(
            [http.client.RemoteDisconnected("Remote end closed connection without response"), b"{}"]
        )

        # Act
        payload = transport.get_json(URL)

        # Assert
        assert payload == {}
        assert len(opener.requests) == 2
        assert sleeps == [_simple_exponential_backoff(1)]

    def test_remote_disconnect_exhausts_retries(self) -> None:
        """Test that repeated drops surface as TransientApiError."""
        transport, opener, _ = make_transport([http.client.RemoteDisconnected("closed")] * 2, max_retries=1)

        with pytest.raises(TransientApiError):
            transport.get_json(URL)

        assert len(opener.requests) == 2

    def test_bad_status_line_is_transient(self) -> None:
        """Test that a garbled status line never escapes as an http.client error."""
        transport, _, _ = make_transport([http.client.BadStatusLine("garbage")], max_retries=0)

        with pytest.raises(TransientApiError):
            transport.get_json(URL)

    def test_connection_reset_is_transient(self) -> None:
        """Test that a reset socket without a URLError wrapper is transient."""
        transport, _, _ = make_transport([ConnectionResetError(104, "Connection reset by peer")], max_retries=0)

        with pytest.raises(TransientApiError):
            transport.get_json(URL)

    def test_incomplete_body_is_retried(self) -> None:
        """Test that a body cut short is fetched again."""
        # Arrange
        broken = BrokenResponse(http.client.IncompleteRead(b"{", 10))
        transport, opener, _ = make_transport([broken, b"[1]"])

        # Act
        payload = transport.get_json(URL)

        # Assert
        assert payload == [1]
        assert len(opener.requests) == 2
        assert broken.closed

    def test_incomplete_body_exhausts_retries(self) -> None:
        """Test that a body that keeps breaking becomes TransientApiError."""
        transport, _, _ = make_transport([BrokenResponse(http.client.IncompleteRead(b""))], max_retries=0)

        with pytest.raises(TransientApiError):
            transport.get_json(URL)

    def test_read_timeout_is_not_retried(self) -> None:
        """Test that a timeout while reading the body is still a timeout."""
        transport, opener, _ = make_transport([BrokenResponse(socket.timeout("timed out"))])

        with pytest.raises(RequestTimeoutError):
            transport.get_json(URL)

        assert len(opener.requests) == 1


class TestDownload:
    """Tests for streaming downloads."""

    def test_writes_file(self, tmp_path) -> None:
        """Test that the body is streamed to the destination."""
        transport, _, _ = make_transport([b"jar-bytes"])
        dest = tmp_path / "mods" / "sodium.jar"

        transport.download("https://cdn.modrinth.com/sodium.jar", dest)

        assert dest.read_bytes() == b"jar-bytes"

    def test_incomplete_download_removes_partial_file(self, tmp_path) -> None:
        """Test that a truncated download is transient and leaves no file behind."""
        transport, _, _ = make_transport([BrokenResponse(http.client.IncompleteRead(b"jar"))])
        dest = tmp_path / "mods" / "sodium.jar"

        with pytest.raises(TransientApiError):
            transport.download("https://cdn.modrinth.com/sodium.jar", dest)

        assert not dest.exists()


class TestRateLimiter:
    """Tests for request spacing."""

    def test_spaces_calls(self) -> None:
        """Test that back-to-back calls wait for the next slot."""
        sleeps = []
        limiter = RateLimiter(2, clock=lambda: 100.0, sleep=sleeps.append)

        limiter.wait()
        limiter.wait()
        limiter.wait()

        assert sleeps == [0.5, 1.0]
