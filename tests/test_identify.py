"""Tests for identifying local files against Modrinth and CurseForge."""

from __future__ import annotations

import http.client
import threading
from pathlib import Path

import pytest

from conftest import curseforge_file, modrinth_version
from mmm.config import MmmSettings
from mmm.curseforge import FingerprintMatch, FingerprintResult, fingerprint_bytes, fingerprint_file
from mmm.errors import AbortedError, RequestTimeoutError, TransientApiError
from mmm.identify import CurseforgeLookup, ModrinthLookup
from mmm.models import Platform, ScanCandidate
from mmm.modrinth import ModrinthClient
from mmm.transport import Transport


def candidate(name: str, sha1: str) -> ScanCandidate:
    return ScanCandidate(path=Path("/mods") / name, file_name=name, sha1=sha1)


class TestFingerprint:
    """Tests for the CurseForge fingerprint."""

    def test_whitespace_is_ignored(self) -> None:
        """Test that tabs, newlines, carriage returns and spaces do not change the value."""
        assert fingerprint_bytes(b"hello world\n") == fingerprint_bytes(b"helloworld")
        assert fingerprint_bytes(b"a\tb\r\nc") == fingerprint_bytes(b"abc")

    def test_is_a_32_bit_value(self) -> None:
        """Test that the result fits in an unsigned 32-bit integer."""
        for data in (b"", b"x", b"four", b"fivec", bytes(range(256))):
            assert 0 <= fingerprint_bytes(data) <= 0xFFFFFFFF

    def test_content_changes_value(self) -> None:
        """Test that different content gives different fingerprints."""
        assert fingerprint_bytes(b"mod-a") != fingerprint_bytes(b"mod-b")

    @pytest.mark.parametrize(
        "data, expected",
        [
            (b"", 1540447798),
            (b"abcd", 2319308985),
            (b"hello world", 2126612664),
            (b"The quick brown fox jumps over the lazy dog", 2699680508),
        ],
    )
    def test_known_values(self, data: bytes, expected: int) -> None:
        """Test against values computed with CurseForge's reference routine."""
        assert fingerprint_bytes(data) == expected

    def test_file_matches_bytes_across_chunks(self, tmp_path, monkeypatch) -> None:
        """Test that chunked file hashing agrees with hashing the whole content."""
        # Arrange
        monkeypatch.setattr("mmm.curseforge.FINGERPRINT_CHUNK_SIZE", 7)
        data = b"The quick brown fox\njumps over\tthe lazy dog\r\n" * 5 + b"xyz"
        path = tmp_path / "mod.jar"
        path.write_bytes(data)

        # Act
        value = fingerprint_file(path)

        # Assert
        assert value == fingerprint_bytes(data)

    def test_file_known_value(self, tmp_path) -> None:
        """Test a file fingerprint against a reference value."""
        path = tmp_path / "hello.txt"
        path.write_bytes(b"hello world\n")

        assert fingerprint_file(path) == 2126612664

    def test_file_stops_when_cancelled(self, tmp_path) -> None:
        """Test that a cancelled run stops hashing with RequestTimeoutError."""
        path = tmp_path / "big.jar"
        path.write_bytes(b"x" * 64)
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(RequestTimeoutError):
            fingerprint_file(path, cancel=cancel)


class TestFingerprintResult:
    """Tests for decoding the fingerprint response."""

    def test_accepts_null_and_map(self) -> None:
        """Test that null lists and id-keyed maps decode as lists."""
        result = FingerprintResult.model_validate(
            {
                "exactMatches": {"1": {"id": 5, "file": {"fileFingerprint": 42}}},
                "exactFingerprints": None,
            }
        )

        assert result.exactMatches[0].fingerprint == 42
        assert result.exactFingerprints == []


class TestIdentify:
    """Tests for ContentIdentifier."""

    def test_alternate_platform_only_sees_misses(self, services, modrinth, curseforge) -> None:
        """Test that only files the preferred platform does not know reach the other one."""
        # Arrange
        modrinth.add_project("sodium", "Sodium", [])
        modrinth.by_hash["1" * 40] = modrinth_version(project_id="sodium")
        services.fingerprints.update({"jei.jar": 111})
        curseforge.add_mod("238222", "Just Enough Items", [])
        curseforge.matches = [FingerprintMatch(id=238222, file=curseforge_file(fingerprint=111))]
        files = [candidate("sodium.jar", "1" * 40), candidate("jei.jar", "2" * 40)]

        # Act
        result = services.identifier.identify(files, Platform.MODRINTH)

        # Assert
        assert [(m.file_name, m.platform) for m in result.matches] == [
            ("sodium.jar", Platform.MODRINTH),
            ("jei.jar", Platform.CURSEFORGE),
        ]
        assert curseforge.fingerprint_calls == [[111]]
        assert result.unknown == []
        assert result.unsure == []

    def test_alternate_platform_not_called_when_everything_matches(self, services, modrinth, curseforge) -> None:
        """Test that a fully matched batch never touches the fallback registry."""
        modrinth.add_project("sodium", "Sodium", [])
        modrinth.by_hash["1" * 40] = modrinth_version(project_id="sodium")

        result = services.identifier.identify([candidate("sodium.jar", "1" * 40)], Platform.MODRINTH)

        assert len(result.matches) == 1
        assert curseforge.fingerprint_calls == []

    def test_unmatched_everywhere_is_unknown(self, services, curseforge) -> None:
        """Test that a file neither registry knows is reported unknown."""
        services.fingerprints.update({"custom.jar": 7})

        result = services.identifier.identify([candidate("custom.jar", "3" * 40)], Platform.MODRINTH)

        assert [c.file_name for c in result.unknown] == ["custom.jar"]
        assert result.unsure == []

    def test_lookup_failure_is_unsure_and_not_retried(self, services, modrinth, curseforge) -> None:
        """Test that a transient error leaves the file unsure instead of trying the other platform."""
        # Arrange
        modrinth.hash_errors["4" * 40] = TransientApiError("HTTP 503 error", status=503)
        services.fingerprints.update({"flaky.jar": 9})

        # Act
        result = services.identifier.identify([candidate("flaky.jar", "4" * 40)], Platform.MODRINTH)

        # Assert
        assert [u.path.name for u in result.unsure] == ["flaky.jar"]
        assert "modrinth lookup" in result.unsure[0].error
        assert result.unknown == []
        assert curseforge.fingerprint_calls == []

    def test_forbidden_fingerprint_request_hints_at_api_key(self, services, curseforge) -> None:
        """Test that a 403 from CurseForge marks every file unsure with a key hint."""
        services.fingerprints.update({"a.jar": 1, "b.jar": 2})
        curseforge.fingerprint_error = TransientApiError("HTTP 403 error", status=403)

        result = services.identifier.identify(
            [candidate("a.jar", "5" * 40), candidate("b.jar", "6" * 40)], Platform.CURSEFORGE
        )

        assert [u.path.name for u in result.unsure] == ["a.jar", "b.jar"]
        assert all("CURSEFORGE_API_KEY" in u.error for u in result.unsure)
        assert result.matches == []

    def test_missing_download_url_is_unsure(self, services, modrinth) -> None:
        """Test that a match without a download url cannot be recorded."""
        modrinth.add_project("sodium", "Sodium", [])
        modrinth.by_hash["1" * 40] = modrinth_version(project_id="sodium", url="  ")

        result = services.identifier.identify([candidate("sodium.jar", "1" * 40)], Platform.MODRINTH)

        assert result.matches == []
        assert result.unsure[0].error == "modrinth file missing url"

    def test_matches_sorted_preferred_first_then_name(self, services, modrinth, curseforge) -> None:
        """Test the ordering of the merged result."""
        # Arrange
        modrinth.add_project("zoom", "Zoomify", [])
        modrinth.add_project("lith", "Lithium", [])
        modrinth.by_hash["1" * 40] = modrinth_version(project_id="zoom")
        modrinth.by_hash["2" * 40] = modrinth_version(project_id="lith")
        services.fingerprints.update({"aaa.jar": 5})
        curseforge.add_mod("10", "Applied Energistics", [])
        curseforge.matches = [FingerprintMatch(id=10, file=curseforge_file(mod_id=10, fingerprint=5))]
        files = [candidate("zoom.jar", "1" * 40), candidate("aaa.jar", "9" * 40), candidate("lith.jar", "2" * 40)]

        # Act
        result = services.identifier.identify(files, Platform.MODRINTH)

        # Assert
        assert [m.name for m in result.matches] == ["Lithium", "Zoomify", "Applied Energistics"]

    def test_cancelled_identify_aborts(self, services) -> None:
        """Test that a cancelled run stops before any lookup."""
        services.cancel.set()

        with pytest.raises(AbortedError):
            services.identifier.identify([candidate("a.jar", "1" * 40)], Platform.MODRINTH)

    def test_lookup_is_recorded(self, services, sink) -> None:
        """Test that each platform lookup emits a telemetry event."""
        services.fingerprints.update({"custom.jar": 7})

        services.identifier.identify([candidate("custom.jar", "3" * 40)], Platform.MODRINTH)

        assert sink.names().count("scan.lookup") == 2


class DroppingOpener:
    def __init__(self) -> None:
        self.calls = 0

    def __call__(self, request, timeout):
        self.calls += 1
        raise http.client.RemoteDisconnected("Remote end closed connection without response")


class TestLookups:
    """Tests for the per-platform lookups."""

    def test_dropped_connection_leaves_file_unsure(self) -> None:
        """Test that a dropped connection through the real transport marks the file unsure."""
        # Arrange
        opener = DroppingOpener()
        transport = Transport(MmmSettings(max_retries=0, requests_per_second=0), opener=opener, sleep=lambda _: None)
        lookup = ModrinthLookup(ModrinthClient(transport))

        # Act
        result = lookup.lookup([candidate("sodium.jar", "1" * 40)])

        # Assert
        assert [u.path.name for u in result.unsure] == ["sodium.jar"]
        assert "modrinth lookup" in result.unsure[0].error
        assert result.matches == []
        assert result.misses == []
        assert opener.calls == 1

    def test_default_fingerprint_watches_cancel(self, curseforge) -> None:
        """Test that the default fingerprint routine is bound to the lookup's cancel event."""
        cancel = threading.Event()

        lookup = CurseforgeLookup(curseforge, cancel=cancel)

        assert lookup.fingerprint.keywords["cancel"] is cancel

    def test_cancel_during_fingerprint_is_unsure(self, curseforge) -> None:
        """Test that cancelling while hashing leaves the remaining files unsure without a request."""
        # Arrange
        cancel = threading.Event()

        def interrupted(path: Path) -> int:
            cancel.set()
            raise RequestTimeoutError(f"Cancelled while fingerprinting {path.name}")

        lookup = CurseforgeLookup(curseforge, cancel=cancel, fingerprint=interrupted)

        # Act
        result = lookup.lookup([candidate("a.jar", "1" * 40), candidate("b.jar", "2" * 40)])

        # Assert
        assert [(u.path.name, u.error) for u in result.unsure] == [("a.jar", "cancelled"), ("b.jar", "cancelled")]
        assert curseforge.fingerprint_calls == []
