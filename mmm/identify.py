from __future__ import annotations

import functools
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Tuple, Union

from .curseforge import CurseforgeClient, fingerprint_file
from .errors import AbortedError, MmmError, NotFoundError, RequestTimeoutError, TransientApiError
from .logs import get_logger
from .modrinth import ModrinthClient
from .models import LookupResult, Platform, ScanCandidate, ScanMatch, ScanUnsure
from .resolver import format_timestamp
from .telemetry import NullSink, TelemetrySink

log = get_logger(__name__)

MODRINTH_LOOKUP_CONCURRENCY = 4

_Outcome = Union[ScanMatch, ScanUnsure, ScanCandidate]


class NameCache:
    """Project id to display name, shared by concurrent lookups."""

    def __init__(self, fetch: Callable[[str], str]):
        self._fetch = fetch
        self._lock = threading.Lock()
        self._names: Dict[str, str] = {}

    def get(self, project_id: str) -> str:
        with self._lock:
            if project_id in self._names:
                return self._names[project_id]
        name = self._fetch(project_id)
        with self._lock:
            return self._names.setdefault(project_id, name)


class PlatformLookup(Protocol):
    platform: Platform

    def lookup(self, candidates: List[ScanCandidate]) -> LookupResult:  # pragma: no cover - protocol
        ...


class ModrinthLookup:
    """Exact sha1 lookups against Modrinth, a few at a time."""

    platform = Platform.MODRINTH

    def __init__(
        self,
        client: ModrinthClient,
        *,
        cancel: Optional[threading.Event] = None,
        max_workers: int = MODRINTH_LOOKUP_CONCURRENCY,
    ):
        self.client = client
        self.cancel = cancel or threading.Event()
        self.max_workers = max_workers

    def lookup(self, candidates: List[ScanCandidate]) -> LookupResult:
        result = LookupResult()
        if not candidates:
            return result

        titles = NameCache(lambda project_id: self.client.get_project(project_id).title)
        workers = max(1, min(self.max_workers, len(candidates)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            outcomes = list(pool.map(lambda candidate: self._lookup_one(candidate, titles), candidates))

        for outcome in outcomes:
            _collect(result, outcome)
        return result

    def _lookup_one(self, candidate: ScanCandidate, titles: NameCache) -> _Outcome:
        if self.cancel.is_set():
            return ScanUnsure(path=candidate.path, error="cancelled")
        try:
            version = self.client.version_for_hash(candidate.sha1)
        except NotFoundError:
            return candidate
        except MmmError as exc:
            return ScanUnsure(path=candidate.path, error=f"modrinth lookup: {exc}")

        file = version.primary_file()
        if file is None:
            return ScanUnsure(path=candidate.path, error="modrinth version has no files")
        if not file.url.strip():
            return ScanUnsure(path=candidate.path, error="modrinth file missing url")

        try:
            name = titles.get(version.project_id)
        except MmmError as exc:
            return ScanUnsure(path=candidate.path, error=f"modrinth project {version.project_id}: {exc}")

        return ScanMatch(
            candidate=candidate,
            platform=self.platform,
            project_id=version.project_id,
            name=name,
            release_date=format_timestamp(version.date_published),
            download_url=file.url,
        )


class CurseforgeLookup:
    """Fingerprint matching against CurseForge in a single batched request."""

    platform = Platform.CURSEFORGE

    def __init__(
        self,
        client: CurseforgeClient,
        *,
        cancel: Optional[threading.Event] = None,
        fingerprint: Optional[Callable[[Path], int]] = None,
    ):
        self.client = client
        self.cancel = cancel or threading.Event()
        self.fingerprint = fingerprint or functools.partial(fingerprint_file, cancel=self.cancel)

    def lookup(self, candidates: List[ScanCandidate]) -> LookupResult:
        result = LookupResult()
        unsure: Dict[Path, str] = {}
        by_fingerprint: Dict[int, List[ScanCandidate]] = {}
        fingerprint_of: Dict[Path, int] = {}

        for candidate in candidates:
            if self.cancel.is_set():
                unsure[candidate.path] = "cancelled"
                continue
            try:
                value = self.fingerprint(candidate.path)
            except RequestTimeoutError:
                unsure[candidate.path] = "cancelled"
                continue
            except OSError as exc:
                unsure[candidate.path] = f"curseforge fingerprint: {exc}"
                continue
            fingerprint_of[candidate.path] = value
            by_fingerprint.setdefault(value, []).append(candidate)

        if by_fingerprint:
            try:
                matched = self.client.match_fingerprints(sorted(by_fingerprint))
            except MmmError as exc:
                reason = _fingerprint_failure_reason(exc)
                for candidate in candidates:
                    if candidate.path in fingerprint_of:
                        unsure[candidate.path] = f"curseforge fingerprint {fingerprint_of[candidate.path]}: {reason}"
                result.unsure = [ScanUnsure(path=path, error=error) for path, error in unsure.items()]
                return result

            names = NameCache(lambda project_id: self.client.get_mod(project_id).name)
            handled = set()
            for match in matched.exactMatches:
                group = by_fingerprint.get(match.fingerprint)
                if not group or match.fingerprint in handled:
                    continue
                handled.add(match.fingerprint)
                project_id = str(match.id or match.file.modId)
                try:
                    name = names.get(project_id)
                except MmmError as exc:
                    for candidate in group:
                        unsure[candidate.path] = f"curseforge project {project_id}: {exc}"
                    continue
                download_url = (match.file.downloadUrl or "").strip()
                if not download_url:
                    for candidate in group:
                        unsure[candidate.path] = "curseforge match missing download url"
                    continue
                for candidate in group:
                    result.matches.append(
                        ScanMatch(
                            candidate=candidate,
                            platform=self.platform,
                            project_id=project_id,
                            name=name,
                            release_date=format_timestamp(match.file.fileDate),
                            download_url=download_url,
                        )
                    )

        matched_paths = {match.candidate.path for match in result.matches}
        result.misses = [c for c in candidates if c.path not in matched_paths and c.path not in unsure]
        result.unsure = [ScanUnsure(path=path, error=error) for path, error in unsure.items()]
        return result


def _fingerprint_failure_reason(exc: MmmError) -> str:
    reason = str(exc)
    if isinstance(exc, TransientApiError) and exc.status == 403:
        return f"{reason} (check CURSEFORGE_API_KEY)"
    return reason


def _collect(result: LookupResult, outcome: _Outcome) -> None:
    if isinstance(outcome, ScanMatch):
        result.matches.append(outcome)
    elif isinstance(outcome, ScanUnsure):
        result.unsure.append(outcome)
    else:
        result.misses.append(outcome)


@dataclass
class IdentifyResult:
    matches: List[ScanMatch] = field(default_factory=list)
    unknown: List[ScanCandidate] = field(default_factory=list)
    unsure: List[ScanUnsure] = field(default_factory=list)


class ContentIdentifier:
    """Classifies local files as matched, unknown or unsure across both registries.

    Files are looked up on the preferred platform first; only the files that
    platform positively reports as absent are retried on the other one. A lookup
    that fails for any other reason leaves the file unsure, and unsure files are
    never passed on to the fallback platform.
    """

    def __init__(
        self,
        lookups: Dict[Platform, PlatformLookup],
        *,
        cancel: Optional[threading.Event] = None,
        telemetry: Optional[TelemetrySink] = None,
    ):
        self._lookups = {Platform(platform).value: lookup for platform, lookup in lookups.items()}
        self.cancel = cancel or threading.Event()
        self.telemetry = telemetry or NullSink()

    def lookup_on_platform(self, candidates: List[ScanCandidate], platform: Platform) -> LookupResult:
        if self.cancel.is_set():
            raise AbortedError()
        result = self._lookups[Platform(platform).value].lookup(candidates)
        self.telemetry.record(
            "scan.lookup",
            platform=Platform(platform).value,
            candidates=len(candidates),
            matches=len(result.matches),
            misses=len(result.misses),
            unsure=len(result.unsure),
        )
        log.debug("scan.lookup", platform=Platform(platform).value, matches=len(result.matches), misses=len(result.misses))
        return result

    def identify(self, candidates: List[ScanCandidate], preferred: Platform) -> IdentifyResult:
        preferred = Platform(preferred)
        primary = self.lookup_on_platform(candidates, preferred)
        fallback = LookupResult()
        if primary.misses:
            fallback = self.lookup_on_platform(primary.misses, preferred.alternate)
        if self.cancel.is_set():
            raise AbortedError()
        return merge_results(primary, fallback, preferred)


def merge_results(primary: LookupResult, fallback: LookupResult, preferred: Platform) -> IdentifyResult:
    matches = primary.matches + fallback.matches
    matched_paths = {match.candidate.path for match in matches}

    unsure: Dict[Path, ScanUnsure] = {}
    for entry in primary.unsure + fallback.unsure:
        if entry.path not in matched_paths:
            unsure.setdefault(entry.path, entry)

    unknown = [c for c in fallback.misses if c.path not in unsure]

    def match_order(match: ScanMatch) -> Tuple[int, str, str]:
        return (0 if match.platform == preferred else 1, match.name, match.file_name)

    return IdentifyResult(
        matches=sorted(matches, key=match_order),
        unknown=sorted(unknown, key=lambda c: str(c.path)),
        unsure=sorted(unsure.values(), key=lambda u: str(u.path)),
    )
