from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Dict, Iterator, List, Optional, Protocol, TypeVar

from .curseforge import (
    ACCEPTABLE_STATUSES,
    RELEASE_TYPE_NAMES,
    CurseforgeClient,
    File,
    FileReleaseType,
    HashAlgo,
    loader_type,
)
from .errors import (
    ModNotFoundError,
    NoCompatibleFileError,
    NotFoundError,
    RequestTimeoutError,
    ResolutionError,
    TransientApiError,
    UnknownPlatformError,
)
from .logs import get_logger
from .modrinth import ModrinthClient, Version
from .models import FetchConstraints, Loader, Platform, RemoteArtifact, parse_platform
from .telemetry import NullSink, TelemetrySink

log = get_logger(__name__)

# Modrinth version statuses that are not publicly downloadable.
MODRINTH_UNAVAILABLE_STATUSES = frozenset(("draft", "scheduled", "unknown"))

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

T = TypeVar("T")


def next_version_down(version: str) -> Optional[str]:
    """Step a game version down one patch release.

    ``1.20.2`` becomes ``1.20.1``, ``1.20.1`` (and ``1.20.0``) become ``1.20``.
    Versions with fewer than three numeric components cannot go down.
    """
    parts = version.strip().split(".")
    if len(parts) != 3 or not all(part.isdigit() for part in parts):
        return None
    major, minor, patch = (int(part) for part in parts)
    if patch <= 1:
        return f"{major}.{minor}"
    return f"{major}.{minor}.{patch - 1}"


def game_version_chain(constraints: FetchConstraints) -> Iterator[str]:
    current: Optional[str] = constraints.game_version
    while current is not None:
        yield current
        if not constraints.allow_fallback:
            return
        current = next_version_down(current)


def _as_utc(value: Optional[datetime]) -> datetime:
    if value is None:
        return _EPOCH
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> str:
    """Render a registry date as UTC with whole seconds, e.g. ``2024-03-01T10:30:45Z``."""
    if value is None:
        return ""
    return _as_utc(value).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def most_recent(candidates: List[T], date_of: Callable[[T], Optional[datetime]]) -> T:
    # sorted() is stable, so equal dates keep the registry's order.
    return sorted(candidates, key=lambda item: _as_utc(date_of(item)), reverse=True)[0]


class PlatformResolver(Protocol):
    def resolve(self, project_id: str, constraints: FetchConstraints) -> RemoteArtifact:  # pragma: no cover - protocol
        ...


class ModrinthResolver:
    platform = Platform.MODRINTH

    def __init__(self, client: ModrinthClient):
        self.client = client

    def resolve(self, project_id: str, constraints: FetchConstraints) -> RemoteArtifact:
        try:
            project = self.client.get_project(project_id)
        except NotFoundError as exc:
            raise ModNotFoundError(self.platform.value, project_id) from exc

        loader = Loader(constraints.loader).value
        for game_version in game_version_chain(constraints):
            try:
                versions = self.client.list_versions(project_id, game_version, loader)
            except NotFoundError as exc:
                raise ModNotFoundError(self.platform.value, project_id) from exc

            candidates = self._filter(versions, constraints, game_version)
            if not candidates:
                log.debug("resolve.no_candidates", platform=self.platform.value, project_id=project_id, game_version=game_version)
                continue

            selected = most_recent(candidates, lambda version: version.date_published)
            file = selected.primary_file()
            if file is None or not file.hashes.sha1 or not file.url or not file.filename:
                raise NoCompatibleFileError(self.platform.value, project_id, "selected version has no usable file")
            return RemoteArtifact(
                name=project.title,
                file_name=file.filename,
                release_date=format_timestamp(selected.date_published),
                hash=file.hashes.sha1,
                download_url=file.url,
            )

        raise NoCompatibleFileError(self.platform.value, project_id)

    @staticmethod
    def _filter(versions: List[Version], constraints: FetchConstraints, game_version: str) -> List[Version]:
        if constraints.fixed_version:
            return [v for v in versions if v.version_number == constraints.fixed_version]
        return [
            v
            for v in versions
            if constraints.allows(v.version_type)
            and game_version in v.game_versions
            and v.status not in MODRINTH_UNAVAILABLE_STATUSES
        ]


class CurseforgeResolver:
    platform = Platform.CURSEFORGE

    def __init__(self, client: CurseforgeClient):
        self.client = client

    def resolve(self, project_id: str, constraints: FetchConstraints) -> RemoteArtifact:
        try:
            mod = self.client.get_mod(project_id)
        except NotFoundError as exc:
            raise ModNotFoundError(self.platform.value, project_id) from exc

        loader_name = Loader(constraints.loader).value
        mod_loader = loader_type(loader_name)
        if mod_loader is None:
            raise NoCompatibleFileError(
                self.platform.value, project_id, f"loader '{loader_name}' is not supported by CurseForge"
            )

        for game_version in game_version_chain(constraints):
            try:
                files = self.client.list_files(project_id, game_version, mod_loader)
            except NotFoundError as exc:
                raise ModNotFoundError(self.platform.value, project_id) from exc

            candidates = self._filter(files, constraints, game_version)
            if not candidates:
                log.debug("resolve.no_candidates", platform=self.platform.value, project_id=project_id, game_version=game_version)
                continue

            selected = most_recent(candidates, lambda file: file.fileDate)
            sha1 = selected.hash_value(HashAlgo.SHA1)
            if not sha1 or not selected.downloadUrl or not selected.fileName:
                raise NoCompatibleFileError(self.platform.value, project_id, "selected file has no sha1 hash or download url")
            return RemoteArtifact(
                name=mod.name,
                file_name=selected.fileName,
                release_date=format_timestamp(selected.fileDate),
                hash=sha1,
                download_url=selected.downloadUrl,
            )

        raise NoCompatibleFileError(self.platform.value, project_id)

    @staticmethod
    def _filter(files: List[File], constraints: FetchConstraints, game_version: str) -> List[File]:
        if constraints.fixed_version:
            wanted = constraints.fixed_version.lower()
            return [f for f in files if f.fileName.lower() == wanted]

        result = []
        for file in files:
            try:
                release_type = RELEASE_TYPE_NAMES[FileReleaseType(file.releaseType)]
            except ValueError:
                continue
            if not constraints.allows(release_type):
                continue
            if not file.supports_game_version(game_version):
                continue
            if file.fileStatus not in ACCEPTABLE_STATUSES or not file.isAvailable:
                continue
            result.append(file)
        return result


class VersionResolver:
    """Resolves (platform, project id, constraints) to one downloadable artifact."""

    def __init__(self, telemetry: Optional[TelemetrySink] = None):
        self._resolvers: Dict[str, PlatformResolver] = {}
        self.telemetry = telemetry or NullSink()

    def register(self, platform: Platform, resolver: PlatformResolver) -> None:
        self._resolvers[platform.value] = resolver

    def resolve(self, platform: Platform | str, project_id: str, constraints: FetchConstraints) -> RemoteArtifact:
        raw = platform.value if isinstance(platform, Platform) else str(platform)
        parsed = parse_platform(raw)
        try:
            if parsed is None or parsed.value not in self._resolvers:
                raise UnknownPlatformError(raw, project_id)
            artifact = self._resolvers[parsed.value].resolve(project_id, constraints)
        except (ResolutionError, TransientApiError) as exc:
            self.telemetry.record(
                "platform.fetch_mod",
                platform=raw,
                project_id=project_id,
                success=False,
                error_kind=type(exc).__name__,
                timeout=isinstance(exc, RequestTimeoutError),
            )
            raise
        self.telemetry.record("platform.fetch_mod", platform=parsed.value, project_id=project_id, success=True)
        return artifact


def build_version_resolver(
    modrinth: ModrinthClient,
    curseforge: CurseforgeClient,
    telemetry: Optional[TelemetrySink] = None,
) -> VersionResolver:
    resolver = VersionResolver(telemetry)
    resolver.register(Platform.MODRINTH, ModrinthResolver(modrinth))
    resolver.register(Platform.CURSEFORGE, CurseforgeResolver(curseforge))
    return resolver
