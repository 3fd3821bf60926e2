"""Shared fixtures: in-memory registries and a wired Services bundle."""

from __future__ import annotations

import hashlib
import json
import threading
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

from mmm.config import MmmSettings
from mmm.curseforge import FileHash, FingerprintMatch, FingerprintResult, ModLoaderType, Mod, SortableGameVersion
from mmm.curseforge import File as CfFile
from mmm.documents import DocumentPaths
from mmm.errors import MmmError, NotFoundError
from mmm.identify import ContentIdentifier, CurseforgeLookup, ModrinthLookup
from mmm.modrinth import Project, Version, VersionFile, VersionHashes
from mmm.models import Platform
from mmm.persistence import PersistenceCoordinator
from mmm.resolver import build_version_resolver
from mmm.services import Services
from mmm.telemetry import RecordingSink


def sha1_of(data: bytes) -> str:
    return hashlib.sha1(data).hexdigest()


def modrinth_version(
    *,
    project_id: str = "sodium",
    version_number: str = "1.0.0",
    version_type: str = "release",
    game_versions: Optional[List[str]] = None,
    date: str = "2024-01-01T00:00:00Z",
    filename: str = "sodium-1.0.0.jar",
    sha1: str = "a" * 40,
    url: Optional[str] = None,
    status: str = "listed",
) -> Version:
    return Version(
        id=f"{project_id}-{version_number}",
        project_id=project_id,
        version_number=version_number,
        version_type=version_type,
        status=status,
        date_published=date,
        game_versions=game_versions if game_versions is not None else ["1.21.1"],
        loaders=["fabric"],
        files=[
            VersionFile(
                filename=filename,
                url=url if url is not None else f"https://cdn.modrinth.com/{filename}",
                primary=True,
                hashes=VersionHashes(sha1=sha1),
            )
        ],
    )


def curseforge_file(
    *,
    file_id: int = 1,
    mod_id: int = 238222,
    file_name: str = "jei-1.0.0.jar",
    release_type: int = 1,
    status: int = 4,
    available: bool = True,
    game_versions: Optional[List[str]] = None,
    date: str = "2024-01-01T00:00:00Z",
    sha1: str = "b" * 40,
    download_url: Optional[str] = None,
    fingerprint: int = 0,
) -> CfFile:
    return CfFile(
        id=file_id,
        modId=mod_id,
        isAvailable=available,
        fileName=file_name,
        releaseType=release_type,
        fileStatus=status,
        hashes=[FileHash(value=sha1, algo=1)],
        fileDate=date,
        downloadUrl=download_url if download_url is not None else f"https://edge.forgecdn.net/{file_name}",
        sortableGameVersions=[SortableGameVersion(gameVersionName=v) for v in (game_versions or ["1.21.1"])],
        fileFingerprint=fingerprint,
    )


class FakeModrinthClient:
    def __init__(self) -> None:
        self.projects: Dict[str, Project] = {}
        self.versions: Dict[str, List[Version]] = {}
        self.by_hash: Dict[str, Version] = {}
        self.hash_errors: Dict[str, MmmError] = {}
        self.version_calls: List[Tuple[str, str, str]] = []
        self.hash_calls: List[str] = []
        self._lock = threading.Lock()

    def add_project(self, project_id: str, title: str, versions: List[Version]) -> None:
        self.projects[project_id] = Project(id=project_id, slug=project_id, title=title)
        self.versions[project_id] = versions

    def get_project(self, project_id: str) -> Project:
        if project_id not in self.projects:
            raise NotFoundError(f"HTTP 404 fetching project {project_id}")
        return self.projects[project_id]

    def list_versions(self, project_id: str, game_version: str, loader: str) -> List[Version]:
        self.version_calls.append((project_id, game_version, loader))
        if project_id not in self.versions:
            raise NotFoundError(f"HTTP 404 fetching versions of {project_id}")
        return [v for v in self.versions[project_id] if game_version in v.game_versions]

    def version_for_hash(self, sha1: str) -> Version:
        with self._lock:
            self.hash_calls.append(sha1)
        if sha1 in self.hash_errors:
            raise self.hash_errors[sha1]
        if sha1 not in self.by_hash:
            raise NotFoundError(f"HTTP 404 fetching version_file/{sha1}")
        return self.by_hash[sha1]


class FakeCurseforgeClient:
    def __init__(self) -> None:
        self.mods: Dict[str, Mod] = {}
        self.files: Dict[str, List[CfFile]] = {}
        self.matches: List[FingerprintMatch] = []
        self.fingerprint_error: Optional[MmmError] = None
        self.fingerprint_calls: List[List[int]] = []

    def add_mod(self, project_id: str, name: str, files: List[CfFile]) -> None:
        self.mods[project_id] = Mod(id=int(project_id), name=name, slug=name.lower())
        self.files[project_id] = files

    def get_mod(self, project_id: str) -> Mod:
        if project_id not in self.mods:
            raise NotFoundError(f"HTTP 404 fetching mod {project_id}")
        return self.mods[project_id]

    def list_files(self, project_id: str, game_version: str, loader: ModLoaderType) -> List[CfFile]:
        return [f for f in self.files.get(project_id, []) if f.supports_game_version(game_version)]

    def match_fingerprints(self, fingerprints: List[int]) -> FingerprintResult:
        self.fingerprint_calls.append(list(fingerprints))
        if self.fingerprint_error is not None:
            raise self.fingerprint_error
        return FingerprintResult(exactMatches=[m for m in self.matches if m.fingerprint in fingerprints])


class FakeTransport:
    """Serves downloads from memory; records every url fetched."""

    def __init__(self) -> None:
        self.settings = MmmSettings()
        self.payloads: Dict[str, bytes] = {}
        self.downloads: List[str] = []

    def download(self, url: str, dest: Path, headers: Optional[Dict[str, str]] = None) -> None:
        self.downloads.append(url)
        if url not in self.payloads:
            raise NotFoundError(f"HTTP 404 fetching {url}")
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(self.payloads[url])


def fingerprint_by_name(mapping: Dict[str, int]):
    def fingerprint(path: Path) -> int:
        return mapping[path.name]

    return fingerprint


def write_config(path: Path, **overrides) -> None:
    document = {
        "loader": "fabric",
        "gameVersion": "1.21.1",
        "defaultAllowedReleaseTypes": ["release", "beta"],
        "modsFolder": "mods",
        "mods": [],
    }
    document.update(overrides)
    path.write_text(json.dumps(document, indent=2), encoding="utf-8")


@pytest.fixture
def modrinth() -> FakeModrinthClient:
    return FakeModrinthClient()


@pytest.fixture
def curseforge() -> FakeCurseforgeClient:
    return FakeCurseforgeClient()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    (tmp_path / "mods").mkdir()
    return tmp_path


@pytest.fixture
def services(workspace: Path, modrinth, curseforge, sink) -> Services:
    cancel = threading.Event()
    paths = DocumentPaths(workspace / "modlist.json")
    fingerprints: Dict[str, int] = {}
    services = Services(
        paths=paths,
        transport=FakeTransport(),
        resolver=build_version_resolver(modrinth, curseforge, sink),
        identifier=ContentIdentifier(
            {
                Platform.MODRINTH: ModrinthLookup(modrinth, cancel=cancel),
                Platform.CURSEFORGE: CurseforgeLookup(
                    curseforge, cancel=cancel, fingerprint=fingerprint_by_name(fingerprints)
                ),
            },
            cancel=cancel,
            telemetry=sink,
        ),
        coordinator=PersistenceCoordinator(paths, latest_release=lambda: "1.21.1", telemetry=sink),
        telemetry=sink,
        cancel=cancel,
    )
    services.fingerprints = fingerprints
    return services
