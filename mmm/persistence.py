from __future__ import annotations

import re
from dataclasses import dataclass, replace
from pathlib import PurePosixPath, PureWindowsPath
from typing import Callable, Optional, Tuple

from . import documents
from .documents import DocumentPaths
from .errors import ConfigNotFoundError, ValidationError
from .logs import get_logger
from .models import (
    Loader,
    ModConfigEntry,
    ModLock,
    ModLockEntry,
    ModsConfig,
    Platform,
    ReleaseType,
    RemoteArtifact,
)
from .telemetry import NullSink, TelemetrySink

log = get_logger(__name__)

_DRIVE_PREFIX = re.compile(r"^[A-Za-z]:")


@dataclass(frozen=True)
class PersistOptions:
    version: Optional[str] = None
    allow_version_fallback: bool = False


@dataclass(frozen=True)
class EnsureResult:
    config: ModsConfig
    lock: ModLock
    config_added: bool
    lock_added: bool


@dataclass(frozen=True)
class UpsertResult:
    config: ModsConfig
    lock: ModLock
    config_added: bool = False
    config_updated: bool = False
    lock_added: bool = False
    lock_updated: bool = False

    @property
    def config_changed(self) -> bool:
        return self.config_added or self.config_updated

    @property
    def lock_changed(self) -> bool:
        return self.lock_added or self.lock_updated


def normalize_file_name(value: str) -> str:
    """Return ``value`` as a bare ``.jar`` file name or raise ValidationError."""
    name = (value or "").strip()
    if not name:
        raise ValidationError("File name is empty.")
    if name.startswith("\\\\") or name.startswith("//"):
        raise ValidationError(f"File name '{name}' must not be a network path.")
    if _DRIVE_PREFIX.match(name):
        raise ValidationError(f"File name '{name}' must not include a drive.")
    if PurePosixPath(name).name != name or PureWindowsPath(name).name != name:
        raise ValidationError(f"File name '{name}' must not contain path separators.")
    if name in {".", ".."}:
        raise ValidationError(f"File name '{name}' is not a file.")
    if not name.lower().endswith(".jar"):
        raise ValidationError(f"File name '{name}' must end in .jar.")
    return name


def validate_artifact(artifact: RemoteArtifact) -> RemoteArtifact:
    """Check an artifact is complete enough to become a lock entry."""
    if not artifact.name.strip():
        raise ValidationError("Resolved mod has no name.")
    file_name = normalize_file_name(artifact.file_name)
    if not artifact.hash.strip():
        raise ValidationError(f"Resolved file '{file_name}' has no hash.")
    if not artifact.release_date.strip():
        raise ValidationError(f"Resolved file '{file_name}' has no release date.")
    if not artifact.download_url.strip():
        raise ValidationError(f"Resolved file '{file_name}' has no download url.")
    return replace(artifact, file_name=file_name)


def _check_key(platform: Platform | str, project_id: str) -> str:
    value = platform.value if isinstance(platform, Platform) else str(platform or "")
    if not value.strip():
        raise ValidationError("Platform is required.")
    if not (project_id or "").strip():
        raise ValidationError("Project id is required.")
    try:
        return Platform(value.strip().lower()).value
    except ValueError as exc:
        raise ValidationError(f"Unknown platform '{value}'.") from exc


def _lock_entry(platform: str, project_id: str, artifact: RemoteArtifact) -> ModLockEntry:
    return ModLockEntry(
        type=platform,
        id=project_id,
        name=artifact.name,
        file_name=artifact.file_name,
        released_on=artifact.release_date,
        hash=artifact.hash,
        download_url=artifact.download_url,
    )


def _lock_differs(entry: ModLockEntry, artifact: RemoteArtifact) -> bool:
    # Hash comparison ignores hex case; every other field is exact.
    return (
        entry.name != artifact.name
        or entry.file_name != artifact.file_name
        or entry.released_on != artifact.release_date
        or entry.hash.lower() != artifact.hash.lower()
        or entry.download_url != artifact.download_url
    )


class PersistenceCoordinator:
    """Keeps the config (desired state) and lock (installed state) documents consistent."""

    def __init__(
        self,
        paths: DocumentPaths,
        *,
        latest_release: Callable[[], str],
        telemetry: Optional[TelemetrySink] = None,
    ):
        self.paths = paths
        self._latest_release = latest_release
        self.telemetry = telemetry or NullSink()

    def ensure_config_and_lock(self, quiet: bool) -> Tuple[ModsConfig, ModLock]:
        try:
            config = documents.read_config(self.paths)
        except ConfigNotFoundError:
            if quiet:
                raise
            config = self._init_config()

        if not documents.lock_exists(self.paths):
            documents.write_lock(self.paths, ModLock())
            log.info("lock.created", path=str(self.paths.lock_path))
        return config, documents.read_lock(self.paths)

    def _init_config(self) -> ModsConfig:
        game_version = self._latest_release()
        config = ModsConfig(
            loader=Loader.FABRIC,
            game_version=game_version,
            default_allowed_release_types=[ReleaseType.RELEASE, ReleaseType.BETA],
            mods_folder="mods",
            mods=[],
        )
        documents.write_config(self.paths, config)
        self.telemetry.record("persistence.config_initialized", game_version=game_version)
        log.info("config.created", path=str(self.paths.config_path), game_version=game_version)
        return config

    def ensure_persisted(
        self,
        config: ModsConfig,
        lock: ModLock,
        platform: Platform | str,
        project_id: str,
        artifact: RemoteArtifact,
        options: Optional[PersistOptions] = None,
    ) -> EnsureResult:
        """Add config and lock entries that are missing; existing entries are left alone."""
        options = options or PersistOptions()
        key = _check_key(platform, project_id)
        new_config = config.model_copy(deep=True)
        new_lock = lock.model_copy(deep=True)

        config_added = False
        if new_config.find(key, project_id) is None:
            new_config.mods.append(self._config_entry(key, project_id, artifact.name, options))
            config_added = True

        lock_added = False
        if new_lock.find(key, project_id) is None:
            validated = validate_artifact(artifact)
            new_lock.entries.append(_lock_entry(key, project_id, validated))
            lock_added = True

        if config_added:
            documents.write_config(self.paths, new_config)
        if lock_added:
            documents.write_lock(self.paths, new_lock)

        self.telemetry.record(
            "persistence.ensure", platform=key, project_id=project_id, config_added=config_added, lock_added=lock_added
        )
        return EnsureResult(config=new_config, lock=new_lock, config_added=config_added, lock_added=lock_added)

    def upsert_config_and_lock(
        self,
        config: ModsConfig,
        lock: ModLock,
        platform: Platform | str,
        project_id: str,
        artifact: RemoteArtifact,
        options: Optional[PersistOptions] = None,
    ) -> UpsertResult:
        """Insert or update the entries for one mod without writing anything."""
        options = options or PersistOptions()
        key = _check_key(platform, project_id)
        validated = validate_artifact(artifact)
        new_config = config.model_copy(deep=True)
        new_lock = lock.model_copy(deep=True)

        config_added = config_updated = False
        entry = new_config.find(key, project_id)
        if entry is None:
            new_config.mods.append(self._config_entry(key, project_id, validated.name, options))
            config_added = True
        elif validated.name.strip() and entry.name != validated.name:
            entry.name = validated.name
            config_updated = True

        lock_added = lock_updated = False
        existing = new_lock.find(key, project_id)
        if existing is None:
            new_lock.entries.append(_lock_entry(key, project_id, validated))
            lock_added = True
        elif _lock_differs(existing, validated):
            index = new_lock.entries.index(existing)
            new_lock.entries[index] = _lock_entry(key, project_id, validated)
            lock_updated = True

        return UpsertResult(
            config=new_config,
            lock=new_lock,
            config_added=config_added,
            config_updated=config_updated,
            lock_added=lock_added,
            lock_updated=lock_updated,
        )

    def write(self, config: ModsConfig, lock: ModLock, *, config_changed: bool, lock_changed: bool) -> None:
        if config_changed:
            documents.write_config(self.paths, config)
        if lock_changed:
            documents.write_lock(self.paths, lock)

    @staticmethod
    def _config_entry(platform: str, project_id: str, name: str, options: PersistOptions) -> ModConfigEntry:
        if not name.strip():
            raise ValidationError("Resolved mod has no name.")
        return ModConfigEntry(
            type=platform,
            id=project_id,
            name=name,
            version=options.version or None,
            allow_version_fallback=True if options.allow_version_fallback else None,
        )
