from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List

from pydantic import TypeAdapter
from pydantic import ValidationError as PayloadError

from .errors import ConfigInvalidError, ConfigNotFoundError
from .logs import get_logger
from .models import ModLock, ModLockEntry, ModsConfig

log = get_logger(__name__)

TEMP_SUFFIX = ".mmm.tmp"
BACKUP_SUFFIX = ".mmm.bak"

_LOCK_ADAPTER = TypeAdapter(List[ModLockEntry])


@dataclass(frozen=True)
class DocumentPaths:
    """Where the config, its lock file and the mods folder live."""

    config_path: Path

    @property
    def root(self) -> Path:
        return self.config_path.parent

    @property
    def lock_path(self) -> Path:
        return self.root / f"{self.config_path.stem}-lock.json"

    def mods_folder(self, config: ModsConfig) -> Path:
        folder = Path(config.mods_folder)
        return folder if folder.is_absolute() else self.root / folder


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigInvalidError(f"Invalid JSON in {path}: {exc}") from exc


def read_config(paths: DocumentPaths) -> ModsConfig:
    if not paths.config_path.exists():
        raise ConfigNotFoundError(paths.config_path)
    try:
        return ModsConfig.model_validate(_read_json(paths.config_path))
    except PayloadError as exc:
        raise ConfigInvalidError(f"Invalid configuration in {paths.config_path}: {exc}") from exc


def write_config(paths: DocumentPaths, config: ModsConfig) -> None:
    payload = config.model_dump(mode="json", by_alias=True, exclude_none=True)
    atomic_write_json(paths.config_path, payload)


def lock_exists(paths: DocumentPaths) -> bool:
    return paths.lock_path.exists()


def read_lock(paths: DocumentPaths) -> ModLock:
    if not paths.lock_path.exists():
        return ModLock()
    try:
        return ModLock(entries=_LOCK_ADAPTER.validate_python(_read_json(paths.lock_path)))
    except PayloadError as exc:
        raise ConfigInvalidError(f"Invalid lock file {paths.lock_path}: {exc}") from exc


def write_lock(paths: DocumentPaths, lock: ModLock) -> None:
    payload = [entry.model_dump(mode="json", by_alias=True) for entry in lock.entries]
    atomic_write_json(paths.lock_path, payload)


def _temp_path(target: Path) -> Path:
    candidate = target.with_name(target.name + TEMP_SUFFIX)
    counter = 1
    while candidate.exists():
        candidate = target.with_name(f"{target.name}{TEMP_SUFFIX}.{counter}")
        counter += 1
    return candidate


def atomic_write_json(target: Path, payload: Any) -> None:
    atomic_write_text(target, json.dumps(payload, indent=2) + "\n")


def atomic_write_text(target: Path, text: str) -> None:
    """Write ``text`` to a sibling temp file and rename it over ``target``.

    If the direct rename fails (some platforms refuse to replace an open or
    read-only file) the current target is moved aside to a backup first and
    restored when the second rename also fails.
    """
    target.parent.mkdir(parents=True, exist_ok=True)
    temp = _temp_path(target)
    try:
        with temp.open("w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        try:
            os.replace(temp, target)
            return
        except OSError as exc:
            if not target.exists():
                raise
            log.debug("atomic_write.replace_failed", target=str(target), error=str(exc))

        backup = target.with_name(target.name + BACKUP_SUFFIX)
        os.replace(target, backup)
        try:
            os.replace(temp, target)
        except OSError:
            os.replace(backup, target)
            raise
        backup.unlink(missing_ok=True)
    finally:
        temp.unlink(missing_ok=True)
