from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .disambiguation import DialogContext, DisambiguationSession, Prompter
from .errors import DownloadError, ResolutionError
from .files import sha1_file
from .logs import get_logger
from .models import FetchConstraints, Loader, ModsConfig, RemoteArtifact, parse_platform
from .persistence import PersistOptions, normalize_file_name, validate_artifact
from .services import Services

log = get_logger(__name__)


@dataclass(frozen=True)
class AddRequest:
    platform: str
    project_id: str
    version: Optional[str] = None
    allow_version_fallback: bool = False
    quiet: bool = False
    interactive: bool = False


@dataclass(frozen=True)
class AddResult:
    name: str
    platform: str
    project_id: str
    path: Path
    already_present: bool = False


def constraints_for(config: ModsConfig, request: AddRequest) -> FetchConstraints:
    return FetchConstraints(
        allowed_release_types=list(config.default_allowed_release_types),
        game_version=config.game_version,
        loader=Loader(config.loader),
        allow_fallback=request.allow_version_fallback,
        fixed_version=request.version or None,
    )


def ensure_downloaded(services: Services, folder: Path, file_name: str, sha1: str, url: str) -> Path:
    """Make sure ``folder/file_name`` exists with the expected sha1, downloading it if not."""
    name = normalize_file_name(file_name)
    dest = folder / name
    if dest.is_file() and sha1_file(dest, services.cancel).lower() == sha1.lower():
        log.debug("download.skipped", file=name)
        return dest

    headers = {"User-Agent": services.transport.settings.api_user_agent}
    services.transport.download(url, dest, headers=headers)
    actual = sha1_file(dest, services.cancel)
    if actual.lower() != sha1.lower():
        dest.unlink(missing_ok=True)
        raise DownloadError(f"Downloaded {name} does not match the expected hash ({actual} != {sha1}).")
    log.info("download.completed", file=name)
    return dest


def run_add(services: Services, request: AddRequest, prompter: Optional[Prompter] = None) -> AddResult:
    """Resolve, download and record one mod.

    Recoverable resolution failures go to the interactive dialog when the session
    is interactive and are raised otherwise. ``AbortedError`` from the dialog is
    left for the caller to turn into a clean exit.
    """
    config, lock = services.coordinator.ensure_config_and_lock(request.quiet)
    folder = services.paths.mods_folder(config)
    platform = request.platform.strip().lower()
    project_id = request.project_id.strip()

    known = parse_platform(platform)
    if known is not None:
        configured = config.find(known, project_id)
        locked = lock.find(known, project_id)
        if configured is not None and locked is not None:
            path = ensure_downloaded(services, folder, locked.file_name, locked.hash, locked.download_url)
            return AddResult(locked.name, known.value, project_id, path, already_present=True)

    constraints = constraints_for(config, request)
    try:
        artifact: RemoteArtifact = services.resolver.resolve(platform, project_id, constraints)
    except ResolutionError as exc:
        if request.quiet or not request.interactive or prompter is None:
            raise
        session = DisambiguationSession(
            lambda p, pid: services.resolver.resolve(p, pid, constraints),
            prompter,
            DialogContext(game_version=config.game_version, loader=Loader(config.loader).value),
            telemetry=services.telemetry,
        )
        resolved = session.run(exc)
        artifact, platform, project_id = resolved.artifact, resolved.platform, resolved.project_id

    artifact = validate_artifact(artifact)
    path = ensure_downloaded(services, folder, artifact.file_name, artifact.hash, artifact.download_url)
    services.coordinator.ensure_persisted(
        config,
        lock,
        platform,
        project_id,
        artifact,
        PersistOptions(version=request.version, allow_version_fallback=request.allow_version_fallback),
    )
    return AddResult(artifact.name, platform, project_id, path)
