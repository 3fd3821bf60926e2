from __future__ import annotations

from typing import Optional


class MmmError(RuntimeError):
    """Base class for errors surfaced to the user."""


class ResolutionError(MmmError):
    """A resolution failure the interactive dialog knows how to recover from."""

    def __init__(self, message: str, *, platform: str, project_id: str) -> None:
        super().__init__(message)
        self.platform = platform
        self.project_id = project_id


class UnknownPlatformError(ResolutionError):
    def __init__(self, platform: str, project_id: str = "") -> None:
        super().__init__(
            f"Unknown platform '{platform}'. Use one of: curseforge, modrinth.",
            platform=platform,
            project_id=project_id,
        )


class ModNotFoundError(ResolutionError):
    def __init__(self, platform: str, project_id: str) -> None:
        super().__init__(
            f"Mod '{project_id}' could not be found on {platform}.",
            platform=platform,
            project_id=project_id,
        )


class NoCompatibleFileError(ResolutionError):
    def __init__(self, platform: str, project_id: str, reason: Optional[str] = None) -> None:
        message = f"Mod '{project_id}' on {platform} has no file matching the configured constraints."
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message, platform=platform, project_id=project_id)


class TransientApiError(MmmError):
    """Network, decoding or unexpected-status failure talking to a registry."""

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class RequestTimeoutError(TransientApiError):
    """The request ran out of time or the run was cancelled; never retried by callers."""


class NotFoundError(MmmError):
    """The registry answered 404 for the requested resource."""


class ValidationError(MmmError):
    """A remote artifact or entry is not fit to be persisted."""


class ConfigNotFoundError(MmmError):
    def __init__(self, path) -> None:
        super().__init__(f"Configuration file not found: {path}. Run without --quiet to create one.")
        self.path = path


class ConfigInvalidError(MmmError):
    pass


class DownloadError(MmmError):
    pass


class AbortedError(MmmError):
    """The user cancelled; callers treat this as a clean exit."""

    def __init__(self) -> None:
        super().__init__("Aborted.")
