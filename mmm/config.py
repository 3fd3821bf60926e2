from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from . import __version__

DEFAULT_CONFIG_FILENAME = "modlist.json"
DEFAULT_ENV_FILENAME = ".env"
DEFAULT_USER_AGENT = f"mmm-cli/{__version__}"

MODRINTH_API_URL = "https://api.modrinth.com"
CURSEFORGE_API_URL = "https://api.curseforge.com/v1"
MINECRAFT_MANIFEST_URL = "https://launchermeta.mojang.com/mc/game/version_manifest.json"


class EnvSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="MMM_", extra="ignore")

    # The registry keys are also read unprefixed, which is how both registries document them.
    curseforge_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("MMM_CURSEFORGE_API_KEY", "CURSEFORGE_API_KEY"),
    )
    modrinth_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("MMM_MODRINTH_API_KEY", "MODRINTH_API_KEY"),
    )
    curseforge_api_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("MMM_CURSEFORGE_API_URL", "CURSEFORGE_API_URL"),
    )
    modrinth_api_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("MMM_MODRINTH_API_URL", "MODRINTH_API_URL"),
    )
    api_user_agent: Optional[str] = None
    minecraft_manifest_url: Optional[str] = None
    request_timeout: Optional[float] = None
    download_timeout: Optional[float] = None
    max_retries: Optional[int] = None
    requests_per_second: Optional[float] = None


class MmmSettings(BaseModel):
    api_user_agent: str = DEFAULT_USER_AGENT
    curseforge_api_key: Optional[str] = None
    modrinth_api_key: Optional[str] = None
    curseforge_api_url: str = CURSEFORGE_API_URL
    modrinth_api_url: str = MODRINTH_API_URL
    minecraft_manifest_url: str = MINECRAFT_MANIFEST_URL
    request_timeout: float = 15.0
    download_timeout: float = 300.0
    max_retries: int = 3
    requests_per_second: float = 10.0


def load_settings(base_dir: Path | None = None) -> MmmSettings:
    """Load settings from the environment and an optional .env file in ``base_dir``."""

    base = Path(base_dir) if base_dir is not None else Path.cwd()
    env_file = base / DEFAULT_ENV_FILENAME
    env_settings = EnvSettings(
        _env_file=env_file if env_file.exists() else None,
    )

    defaults = MmmSettings()
    return MmmSettings(
        api_user_agent=env_settings.api_user_agent or defaults.api_user_agent,
        curseforge_api_key=env_settings.curseforge_api_key or None,
        modrinth_api_key=env_settings.modrinth_api_key or None,
        curseforge_api_url=(env_settings.curseforge_api_url or defaults.curseforge_api_url).rstrip("/"),
        modrinth_api_url=(env_settings.modrinth_api_url or defaults.modrinth_api_url).rstrip("/"),
        minecraft_manifest_url=env_settings.minecraft_manifest_url or defaults.minecraft_manifest_url,
        request_timeout=env_settings.request_timeout or defaults.request_timeout,
        download_timeout=env_settings.download_timeout or defaults.download_timeout,
        max_retries=env_settings.max_retries if env_settings.max_retries is not None else defaults.max_retries,
        requests_per_second=env_settings.requests_per_second or defaults.requests_per_second,
    )
