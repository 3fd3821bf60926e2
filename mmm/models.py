from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Platform(str, Enum):
    CURSEFORGE = "curseforge"
    MODRINTH = "modrinth"

    @property
    def alternate(self) -> "Platform":
        return Platform.CURSEFORGE if self is Platform.MODRINTH else Platform.MODRINTH


class Loader(str, Enum):
    BUKKIT = "bukkit"
    BUNGEECORD = "bungeecord"
    CAULDRON = "cauldron"
    DATAPACK = "datapack"
    FABRIC = "fabric"
    FOLIA = "folia"
    FORGE = "forge"
    LITELOADER = "liteloader"
    MODLOADER = "modloader"
    NEOFORGE = "neoforge"
    PAPER = "paper"
    PURPUR = "purpur"
    QUILT = "quilt"
    RIFT = "rift"
    SPIGOT = "spigot"
    SPONGE = "sponge"
    VELOCITY = "velocity"
    WATERFALL = "waterfall"


class ReleaseType(str, Enum):
    ALPHA = "alpha"
    BETA = "beta"
    RELEASE = "release"


def parse_platform(value: str) -> Optional[Platform]:
    """Return the platform named by ``value`` (case-insensitive) or None."""
    try:
        return Platform(value.strip().lower())
    except ValueError:
        return None


class _Document(BaseModel):
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)


class ModConfigEntry(_Document):
    type: Platform
    id: str
    name: str = ""
    allowed_release_types: Optional[List[ReleaseType]] = Field(default=None, alias="allowedReleaseTypes")
    allow_version_fallback: Optional[bool] = Field(default=None, alias="allowVersionFallback")
    version: Optional[str] = None


class ModsConfig(_Document):
    loader: Loader
    game_version: str = Field(alias="gameVersion")
    default_allowed_release_types: List[ReleaseType] = Field(alias="defaultAllowedReleaseTypes")
    mods_folder: str = Field(default="mods", alias="modsFolder")
    mods: List[ModConfigEntry] = Field(default_factory=list)

    def find(self, platform: Platform | str, project_id: str) -> Optional[ModConfigEntry]:
        key = Platform(platform).value
        for mod in self.mods:
            if mod.type == key and mod.id == project_id:
                return mod
        return None


class ModLockEntry(_Document):
    type: Platform
    id: str
    name: str
    file_name: str = Field(alias="fileName")
    released_on: str = Field(alias="releasedOn")
    hash: str
    download_url: str = Field(alias="downloadUrl")


class ModLock(BaseModel):
    """The installed-state document; serialized as a bare JSON array."""

    entries: List[ModLockEntry] = Field(default_factory=list)

    def find(self, platform: Platform | str, project_id: str) -> Optional[ModLockEntry]:
        key = Platform(platform).value
        for entry in self.entries:
            if entry.type == key and entry.id == project_id:
                return entry
        return None


@dataclass(frozen=True)
class RemoteArtifact:
    name: str
    file_name: str
    release_date: str
    hash: str
    download_url: str


@dataclass(frozen=True)
class FetchConstraints:
    allowed_release_types: List[ReleaseType]
    game_version: str
    loader: Loader
    allow_fallback: bool = False
    fixed_version: Optional[str] = None

    def allows(self, release_type: str) -> bool:
        return any(ReleaseType(allowed).value == release_type for allowed in self.allowed_release_types)


@dataclass(frozen=True)
class ScanCandidate:
    path: Path
    file_name: str
    sha1: str


@dataclass(frozen=True)
class ScanMatch:
    candidate: ScanCandidate
    platform: Platform
    project_id: str
    name: str
    release_date: str
    download_url: str

    @property
    def file_name(self) -> str:
        return self.candidate.file_name

    def as_artifact(self) -> RemoteArtifact:
        return RemoteArtifact(
            name=self.name,
            file_name=self.candidate.file_name,
            release_date=self.release_date,
            hash=self.candidate.sha1,
            download_url=self.download_url,
        )


@dataclass(frozen=True)
class ScanUnsure:
    path: Path
    error: str


@dataclass
class LookupResult:
    matches: List[ScanMatch] = field(default_factory=list)
    misses: List[ScanCandidate] = field(default_factory=list)
    unsure: List[ScanUnsure] = field(default_factory=list)
