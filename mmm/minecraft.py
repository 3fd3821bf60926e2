from __future__ import annotations

from typing import List

from pydantic import BaseModel, Field
from pydantic import ValidationError as PayloadError

from .errors import TransientApiError
from .transport import Transport


class LatestVersions(BaseModel):
    release: str = ""
    snapshot: str = ""


class ManifestVersion(BaseModel):
    id: str
    type: str = ""


class VersionManifest(BaseModel):
    latest: LatestVersions = Field(default_factory=LatestVersions)
    versions: List[ManifestVersion] = Field(default_factory=list)


def fetch_manifest(transport: Transport) -> VersionManifest:
    url = transport.settings.minecraft_manifest_url
    payload = transport.get_json(url, headers={"User-Agent": transport.settings.api_user_agent})
    try:
        return VersionManifest.model_validate(payload)
    except PayloadError as exc:
        raise TransientApiError(f"Unexpected Minecraft version manifest from {url}: {exc}") from exc


def latest_release(transport: Transport) -> str:
    manifest = fetch_manifest(transport)
    if not manifest.latest.release:
        raise TransientApiError("Minecraft version manifest does not name a latest release.")
    return manifest.latest.release
