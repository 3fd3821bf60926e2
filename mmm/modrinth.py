from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlencode

from pydantic import BaseModel, Field
from pydantic import ValidationError as PayloadError

from .errors import TransientApiError
from .transport import Transport


class VersionHashes(BaseModel):
    sha1: Optional[str] = None
    sha512: Optional[str] = None


class VersionFile(BaseModel):
    filename: str = ""
    url: str = ""
    primary: bool = False
    size: int = 0
    hashes: VersionHashes = Field(default_factory=VersionHashes)


class Version(BaseModel):
    id: str = ""
    project_id: str = ""
    name: str = ""
    version_number: str = ""
    version_type: str = ""
    status: str = "listed"
    date_published: Optional[datetime] = None
    game_versions: List[str] = Field(default_factory=list)
    loaders: List[str] = Field(default_factory=list)
    files: List[VersionFile] = Field(default_factory=list)

    def primary_file(self) -> Optional[VersionFile]:
        for file in self.files:
            if file.primary:
                return file
        return self.files[0] if self.files else None


class Project(BaseModel):
    id: str = ""
    slug: str = ""
    title: str = ""


def _parse(model, payload: Any, url: str):
    try:
        return model.model_validate(payload)
    except PayloadError as exc:
        raise TransientApiError(f"Unexpected Modrinth response from {url}: {exc}") from exc


class ModrinthClient:
    """Thin client over the Modrinth v2 API."""

    def __init__(self, transport: Transport):
        self.transport = transport
        self.api_base = f"{transport.settings.modrinth_api_url}/v2"

    def _headers(self) -> Dict[str, str]:
        headers = {
            "User-Agent": self.transport.settings.api_user_agent,
            "Accept": "application/json",
        }
        if self.transport.settings.modrinth_api_key:
            headers["Authorization"] = self.transport.settings.modrinth_api_key
        return headers

    def get_project(self, project_id: str) -> Project:
        url = f"{self.api_base}/project/{quote(project_id, safe='')}"
        return _parse(Project, self.transport.get_json(url, headers=self._headers()), url)

    def list_versions(self, project_id: str, game_version: str, loader: str) -> List[Version]:
        params = {
            "game_versions": json.dumps([game_version]),
            "loaders": json.dumps([loader]),
        }
        url = f"{self.api_base}/project/{quote(project_id, safe='')}/version?{urlencode(params)}"
        payload: Any = self.transport.get_json(url, headers=self._headers())
        if not isinstance(payload, list):
            raise TransientApiError(f"Unexpected Modrinth response from {url}: expected a list")
        return [_parse(Version, item, url) for item in payload]

    def version_for_hash(self, sha1: str) -> Version:
        url = f"{self.api_base}/version_file/{sha1}?algorithm=sha1"
        return _parse(Version, self.transport.get_json(url, headers=self._headers()), url)
