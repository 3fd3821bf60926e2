from __future__ import annotations

import struct
import threading
from datetime import datetime
from enum import IntEnum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote, urlencode

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PayloadError

from .errors import RequestTimeoutError, TransientApiError
from .transport import Transport

GAME_ID = 432
WHITESPACE = b"\t\n\r "
FINGERPRINT_CHUNK_SIZE = 1024 * 1024
_WORD = struct.Struct("<I")
_MULTIPLEX = 1540483477
_MASK = 0xFFFFFFFF


class ModLoaderType(IntEnum):
    ANY = 0
    FORGE = 1
    CAULDRON = 2
    LITELOADER = 3
    FABRIC = 4
    QUILT = 5
    NEOFORGE = 6


class FileReleaseType(IntEnum):
    RELEASE = 1
    BETA = 2
    ALPHA = 3


class FileStatus(IntEnum):
    PROCESSING = 1
    CHANGES_REQUIRED = 2
    UNDER_REVIEW = 3
    APPROVED = 4
    REJECTED = 5
    MALWARE_DETECTED = 6
    DELETED = 7
    ARCHIVED = 8
    TESTING = 9
    RELEASED = 10
    READY_FOR_REVIEW = 11
    DEPRECATED = 12
    BAKING = 13
    AWAITING_PUBLISHING = 14
    FAILED_PUBLISHING = 15


class HashAlgo(IntEnum):
    SHA1 = 1
    MD5 = 2


ACCEPTABLE_STATUSES = frozenset((FileStatus.APPROVED, FileStatus.RELEASED))

RELEASE_TYPE_NAMES = {
    FileReleaseType.RELEASE: "release",
    FileReleaseType.BETA: "beta",
    FileReleaseType.ALPHA: "alpha",
}


class FileHash(BaseModel):
    value: str = ""
    algo: int = 0


class SortableGameVersion(BaseModel):
    gameVersionName: str = ""
    gameVersion: str = ""


class File(BaseModel):
    id: int = 0
    modId: int = 0
    isAvailable: bool = False
    displayName: str = ""
    fileName: str = ""
    releaseType: int = 0
    fileStatus: int = 0
    hashes: List[FileHash] = Field(default_factory=list)
    fileDate: Optional[datetime] = None
    downloadUrl: Optional[str] = None
    gameVersions: List[str] = Field(default_factory=list)
    sortableGameVersions: List[SortableGameVersion] = Field(default_factory=list)
    fileFingerprint: int = 0
    fingerprint: int = 0

    def hash_value(self, algo: HashAlgo) -> Optional[str]:
        for entry in self.hashes:
            if entry.algo == algo and entry.value:
                return entry.value
        return None

    def supports_game_version(self, game_version: str) -> bool:
        wanted = game_version.lower()
        return any(v.gameVersionName.lower() == wanted for v in self.sortableGameVersions)


class Mod(BaseModel):
    id: int = 0
    name: str = ""
    slug: str = ""


class FingerprintMatch(BaseModel):
    id: int = 0
    file: File = Field(default_factory=File)

    @property
    def fingerprint(self) -> int:
        return self.file.fingerprint or self.file.fileFingerprint


class FingerprintResult(BaseModel):
    exactMatches: List[FingerprintMatch] = Field(default_factory=list)
    exactFingerprints: List[int] = Field(default_factory=list)
    unmatchedFingerprints: List[int] = Field(default_factory=list)

    @field_validator("exactMatches", "exactFingerprints", "unmatchedFingerprints", mode="before")
    @classmethod
    def _accept_null_or_map(cls, value: Any) -> Any:
        # The API has been observed returning null, a list, or an id-keyed map.
        if value is None:
            return []
        if isinstance(value, dict):
            return list(value.values())
        return value


def loader_type(loader: str) -> Optional[ModLoaderType]:
    try:
        return ModLoaderType[loader.strip().upper()]
    except KeyError:
        return None


def _mix_words(state: int, data: bytes) -> Tuple[int, bytes]:
    """Fold every whole little-endian word of ``data`` into ``state``; returns the leftover bytes."""
    usable = len(data) - len(data) % 4
    for (word,) in _WORD.iter_unpack(memoryview(data)[:usable]):
        word = (word * _MULTIPLEX) & _MASK
        state = ((state * _MULTIPLEX) & _MASK) ^ (((word ^ (word >> 24)) * _MULTIPLEX) & _MASK)
    return state, data[usable:]


def _finish(state: int, tail: bytes) -> int:
    if tail:
        state = ((state ^ int.from_bytes(tail, "little")) * _MULTIPLEX) & _MASK
    state = ((state ^ (state >> 13)) * _MULTIPLEX) & _MASK
    return state ^ (state >> 15)


def fingerprint_bytes(data: bytes) -> int:
    """CurseForge's MurmurHash2 variant (seed 1); whitespace bytes are skipped."""
    content = bytes(data).translate(None, WHITESPACE)
    return _finish(*_mix_words((1 ^ len(content)) & _MASK, content))


def _chunks(handle, path: Path, cancel: Optional[threading.Event]):
    for chunk in iter(lambda: handle.read(FINGERPRINT_CHUNK_SIZE), b""):
        if cancel is not None and cancel.is_set():
            raise RequestTimeoutError(f"Cancelled while fingerprinting {path.name}")
        yield chunk.translate(None, WHITESPACE)


def fingerprint_file(path: Path, cancel: Optional[threading.Event] = None) -> int:
    """Fingerprint a file in chunks.

    The seed depends on the whitespace-free length, so the file is read twice:
    once to count, once to hash.
    """
    with path.open("rb") as handle:
        length = sum(len(chunk) for chunk in _chunks(handle, path, cancel))
        handle.seek(0)
        state, tail = (1 ^ length) & _MASK, b""
        for chunk in _chunks(handle, path, cancel):
            state, tail = _mix_words(state, tail + chunk)
    return _finish(state, tail)


def _parse(model, payload: Any, url: str):
    try:
        return model.model_validate(payload)
    except PayloadError as exc:
        raise TransientApiError(f"Unexpected CurseForge response from {url}: {exc}") from exc


def _data(payload: Any, url: str) -> Any:
    if not isinstance(payload, dict) or "data" not in payload:
        raise TransientApiError(f"Unexpected CurseForge response from {url}: missing data")
    return payload["data"]


class CurseforgeClient:
    """Thin client over the CurseForge v1 API."""

    def __init__(self, transport: Transport):
        self.transport = transport
        self.api_base = transport.settings.curseforge_api_url

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.transport.settings.curseforge_api_key or "",
            "User-Agent": self.transport.settings.api_user_agent,
            "Accept": "application/json",
        }

    def get_mod(self, project_id: str) -> Mod:
        url = f"{self.api_base}/mods/{quote(project_id, safe='')}"
        return _parse(Mod, _data(self.transport.get_json(url, headers=self._headers()), url), url)

    def list_files(self, project_id: str, game_version: str, loader: ModLoaderType) -> List[File]:
        params = {"gameVersion": game_version, "modLoaderType": int(loader)}
        url = f"{self.api_base}/mods/{quote(project_id, safe='')}/files?{urlencode(params)}"
        data = _data(self.transport.get_json(url, headers=self._headers()), url)
        if not isinstance(data, list):
            raise TransientApiError(f"Unexpected CurseForge response from {url}: expected a list")
        return [_parse(File, item, url) for item in data]

    def match_fingerprints(self, fingerprints: List[int]) -> FingerprintResult:
        url = f"{self.api_base}/fingerprints/{GAME_ID}"
        payload = self.transport.post_json(url, {"fingerprints": fingerprints}, headers=self._headers())
        return _parse(FingerprintResult, _data(payload, url), url)
