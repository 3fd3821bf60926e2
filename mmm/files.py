from __future__ import annotations

import fnmatch
import hashlib
import threading
from pathlib import Path, PurePosixPath
from typing import List, Optional

from .errors import RequestTimeoutError

IGNORE_FILENAME = ".mmmignore"
DISABLED_PATTERN = "**/*.disabled"
CHUNK_SIZE = 32 * 1024


def sha1_file(path: Path, cancel: Optional[threading.Event] = None) -> str:
    sha = hashlib.sha1()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
            if cancel is not None and cancel.is_set():
                raise RequestTimeoutError(f"Cancelled while hashing {path.name}")
            sha.update(chunk)
    return sha.hexdigest()


def list_ignore_patterns(root: Path) -> List[str]:
    """Patterns from ``.mmmignore`` in ``root``; disabled mods are always ignored."""
    patterns = [DISABLED_PATTERN]
    ignore_file = root / IGNORE_FILENAME
    if not ignore_file.exists():
        return patterns
    for line in ignore_file.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            patterns.append(line)
    return patterns


def _glob_match(pattern_parts: List[str], target_parts: List[str]) -> bool:
    if not pattern_parts:
        return not target_parts
    head, rest = pattern_parts[0], pattern_parts[1:]
    if head == "**":
        return any(_glob_match(rest, target_parts[skip:]) for skip in range(len(target_parts) + 1))
    if not target_parts:
        return False
    return fnmatch.fnmatchcase(target_parts[0], head) and _glob_match(rest, target_parts[1:])


def glob_match(pattern: str, relative_path: str) -> bool:
    pattern = pattern.strip().replace("\\", "/")
    if pattern.startswith("./"):
        pattern = pattern[2:]
    target = relative_path.replace("\\", "/")
    if target.startswith("./"):
        target = target[2:]
    return _glob_match(pattern.split("/"), target.split("/"))


def is_ignored(root: Path, path: Path, patterns: List[str]) -> bool:
    try:
        relative = path.resolve().relative_to(root.resolve())
    except ValueError:
        return False
    rel = PurePosixPath(*relative.parts).as_posix()
    return any(glob_match(pattern, rel) for pattern in patterns if pattern.strip())


def list_jar_files(mods_folder: Path, root: Path) -> List[Path]:
    """Non-ignored ``.jar`` files directly inside the mods folder, sorted by name."""
    if not mods_folder.is_dir():
        return []
    patterns = list_ignore_patterns(root)
    jars = [
        entry
        for entry in mods_folder.iterdir()
        if entry.is_file() and entry.suffix.lower() == ".jar" and not is_ignored(root, entry, patterns)
    ]
    return sorted(jars, key=lambda entry: entry.name)
