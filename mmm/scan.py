from __future__ import annotations

import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from .errors import AbortedError, MmmError, RequestTimeoutError
from .files import list_jar_files, sha1_file
from .identify import IdentifyResult
from .logs import get_logger
from .models import ModLock, Platform, ScanCandidate, ScanMatch
from .services import Services

log = get_logger(__name__)


@dataclass(frozen=True)
class ScanRequest:
    prefer: Platform = Platform.MODRINTH
    add: bool = False
    quiet: bool = False
    interactive: bool = False


@dataclass
class ScanReport:
    candidates: List[ScanCandidate] = field(default_factory=list)
    result: IdentifyResult = field(default_factory=IdentifyResult)
    persisted: bool = False
    blocked_by_unsure: bool = False
    config_changed: bool = False
    lock_changed: bool = False
    failures: List[Tuple[ScanMatch, str]] = field(default_factory=list)

    @property
    def all_managed(self) -> bool:
        return not self.candidates


def unmanaged_files(services: Services, folder: Path, lock: ModLock) -> List[Path]:
    managed = {entry.file_name for entry in lock.entries}
    return [path for path in list_jar_files(folder, services.paths.root) if path.name not in managed]


def hash_candidates(services: Services, paths: List[Path]) -> List[ScanCandidate]:
    """sha1 every file in parallel, bounded by the CPU count."""
    if not paths:
        return []
    workers = max(1, min(os.cpu_count() or 1, len(paths)))

    def build(path: Path) -> ScanCandidate:
        try:
            sha1 = sha1_file(path, services.cancel)
        except OSError as exc:
            raise MmmError(f"Could not read {path.name}: {exc}") from exc
        return ScanCandidate(path=path, file_name=path.name, sha1=sha1)

    try:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            return list(pool.map(build, paths))
    except RequestTimeoutError:
        if services.cancel.is_set():
            raise AbortedError() from None
        raise


def run_scan(
    services: Services,
    request: ScanRequest,
    confirm: Optional[Callable[[IdentifyResult], bool]] = None,
) -> ScanReport:
    config, lock = services.coordinator.ensure_config_and_lock(request.quiet)
    folder = services.paths.mods_folder(config)
    report = ScanReport()

    report.candidates = hash_candidates(services, unmanaged_files(services, folder, lock))
    if not report.candidates:
        return report

    report.result = services.identifier.identify(report.candidates, request.prefer)
    services.telemetry.record(
        "scan.identified",
        prefer=Platform(request.prefer).value,
        matches=len(report.result.matches),
        unknown=len(report.result.unknown),
        unsure=len(report.result.unsure),
    )
    if not report.result.matches:
        return report

    wants_persist = request.add
    if not wants_persist and not request.quiet and request.interactive and confirm is not None:
        wants_persist = confirm(report.result)
    if not wants_persist:
        return report

    if report.result.unsure:
        # Any unsure file blocks persisting the whole batch.
        report.blocked_by_unsure = True
        log.warning("scan.persist_skipped", unsure=len(report.result.unsure))
        return report

    for match in report.result.matches:
        try:
            upserted = services.coordinator.upsert_config_and_lock(
                config, lock, match.platform, match.project_id, match.as_artifact()
            )
        except MmmError as exc:
            log.warning("scan.persist_failed", file=match.file_name, error=str(exc))
            report.failures.append((match, str(exc)))
            continue
        config, lock = upserted.config, upserted.lock
        report.config_changed = report.config_changed or upserted.config_changed
        report.lock_changed = report.lock_changed or upserted.lock_changed

    services.coordinator.write(
        config, lock, config_changed=report.config_changed, lock_changed=report.lock_changed
    )
    report.persisted = True
    return report
