from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .config import MmmSettings
from .curseforge import CurseforgeClient
from .documents import DocumentPaths
from .identify import ContentIdentifier, CurseforgeLookup, ModrinthLookup
from .minecraft import latest_release
from .modrinth import ModrinthClient
from .models import Platform
from .persistence import PersistenceCoordinator
from .resolver import VersionResolver, build_version_resolver
from .telemetry import LogSink, TelemetrySink
from .transport import Transport


@dataclass
class Services:
    """Everything a command needs, wired once per invocation."""

    paths: DocumentPaths
    transport: Transport
    resolver: VersionResolver
    identifier: ContentIdentifier
    coordinator: PersistenceCoordinator
    telemetry: TelemetrySink
    cancel: threading.Event = field(default_factory=threading.Event)


def build_services(
    config_path: Path,
    settings: MmmSettings,
    *,
    telemetry: Optional[TelemetrySink] = None,
    cancel: Optional[threading.Event] = None,
) -> Services:
    telemetry = telemetry or LogSink()
    cancel = cancel or threading.Event()
    transport = Transport(settings, cancel=cancel)
    modrinth = ModrinthClient(transport)
    curseforge = CurseforgeClient(transport)
    paths = DocumentPaths(config_path)
    return Services(
        paths=paths,
        transport=transport,
        resolver=build_version_resolver(modrinth, curseforge, telemetry),
        identifier=ContentIdentifier(
            {
                Platform.MODRINTH: ModrinthLookup(modrinth, cancel=cancel),
                Platform.CURSEFORGE: CurseforgeLookup(curseforge, cancel=cancel),
            },
            cancel=cancel,
            telemetry=telemetry,
        ),
        coordinator=PersistenceCoordinator(
            paths,
            latest_release=lambda: latest_release(transport),
            telemetry=telemetry,
        ),
        telemetry=telemetry,
        cancel=cancel,
    )
