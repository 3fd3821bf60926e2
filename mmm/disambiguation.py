from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, Union

from rich.console import Console
from rich.prompt import Prompt

from .errors import (
    AbortedError,
    MmmError,
    ModNotFoundError,
    NoCompatibleFileError,
    ResolutionError,
    UnknownPlatformError,
)
from .logs import get_logger
from .models import Platform, RemoteArtifact, parse_platform
from .telemetry import NullSink, TelemetrySink

log = get_logger(__name__)

CANCEL_CHOICE = "cancel"
BACK_CHOICES = ["back", "esc"]
BACK_WORDS = frozenset(BACK_CHOICES)


class Step(str, Enum):
    UNKNOWN_PLATFORM_SELECT = "unknown_platform_select"
    MOD_NOT_FOUND_CONFIRM = "mod_not_found_confirm"
    MOD_NOT_FOUND_SELECT_PLATFORM = "mod_not_found_select_platform"
    MOD_NOT_FOUND_ENTER_PROJECT_ID = "mod_not_found_enter_project_id"
    NO_FILE_CONFIRM = "no_file_confirm"
    NO_FILE_ENTER_PROJECT_ID = "no_file_enter_project_id"
    FATAL_ERROR = "fatal_error"
    DONE = "done"
    ABORTED = "aborted"


TERMINAL_STEPS = frozenset((Step.FATAL_ERROR, Step.DONE, Step.ABORTED))


@dataclass(frozen=True)
class Snapshot:
    step: Step
    candidate_platform: str
    candidate_project: str


@dataclass(frozen=True)
class DialogState:
    step: Step
    failure_platform: str
    failure_project: str
    candidate_platform: str
    candidate_project: str
    history: Tuple[Snapshot, ...] = ()
    pending_token: Optional[int] = None
    next_token: int = 1
    artifact: Optional[RemoteArtifact] = None
    error: Optional[BaseException] = None

    @property
    def terminal(self) -> bool:
        return self.step in TERMINAL_STEPS

    def snapshot(self) -> Snapshot:
        return Snapshot(self.step, self.candidate_platform, self.candidate_project)


# Events


@dataclass(frozen=True)
class SelectPlatform:
    choice: str


@dataclass(frozen=True)
class Confirm:
    yes: bool


@dataclass(frozen=True)
class SubmitProjectId:
    value: str


@dataclass(frozen=True)
class Back:
    pass


@dataclass(frozen=True)
class Cancel:
    pass


@dataclass(frozen=True)
class FetchResult:
    token: int
    platform: str
    project_id: str
    artifact: Optional[RemoteArtifact] = None
    error: Optional[BaseException] = None


Event = Union[SelectPlatform, Confirm, SubmitProjectId, Back, Cancel, FetchResult]


# Effects


@dataclass(frozen=True)
class StartFetch:
    platform: str
    project_id: str
    token: int


@dataclass(frozen=True)
class Emit:
    name: str
    attrs: Dict[str, Any] = field(default_factory=dict)


Effect = Union[StartFetch, Emit]
Transition = Tuple[DialogState, List[Effect]]


def entry_step_for(error: ResolutionError) -> Step:
    if isinstance(error, UnknownPlatformError):
        return Step.UNKNOWN_PLATFORM_SELECT
    if isinstance(error, ModNotFoundError):
        return Step.MOD_NOT_FOUND_CONFIRM
    if isinstance(error, NoCompatibleFileError):
        return Step.NO_FILE_CONFIRM
    raise TypeError(f"{type(error).__name__} has no recovery dialog")


def alternate_platform(platform: str) -> str:
    parsed = parse_platform(platform)
    return (parsed or Platform.CURSEFORGE).alternate.value


def _enter(state: DialogState, step: Step, effects: List[Effect], **changes: Any) -> DialogState:
    new_state = replace(state, step=step, **changes)
    effects.append(Emit("tui.add.state.enter", {"state": step.value}))
    return new_state


def start(error: ResolutionError) -> Transition:
    """Initial state for a recoverable resolution failure."""
    step = entry_step_for(error)
    state = DialogState(
        step=step,
        failure_platform=error.platform,
        failure_project=error.project_id,
        candidate_platform=error.platform,
        candidate_project=error.project_id,
    )
    return state, [Emit("tui.add.state.enter", {"state": step.value, "reason": type(error).__name__})]


def _start_fetch(state: DialogState, platform: str, project_id: str, effects: List[Effect]) -> DialogState:
    if state.pending_token is not None:
        effects.append(Emit("tui.add.fetch.overlapping", {"token": state.pending_token, "error": "overlapping_fetch"}))
    token = state.next_token
    effects.append(Emit("tui.add.action.fetch", {"platform": platform, "project_id": project_id, "token": token}))
    effects.append(StartFetch(platform=platform, project_id=project_id, token=token))
    return replace(
        state,
        candidate_platform=platform,
        candidate_project=project_id,
        pending_token=token,
        next_token=token + 1,
    )


def _push(state: DialogState) -> Tuple[Snapshot, ...]:
    return state.history + (state.snapshot(),)


def transition(state: DialogState, event: Event) -> Transition:
    """Apply one event; returns the next state and the effects to run.

    Events that make no sense for the current step leave the state unchanged.
    Terminal states absorb every event.
    """
    effects: List[Effect] = []
    if state.terminal:
        return state, effects

    if isinstance(event, Cancel):
        effects.append(Emit("tui.add.action.cancel", {"state": state.step.value}))
        return _enter(state, Step.ABORTED, effects, pending_token=None), effects

    if isinstance(event, Back):
        effects.append(Emit("tui.add.action.back", {"state": state.step.value}))
        if not state.history:
            return _enter(state, Step.ABORTED, effects, pending_token=None), effects
        previous = state.history[-1]
        return (
            _enter(
                state,
                previous.step,
                effects,
                history=state.history[:-1],
                candidate_platform=previous.candidate_platform,
                candidate_project=previous.candidate_project,
                pending_token=None,
            ),
            effects,
        )

    if isinstance(event, FetchResult):
        return _on_fetch_result(state, event, effects), effects

    step = state.step
    if step is Step.UNKNOWN_PLATFORM_SELECT and isinstance(event, SelectPlatform):
        if event.choice == CANCEL_CHOICE:
            effects.append(Emit("tui.add.action.cancel", {"state": step.value}))
            return _enter(state, Step.ABORTED, effects), effects
        if parse_platform(event.choice) is None:
            return state, effects
        effects.append(Emit("tui.add.action.select_platform", {"platform": event.choice}))
        return _start_fetch(state, parse_platform(event.choice).value, state.failure_project, effects), effects

    if step is Step.MOD_NOT_FOUND_CONFIRM and isinstance(event, Confirm):
        effects.append(Emit("tui.add.action.confirm", {"state": step.value, "yes": event.yes}))
        if not event.yes:
            return _enter(state, Step.ABORTED, effects), effects
        return _enter(state, Step.MOD_NOT_FOUND_SELECT_PLATFORM, effects, history=_push(state)), effects

    if step is Step.MOD_NOT_FOUND_SELECT_PLATFORM and isinstance(event, SelectPlatform):
        if event.choice == CANCEL_CHOICE:
            return _enter(state, Step.ABORTED, effects), effects
        chosen = parse_platform(event.choice)
        if chosen is None:
            return state, effects
        effects.append(Emit("tui.add.action.select_platform", {"platform": chosen.value}))
        return (
            _enter(
                state,
                Step.MOD_NOT_FOUND_ENTER_PROJECT_ID,
                effects,
                history=_push(state),
                candidate_platform=chosen.value,
            ),
            effects,
        )

    if step is Step.MOD_NOT_FOUND_ENTER_PROJECT_ID and isinstance(event, SubmitProjectId):
        project_id = event.value.strip() or state.failure_project
        if not project_id:
            return state, effects
        return _start_fetch(state, state.candidate_platform, project_id, effects), effects

    if step is Step.NO_FILE_CONFIRM and isinstance(event, Confirm):
        effects.append(Emit("tui.add.action.confirm", {"state": step.value, "yes": event.yes}))
        if not event.yes:
            return _enter(state, Step.ABORTED, effects), effects
        return (
            _enter(
                state,
                Step.NO_FILE_ENTER_PROJECT_ID,
                effects,
                history=_push(state),
                candidate_platform=alternate_platform(state.failure_platform),
                candidate_project="",
            ),
            effects,
        )

    if step is Step.NO_FILE_ENTER_PROJECT_ID and isinstance(event, SubmitProjectId):
        project_id = event.value.strip()
        if not project_id:
            return state, effects
        return _start_fetch(state, state.candidate_platform, project_id, effects), effects

    return state, effects


def _on_fetch_result(state: DialogState, event: FetchResult, effects: List[Effect]) -> DialogState:
    if event.token != state.pending_token:
        effects.append(Emit("tui.add.fetch.stale", {"token": event.token}))
        return state

    settled = replace(state, pending_token=None)
    if event.error is None and event.artifact is not None:
        effects.append(Emit("tui.add.fetch.result", {"success": True, "platform": event.platform}))
        return _enter(
            settled,
            Step.DONE,
            effects,
            artifact=event.artifact,
            candidate_platform=event.platform,
            candidate_project=event.project_id,
        )

    error = event.error or MmmError("Resolution returned no result.")
    effects.append(Emit("tui.add.fetch.result", {"success": False, "error_kind": type(error).__name__}))
    if isinstance(error, ResolutionError):
        return _enter(
            settled,
            entry_step_for(error),
            effects,
            history=_push(settled),
            failure_platform=error.platform,
            failure_project=error.project_id,
            candidate_platform=error.platform,
            candidate_project=error.project_id,
        )
    return _enter(settled, Step.FATAL_ERROR, effects, error=error)


@dataclass(frozen=True)
class DialogOutcome:
    artifact: RemoteArtifact
    platform: str
    project_id: str


def outcome(state: DialogState) -> DialogOutcome:
    """Translate a terminal state into a result, AbortedError, or the underlying error."""
    if state.step is Step.DONE:
        if state.artifact is None or not state.artifact.file_name:
            raise MmmError("Resolution finished without a file.")
        return DialogOutcome(state.artifact, state.candidate_platform, state.candidate_project)
    if state.step is Step.ABORTED:
        raise AbortedError()
    if state.step is Step.FATAL_ERROR and state.error is not None:
        raise state.error
    raise MmmError(f"Dialog stopped in non-terminal state {state.step.value}.")


# Prompts


@dataclass(frozen=True)
class PromptSpec:
    kind: str  # "select", "confirm" or "text"
    message: str
    options: Tuple[str, ...] = ()
    default: Optional[str] = None


@dataclass(frozen=True)
class DialogContext:
    game_version: str
    loader: str


def prompt_for(state: DialogState, context: DialogContext) -> PromptSpec:
    platforms = tuple(p.value for p in Platform)
    step = state.step
    if step is Step.UNKNOWN_PLATFORM_SELECT:
        return PromptSpec(
            "select",
            f"'{state.failure_platform}' is not a known platform. Where should '{state.failure_project}' come from?",
            platforms + (CANCEL_CHOICE,),
            default=None,
        )
    if step is Step.MOD_NOT_FOUND_CONFIRM:
        return PromptSpec(
            "confirm",
            f"Mod '{state.failure_project}' was not found on {state.failure_platform}. Search with a different platform or id?",
            default="y",
        )
    if step is Step.MOD_NOT_FOUND_SELECT_PLATFORM:
        default = state.failure_platform if state.failure_platform in platforms else platforms[0]
        return PromptSpec("select", "Which platform should be searched?", platforms, default=default)
    if step is Step.MOD_NOT_FOUND_ENTER_PROJECT_ID:
        return PromptSpec("text", f"Project id on {state.candidate_platform}", default=state.failure_project)
    if step is Step.NO_FILE_CONFIRM:
        alternate = alternate_platform(state.failure_platform)
        return PromptSpec(
            "confirm",
            f"'{state.failure_project}' on {state.failure_platform} has no file for Minecraft "
            f"{context.game_version} ({context.loader}). Try a project on {alternate} instead?",
            default="y",
        )
    if step is Step.NO_FILE_ENTER_PROJECT_ID:
        return PromptSpec("text", f"Project id on {state.candidate_platform}", default="")
    raise ValueError(f"No prompt for {step.value}")


class Prompter(Protocol):
    def ask(self, spec: PromptSpec) -> str:  # pragma: no cover - protocol
        ...


class RichPrompter:
    """Asks on the terminal; type 'back' or 'esc' to go back, Ctrl+C to cancel."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def ask(self, spec: PromptSpec) -> str:
        if spec.kind == "confirm":
            return Prompt.ask(
                spec.message,
                choices=["y", "n"] + BACK_CHOICES,
                default=spec.default or "n",
                console=self.console,
            )
        if spec.kind == "select":
            return Prompt.ask(
                spec.message,
                choices=list(spec.options) + BACK_CHOICES,
                default=spec.default,
                console=self.console,
            )
        return Prompt.ask(
            f"{spec.message} (or 'back'/'esc')",
            default=spec.default or None,
            show_default=bool(spec.default),
            console=self.console,
        ) or ""


def event_for(spec: PromptSpec, answer: str) -> Event:
    text = (answer or "").strip()
    if text.lower() in BACK_WORDS:
        return Back()
    if spec.kind == "confirm":
        return Confirm(yes=text.lower() in {"y", "yes"})
    if spec.kind == "select":
        return SelectPlatform(choice=text.lower())
    return SubmitProjectId(value=text)


Fetcher = Callable[[str, str], RemoteArtifact]


class DisambiguationSession:
    """Runs the dialog against a prompter, resolving one candidate at a time."""

    def __init__(
        self,
        fetch: Fetcher,
        prompter: Prompter,
        context: DialogContext,
        *,
        telemetry: Optional[TelemetrySink] = None,
    ):
        self.fetch = fetch
        self.prompter = prompter
        self.context = context
        self.telemetry = telemetry or NullSink()
        self.attempts = 0

    def run(self, error: ResolutionError) -> DialogOutcome:
        state, effects = start(error)
        state = self._apply(state, effects)
        while not state.terminal:
            spec = prompt_for(state, self.context)
            try:
                event = event_for(spec, self.prompter.ask(spec))
            except (KeyboardInterrupt, EOFError):
                event = Cancel()
            state, effects = transition(state, event)
            state = self._apply(state, effects)
        self.telemetry.record("tui.add.resolve.attempts", attempts=self.attempts, final_state=state.step.value)
        return outcome(state)

    def _apply(self, state: DialogState, effects: List[Effect]) -> DialogState:
        queue = list(effects)
        while queue:
            effect = queue.pop(0)
            if isinstance(effect, Emit):
                self.telemetry.record(effect.name, **effect.attrs)
                continue
            self.attempts += 1
            log.debug("disambiguation.fetch", platform=effect.platform, project_id=effect.project_id)
            try:
                artifact = self.fetch(effect.platform, effect.project_id)
                result = FetchResult(effect.token, effect.platform, effect.project_id, artifact=artifact)
            except MmmError as exc:
                result = FetchResult(effect.token, effect.platform, effect.project_id, error=exc)
            state, more = transition(state, result)
            queue.extend(more)
        return state
