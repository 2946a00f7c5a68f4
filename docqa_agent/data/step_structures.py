import re
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ActionKind(str, Enum):
    """Closed set of step actions; anything else parses to UNSUPPORTED."""

    NAVIGATE = "navigate"
    CLICK = "click"
    TYPE = "type"
    FIND = "find"
    WAIT = "wait"
    HTTP_REQUEST = "http_request"
    RUN_COMMAND = "run_command"
    SCREENSHOT = "screenshot"
    LOAD_VARIABLES = "load_variables"
    UNSUPPORTED = "unsupported"

    @classmethod
    def parse(cls, value: Any) -> "ActionKind":
        if isinstance(value, cls):
            return value
        compact = re.sub(r"[\s_\-]+", "", str(value or "")).lower()
        return _ACTION_ALIASES.get(compact, cls.UNSUPPORTED)


_ACTION_ALIASES = {
    "navigate": ActionKind.NAVIGATE,
    "goto": ActionKind.NAVIGATE,
    "open": ActionKind.NAVIGATE,
    "visit": ActionKind.NAVIGATE,
    "click": ActionKind.CLICK,
    "tap": ActionKind.CLICK,
    "type": ActionKind.TYPE,
    "typekeys": ActionKind.TYPE,
    "input": ActionKind.TYPE,
    "find": ActionKind.FIND,
    "wait": ActionKind.WAIT,
    "sleep": ActionKind.WAIT,
    "httprequest": ActionKind.HTTP_REQUEST,
    "request": ActionKind.HTTP_REQUEST,
    "runcommand": ActionKind.RUN_COMMAND,
    "runshell": ActionKind.RUN_COMMAND,
    "screenshot": ActionKind.SCREENSHOT,
    "loadvariables": ActionKind.LOAD_VARIABLES,
}

# Kinds whose target is a page selector; only these are validated and relaxed.
SELECTOR_KINDS = frozenset({ActionKind.CLICK, ActionKind.TYPE, ActionKind.FIND})

# Kinds that need a live browser page.
DRIVER_REQUIRED_KINDS = frozenset(
    {ActionKind.NAVIGATE, ActionKind.CLICK, ActionKind.FIND, ActionKind.TYPE, ActionKind.SCREENSHOT}
)


_DURATION = re.compile(r"^\s*(\d+(?:\.\d+)?|\.\d+)\s*(ms|s|sec|seconds?)?\s*$", re.IGNORECASE)


def parse_wait_ms(raw: Any) -> int:
    """Milliseconds in a wait value such as ``250``, ``"1.5"``, ``"2s"`` or ``"300ms"``.

    Raises:
        ValueError: when the value is not a duration.
    """
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return int(raw)
    m = _DURATION.match(str(raw if raw is not None else ""))
    if not m:
        raise ValueError(f"Invalid wait duration: {raw!r}")
    amount = float(m.group(1))
    if m.group(2) and m.group(2).lower() != "ms":
        amount *= 1000
    return int(amount)


def _coerce_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value)


class SourceProvenance(BaseModel):
    """Where in the document a step came from."""

    model_config = ConfigDict(frozen=True)

    segment_type: str = "text"
    raw_text: str = ""
    line_number: Optional[int] = None


class RoughStep(BaseModel):
    """A step extracted from a document segment before live validation."""

    kind: ActionKind
    target: str = ""
    value: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    description: str = ""
    source: Optional[SourceProvenance] = None
    confidence: Optional[float] = None
    raw_action: Optional[str] = None

    @field_validator("kind", mode="before")
    @classmethod
    def _parse_kind(cls, value):
        return ActionKind.parse(value)

    @field_validator("value", mode="before")
    @classmethod
    def _stringify_value(cls, value):
        return _coerce_value(value)

    @property
    def instruction(self) -> str:
        """Text handed to the reinterpretation collaborator."""
        if self.description:
            return self.description
        if self.source and self.source.raw_text.strip():
            return self.source.raw_text.strip()
        parts = [self.kind.value, self.target, self.value or ""]
        return " ".join(p for p in parts if p)


class RefinedStep(BaseModel):
    """A step bound to a concrete target after consulting the live page.

    Instances are frozen. A retry variant is a new instance produced with
    ``model_copy``; the ``step_id`` is carried over so every variant of one
    logical step can be traced back to it.
    """

    model_config = ConfigDict(frozen=True)

    step_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: ActionKind
    target: str = ""
    value: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    description: str = ""
    confidence: float = Field(ge=0.0, le=1.0)
    notes: Tuple[str, ...] = ()
    alternatives: Tuple[str, ...] = ()
    wait_before_ms: int = Field(default=0, ge=0)
    source: Optional[SourceProvenance] = None
    raw_action: Optional[str] = None

    @field_validator("kind", mode="before")
    @classmethod
    def _parse_kind(cls, value):
        return ActionKind.parse(value)

    @field_validator("value", mode="before")
    @classmethod
    def _stringify_value(cls, value):
        return _coerce_value(value)

    @classmethod
    def from_rough(cls, rough: RoughStep, confidence: float, notes: Tuple[str, ...] = ()) -> "RefinedStep":
        return cls(
            kind=rough.kind,
            target=rough.target,
            value=rough.value,
            params=dict(rough.params),
            description=rough.description,
            confidence=confidence,
            notes=tuple(notes),
            source=rough.source,
            raw_action=rough.raw_action,
        )

    def with_note(self, note: str, **update) -> "RefinedStep":
        return self.model_copy(update={**update, "notes": self.notes + (note,)})

    def to_spec_step(self) -> Dict[str, Any]:
        """Render the step in the host test-specification shape."""
        spec: Dict[str, Any] = {"stepId": self.step_id}
        if self.description:
            spec["description"] = self.description

        if self.kind == ActionKind.NAVIGATE:
            spec["goTo"] = self.target
        elif self.kind == ActionKind.CLICK:
            spec["click"] = self.target
        elif self.kind == ActionKind.FIND:
            match_text = self.params.get("match_text")
            spec["find"] = {"selector": self.target, "matchText": match_text} if match_text else self.target
        elif self.kind == ActionKind.TYPE:
            spec["type"] = {"keys": self.value or "", "selector": self.target}
        elif self.kind == ActionKind.WAIT:
            raw = self.value or self.target or 0
            try:
                spec["wait"] = parse_wait_ms(raw)
            except ValueError:
                spec["wait"] = raw
        elif self.kind == ActionKind.HTTP_REQUEST:
            request = {"url": self.target, "method": self.params.get("method", "GET").upper()}
            if self.params.get("body") is not None:
                request["requestData"] = self.params["body"]
            if self.params.get("headers"):
                request["requestHeaders"] = self.params["headers"]
            spec["httpRequest"] = request
        elif self.kind == ActionKind.RUN_COMMAND:
            spec["runShell"] = {"command": self.target}
        elif self.kind == ActionKind.SCREENSHOT:
            spec["screenshot"] = self.target or True
        elif self.kind == ActionKind.LOAD_VARIABLES:
            spec["loadVariables"] = self.target
        else:
            spec["unsupported"] = {"action": self.raw_action, "target": self.target}
        return spec


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class ExecutionAttempt(BaseModel):
    """One execution of one step variant."""

    model_config = ConfigDict(frozen=True)

    step: RefinedStep
    index: int = Field(ge=1)
    round: int = Field(default=1, ge=1)
    outcome: AttemptOutcome
    detail: str = ""
    duration_ms: float = 0.0


class ExecutionOutcome(BaseModel):
    """What the step-execution primitive reports for one attempt."""

    success: bool
    detail: str = ""
    unsupported: bool = False


class BrowserSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    headless: bool = True


class ExecutionContext(BaseModel):
    """One concrete (platform, browser) pair a test runs under."""

    model_config = ConfigDict(frozen=True)

    platform: str
    browser: Optional[BrowserSpec] = None

    @property
    def key(self) -> str:
        return f"{self.platform}/{self.browser.name}" if self.browser else self.platform

    def to_spec(self) -> Dict[str, Any]:
        spec: Dict[str, Any] = {"platform": self.platform}
        if self.browser:
            spec["browser"] = self.browser.model_dump()
        return spec


def step_texts(step: RefinedStep) -> List[str]:
    """Every string carried by a step, params included."""
    texts = [step.target, step.value or "", step.description]

    def walk(value):
        if isinstance(value, str):
            texts.append(value)
        elif isinstance(value, dict):
            for item in value.values():
                walk(item)
        elif isinstance(value, (list, tuple)):
            for item in value:
                walk(item)

    walk(step.params)
    return [t for t in texts if t]
