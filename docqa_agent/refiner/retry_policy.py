"""Deterministic recovery ladder for failed steps.

Every rung is a pure function ``(step, implicit_wait_ms) -> RefinedStep``. The
policy only computes the next candidate; running it is the caller's job.
"""
import re
from enum import Enum
from typing import Callable, Dict, NamedTuple, Union

from pydantic import BaseModel, ConfigDict

from docqa_agent.data.step_structures import SELECTOR_KINDS, RefinedStep

_ID_SELECTOR = re.compile(r"^#([A-Za-z_][\w-]*)$")
_CLASS_SELECTOR = re.compile(r"^\.([A-Za-z_][\w-]*)$")
_EXACT_ATTRIBUTE = re.compile(r"""^\[([\w-]+)=(["'])(.*)\2\]$""")


def relax_target(target: str) -> str:
    """``#id`` becomes ``[id="id"]`` and ``.cls`` becomes ``[class*="cls"]``.

    Anything else, including an already relaxed expression, is returned as is.
    """
    stripped = target.strip()
    m = _ID_SELECTOR.match(stripped)
    if m:
        return f'[id="{m.group(1)}"]'
    m = _CLASS_SELECTOR.match(stripped)
    if m:
        return f'[class*="{m.group(1)}"]'
    return target


def widen_target(target: str) -> str:
    """Turn an exact attribute match into a substring match."""
    m = _EXACT_ATTRIBUTE.match(relax_target(target).strip())
    if m:
        return f'[{m.group(1)}*="{m.group(3)}"]'
    return relax_target(target)


def add_implicit_wait(step: RefinedStep, implicit_wait_ms: int) -> RefinedStep:
    return step.with_note(
        f"retry after an implicit wait of {implicit_wait_ms}ms",
        wait_before_ms=max(step.wait_before_ms, implicit_wait_ms),
    )


def relax_step(step: RefinedStep, implicit_wait_ms: int) -> RefinedStep:
    step = add_implicit_wait(step, implicit_wait_ms)
    if step.kind not in SELECTOR_KINDS:
        return step
    relaxed = relax_target(step.target)
    if relaxed == step.target:
        return step.with_note("target already relaxed")
    return step.with_note(f"relaxed target '{step.target}' -> '{relaxed}'", target=relaxed)


def permissive_step(step: RefinedStep, implicit_wait_ms: int) -> RefinedStep:
    """Last rung: the first unused alternative, or the widest form of the current target."""
    step = add_implicit_wait(step, implicit_wait_ms)
    if step.kind not in SELECTOR_KINDS:
        return step
    for alternative in step.alternatives:
        if alternative and alternative != step.target:
            remaining = tuple(a for a in step.alternatives if a != alternative)
            return step.with_note(
                f"switched to alternative target '{alternative}'", target=alternative, alternatives=remaining
            )
    widened = widen_target(step.target)
    if widened == step.target:
        return step.with_note("no wider target available")
    return step.with_note(f"widened target '{step.target}' -> '{widened}'", target=widened)


class Rung(NamedTuple):
    name: str
    transform: Callable[[RefinedStep, int], RefinedStep]


# Keyed by the index of the attempt that just failed. Indices past the table use the last rung.
RETRY_LADDER: Dict[int, Rung] = {
    1: Rung("wait", add_implicit_wait),
    2: Rung("relax", relax_step),
    3: Rung("permissive", permissive_step),
}


def rung_for(attempt_index: int) -> Rung:
    if attempt_index < 1:
        raise ValueError(f"attempt index must be >= 1, got {attempt_index}")
    return RETRY_LADDER.get(attempt_index, RETRY_LADDER[max(RETRY_LADDER)])


class TerminalReason(str, Enum):
    EXHAUSTED = "exhausted"
    UNSUPPORTED = "unsupported"


class TerminalDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    reason: TerminalReason
    attempts: int
    detail: str = ""


class RetryPolicy:
    def __init__(self, max_retries: int = 3, implicit_wait_ms: int = 1000):
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.max_retries = max_retries
        self.implicit_wait_ms = implicit_wait_ms

    def next_step(
        self, step: RefinedStep, attempt_index: int, detail: str = "", unsupported: bool = False
    ) -> Union[RefinedStep, TerminalDecision]:
        """Next candidate after attempt ``attempt_index`` of ``step`` failed with ``detail``."""
        rung = rung_for(attempt_index)
        if unsupported:
            return TerminalDecision(reason=TerminalReason.UNSUPPORTED, attempts=attempt_index, detail=detail)
        # Attempt max_retries + 1 is the last one
        if attempt_index > self.max_retries:
            return TerminalDecision(reason=TerminalReason.EXHAUSTED, attempts=attempt_index, detail=detail)
        return rung.transform(step, self.implicit_wait_ms)

    def conservative_variant(self, step: RefinedStep) -> RefinedStep:
        """Variant used before the first attempt when the target is not seen on the page."""
        if step.kind not in SELECTOR_KINDS:
            return step
        relaxed = relax_target(step.target)
        if relaxed != step.target:
            return step.with_note(f"target not visible, relaxed '{step.target}' -> '{relaxed}'", target=relaxed)
        return step.with_note("target not visible on the probed page")
