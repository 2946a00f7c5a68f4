import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Deque, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field

from docqa_agent.data.run_structures import Decision, InterventionKind, InterventionRecord
from docqa_agent.data.step_structures import RefinedStep
from docqa_agent.utils.log_icon import icon


class DecisionPoint(BaseModel):
    """A question put to the operator."""

    kind: InterventionKind
    message: str
    presented: Dict[str, Any] = Field(default_factory=dict)
    allowed: Tuple[Decision, ...]
    default: Decision
    step_id: Optional[str] = None
    step_index: Optional[int] = None
    context: Optional[str] = None


class DecisionResponse(BaseModel):
    decision: Decision
    step: Optional[RefinedStep] = None  # operator-edited step, confidence review only
    value: Optional[str] = None  # free-form answer, e.g. a confirmed URL
    timed_out: bool = False


class HumanChannel(ABC):
    @abstractmethod
    async def request(self, point: DecisionPoint) -> DecisionResponse:
        """Present ``point`` and wait for the operator's answer."""

    async def ask(self, point: DecisionPoint, timeout: Optional[float] = None) -> DecisionResponse:
        """``request`` bounded by ``timeout`` seconds.

        Raises:
            asyncio.TimeoutError: when no answer arrives in time.
        """
        if not timeout:
            return await self.request(point)
        return await asyncio.wait_for(self.request(point), timeout=timeout)


class ConsoleChannel(HumanChannel):
    """Terminal prompts. One question at a time across all running contexts.

    Lines are read on a worker thread that is never cancelled. A read still
    pending when a prompt times out is taken over by the next prompt. End of
    input answers with the default.
    """

    def __init__(self, input_func=input):
        self._lock = asyncio.Lock()
        self._input = input_func
        self._pending: Optional[asyncio.Future] = None

    async def request(self, point: DecisionPoint) -> DecisionResponse:
        return await self.ask(point)

    async def ask(self, point: DecisionPoint, timeout: Optional[float] = None) -> DecisionResponse:
        # Waiting for another context's prompt does not count against the timeout
        async with self._lock:
            self._drop_stale_answer()
            if not timeout:
                return await self._prompt(point)
            return await asyncio.wait_for(self._prompt(point), timeout=timeout)

    def _drop_stale_answer(self):
        if self._pending is not None and self._pending.done():
            if not self._pending.cancelled() and self._pending.exception() is None:
                logging.info(f"Discarding answer typed after its prompt expired: {self._pending.result()!r}")
            self._pending = None

    async def _readline(self, prompt: str) -> str:
        print(prompt, end="", flush=True)
        if self._pending is None:
            self._pending = asyncio.ensure_future(asyncio.to_thread(self._input))
        try:
            line = await asyncio.shield(self._pending)
        except EOFError:
            self._pending = None
            return ""
        self._pending = None
        return line.strip()

    async def _prompt(self, point: DecisionPoint) -> DecisionResponse:
        header = f"[{point.context}] " if point.context else ""
        print(f"\n{icon['human']} {header}{point.message}")
        if point.presented:
            print(json.dumps(point.presented, indent=2, ensure_ascii=False, default=str))
        choices = "/".join(d.value for d in point.allowed)
        while True:
            answer = (await self._readline(f"Decision [{choices}] (default {point.default.value}): ")).lower()
            if not answer:
                return DecisionResponse(decision=point.default)
            matches = [d for d in point.allowed if d.value.startswith(answer)]
            if len(matches) == 1:
                decision = matches[0]
                break
            print(f"Please answer one of: {choices}")

        value = None
        if point.kind == InterventionKind.INITIAL_TARGET_CONFIRMATION and decision == Decision.CONTINUE:
            suggested = point.presented.get("suggested_url") or ""
            value = (await self._readline(f"URL (default {suggested or 'none'}): ")) or suggested
        return DecisionResponse(decision=decision, value=value)


class ScriptedChannel(HumanChannel):
    """Replays queued responses; falls back to each point's default when empty."""

    def __init__(self, responses: Iterable = ()):
        self._responses: Deque = deque(responses)
        self.points: List[DecisionPoint] = []

    def push(self, *responses):
        self._responses.extend(responses)

    async def request(self, point: DecisionPoint) -> DecisionResponse:
        self.points.append(point)
        if not self._responses:
            return DecisionResponse(decision=point.default)
        response = self._responses.popleft()
        if isinstance(response, Decision):
            return DecisionResponse(decision=response)
        if isinstance(response, str):
            return DecisionResponse(decision=Decision(response))
        return response


class AutoChannel(HumanChannel):
    """Non-interactive runs: a fixed decision per kind, otherwise the point's default."""

    def __init__(self, decisions: Optional[Dict[InterventionKind, Decision]] = None):
        self.decisions = decisions or {}

    async def request(self, point: DecisionPoint) -> DecisionResponse:
        decision = self.decisions.get(point.kind, point.default)
        value = point.presented.get("suggested_url") if point.kind == InterventionKind.INITIAL_TARGET_CONFIRMATION else None
        return DecisionResponse(decision=decision, value=value)


async def ask_human(
    channel: HumanChannel, point: DecisionPoint, timeout: Optional[float] = None
) -> Tuple[DecisionResponse, InterventionRecord]:
    """Ask the operator and build the matching intervention record.

    An unanswered point (when ``timeout`` is set) or an answer outside
    ``point.allowed`` resolves to ``point.default``.
    """
    logging.info(f"{icon['human']} Operator decision requested ({point.kind.value}): {point.message}")
    try:
        response = await channel.ask(point, timeout)
    except asyncio.TimeoutError:
        logging.warning(f"No operator decision within {timeout}s, using '{point.default.value}'")
        response = DecisionResponse(decision=point.default, timed_out=True)

    if response.decision not in point.allowed:
        logging.warning(
            f"Decision '{response.decision.value}' is not allowed for {point.kind.value}, using '{point.default.value}'"
        )
        response = DecisionResponse(decision=point.default)

    record = InterventionRecord(
        kind=point.kind,
        step_id=point.step_id,
        step_index=point.step_index,
        presented={"message": point.message, **point.presented},
        decision=response.decision,
        timed_out=response.timed_out,
    )
    logging.info(f"Operator decision for {point.kind.value}: {response.decision.value}")
    return response, record
