import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from docqa_agent.data.step_structures import ExecutionAttempt, ExecutionContext, RefinedStep, RoughStep


class StepState(str, Enum):
    PENDING = "pending"
    PROBING = "probing"
    REINTERPRETING = "reinterpreting"
    CONFIDENCE_GATE = "confidence_gate"
    HUMAN_REVIEW = "human_review"
    VALIDATING = "validating"
    EXECUTING = "executing"
    RETRY_WAIT = "retry_wait"
    RETRY_SELECTOR_ADJUST = "retry_selector_adjust"
    RETRY_FINAL = "retry_final"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    ABORTED = "aborted"
    RECORDED = "recorded"


class InterventionKind(str, Enum):
    CONFIDENCE_REVIEW = "confidence_review"
    FAILURE_REVIEW = "failure_review"
    CREDENTIAL_CONFIRMATION = "credential_confirmation"
    INITIAL_TARGET_CONFIRMATION = "initial_target_confirmation"


class Decision(str, Enum):
    CONTINUE = "continue"
    SKIP = "skip"
    ABORT = "abort"
    RETRY = "retry"
    CONFIRM = "confirm"
    DECLINE = "decline"


class InterventionRecord(BaseModel):
    """A point where an operator decision was solicited."""

    kind: InterventionKind
    timestamp: datetime = Field(default_factory=datetime.now)
    step_id: Optional[str] = None
    step_index: Optional[int] = None
    presented: Dict[str, Any] = Field(default_factory=dict)
    decision: Decision
    timed_out: bool = False


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class StepReport(BaseModel):
    """Everything that happened to one instruction, in order."""

    index: Optional[int] = None
    rough_step: Optional[RoughStep] = None
    refined_step: Optional[RefinedStep] = None
    state: StepState = StepState.PENDING
    transitions: List[StepState] = Field(default_factory=list)
    attempts: List[ExecutionAttempt] = Field(default_factory=list)
    interventions: List[InterventionRecord] = Field(default_factory=list)
    tokens: TokenUsage = Field(default_factory=TokenUsage)
    inserted: bool = False
    skipped_reason: Optional[str] = None

    def enter(self, state: StepState):
        logging.debug(f"Step {'inserted' if self.index is None else self.index + 1}: {self.state.value} -> {state.value}")
        self.transitions.append(state)
        if state != StepState.RECORDED:
            self.state = state

    @property
    def executed(self) -> bool:
        return bool(self.attempts)

    @property
    def retries(self) -> int:
        return max(len(self.attempts) - 1, 0)

    @property
    def include(self) -> bool:
        """Whether the final refined step belongs in the canonical test."""
        return self.state == StepState.SUCCEEDED and self.refined_step is not None


class RunMetadata(BaseModel):
    """Ledger for one orchestrated run over one execution context.

    ``finalize`` may be called exactly once; the counters are derived from the
    step reports at that moment.
    """

    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    context: Optional[ExecutionContext] = None
    started_at: datetime = Field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    duration_seconds: float = 0.0
    steps_analyzed: int = 0
    steps_executed: int = 0
    steps_succeeded: int = 0
    steps_failed: int = 0
    steps_skipped: int = 0
    retries: int = 0
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    interventions: List[InterventionRecord] = Field(default_factory=list)
    step_reports: List[StepReport] = Field(default_factory=list)
    aborted: bool = False
    abort_reason: Optional[str] = None
    unresolved_credentials: List[str] = Field(default_factory=list)

    @property
    def finalized(self) -> bool:
        return self.finished_at is not None

    def finalize(self, finished_at: Optional[datetime] = None) -> "RunMetadata":
        if self.finalized:
            raise RuntimeError(f"Run metadata {self.run_id} is already finalized")

        self.finished_at = finished_at or datetime.now()
        self.duration_seconds = (self.finished_at - self.started_at).total_seconds()

        tokens = TokenUsage()
        for report in self.step_reports:
            tokens = tokens + report.tokens
            if report.rough_step is not None:
                self.steps_analyzed += 1
            if report.executed:
                self.steps_executed += 1
            if report.state == StepState.SUCCEEDED:
                self.steps_succeeded += 1
            elif report.state == StepState.FAILED:
                self.steps_failed += 1
            elif report.state in (StepState.SKIPPED, StepState.PENDING):
                self.steps_skipped += 1
            self.retries += report.retries
        self.token_usage = tokens
        return self


class CanonicalTest(BaseModel):
    """The output artifact: final steps plus the contexts they run under."""

    test_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    description: str = ""
    steps: List[RefinedStep] = Field(default_factory=list)
    contexts: List[ExecutionContext] = Field(default_factory=list)
    unresolved_credentials: List[str] = Field(default_factory=list)

    def to_spec(self) -> Dict[str, Any]:
        spec: Dict[str, Any] = {
            "testId": self.test_id,
            "description": self.description,
            "steps": [step.to_spec_step() for step in self.steps],
        }
        if self.contexts:
            spec["runOn"] = [context.to_spec() for context in self.contexts]
        if self.unresolved_credentials:
            spec["unresolvedCredentials"] = list(self.unresolved_credentials)
        return spec


class ContextRunStatus(str, Enum):
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class ContextRun(BaseModel):
    context: ExecutionContext
    status: ContextRunStatus
    test: Optional[CanonicalTest] = None
    metadata: Optional[RunMetadata] = None
    error: Optional[str] = None


class AnalysisResult(BaseModel):
    test: CanonicalTest
    rough_steps: List[RoughStep] = Field(default_factory=list)
    contexts: List[ExecutionContext] = Field(default_factory=list)
    runs: List[ContextRun] = Field(default_factory=list)
    extraction_tokens: TokenUsage = Field(default_factory=TokenUsage)
