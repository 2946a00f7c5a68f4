"""
This module defines the per-step worker of the refinement graph.
The step agent drives one instruction from probing to a recorded outcome.
"""
import asyncio
import logging
import time
from typing import List, Optional, Tuple

from docqa_agent.crawler.page_probe import PageStateProbe, PageSurface, target_visible
from docqa_agent.data.run_config import RefinementConfig
from docqa_agent.data.run_structures import Decision, InterventionKind, StepReport, StepState
from docqa_agent.data.step_structures import (
    SELECTOR_KINDS,
    ActionKind,
    AttemptOutcome,
    ExecutionAttempt,
    ExecutionOutcome,
    RefinedStep,
    RoughStep,
)
from docqa_agent.refiner.interaction import DecisionPoint, HumanChannel, ask_human
from docqa_agent.refiner.reinterpreter import ReinterpretationRequest, Reinterpreter
from docqa_agent.refiner.retry_policy import RetryPolicy, TerminalDecision, rung_for
from docqa_agent.utils.log_icon import icon

RETRY_STATES = {
    "wait": StepState.RETRY_WAIT,
    "relax": StepState.RETRY_SELECTOR_ADJUST,
    "permissive": StepState.RETRY_FINAL,
}


class StepAgent:
    def __init__(
        self,
        probe: PageStateProbe,
        reinterpreter: Reinterpreter,
        executor,
        channel: HumanChannel,
        retry_policy: Optional[RetryPolicy] = None,
        config: Optional[RefinementConfig] = None,
        context_label: Optional[str] = None,
        sleep=asyncio.sleep,
    ):
        self.probe = probe
        self.reinterpreter = reinterpreter
        self.executor = executor
        self.channel = channel
        self.config = config or RefinementConfig()
        self.retry_policy = retry_policy or RetryPolicy(self.config.max_retries, self.config.implicit_wait_ms)
        self.context_label = context_label
        self._sleep = sleep

    async def run(self, rough: RoughStep, index: int, completed: List[RefinedStep]) -> StepReport:
        """Refine, execute and record one rough step."""
        report = StepReport(index=index, rough_step=rough)
        report.enter(StepState.PENDING)
        logging.info(f"=== Step {index + 1}: {rough.instruction[:80]} ===")

        report.enter(StepState.PROBING)
        surface = await self._probe()

        report.enter(StepState.REINTERPRETING)
        step = await self._reinterpret(rough, surface, completed, report)
        report.refined_step = step

        report.enter(StepState.CONFIDENCE_GATE)
        if step.confidence < self.config.confidence_threshold:
            report.enter(StepState.HUMAN_REVIEW)
            point = DecisionPoint(
                kind=InterventionKind.CONFIDENCE_REVIEW,
                message=f"Low confidence ({step.confidence:.2f} < {self.config.confidence_threshold}) for step "
                f"{index + 1}: {step.description or step.target}",
                presented={
                    "step": step.to_spec_step(),
                    "confidence": step.confidence,
                    "threshold": self.config.confidence_threshold,
                    "notes": list(step.notes),
                    "surface": surface.summary(),
                },
                allowed=(Decision.CONTINUE, Decision.SKIP, Decision.ABORT),
                default=Decision.SKIP,
                step_id=step.step_id,
                step_index=index,
                context=self.context_label,
            )
            response, record = await ask_human(self.channel, point, self.config.human_timeout_seconds)
            report.interventions.append(record)
            if response.decision == Decision.SKIP:
                return self._finish(report, StepState.SKIPPED, "skipped at confidence review")
            if response.decision == Decision.ABORT:
                return self._finish(report, StepState.ABORTED, "aborted at confidence review")
            if response.step is not None:
                step = response.step.model_copy(update={"step_id": step.step_id})
                step = step.with_note("edited by operator")
                report.refined_step = step

        if step.kind == ActionKind.UNSUPPORTED:
            report.enter(StepState.FAILED)
            return await self._failure_review(
                report, step, f"Unsupported action '{step.raw_action}'", allow_retry=False
            )

        return await self._validate_and_execute(report, step, surface)

    async def run_refined(self, step: RefinedStep, index: Optional[int] = None) -> StepReport:
        """Validate and execute a step that needs no reinterpretation, e.g. an inserted navigation."""
        report = StepReport(index=index, refined_step=step, inserted=True)
        report.enter(StepState.PENDING)
        return await self._validate_and_execute(report, step, PageSurface.empty("not probed"))

    async def _probe(self) -> PageSurface:
        try:
            return await self.probe.capture()
        except Exception as e:
            logging.warning(f"Page probe raised, continuing without page state: {e}")
            return PageSurface.empty(str(e))

    async def _reinterpret(
        self, rough: RoughStep, surface: PageSurface, completed: List[RefinedStep], report: StepReport
    ) -> RefinedStep:
        request = ReinterpretationRequest(
            instruction=rough.instruction, rough_step=rough, surface=surface, completed_steps=list(completed)
        )
        try:
            result = await self.reinterpreter.reinterpret(request)
        except Exception as e:
            logging.warning(f"Reinterpretation failed, step needs review: {e}")
            return RefinedStep.from_rough(rough, confidence=0.0, notes=(f"reinterpretation failed: {e}",))
        report.tokens = report.tokens + result.tokens
        return result.step

    async def _validate_and_execute(self, report: StepReport, step: RefinedStep, surface: PageSurface) -> StepReport:
        report.enter(StepState.VALIDATING)
        if step.kind in SELECTOR_KINDS and not target_visible(surface, step.target):
            logging.info(f"Target '{step.target}' not visible on the probed page, starting from a relaxed variant")
            step = self.retry_policy.conservative_variant(step)

        manual_retries = 0
        round_number = 1
        while True:
            step, outcome, terminal = await self._run_ladder(report, step, round_number)
            report.refined_step = step
            if outcome.success:
                logging.info(f"{icon['check']} Step succeeded after {len(report.attempts)} attempt(s)")
                return self._finish(report, StepState.SUCCEEDED)

            report.enter(StepState.FAILED)
            allow_retry = not outcome.unsupported and manual_retries < self.config.max_manual_retries
            report = await self._failure_review(report, step, outcome.detail, allow_retry, terminal)
            if report.state != StepState.FAILED:
                return report
            manual_retries += 1
            round_number += 1
            logging.info(f"{icon['retry']} Operator requested retry #{manual_retries}")

    async def _run_ladder(
        self, report: StepReport, step: RefinedStep, round_number: int
    ) -> Tuple[RefinedStep, ExecutionOutcome, Optional[TerminalDecision]]:
        attempt_index = 1
        while True:
            if step.wait_before_ms:
                await self._sleep(step.wait_before_ms / 1000)

            report.enter(StepState.EXECUTING)
            started = time.monotonic()
            try:
                outcome = await self.executor.execute(step)
            except Exception as e:
                outcome = ExecutionOutcome(success=False, detail=f"Execution raised: {e}")
            duration_ms = (time.monotonic() - started) * 1000

            report.attempts.append(
                ExecutionAttempt(
                    step=step,
                    index=attempt_index,
                    round=round_number,
                    outcome=AttemptOutcome.SUCCESS if outcome.success else AttemptOutcome.FAILURE,
                    detail=outcome.detail,
                    duration_ms=duration_ms,
                )
            )
            if outcome.success:
                return step, outcome, None

            logging.info(f"Attempt {attempt_index} of {step.kind.value} '{step.target}' failed: {outcome.detail}")
            decision = self.retry_policy.next_step(step, attempt_index, outcome.detail, outcome.unsupported)
            if isinstance(decision, TerminalDecision):
                return step, outcome, decision
            report.enter(RETRY_STATES[rung_for(attempt_index).name])
            step = decision
            attempt_index += 1

    async def _failure_review(
        self,
        report: StepReport,
        step: RefinedStep,
        detail: str,
        allow_retry: bool,
        terminal: Optional[TerminalDecision] = None,
    ) -> StepReport:
        """Ask what to do with a failed step. A report still in FAILED means retry."""
        allowed = (Decision.RETRY, Decision.SKIP, Decision.ABORT) if allow_retry else (Decision.SKIP, Decision.ABORT)
        point = DecisionPoint(
            kind=InterventionKind.FAILURE_REVIEW,
            message=f"{icon['cross']} Step {self._label(report)} failed: {detail}",
            presented={
                "step": step.to_spec_step(),
                "attempts": len(report.attempts),
                "last_error": detail,
                "reason": terminal.reason.value if terminal else "unsupported",
            },
            allowed=allowed,
            default=Decision.SKIP,
            step_id=step.step_id,
            step_index=report.index,
            context=self.context_label,
        )
        response, record = await ask_human(self.channel, point, self.config.human_timeout_seconds)
        report.interventions.append(record)
        if response.decision == Decision.RETRY:
            return report
        if response.decision == Decision.ABORT:
            return self._finish(report, StepState.ABORTED, "aborted at failure review")
        return self._finish(report, StepState.SKIPPED, "skipped after failure")

    def _label(self, report: StepReport) -> str:
        return "(inserted)" if report.index is None else str(report.index + 1)

    def _finish(self, report: StepReport, state: StepState, reason: Optional[str] = None) -> StepReport:
        report.enter(state)
        if state in (StepState.SKIPPED, StepState.ABORTED):
            report.skipped_reason = reason
            logging.info(f"{icon['skip']} Step {self._label(report)} {state.value}: {reason}")
        report.enter(StepState.RECORDED)
        return report
