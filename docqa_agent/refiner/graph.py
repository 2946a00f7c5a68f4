"""This module defines the refinement graph.

One run walks the rough instruction sequence of a single execution context,
strictly in order, and ends with a canonical test plus its run metadata.
"""

import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from langgraph.graph import END, StateGraph
from pydantic import BaseModel

from docqa_agent.data.run_structures import (
    CanonicalTest,
    Decision,
    InterventionKind,
    RunMetadata,
    StepReport,
    StepState,
)
from docqa_agent.data.step_structures import ActionKind, ExecutionContext, RefinedStep, RoughStep
from docqa_agent.refiner.agents.step_agent import StepAgent
from docqa_agent.refiner.credential_manager import CredentialManager
from docqa_agent.refiner.interaction import DecisionPoint, ask_human
from docqa_agent.refiner.state.schemas import RefinementGraphState
from docqa_agent.utils.log_icon import icon

INTERACTIVE_KINDS = {ActionKind.CLICK, ActionKind.FIND, ActionKind.TYPE, ActionKind.SCREENSHOT}
URL_PATTERN = re.compile(r"https?://[^\s<>\"'`)\]]+")


def find_first_url(text: str) -> Optional[str]:
    match = URL_PATTERN.search(text or "")
    return match.group(0).rstrip(".,;:!?") if match else None


def normalize_url(url: str) -> str:
    url = url.strip()
    if url and not re.match(r"^[a-z][a-z0-9+.-]*://", url, re.I):
        url = f"https://{url}"
    return url


def needs_initial_navigation(rough_steps: List[RoughStep]) -> bool:
    """True when a page interaction comes before any navigation."""
    for rough in rough_steps:
        if rough.kind == ActionKind.NAVIGATE:
            return False
        if rough.kind in INTERACTIVE_KINDS:
            return True
    return False


async def confirm_initial_target(state: RefinementGraphState) -> Dict[str, Any]:
    """Offers a navigation step when the first interaction has no page to act on."""
    context: ExecutionContext = state["context"]
    if context.browser is None or not needs_initial_navigation(state["rough_steps"]):
        return {"current_index": state.get("current_index", 0)}

    agent: StepAgent = state["agent"]
    suggested = find_first_url(state.get("document", ""))
    point = DecisionPoint(
        kind=InterventionKind.INITIAL_TARGET_CONFIRMATION,
        message="The first instructions interact with a page but never open one. Navigate to a starting URL first?",
        presented={"suggested_url": suggested},
        allowed=(Decision.CONTINUE, Decision.SKIP, Decision.ABORT),
        default=Decision.SKIP,
        context=context.key,
    )
    response, record = await ask_human(agent.channel, point, agent.config.human_timeout_seconds)
    if response.decision == Decision.ABORT:
        return {"interventions": [record], "aborted": True, "abort_reason": "aborted at initial target confirmation"}

    url = normalize_url(response.value or suggested or "")
    if response.decision == Decision.SKIP or not url:
        logging.info("Continuing without an initial navigation step")
        return {"interventions": [record]}

    navigate = RefinedStep(
        kind=ActionKind.NAVIGATE, target=url, description=f"Navigate to {url}", confidence=1.0,
        notes=("inserted after initial target confirmation",),
    )
    report = await agent.run_refined(navigate)
    update = {"interventions": [record], "step_reports": [report]}
    if report.include:
        update["completed_steps"] = [report.refined_step]
    if report.state == StepState.ABORTED:
        update.update({"aborted": True, "abort_reason": report.skipped_reason})
    return update


async def refine_next_step(state: RefinementGraphState) -> Dict[str, Any]:
    """Runs the step agent on the next rough step."""
    index = state["current_index"]
    rough = state["rough_steps"][index]
    agent: StepAgent = state["agent"]

    report = await agent.run(rough, index, state.get("completed_steps", []))
    update = {"current_index": index + 1, "step_reports": [report]}
    if report.include:
        update["completed_steps"] = [report.refined_step]
    if report.state == StepState.ABORTED:
        logging.warning(f"Run aborted at step {index + 1}; remaining steps will be marked skipped")
        update.update({"aborted": True, "abort_reason": report.skipped_reason})
    return update


def route_next(state: RefinementGraphState) -> str:
    if state.get("aborted"):
        return "finalize_run"
    if state.get("current_index", 0) < len(state["rough_steps"]):
        return "refine_next_step"
    return "resolve_credentials"


async def resolve_credentials(state: RefinementGraphState) -> Dict[str, Any]:
    """Consults the credential manager once the step sequence is final."""
    manager: CredentialManager = state["credential_manager"]
    completed = state.get("completed_steps", [])
    if manager is None:
        return {"final_steps": list(completed)}

    resolution = await manager.resolve(completed, context=state["context"].key)
    update = {"final_steps": resolution.steps, "credentials": resolution}
    if resolution.intervention is not None:
        update["interventions"] = [resolution.intervention]
    return update


async def finalize_run(state: RefinementGraphState) -> Dict[str, Any]:
    """Marks unprocessed steps skipped, assembles the canonical test and closes the ledger."""
    rough_steps = state["rough_steps"]
    reports: List[StepReport] = list(state.get("step_reports", []))
    processed = {r.index for r in reports if r.index is not None}
    for index, rough in enumerate(rough_steps):
        if index in processed:
            continue
        skipped = StepReport(index=index, rough_step=rough, skipped_reason=state.get("abort_reason") or "run aborted")
        skipped.enter(StepState.PENDING)
        skipped.enter(StepState.SKIPPED)
        skipped.enter(StepState.RECORDED)
        reports.append(skipped)

    interventions = list(state.get("interventions", []))
    for report in reports:
        interventions.extend(report.interventions)
    interventions.sort(key=lambda record: record.timestamp)

    steps = state.get("final_steps")
    if steps is None:
        steps = list(state.get("completed_steps", []))
    credentials = state.get("credentials")
    unresolved = list(credentials.unresolved) if credentials is not None else []

    context = state["context"]
    metadata = RunMetadata(
        context=context,
        started_at=state["started_at"],
        interventions=interventions,
        step_reports=reports,
        aborted=bool(state.get("aborted")),
        abort_reason=state.get("abort_reason"),
        unresolved_credentials=unresolved,
    ).finalize()
    test = CanonicalTest(
        description=state.get("description", ""),
        steps=steps,
        contexts=[context],
        unresolved_credentials=unresolved,
    )
    logging.info(
        f"{icon['check']} Run for {context.key} finished: {metadata.steps_succeeded} succeeded, "
        f"{metadata.steps_failed} failed, {metadata.steps_skipped} skipped, {metadata.retries} retries"
    )
    return {"final_steps": steps, "metadata": metadata, "test": test}


# Define the refinement graph
workflow = StateGraph(RefinementGraphState)

workflow.add_node("confirm_initial_target", confirm_initial_target)
workflow.add_node("refine_next_step", refine_next_step)
workflow.add_node("resolve_credentials", resolve_credentials)
workflow.add_node("finalize_run", finalize_run)

workflow.set_entry_point("confirm_initial_target")

workflow.add_conditional_edges(
    "confirm_initial_target",
    route_next,
    {
        "refine_next_step": "refine_next_step",
        "resolve_credentials": "resolve_credentials",
        "finalize_run": "finalize_run",
    },
)

# Sequential step loop
workflow.add_conditional_edges(
    "refine_next_step",
    route_next,
    {
        "refine_next_step": "refine_next_step",
        "resolve_credentials": "resolve_credentials",
        "finalize_run": "finalize_run",
    },
)

workflow.add_edge("resolve_credentials", "finalize_run")
workflow.add_edge("finalize_run", END)

app = workflow.compile()


class RefinementOutcome(BaseModel):
    test: CanonicalTest
    metadata: RunMetadata


class RefinementOrchestrator:
    """Runs the refinement graph for one execution context."""

    def __init__(self, agent: StepAgent, credential_manager: Optional[CredentialManager] = None):
        self.agent = agent
        self.credential_manager = credential_manager

    async def run(
        self, rough_steps: List[RoughStep], context: ExecutionContext, document: str = "", description: str = ""
    ) -> RefinementOutcome:
        logging.info(f"{icon['running']} Refining {len(rough_steps)} steps for {context.key}")
        initial_state = {
            "context": context,
            "description": description,
            "document": document,
            "rough_steps": list(rough_steps),
            "agent": self.agent,
            "credential_manager": self.credential_manager,
            "current_index": 0,
            "completed_steps": [],
            "step_reports": [],
            "interventions": [],
            "aborted": False,
            "abort_reason": None,
            "credentials": None,
            "final_steps": None,
            "started_at": datetime.now(),
            "metadata": None,
            "test": None,
        }
        graph_config = {"recursion_limit": max(25, 2 * len(rough_steps) + 10)}
        final_state = await app.ainvoke(initial_state, config=graph_config)
        return RefinementOutcome(test=final_state["test"], metadata=final_state["metadata"])
