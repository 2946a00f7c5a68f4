import pytest

from docqa_agent.data.run_structures import Decision, InterventionKind, StepState
from docqa_agent.data.step_structures import ActionKind, BrowserSpec, ExecutionContext
from docqa_agent.refiner.credential_manager import CredentialManager
from docqa_agent.refiner.graph import (
    RefinementOrchestrator,
    find_first_url,
    needs_initial_navigation,
    normalize_url,
)
from docqa_agent.refiner.interaction import AutoChannel, ScriptedChannel
from fakes import FakeExecutor, FakeReinterpreter, make_agent, refined, rough

CHROME = ExecutionContext(platform="linux", browser=BrowserSpec(name="chrome"))


def login_flow():
    return [
        rough(kind=ActionKind.NAVIGATE, target="https://example.com/login", description="Open the login page"),
        rough(kind=ActionKind.CLICK, target="#username", description="Focus the username field"),
        rough(kind=ActionKind.TYPE, target="#username", value="alice", description="Enter the user name"),
    ]


def orchestrator(agent, manager=None):
    return RefinementOrchestrator(agent, manager or CredentialManager(channel=agent.channel))


def test_url_helpers():
    assert find_first_url("Go to https://example.com/app. Then log in.") == "https://example.com/app"
    assert find_first_url("no links here") is None
    assert normalize_url("example.com") == "https://example.com"
    assert normalize_url("http://x.test") == "http://x.test"


def test_needs_initial_navigation():
    assert needs_initial_navigation([rough(kind=ActionKind.RUN_COMMAND, target="make"), rough(kind=ActionKind.CLICK)])
    assert not needs_initial_navigation(login_flow())
    assert not needs_initial_navigation([rough(kind=ActionKind.HTTP_REQUEST, target="https://x.test")])


@pytest.mark.asyncio
async def test_all_steps_succeed_in_order():
    executor = FakeExecutor()
    agent = make_agent(executor=executor)
    outcome = await orchestrator(agent).run(login_flow(), CHROME, description="login")

    assert [s.kind for s in outcome.test.steps] == [ActionKind.NAVIGATE, ActionKind.CLICK, ActionKind.TYPE]
    assert [s.target for s in executor.steps] == ["https://example.com/login", "#username", "#username"]
    metadata = outcome.metadata
    assert metadata.finalized
    assert (metadata.steps_analyzed, metadata.steps_executed, metadata.steps_succeeded) == (3, 3, 3)
    assert metadata.steps_skipped == 0
    assert metadata.interventions == []
    assert outcome.test.contexts == [CHROME]
    assert outcome.test.description == "login"


@pytest.mark.asyncio
async def test_skipped_step_is_left_out_of_the_test():
    steps = login_flow()
    reinterpreter = FakeReinterpreter(
        refined(kind=ActionKind.NAVIGATE, target="https://example.com/login"),
        refined(kind=ActionKind.CLICK, target="#username", confidence=0.3),
        refined(kind=ActionKind.TYPE, target="#username", value="alice"),
    )
    agent = make_agent(reinterpreter=reinterpreter)
    outcome = await orchestrator(agent).run(steps, CHROME)

    assert [s.kind for s in outcome.test.steps] == [ActionKind.NAVIGATE, ActionKind.TYPE]
    metadata = outcome.metadata
    assert metadata.steps_analyzed == 3
    assert metadata.steps_skipped == 1
    assert [r.state for r in metadata.step_reports] == [StepState.SUCCEEDED, StepState.SKIPPED, StepState.SUCCEEDED]
    assert [i.kind for i in metadata.interventions] == [InterventionKind.CONFIDENCE_REVIEW]


@pytest.mark.asyncio
async def test_abort_marks_remaining_steps_skipped():
    reinterpreter = FakeReinterpreter(
        refined(kind=ActionKind.NAVIGATE, target="https://example.com/login"),
        refined(kind=ActionKind.CLICK, target="#username", confidence=0.3),
    )
    executor = FakeExecutor()
    agent = make_agent(reinterpreter=reinterpreter, executor=executor, channel=ScriptedChannel([Decision.ABORT]))
    outcome = await orchestrator(agent).run(login_flow(), CHROME)

    metadata = outcome.metadata
    assert metadata.aborted
    assert metadata.abort_reason
    assert len(metadata.step_reports) == 3
    assert [r.state for r in metadata.step_reports] == [StepState.SUCCEEDED, StepState.ABORTED, StepState.SKIPPED]
    assert metadata.step_reports[2].skipped_reason == metadata.abort_reason
    assert len(executor.steps) == 1
    assert len(reinterpreter.requests) == 2
    assert [s.kind for s in outcome.test.steps] == [ActionKind.NAVIGATE]


@pytest.mark.asyncio
async def test_confirmed_credentials_prepend_loading_step():
    steps = [
        rough(kind=ActionKind.NAVIGATE, target="https://example.com/login"),
        rough(kind=ActionKind.TYPE, target="#password", value="$PASSWORD"),
    ]
    channel = ScriptedChannel([Decision.CONFIRM])
    executor = FakeExecutor()
    agent = make_agent(executor=executor, channel=channel)
    outcome = await orchestrator(agent, CredentialManager(env_file=".env.test", channel=channel)).run(steps, CHROME)

    assert [s.kind for s in outcome.test.steps] == [ActionKind.LOAD_VARIABLES, ActionKind.NAVIGATE, ActionKind.TYPE]
    assert outcome.test.steps[0].target == ".env.test"
    assert all(s.kind != ActionKind.LOAD_VARIABLES for s in executor.steps)
    assert [i.kind for i in outcome.metadata.interventions] == [InterventionKind.CREDENTIAL_CONFIRMATION]
    assert outcome.test.unresolved_credentials == []


@pytest.mark.asyncio
async def test_declined_credentials_are_reported():
    steps = [rough(kind=ActionKind.TYPE, target="#token", value="$API_TOKEN")]
    context = ExecutionContext(platform="linux", browser=BrowserSpec(name="chrome"))
    agent = make_agent(channel=ScriptedChannel([Decision.SKIP, Decision.DECLINE]))
    outcome = await orchestrator(agent).run(steps, context)

    assert outcome.test.unresolved_credentials == ["API_TOKEN"]
    assert outcome.metadata.unresolved_credentials == ["API_TOKEN"]
    assert outcome.test.to_spec()["unresolvedCredentials"] == ["API_TOKEN"]


@pytest.mark.asyncio
async def test_initial_navigation_is_inserted_on_confirmation():
    steps = [rough(kind=ActionKind.CLICK, target="#start", description="Click Start")]
    channel = AutoChannel({InterventionKind.INITIAL_TARGET_CONFIRMATION: Decision.CONTINUE})
    executor = FakeExecutor()
    agent = make_agent(executor=executor, channel=channel)
    outcome = await orchestrator(agent).run(steps, CHROME, document="Visit https://example.com/app and click Start.")

    assert [s.kind for s in outcome.test.steps] == [ActionKind.NAVIGATE, ActionKind.CLICK]
    assert outcome.test.steps[0].target == "https://example.com/app"
    assert executor.steps[0].kind == ActionKind.NAVIGATE
    inserted = outcome.metadata.step_reports[0]
    assert inserted.inserted and inserted.index is None
    assert outcome.metadata.steps_analyzed == 1
    assert outcome.metadata.interventions[0].kind == InterventionKind.INITIAL_TARGET_CONFIRMATION


@pytest.mark.asyncio
async def test_initial_navigation_declined_by_default():
    steps = [rough(kind=ActionKind.CLICK, target="#start")]
    channel = ScriptedChannel()
    agent = make_agent(channel=channel)
    outcome = await orchestrator(agent).run(steps, CHROME, document="https://example.com")

    assert [s.kind for s in outcome.test.steps] == [ActionKind.CLICK]
    assert channel.points[0].kind == InterventionKind.INITIAL_TARGET_CONFIRMATION
    assert channel.points[0].presented["suggested_url"] == "https://example.com"


@pytest.mark.asyncio
async def test_no_initial_prompt_without_a_browser():
    channel = ScriptedChannel()
    agent = make_agent(channel=channel)
    await orchestrator(agent).run([rough(kind=ActionKind.CLICK, target="#start")], ExecutionContext(platform="linux"))
    assert all(p.kind != InterventionKind.INITIAL_TARGET_CONFIRMATION for p in channel.points)


@pytest.mark.asyncio
async def test_abort_at_initial_target_skips_every_step():
    steps = [rough(kind=ActionKind.CLICK, target="#a"), rough(kind=ActionKind.CLICK, target="#b")]
    executor = FakeExecutor()
    agent = make_agent(executor=executor, channel=ScriptedChannel([Decision.ABORT]))
    outcome = await orchestrator(agent).run(steps, CHROME)

    assert outcome.metadata.aborted
    assert executor.steps == []
    assert outcome.metadata.steps_skipped == 2
    assert outcome.test.steps == []


@pytest.mark.asyncio
async def test_interventions_are_in_chronological_order():
    steps = [
        rough(kind=ActionKind.CLICK, target="#a"),
        rough(kind=ActionKind.TYPE, target="#pw", value="$PASSWORD"),
    ]
    reinterpreter = FakeReinterpreter(refined(target="#a", confidence=0.2))
    channel = ScriptedChannel([Decision.CONTINUE, Decision.CONTINUE, Decision.CONFIRM])
    agent = make_agent(reinterpreter=reinterpreter, channel=channel)
    outcome = await orchestrator(agent).run(steps, CHROME)

    kinds = [i.kind for i in outcome.metadata.interventions]
    assert kinds == [
        InterventionKind.INITIAL_TARGET_CONFIRMATION,
        InterventionKind.CONFIDENCE_REVIEW,
        InterventionKind.CREDENTIAL_CONFIRMATION,
    ]
    timestamps = [i.timestamp for i in outcome.metadata.interventions]
    assert timestamps == sorted(timestamps)


@pytest.mark.asyncio
async def test_empty_instruction_list():
    outcome = await orchestrator(make_agent()).run([], CHROME)
    assert outcome.test.steps == []
    assert outcome.metadata.steps_analyzed == 0
