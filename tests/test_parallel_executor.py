import asyncio

import pytest

from docqa_agent.data.run_config import RefinementConfig
from docqa_agent.data.run_structures import ContextRunStatus, Decision, InterventionKind
from docqa_agent.data.step_structures import ActionKind, BrowserSpec, ExecutionContext
from docqa_agent.executor.context_resolver import AmbientEnvironment
from docqa_agent.executor.parallel_executor import ParallelContextExecutor
from docqa_agent.refiner.interaction import ScriptedChannel
from fakes import FakeExecutor, FakeProbe, FakeReinterpreter, rough

LINUX = AmbientEnvironment(platform="linux", available_browsers=("firefox", "chrome"))


class StubSession:
    def __init__(self, session_id, config):
        self.session_id = session_id
        self.browser_config = config

    def get_page(self):
        return None


class StubSessionManager:
    def __init__(self):
        self.created = []
        self.closed = []
        self.closed_all = 0

    async def create_session(self, browser_config=None):
        session = StubSession(f"s{len(self.created)}", browser_config)
        self.created.append(session)
        return session

    async def close_session(self, session_id):
        self.closed.append(session_id)

    async def close_all_sessions(self):
        self.closed_all += 1


def make_executor(channel=None, step_executor_factory=None, **kwargs):
    async def no_sleep(seconds):
        pass

    return ParallelContextExecutor(
        reinterpreter=FakeReinterpreter(),
        channel=channel or ScriptedChannel(),
        refinement_config=RefinementConfig(),
        session_manager=kwargs.pop("session_manager", StubSessionManager()),
        probe_factory=lambda page: FakeProbe(),
        step_executor_factory=step_executor_factory or (lambda page: FakeExecutor()),
        environment=LINUX,
        sleep=no_sleep,
        **kwargs,
    )


def steps():
    return [
        rough(kind=ActionKind.NAVIGATE, target="https://example.com"),
        rough(kind=ActionKind.TYPE, target="#password", value="$PASSWORD"),
    ]


@pytest.mark.asyncio
async def test_each_context_runs_in_its_own_session():
    manager = StubSessionManager()
    contexts = [
        ExecutionContext(platform="linux", browser=BrowserSpec(name="chrome")),
        ExecutionContext(platform="linux", browser=BrowserSpec(name="firefox", headless=False)),
    ]
    executor = make_executor(session_manager=manager, browser_config={"headless": True})
    runs = await executor.execute_contexts(steps(), contexts, description="demo")

    assert [r.context for r in runs] == contexts
    assert all(r.status == ContextRunStatus.COMPLETED for r in runs)
    assert [s.browser_config["browser"] for s in manager.created] == ["chrome", "firefox"]
    assert [s.browser_config["headless"] for s in manager.created] == [True, False]
    assert sorted(manager.closed) == ["s0", "s1"]
    assert manager.closed_all == 1
    assert runs[0].metadata.run_id != runs[1].metadata.run_id


@pytest.mark.asyncio
async def test_credentials_are_confirmed_once_for_all_contexts():
    channel = ScriptedChannel([Decision.CONFIRM])
    contexts = [ExecutionContext(platform="linux", browser=BrowserSpec(name=name)) for name in ("chrome", "firefox")]
    runs = await make_executor(channel=channel).execute_contexts(steps(), contexts)

    credential_points = [p for p in channel.points if p.kind == InterventionKind.CREDENTIAL_CONFIRMATION]
    assert len(credential_points) == 1
    for run in runs:
        assert run.test.steps[0].kind == ActionKind.LOAD_VARIABLES


@pytest.mark.asyncio
async def test_foreign_platform_is_skipped():
    contexts = [ExecutionContext(platform="linux"), ExecutionContext(platform="windows")]
    runs = await make_executor().execute_contexts([rough(kind=ActionKind.WAIT, target="1")], contexts)
    assert [r.status for r in runs] == [ContextRunStatus.COMPLETED, ContextRunStatus.SKIPPED]
    assert runs[1].test is None


@pytest.mark.asyncio
async def test_failure_in_one_context_does_not_affect_others():
    def factory(page):
        if not hasattr(factory, "called"):
            factory.called = True
            raise RuntimeError("driver crashed")
        return FakeExecutor()

    contexts = [ExecutionContext(platform="linux", browser=BrowserSpec(name=n)) for n in ("chrome", "firefox")]
    runs = await make_executor(step_executor_factory=factory, max_concurrent_contexts=1).execute_contexts(
        steps(), contexts
    )
    assert [r.status for r in runs] == [ContextRunStatus.FAILED, ContextRunStatus.COMPLETED]
    assert "driver crashed" in runs[0].error


@pytest.mark.asyncio
async def test_abort_is_reported_per_context():
    channel = ScriptedChannel([Decision.ABORT])
    context = ExecutionContext(platform="linux", browser=BrowserSpec(name="chrome"))
    runs = await make_executor(channel=channel).execute_contexts([rough(kind=ActionKind.CLICK, target="#go")], [context])
    assert runs[0].status == ContextRunStatus.ABORTED
    assert runs[0].metadata.aborted


@pytest.mark.asyncio
async def test_async_step_executor_factory_is_awaited():
    async def factory(page):
        await asyncio.sleep(0)
        return FakeExecutor()

    runs = await make_executor(step_executor_factory=factory).execute_contexts(
        [rough(kind=ActionKind.WAIT, target="1")], [ExecutionContext(platform="linux")]
    )
    assert runs[0].status == ContextRunStatus.COMPLETED
