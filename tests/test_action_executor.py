import json
import sys

import httpx
import pytest

from docqa_agent.actions.action_executor import ActionExecutor, UnresolvedVariableError
from docqa_agent.data.step_structures import ActionKind
from fakes import refined


def api_transport(requests):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path == "/health":
            return httpx.Response(200, json={"status": "ok"})
        if request.url.path == "/items" and request.method == "POST":
            return httpx.Response(201, json={"id": 1})
        return httpx.Response(404)

    return httpx.MockTransport(handler)


class StubHandler:
    def __init__(self, page=None, result=True):
        self.page = page
        self.result = result
        self.calls = []

    async def click(self, selector):
        self.calls.append(("click", selector))
        return self.result

    async def type(self, selector, text, clear_before_type=True):
        self.calls.append(("type", selector, text))
        return self.result


@pytest.mark.asyncio
async def test_wait_step():
    outcome = await ActionExecutor().execute(refined(kind=ActionKind.WAIT, target="", value="1"))
    assert outcome.success


@pytest.mark.asyncio
async def test_invalid_wait_duration():
    outcome = await ActionExecutor().execute(refined(kind=ActionKind.WAIT, target="soon"))
    assert not outcome.success
    assert "Invalid wait duration" in outcome.detail


@pytest.mark.asyncio
async def test_http_request_checks_status_and_body():
    requests = []
    executor = ActionExecutor(transport=api_transport(requests))
    ok = await executor.execute(
        refined(
            kind=ActionKind.HTTP_REQUEST,
            target="https://api.example.com/health",
            params={"expected_body": {"status": "ok"}},
        )
    )
    missing = await executor.execute(refined(kind=ActionKind.HTTP_REQUEST, target="https://api.example.com/nope"))
    assert ok.success
    assert not missing.success
    assert "404" in missing.detail


@pytest.mark.asyncio
async def test_http_request_sends_substituted_body_and_headers():
    requests = []
    executor = ActionExecutor(variables={"API_TOKEN": "t0k3n"}, transport=api_transport(requests), use_environment=False)
    outcome = await executor.execute(
        refined(
            kind=ActionKind.HTTP_REQUEST,
            target="https://api.example.com/items",
            params={
                "method": "post",
                "headers": {"Authorization": "Bearer ${API_TOKEN}"},
                "body": {"name": "widget"},
                "expected_status": 201,
            },
        )
    )
    assert outcome.success
    assert requests[0].headers["Authorization"] == "Bearer t0k3n"
    assert json.loads(requests[0].content) == {"name": "widget"}


@pytest.mark.asyncio
async def test_unresolved_variable_is_not_executed():
    requests = []
    executor = ActionExecutor(transport=api_transport(requests), use_environment=False)
    outcome = await executor.execute(refined(kind=ActionKind.HTTP_REQUEST, target="https://api.example.com/$PATH_NAME"))
    assert not outcome.success
    assert "PATH_NAME" in outcome.detail
    assert requests == []


def test_substitute_raises_with_all_missing_names():
    executor = ActionExecutor(variables={"A": "1"}, use_environment=False)
    with pytest.raises(UnresolvedVariableError) as exc:
        executor.substitute(refined(kind=ActionKind.TYPE, target="#x", value="$A $B ${C}"))
    assert exc.value.names == ["B", "C"]


@pytest.mark.asyncio
async def test_run_command_checks_exit_code_and_output():
    executor = ActionExecutor()
    command = f'"{sys.executable}" -c "print(42)"'
    ok = await executor.execute(refined(kind=ActionKind.RUN_COMMAND, target=command, params={"output": "42"}))
    wrong = await executor.execute(refined(kind=ActionKind.RUN_COMMAND, target=command, params={"exit_code": 3}))
    assert ok.success
    assert not wrong.success


@pytest.mark.asyncio
async def test_load_variables_feeds_later_steps(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("PASSWORD=hunter2\n")
    handler = StubHandler(page=object())
    executor = ActionExecutor(handler, use_environment=False)

    loaded = await executor.execute(refined(kind=ActionKind.LOAD_VARIABLES, target=str(env_file)))
    typed = await executor.execute(refined(kind=ActionKind.TYPE, target="#password", value="$PASSWORD"))
    assert loaded.success
    assert typed.success
    assert handler.calls == [("type", "#password", "hunter2")]


@pytest.mark.asyncio
async def test_missing_variables_file():
    outcome = await ActionExecutor().execute(refined(kind=ActionKind.LOAD_VARIABLES, target="/nonexistent/.env"))
    assert not outcome.success


@pytest.mark.asyncio
async def test_unsupported_action():
    outcome = await ActionExecutor().execute(refined(kind=ActionKind.UNSUPPORTED, target="#card", raw_action="drag"))
    assert outcome.unsupported
    assert "drag" in outcome.detail


@pytest.mark.asyncio
async def test_browser_step_without_session():
    outcome = await ActionExecutor().execute(refined(kind=ActionKind.CLICK, target="#go"))
    assert not outcome.success
    assert "browser session" in outcome.detail


@pytest.mark.asyncio
async def test_failed_click_reports_target():
    handler = StubHandler(page=object(), result=False)
    outcome = await ActionExecutor(handler).execute(refined(kind=ActionKind.CLICK, target="#go"))
    assert not outcome.success
    assert "#go" in outcome.detail
