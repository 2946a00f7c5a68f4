import asyncio
import json
import logging
import os
import re
from typing import Any, Dict, Optional

import httpx
from dotenv import dotenv_values

from docqa_agent.actions.action_handler import ActionHandler
from docqa_agent.data.step_structures import (
    DRIVER_REQUIRED_KINDS,
    ActionKind,
    ExecutionOutcome,
    RefinedStep,
    parse_wait_ms,
)

VARIABLE_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)")


class UnresolvedVariableError(Exception):
    def __init__(self, names):
        self.names = sorted(set(names))
        super().__init__(f"Unresolved variables: {', '.join(self.names)}")


class ActionExecutor:
    """Executes one refined step against the live target."""

    def __init__(
        self,
        action_handler: Optional[ActionHandler] = None,
        variables: Optional[Dict[str, str]] = None,
        timeout_ms: int = 30000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        use_environment: bool = True,
    ):
        self._actions = action_handler
        self.variables: Dict[str, str] = dict(variables or {})
        self.timeout_ms = timeout_ms
        self._transport = transport
        self._use_environment = use_environment
        self._action_map = {
            ActionKind.NAVIGATE: self._execute_navigate,
            ActionKind.CLICK: self._execute_click,
            ActionKind.TYPE: self._execute_type,
            ActionKind.FIND: self._execute_find,
            ActionKind.WAIT: self._execute_wait,
            ActionKind.SCREENSHOT: self._execute_screenshot,
            ActionKind.HTTP_REQUEST: self._execute_http_request,
            ActionKind.RUN_COMMAND: self._execute_run_command,
            ActionKind.LOAD_VARIABLES: self._execute_load_variables,
        }

    async def execute(self, step: RefinedStep) -> ExecutionOutcome:
        execute_func = self._action_map.get(step.kind)
        if not execute_func:
            logging.error(f"Unsupported action: {step.raw_action or step.kind.value}")
            return ExecutionOutcome(
                success=False, unsupported=True, detail=f"Unsupported action '{step.raw_action or step.kind.value}'"
            )

        if step.kind in DRIVER_REQUIRED_KINDS and (self._actions is None or self._actions.page is None):
            return ExecutionOutcome(success=False, detail=f"{step.kind.value} requires a browser session")

        try:
            resolved = self.substitute(step)
        except UnresolvedVariableError as e:
            logging.warning(f"Step {step.step_id} not executed: {e}")
            return ExecutionOutcome(success=False, detail=str(e))

        try:
            logging.debug(f"Executing action: {step.kind.value} -> {step.target}")
            result = await asyncio.wait_for(execute_func(resolved), timeout=self.timeout_ms / 1000)
        except asyncio.TimeoutError:
            return ExecutionOutcome(success=False, detail=f"{step.kind.value} timed out after {self.timeout_ms}ms")
        except Exception as e:
            logging.error(f"Action execution failed: {str(e)}")
            return ExecutionOutcome(success=False, detail=f"Action execution failed with an exception: {e}")
        return ExecutionOutcome(success=result["success"], detail=result["message"])

    def _lookup(self, name: str) -> Optional[str]:
        if name in self.variables:
            return self.variables[name]
        if self._use_environment:
            return os.environ.get(name)
        return None

    def _substitute_text(self, text: str, missing: list) -> str:
        def replace(match):
            name = match.group(1) or match.group(2)
            value = self._lookup(name)
            if value is None:
                missing.append(name)
                return match.group(0)
            return value

        return VARIABLE_PATTERN.sub(replace, text)

    def _substitute_value(self, value: Any, missing: list) -> Any:
        if isinstance(value, str):
            return self._substitute_text(value, missing)
        if isinstance(value, dict):
            return {k: self._substitute_value(v, missing) for k, v in value.items()}
        if isinstance(value, list):
            return [self._substitute_value(v, missing) for v in value]
        return value

    def substitute(self, step: RefinedStep) -> RefinedStep:
        """Resolve ``$NAME`` and ``${NAME}`` references in the executable fields of a step.

        Raises:
            UnresolvedVariableError: when a referenced name has no value.
        """
        missing = []
        update = {
            "target": self._substitute_text(step.target, missing),
            "value": self._substitute_text(step.value, missing) if step.value is not None else None,
            "params": self._substitute_value(step.params, missing),
        }
        if missing:
            raise UnresolvedVariableError(missing)
        return step.model_copy(update=update)

    async def _execute_navigate(self, step):
        if not step.target:
            return {"success": False, "message": "Missing URL for navigate action"}
        success = await self._actions.go_to_page(step.target)
        if success:
            return {"success": True, "message": f"Navigated to {step.target}."}
        return {"success": False, "message": f"Navigation to {step.target} failed."}

    async def _execute_click(self, step):
        if not step.target:
            return {"success": False, "message": "Missing selector for click action"}
        success = await self._actions.click(step.target)
        if success:
            return {"success": True, "message": "Click action successful."}
        return {"success": False, "message": f"Click on '{step.target}' failed. The element might not be clickable."}

    async def _execute_type(self, step):
        if not step.target or step.value is None:
            return {"success": False, "message": "Missing selector or value for type action"}
        success = await self._actions.type(
            step.target, step.value, clear_before_type=step.params.get("clear_before_type", True)
        )
        if success:
            return {"success": True, "message": "Type action successful."}
        return {"success": False, "message": f"Typing into '{step.target}' failed. The element might not be available."}

    async def _execute_find(self, step):
        if not step.target:
            return {"success": False, "message": "Missing selector for find action"}
        success = await self._actions.find(step.target, match_text=step.params.get("match_text"))
        if success:
            return {"success": True, "message": f"Found '{step.target}'."}
        return {"success": False, "message": f"Element '{step.target}' not found."}

    async def _execute_wait(self, step):
        raw = step.value if step.value is not None else step.target
        try:
            time_ms = parse_wait_ms(raw)
        except ValueError as e:
            return {"success": False, "message": str(e)}
        await asyncio.sleep(time_ms / 1000)
        return {"success": True, "message": f"Slept for {time_ms}ms."}

    async def _execute_screenshot(self, step):
        success = await self._actions.take_screenshot(file_path=step.target or None)
        if success:
            return {"success": True, "message": "Screenshot captured."}
        return {"success": False, "message": "Screenshot failed."}

    async def _execute_http_request(self, step):
        if not step.target:
            return {"success": False, "message": "Missing URL for HTTP request"}
        method = step.params.get("method", "GET").upper()
        body = step.params.get("body")
        request_kwargs = {"headers": step.params.get("headers") or None}
        if isinstance(body, (dict, list)):
            request_kwargs["json"] = body
        elif body is not None:
            request_kwargs["content"] = str(body)

        async with httpx.AsyncClient(timeout=self.timeout_ms / 1000, transport=self._transport) as client:
            try:
                response = await client.request(method, step.target, **request_kwargs)
            except httpx.HTTPError as e:
                return {"success": False, "message": f"{method} {step.target} failed: {e}"}

        expected = step.params.get("expected_status")
        if expected is None:
            ok = response.status_code < 400
        else:
            ok = response.status_code in (expected if isinstance(expected, list) else [expected])
        message = f"{method} {step.target} returned {response.status_code}"
        if ok and step.params.get("expected_body"):
            try:
                ok = json.loads(response.text) == step.params["expected_body"]
            except ValueError:
                ok = False
            if not ok:
                message += " with an unexpected body"
        return {"success": ok, "message": message}

    async def _execute_run_command(self, step):
        if not step.target:
            return {"success": False, "message": "Missing command"}
        process = await asyncio.create_subprocess_shell(
            step.target, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            process.kill()
            raise

        expected_code = step.params.get("exit_code", 0)
        output = stdout.decode("utf-8", errors="replace")
        if process.returncode != expected_code:
            error = stderr.decode("utf-8", errors="replace").strip()
            return {"success": False, "message": f"Command exited with {process.returncode}: {error[:200]}"}
        expected_output = step.params.get("output")
        if expected_output and expected_output not in output:
            return {"success": False, "message": f"Command output did not contain '{expected_output}'"}
        return {"success": True, "message": f"Command exited with {process.returncode}."}

    async def _execute_load_variables(self, step):
        path = step.target
        if not path or not os.path.exists(path):
            return {"success": False, "message": f"Variables file not found: {path}"}
        loaded = {k: v for k, v in dotenv_values(path).items() if v is not None}
        self.variables.update(loaded)
        return {"success": True, "message": f"Loaded {len(loaded)} variables from {path}."}
