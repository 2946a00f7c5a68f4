import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional

from docqa_agent.actions.action_executor import ActionExecutor
from docqa_agent.actions.action_handler import ActionHandler
from docqa_agent.browser.config import DEFAULT_CONFIG
from docqa_agent.browser.session import BrowserSessionManager
from docqa_agent.crawler.page_probe import PageStateProbe
from docqa_agent.data.run_config import RefinementConfig
from docqa_agent.data.run_structures import ContextRun, ContextRunStatus
from docqa_agent.data.step_structures import ExecutionContext, RoughStep
from docqa_agent.executor.context_resolver import AmbientEnvironment, detect_environment
from docqa_agent.refiner.agents.step_agent import StepAgent
from docqa_agent.refiner.credential_manager import CredentialManager
from docqa_agent.refiner.graph import RefinementOrchestrator
from docqa_agent.refiner.interaction import HumanChannel
from docqa_agent.refiner.reinterpreter import Reinterpreter
from docqa_agent.utils.log_icon import icon


class ParallelContextExecutor:
    """Runs one refinement per execution context, each with its own browser session."""

    def __init__(
        self,
        reinterpreter: Reinterpreter,
        channel: HumanChannel,
        refinement_config: Optional[RefinementConfig] = None,
        credential_manager: Optional[CredentialManager] = None,
        browser_config: Optional[Dict[str, Any]] = None,
        max_concurrent_contexts: int = 2,
        session_manager: Optional[BrowserSessionManager] = None,
        probe_factory: Optional[Callable] = None,
        step_executor_factory: Optional[Callable] = None,
        environment: Optional[AmbientEnvironment] = None,
        sleep=asyncio.sleep,
    ):
        self.reinterpreter = reinterpreter
        self.channel = channel
        self.config = refinement_config or RefinementConfig()
        self.credential_manager = credential_manager or CredentialManager(
            self.config.env_file, channel, self.config.human_timeout_seconds
        )
        self.browser_config = {**DEFAULT_CONFIG, **(browser_config or {})}
        self.max_concurrent_contexts = max(1, max_concurrent_contexts)
        self.session_manager = session_manager or BrowserSessionManager()
        self.probe_factory = probe_factory or PageStateProbe
        self.step_executor_factory = step_executor_factory or self._default_step_executor
        self.environment = environment or detect_environment()
        self._sleep = sleep

        self.running_contexts: Dict[str, asyncio.Task] = {}

    async def _default_step_executor(self, page):
        handler = None
        if page is not None:
            handler = await ActionHandler(timeout_ms=self.config.step_timeout_ms).initialize(page)
        return ActionExecutor(handler, timeout_ms=self.config.step_timeout_ms)

    def _session_config(self, context: ExecutionContext) -> Dict[str, Any]:
        browser = context.browser
        headless = browser.headless if "headless" in browser.model_fields_set else self.browser_config["headless"]
        return {**self.browser_config, "browser": browser.name, "headless": headless}

    async def execute_contexts(
        self, rough_steps: List[RoughStep], contexts: List[ExecutionContext], document: str = "", description: str = ""
    ) -> List[ContextRun]:
        """Run every context concurrently, bounded by ``max_concurrent_contexts``.

        Results are returned in the order of ``contexts``. A failure or abort in
        one context never affects the others.
        """
        logging.info(f"Starting refinement over {len(contexts)} context(s)")
        semaphore = asyncio.Semaphore(min(self.max_concurrent_contexts, max(len(contexts), 1)))

        tasks = []
        for context in contexts:
            task = asyncio.create_task(self._execute_single_context(rough_steps, context, semaphore, document, description))
            tasks.append(task)
            self.running_contexts[context.key] = task

        cancelled = False
        try:
            try:
                results = await asyncio.gather(*tasks, return_exceptions=True)
            except asyncio.CancelledError:
                logging.warning("Context execution was cancelled, collecting completed runs.")
                cancelled = True
                results = []
                for task in tasks:
                    if task.done() and not task.cancelled():
                        results.append(task.exception() or task.result())
                    else:
                        results.append(asyncio.CancelledError())

            runs = []
            for context, result in zip(contexts, results):
                if isinstance(result, asyncio.CancelledError):
                    logging.warning(f"Context {context.key} was cancelled.")
                    runs.append(ContextRun(context=context, status=ContextRunStatus.CANCELLED, error="Context was cancelled"))
                elif isinstance(result, BaseException):
                    logging.error(f"Context {context.key} failed with exception: {result}")
                    runs.append(ContextRun(context=context, status=ContextRunStatus.FAILED, error=str(result)))
                else:
                    runs.append(result)
        finally:
            for context in contexts:
                self.running_contexts.pop(context.key, None)
            await self.session_manager.close_all_sessions()

        if cancelled:
            raise asyncio.CancelledError()
        return runs

    async def _execute_single_context(
        self,
        rough_steps: List[RoughStep],
        context: ExecutionContext,
        semaphore: asyncio.Semaphore,
        document: str,
        description: str,
    ) -> ContextRun:
        if context.platform != self.environment.platform:
            logging.warning(f"Skipping {context.key}: this machine runs {self.environment.platform}")
            return ContextRun(
                context=context,
                status=ContextRunStatus.SKIPPED,
                error=f"platform {context.platform} is not available on {self.environment.platform}",
            )

        async with semaphore:
            logging.info(f"{icon['running']} Starting context: {context.key}")
            session = None
            try:
                page = None
                if context.browser is not None:
                    session = await self.session_manager.create_session(self._session_config(context))
                    page = session.get_page()

                step_executor = self.step_executor_factory(page)
                if inspect.isawaitable(step_executor):
                    step_executor = await step_executor

                agent = StepAgent(
                    probe=self.probe_factory(page),
                    reinterpreter=self.reinterpreter,
                    executor=step_executor,
                    channel=self.channel,
                    config=self.config,
                    context_label=context.key,
                    sleep=self._sleep,
                )
                outcome = await RefinementOrchestrator(agent, self.credential_manager).run(
                    rough_steps, context, document=document, description=description
                )
                status = ContextRunStatus.ABORTED if outcome.metadata.aborted else ContextRunStatus.COMPLETED
                logging.info(f"{icon['check']} Context {context.key} {status.value}")
                return ContextRun(context=context, status=status, test=outcome.test, metadata=outcome.metadata)

            except asyncio.CancelledError:
                logging.warning(f"Context cancelled: {context.key}")
                return ContextRun(context=context, status=ContextRunStatus.CANCELLED, error="Context was cancelled")

            except Exception as e:
                logging.error(f"Context failed: {context.key} - {e}", exc_info=True)
                return ContextRun(context=context, status=ContextRunStatus.FAILED, error=str(e))

            finally:
                if session is not None:
                    await self.session_manager.close_session(session.session_id)

    async def cancel_context(self, key: str):
        task = self.running_contexts.get(key)
        if task:
            task.cancel()
            logging.info(f"Context cancelled: {key}")

    async def cancel_all_contexts(self):
        for key in list(self.running_contexts.keys()):
            await self.cancel_context(key)
        await self.session_manager.close_all_sessions()
