import logging
from typing import Any, Dict, List, Optional

from docqa_agent.data.run_config import RefinementConfig
from docqa_agent.data.run_structures import AnalysisResult, CanonicalTest, ContextRunStatus
from docqa_agent.executor.context_resolver import AmbientEnvironment, detect_environment, is_driver_required, resolve_contexts
from docqa_agent.executor.parallel_executor import ParallelContextExecutor
from docqa_agent.llm.llm_api import LLMAPI
from docqa_agent.refiner.interaction import ConsoleChannel, HumanChannel
from docqa_agent.refiner.reinterpreter import LLMReinterpreter, LLMStepExtractor, Reinterpreter, StepExtractor
from docqa_agent.utils.get_log import GetLog
from docqa_agent.utils.log_icon import icon


class AnalysisMode:
    """Document in, canonical test out."""

    def __init__(self, max_concurrent_contexts: int = 2):
        self.max_concurrent_contexts = max_concurrent_contexts

    async def run(
        self,
        document: str,
        llm_config: Optional[Dict[str, Any]] = None,
        refinement_config: Optional[RefinementConfig] = None,
        context_specs: Optional[List[Dict[str, Any]]] = None,
        browser_config: Optional[Dict[str, Any]] = None,
        channel: Optional[HumanChannel] = None,
        description: str = "",
        log_cfg: Optional[Dict[str, Any]] = None,
        extractor: Optional[StepExtractor] = None,
        reinterpreter: Optional[Reinterpreter] = None,
        environment: Optional[AmbientEnvironment] = None,
        context_executor: Optional[ParallelContextExecutor] = None,
    ) -> AnalysisResult:
        if log_cfg is not None:
            GetLog.get_log(level=log_cfg.get("level", "info"))

        llm_api = None
        if extractor is None or reinterpreter is None:
            if not llm_config:
                raise ValueError("llm_config is required unless both an extractor and a reinterpreter are given")
            llm_api = await LLMAPI(llm_config).initialize()
            extractor = extractor or LLMStepExtractor(llm_api)
            reinterpreter = reinterpreter or LLMReinterpreter(llm_api)

        try:
            logging.info(f"{icon['running']} Extracting steps from document ({len(document)} chars)")
            extraction = await extractor.extract(document)
            rough_steps = extraction.steps
            if not rough_steps:
                logging.warning("No actionable steps found in the document")

            environment = environment or detect_environment()
            contexts = resolve_contexts(context_specs, is_driver_required(rough_steps), environment)
            logging.info(f"Resolved contexts: {[c.key for c in contexts]}")

            executor = context_executor or ParallelContextExecutor(
                reinterpreter=reinterpreter,
                channel=channel or ConsoleChannel(),
                refinement_config=refinement_config,
                browser_config=browser_config,
                max_concurrent_contexts=self.max_concurrent_contexts,
                environment=environment,
            )
            runs = await executor.execute_contexts(rough_steps, contexts, document=document, description=description)

            primary = next((r for r in runs if r.status == ContextRunStatus.COMPLETED and r.test), None)
            if primary is None:
                primary = next((r for r in runs if r.test), None)
                if primary is not None:
                    logging.warning(f"No context completed; using the partial run of {primary.context.key}")
            test = CanonicalTest(
                description=description,
                steps=list(primary.test.steps) if primary else [],
                contexts=contexts,
                unresolved_credentials=list(primary.test.unresolved_credentials) if primary else [],
            )
            return AnalysisResult(
                test=test,
                rough_steps=rough_steps,
                contexts=contexts,
                runs=runs,
                extraction_tokens=extraction.tokens,
            )
        finally:
            if llm_api is not None:
                await llm_api.close()
