import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from docqa_agent.crawler.page_probe import PageSurface
from docqa_agent.data.run_structures import TokenUsage
from docqa_agent.data.step_structures import ActionKind, RefinedStep, RoughStep, SourceProvenance
from docqa_agent.llm.llm_api import LLMAPI
from docqa_agent.llm.prompt import LLMPrompt, get_extraction_user_prompt, get_reinterpretation_user_prompt

# Used when the collaborator does not report a confidence
DEFAULT_CONFIDENCE = 0.5


class ReinterpretationError(Exception):
    pass


class ReinterpretationRequest(BaseModel):
    instruction: str
    rough_step: Optional[RoughStep] = None
    surface: PageSurface = Field(default_factory=PageSurface)
    completed_steps: List[RefinedStep] = Field(default_factory=list)


class ReinterpretationResult(BaseModel):
    step: RefinedStep
    tokens: TokenUsage = Field(default_factory=TokenUsage)


class ProposedStep(BaseModel):
    """Shape validation of one step proposed by the model."""

    action: str
    target: str = ""
    value: Optional[Any] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    description: str = ""
    confidence: Optional[float] = None
    notes: List[str] = Field(default_factory=list)
    alternatives: List[str] = Field(default_factory=list)
    segment: Optional[int] = None

    @field_validator("target", "description", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return "" if value is None else str(value)

    @field_validator("params", mode="before")
    @classmethod
    def _none_to_dict(cls, value):
        return value or {}

    @field_validator("notes", "alternatives", mode="before")
    @classmethod
    def _as_list(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return [str(v) for v in value if v]

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, value):
        if value is None:
            return None
        try:
            return min(max(float(value), 0.0), 1.0)
        except (TypeError, ValueError):
            return None


def parse_json_object(text: str) -> Dict[str, Any]:
    """Extract the JSON object from a model response that may carry prose or code fences."""
    if not text or not text.strip():
        raise ReinterpretationError("empty response")
    candidates = [text.strip()]
    fenced = re.search(r"```(?:json)?\s*(.*?)```", text, re.S)
    if fenced:
        candidates.append(fenced.group(1).strip())
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start : end + 1])
    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(data, dict):
            return data
    raise ReinterpretationError(f"no JSON object in response: {text[:200]!r}")


def proposed_to_refined(proposed: ProposedStep, rough: Optional[RoughStep] = None) -> RefinedStep:
    kind = ActionKind.parse(proposed.action)
    confidence = DEFAULT_CONFIDENCE if proposed.confidence is None else proposed.confidence
    return RefinedStep(
        kind=kind,
        target=proposed.target or (rough.target if rough else ""),
        value=proposed.value if proposed.value is not None else (rough.value if rough else None),
        params=proposed.params or (dict(rough.params) if rough else {}),
        description=proposed.description or (rough.description if rough else ""),
        confidence=confidence,
        notes=tuple(proposed.notes),
        alternatives=tuple(a for a in proposed.alternatives if a != proposed.target),
        source=rough.source if rough else None,
        raw_action=proposed.action,
    )


class Reinterpreter(ABC):
    @abstractmethod
    async def reinterpret(self, request: ReinterpretationRequest) -> ReinterpretationResult:
        """Translate one instruction into a refined step for the probed page."""


class LLMReinterpreter(Reinterpreter):
    def __init__(self, llm_api: LLMAPI):
        self.llm_api = llm_api

    async def reinterpret(self, request: ReinterpretationRequest) -> ReinterpretationResult:
        hint = None
        if request.rough_step is not None:
            hint = json.dumps(
                request.rough_step.model_dump(include={"kind", "target", "value", "params", "description"}, mode="json")
            )
        prompt = get_reinterpretation_user_prompt(request.instruction, request.surface, request.completed_steps, hint)
        try:
            content, tokens = await self.llm_api.get_llm_response_with_usage(
                LLMPrompt.reinterpretation_system_prompt, prompt
            )
        except Exception as e:
            raise ReinterpretationError(f"model call failed: {e}") from e

        data = parse_json_object(content)
        if "step" in data and isinstance(data["step"], dict):
            data = {**data["step"], **{k: v for k, v in data.items() if k != "step"}}
        try:
            proposed = ProposedStep.model_validate(data)
        except ValidationError as e:
            raise ReinterpretationError(f"invalid step shape: {e}") from e

        step = proposed_to_refined(proposed, request.rough_step)
        logging.debug(f"Reinterpreted '{request.instruction[:60]}' as {step.kind.value} '{step.target}' ({step.confidence})")
        return ReinterpretationResult(step=step, tokens=tokens)


class ExtractionResult(BaseModel):
    steps: List[RoughStep] = Field(default_factory=list)
    tokens: TokenUsage = Field(default_factory=TokenUsage)


def split_segments(document: str) -> List[SourceProvenance]:
    """Paragraphs and fenced code blocks, each with the line it starts on."""
    segments = []
    buffer: List[str] = []
    start = None
    in_code = False

    def flush(segment_type):
        nonlocal buffer, start
        text = "\n".join(buffer).strip()
        if text:
            segments.append(SourceProvenance(segment_type=segment_type, raw_text=text, line_number=start))
        buffer, start = [], None

    for number, line in enumerate(document.splitlines(), start=1):
        if line.strip().startswith("```"):
            if in_code:
                buffer.append(line)
                flush("code")
                in_code = False
            else:
                flush("text")
                in_code = True
                start = number
                buffer.append(line)
            continue
        if in_code:
            buffer.append(line)
            continue
        if not line.strip():
            flush("text")
            continue
        if start is None:
            start = number
        buffer.append(line)
    flush("code" if in_code else "text")
    return segments


class StepExtractor(ABC):
    @abstractmethod
    async def extract(self, document: str) -> ExtractionResult:
        """Rough, ordered steps for a whole document."""


class LLMStepExtractor(StepExtractor):
    def __init__(self, llm_api: LLMAPI):
        self.llm_api = llm_api

    async def extract(self, document: str) -> ExtractionResult:
        segments = split_segments(document)
        if not segments:
            return ExtractionResult()

        content, tokens = await self.llm_api.get_llm_response_with_usage(
            LLMPrompt.extraction_system_prompt, get_extraction_user_prompt(segments)
        )
        data = parse_json_object(content)
        steps = []
        for raw in data.get("steps") or []:
            try:
                proposed = ProposedStep.model_validate(raw)
            except ValidationError as e:
                logging.warning(f"Dropping malformed extracted step {raw!r}: {e}")
                continue
            source = None
            if proposed.segment and 1 <= proposed.segment <= len(segments):
                source = segments[proposed.segment - 1]
            steps.append(
                RoughStep(
                    kind=proposed.action,
                    target=proposed.target,
                    value=proposed.value,
                    params=proposed.params,
                    description=proposed.description,
                    source=source,
                    raw_action=proposed.action,
                )
            )
        logging.info(f"Extracted {len(steps)} rough steps from {len(segments)} segments")
        return ExtractionResult(steps=steps, tokens=tokens)
