import json

import pytest

from docqa_agent.crawler.page_probe import PageSurface
from docqa_agent.data.run_structures import TokenUsage
from docqa_agent.data.step_structures import ActionKind
from docqa_agent.refiner.reinterpreter import (
    DEFAULT_CONFIDENCE,
    LLMReinterpreter,
    LLMStepExtractor,
    ReinterpretationError,
    ReinterpretationRequest,
    parse_json_object,
    split_segments,
)
from fakes import rough

DOCUMENT = """# Getting started

Open https://example.com/login in your browser.

Enter your email and password, then click **Sign in**.

```bash
curl -H "Authorization: Bearer $API_TOKEN" https://api.example.com/health
```
"""


class StubLLM:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.prompts = []

    async def get_llm_response_with_usage(self, system_prompt, prompt):
        self.prompts.append(prompt)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response, TokenUsage(prompt_tokens=100, completion_tokens=20, total_tokens=120)


def test_split_segments_tracks_lines_and_code():
    segments = split_segments(DOCUMENT)
    assert [s.segment_type for s in segments] == ["text", "text", "text", "code"]
    assert segments[1].line_number == 3
    assert segments[3].line_number == 7
    assert "curl" in segments[3].raw_text


def test_parse_json_object_variants():
    assert parse_json_object('{"a": 1}') == {"a": 1}
    assert parse_json_object('Here you go:\n```json\n{"a": 2}\n```') == {"a": 2}
    assert parse_json_object('Sure! {"a": 3} Hope that helps.') == {"a": 3}
    with pytest.raises(ReinterpretationError):
        parse_json_object("no json at all")
    with pytest.raises(ReinterpretationError):
        parse_json_object("")


@pytest.mark.asyncio
async def test_reinterpret_builds_refined_step():
    response = json.dumps(
        {
            "action": "click",
            "target": "#login",
            "description": "Click Sign in",
            "confidence": 0.85,
            "notes": "matched the button text",
            "alternatives": ["#login", "text=Sign in"],
        }
    )
    llm = StubLLM(response)
    request = ReinterpretationRequest(
        instruction="click Sign in", rough_step=rough(target="Sign in"), surface=PageSurface(url="https://example.com")
    )
    result = await LLMReinterpreter(llm).reinterpret(request)

    step = result.step
    assert step.kind == ActionKind.CLICK
    assert step.target == "#login"
    assert step.confidence == 0.85
    assert step.notes == ("matched the button text",)
    assert step.alternatives == ("text=Sign in",)
    assert result.tokens.total_tokens == 120
    assert "click Sign in" in llm.prompts[0]
    assert "https://example.com" in llm.prompts[0]


@pytest.mark.asyncio
async def test_missing_confidence_uses_default_and_out_of_range_is_clamped():
    llm = StubLLM('{"action": "wait", "value": 500}', '{"step": {"action": "find", "target": "h1"}, "confidence": 7}')
    reinterpreter = LLMReinterpreter(llm)
    first = await reinterpreter.reinterpret(ReinterpretationRequest(instruction="wait a bit"))
    second = await reinterpreter.reinterpret(ReinterpretationRequest(instruction="check the heading"))

    assert first.step.confidence == DEFAULT_CONFIDENCE
    assert first.step.value == "500"
    assert second.step.kind == ActionKind.FIND
    assert second.step.confidence == 1.0


@pytest.mark.asyncio
async def test_unknown_action_becomes_unsupported():
    llm = StubLLM('{"action": "drag_and_drop", "target": "#card", "confidence": 0.9}')
    result = await LLMReinterpreter(llm).reinterpret(ReinterpretationRequest(instruction="drag the card"))
    assert result.step.kind == ActionKind.UNSUPPORTED
    assert result.step.raw_action == "drag_and_drop"


@pytest.mark.asyncio
async def test_model_errors_are_wrapped():
    reinterpreter = LLMReinterpreter(StubLLM(ValueError("rate limited"), "not json"))
    with pytest.raises(ReinterpretationError):
        await reinterpreter.reinterpret(ReinterpretationRequest(instruction="x"))
    with pytest.raises(ReinterpretationError):
        await reinterpreter.reinterpret(ReinterpretationRequest(instruction="x"))


@pytest.mark.asyncio
async def test_extractor_maps_segments_and_drops_malformed_steps():
    response = json.dumps(
        {
            "steps": [
                {"action": "navigate", "target": "https://example.com/login", "segment": 2},
                {"action": "type", "target": "#email", "value": "$EMAIL", "segment": 3},
                {"target": "missing action"},
                {"action": "http_request", "target": "https://api.example.com/health", "segment": 4,
                 "params": {"headers": {"Authorization": "Bearer $API_TOKEN"}}},
            ]
        }
    )
    result = await LLMStepExtractor(StubLLM(response)).extract(DOCUMENT)

    assert [s.kind for s in result.steps] == [ActionKind.NAVIGATE, ActionKind.TYPE, ActionKind.HTTP_REQUEST]
    assert result.steps[0].source.line_number == 3
    assert result.steps[2].source.segment_type == "code"
    assert result.tokens.total_tokens == 120


@pytest.mark.asyncio
async def test_extractor_skips_empty_documents():
    llm = StubLLM()
    result = await LLMStepExtractor(llm).extract("   \n\n")
    assert result.steps == []
    assert llm.prompts == []
