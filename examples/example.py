import asyncio
import json
import os
import sys
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from dotenv import load_dotenv
load_dotenv()

from docqa_agent.data import Decision, InterventionKind, RefinementConfig
from docqa_agent.executor import AnalysisMode
from docqa_agent.refiner.interaction import AutoChannel

DOCUMENT = """# Quick start

Open https://example.com in your browser.

Check that the page heading says "Example Domain", then click **More information...**.
"""


async def example():
    llm_config = {
        "api": "openai",
        "model": "gpt-4o-mini",
        "api_key": os.getenv("OPENAI_API_KEY"),
        "base_url": os.getenv("OPENAI_BASE_URL")
    }
    refinement_config = RefinementConfig(confidence_threshold=0.6, max_retries=3)

    # Run unattended: take the suggested start page, otherwise use each decision's default
    channel = AutoChannel({InterventionKind.INITIAL_TARGET_CONFIRMATION: Decision.CONTINUE})

    result = await AnalysisMode(max_concurrent_contexts=2).run(
        document=DOCUMENT,
        llm_config=llm_config,
        refinement_config=refinement_config,
        context_specs=[{"browsers": ["chrome", "firefox"]}],
        browser_config={"viewport": {"width": 1280, "height": 720}, "headless": True},
        channel=channel,
        description="Quick start",
        log_cfg={"level": "info"},
    )

    for run in result.runs:
        print(f"{run.context.key}: {run.status.value}")
    print(json.dumps(result.test.to_spec(), indent=2))


if __name__ == "__main__":
    asyncio.run(example())
