#!/usr/bin/env python3
import argparse
import asyncio
import json
import os
import sys
import traceback
from datetime import datetime

import yaml
from dotenv import load_dotenv
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright
from pydantic import ValidationError

from docqa_agent.browser.driver import ENGINES
from docqa_agent.data import Decision, InterventionKind, RefinementConfig
from docqa_agent.executor import AnalysisMode
from docqa_agent.executor.context_resolver import declared_browsers
from docqa_agent.llm.llm_api import mask_key
from docqa_agent.refiner.interaction import AutoChannel, ConsoleChannel


def find_config_file(args_config=None):
    """Intelligently find configuration file."""
    # 1. Command line arguments have highest priority
    if args_config:
        if os.path.isfile(args_config):
            print(f"✅ Using specified config file: {args_config}")
            return args_config
        else:
            raise FileNotFoundError(f"❌ Specified config file not found: {args_config}")

    # 2. Search default locations by priority
    current_dir = os.getcwd()
    script_dir = os.path.dirname(os.path.abspath(__file__))

    default_paths = [
        os.path.join(current_dir, "config", "config.yaml"),
        os.path.join(script_dir, "config", "config.yaml"),
        os.path.join(current_dir, "config.yaml"),
        os.path.join(script_dir, "config.yaml"),
    ]

    for path in default_paths:
        if os.path.isfile(path):
            print(f"✅ Auto-discovered config file: {path}")
            return path

    print("❌ Config file not found, please check these locations:")
    for path in default_paths:
        print(f"   - {path}")
    raise FileNotFoundError("Config file does not exist")


def load_yaml(path):
    try:
        with open(path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except Exception as e:
        print(f"[ERROR] Failed to read YAML: {e}", file=sys.stderr)
        sys.exit(1)


def required_engines(cfg):
    """(engine, channel) pairs Playwright must launch for the browsers named under runOn."""
    engines = []
    for name in declared_browsers(cfg.get("runOn")):
        engine = ENGINES.get(name)
        if engine and engine not in engines:
            engines.append(engine)
    return engines


async def check_playwright_browsers_async(engines=None):
    """Launch every required engine; with none declared, any installed engine will do."""
    candidates = engines or [("chromium", None), ("firefox", None), ("webkit", None)]
    available = []
    async with async_playwright() as p:
        for engine, channel in candidates:
            label = f"{engine} ({channel})" if channel else engine
            try:
                launch_options = {"headless": True, "channel": channel} if channel else {"headless": True}
                browser = await getattr(p, engine).launch(**launch_options)
                await browser.close()
                available.append(label)
            except PlaywrightError as e:
                print(f"⚠️ Playwright browser unavailable: {label}: {e}")
                if engines:
                    return False
    if not available:
        return False
    print(f"✅ Playwright browsers available: {', '.join(available)}")
    return True


def validate_and_build_llm_config(cfg):
    """Validate and build LLM configuration, environment variables take priority over config file."""
    llm_cfg_raw = cfg.get("llm_config", {}) or {}

    api_key = os.getenv("OPENAI_API_KEY") or llm_cfg_raw.get("api_key", "")
    base_url = os.getenv("OPENAI_BASE_URL") or llm_cfg_raw.get("base_url", "")
    model = llm_cfg_raw.get("model", "gpt-4o-mini")
    temperature = llm_cfg_raw.get("temperature", 0.1)

    if not api_key:
        raise ValueError(
            "❌ LLM API Key not configured! Please set one of the following:\n"
            "   - Environment variable: OPENAI_API_KEY\n"
            "   - Config file: llm_config.api_key"
        )

    if not base_url:
        print("⚠️  base_url not set, will use OpenAI default address")
        base_url = "https://api.openai.com/v1"

    llm_config = {
        "api": "openai",
        "model": model,
        "api_key": api_key,
        "base_url": base_url,
        "temperature": temperature,
    }

    env_api_key = bool(os.getenv("OPENAI_API_KEY"))
    env_base_url = bool(os.getenv("OPENAI_BASE_URL"))

    print("✅ LLM configuration validation successful:")
    print(f"   - API Key: {mask_key(api_key)} ({'Environment variable' if env_api_key else 'Config file'})")
    print(f"   - Base URL: {base_url} ({'Environment variable' if env_base_url else 'Config file/Default'})")
    print(f"   - Model: {model}")
    print(f"   - Temperature: {temperature}")

    return llm_config


def build_refinement_config(cfg):
    try:
        return RefinementConfig.model_validate(cfg.get("refinement", {}) or {})
    except ValidationError as e:
        raise ValueError(f"❌ Invalid refinement configuration:\n{e}")


def read_max_concurrency(cfg):
    raw_concurrency = cfg.get("target", {}).get("max_concurrent_contexts", 2)
    try:
        max_concurrent = int(raw_concurrency)
        if max_concurrent < 1:
            raise ValueError
    except (TypeError, ValueError):
        print(f"⚠️  Invalid concurrency setting: {raw_concurrency}, fallback to 2")
        max_concurrent = 2
    return max_concurrent


def write_reports(result, output_dir=None):
    timestamp = os.getenv("DOCQA_TIMESTAMP") or datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
    report_dir = output_dir or os.path.join("reports", f"test_{timestamp}")
    os.makedirs(report_dir, exist_ok=True)

    test_path = os.path.join(report_dir, "canonical_test.json")
    with open(test_path, "w", encoding="utf-8") as f:
        json.dump(result.test.to_spec(), f, indent=2, ensure_ascii=False)

    metadata_path = os.path.join(report_dir, "metadata.json")
    with open(metadata_path, "w", encoding="utf-8") as f:
        runs = [run.model_dump(mode="json", exclude={"test"}) for run in result.runs]
        json.dump(
            {"extraction_tokens": result.extraction_tokens.model_dump(), "runs": runs}, f, indent=2, ensure_ascii=False
        )
    return test_path, metadata_path


async def run_analysis(cfg, args):
    load_dotenv(cfg.get("env_file", ".env"))

    document_path = args.document or cfg.get("target", {}).get("document")
    if not document_path or not os.path.isfile(document_path):
        print(f"[ERROR] Document not found: {document_path}", file=sys.stderr)
        sys.exit(1)
    with open(document_path, "r", encoding="utf-8") as f:
        document = f.read()
    print(f"📄 Document: {document_path}")

    try:
        llm_config = validate_and_build_llm_config(cfg)
        refinement_config = build_refinement_config(cfg)
    except ValueError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        sys.exit(1)

    print("🔍 Checking Playwright browsers...")
    if not await check_playwright_browsers_async(required_engines(cfg)):
        print("Please manually run: `playwright install` to install browser binaries, then retry.", file=sys.stderr)
        sys.exit(1)

    if args.non_interactive:
        print("🤖 Non-interactive mode: operator decisions use their safe defaults")
        channel = AutoChannel({InterventionKind.INITIAL_TARGET_CONFIRMATION: Decision.CONTINUE})
    else:
        channel = ConsoleChannel()

    max_concurrent = read_max_concurrency(cfg)
    print(f"⚙️ Concurrency: {max_concurrent}")

    try:
        result = await AnalysisMode(max_concurrent_contexts=max_concurrent).run(
            document=document,
            llm_config=llm_config,
            refinement_config=refinement_config,
            context_specs=cfg.get("runOn"),
            browser_config=cfg.get("browser_config", {}),
            channel=channel,
            description=os.path.basename(document_path),
            log_cfg=cfg.get("log", {"level": "info"}),
        )
    except Exception:
        print("Analysis failed, stack trace:", file=sys.stderr)
        traceback.print_exc()
        sys.exit(1)

    for run in result.runs:
        print(f"🧭 {run.context.key}: {run.status.value}" + (f" ({run.error})" if run.error else ""))
        if run.metadata:
            m = run.metadata
            print(f"   ✅ Succeeded: {m.steps_succeeded}  ❌ Failed: {m.steps_failed}  ⏭️ Skipped: {m.steps_skipped}")
            print(f"   🔁 Retries: {m.retries}  🙋 Interventions: {len(m.interventions)}  🪙 Tokens: {m.token_usage.total_tokens}")
    if result.test.unresolved_credentials:
        print(f"⚠️  Unresolved credentials: {', '.join(result.test.unresolved_credentials)}")

    test_path, metadata_path = write_reports(result, args.output)
    print(f"Canonical test: {test_path}")
    print(f"Run metadata: {metadata_path}")


def parse_args():
    parser = argparse.ArgumentParser(description="DocQA Agent: documentation to validated test steps")
    parser.add_argument("--config", "-c", help="YAML configuration file path (optional, default auto-search config/config.yaml)")
    parser.add_argument("--document", "-d", help="Documentation file to analyze (overrides target.document)")
    parser.add_argument("--output", "-o", help="Report directory (default reports/test_<timestamp>)")
    parser.add_argument("--non-interactive", action="store_true", help="Never prompt; use each decision's safe default")
    return parser.parse_args()


def main():
    args = parse_args()

    try:
        config_path = find_config_file(args.config)
        cfg = load_yaml(config_path)
    except FileNotFoundError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        sys.exit(1)

    asyncio.run(run_analysis(cfg, args))


if __name__ == "__main__":
    main()
