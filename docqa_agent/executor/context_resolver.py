import os
import shutil
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict

from docqa_agent.data.step_structures import DRIVER_REQUIRED_KINDS, BrowserSpec, ExecutionContext

PLATFORM_MAP = {"darwin": "mac", "linux": "linux", "win32": "windows"}
BROWSER_ALIASES = {"safari": "webkit", "chromium": "chrome", "msedge": "edge"}
NATIVE_BROWSERS = {"mac": "webkit", "windows": "edge"}
DEFAULT_BROWSER_PRIORITY = ("firefox", "chrome")

ContextSpec = Dict[str, Any]


class AmbientEnvironment(BaseModel):
    model_config = ConfigDict(frozen=True)

    platform: str
    available_browsers: Tuple[str, ...] = ()


def _playwright_cache() -> Path:
    override = os.environ.get("PLAYWRIGHT_BROWSERS_PATH")
    if override and override != "0":
        return Path(override)
    home = Path.home()
    if sys.platform == "darwin":
        return home / "Library" / "Caches" / "ms-playwright"
    if sys.platform == "win32":
        return Path(os.environ.get("LOCALAPPDATA", home / "AppData" / "Local")) / "ms-playwright"
    return home / ".cache" / "ms-playwright"


def detect_environment() -> AmbientEnvironment:
    """Platform of this machine and the browsers Playwright can launch on it."""
    platform = PLATFORM_MAP.get(sys.platform, sys.platform)
    installed = set()
    cache = _playwright_cache()
    if cache.is_dir():
        for entry in cache.iterdir():
            if entry.name.startswith("firefox"):
                installed.add("firefox")
            elif entry.name.startswith("chromium"):
                installed.add("chrome")
            elif entry.name.startswith("webkit"):
                installed.add("webkit")
    if shutil.which("google-chrome") or shutil.which("chrome"):
        installed.add("chrome")
    if shutil.which("msedge") or shutil.which("microsoft-edge"):
        installed.add("edge")

    order = ["firefox", "chrome", "webkit", "edge"]
    return AmbientEnvironment(platform=platform, available_browsers=tuple(b for b in order if b in installed))


def is_driver_required(steps: Iterable[Any]) -> bool:
    return any(getattr(step, "kind", None) in DRIVER_REQUIRED_KINDS for step in steps)


def normalize_browser(entry: Union[str, Dict[str, Any], BrowserSpec]) -> BrowserSpec:
    if isinstance(entry, BrowserSpec):
        data = entry.model_dump()
    elif isinstance(entry, str):
        data = {"name": entry}
    else:
        data = dict(entry)
    name = str(data.get("name", "")).strip().lower()
    data["name"] = BROWSER_ALIASES.get(name, name)
    return BrowserSpec.model_validate(data)


def _as_list(value) -> List:
    if value is None:
        return []
    if isinstance(value, (str, dict, BrowserSpec)):
        return [value]
    return list(value)


def declared_browsers(specs) -> List[str]:
    """Browser names, normalized and deduplicated in order, named anywhere in ``specs``."""
    names: List[str] = []
    for spec in _as_list(specs):
        if not isinstance(spec, dict):
            continue
        for entry in _as_list(spec.get("browsers", spec.get("browser"))):
            name = normalize_browser(entry).name
            if name and name not in names:
                names.append(name)
    return names


def default_browser(environment: AmbientEnvironment) -> Optional[BrowserSpec]:
    """First available of firefox, chrome, then the platform-native browser."""
    priority = list(DEFAULT_BROWSER_PRIORITY)
    native = NATIVE_BROWSERS.get(environment.platform)
    if native:
        priority.append(native)
    for name in priority:
        if name in environment.available_browsers:
            return BrowserSpec(name=name)
    return None


def resolve_contexts(
    specs: Optional[List[ContextSpec]], driver_required: bool, environment: AmbientEnvironment
) -> List[ExecutionContext]:
    """Expand declared platform/browser specs into concrete, deduplicated contexts.

    Specs may use ``platforms``/``platform`` and ``browsers``/``browser``, each as
    a bare string, an object or a list. The input is never modified.
    """
    fallback_browser = default_browser(environment) if driver_required else None
    resolved: List[ExecutionContext] = []

    for spec in specs or []:
        platforms = _as_list(spec.get("platforms", spec.get("platform")))
        platforms = [str(p).strip().lower() for p in platforms] or [environment.platform]
        browsers = [normalize_browser(b) for b in _as_list(spec.get("browsers", spec.get("browser")))]

        for platform in platforms:
            if not driver_required:
                candidates = [ExecutionContext(platform=platform)]
            elif browsers:
                candidates = [ExecutionContext(platform=platform, browser=browser) for browser in browsers]
            else:
                candidates = [ExecutionContext(platform=platform, browser=fallback_browser)]
            for context in candidates:
                if context not in resolved:
                    resolved.append(context)

    if not resolved:
        resolved.append(ExecutionContext(platform=environment.platform, browser=fallback_browser))
    return resolved


class ContextResolver:
    def __init__(self, environment: Optional[AmbientEnvironment] = None):
        self.environment = environment or detect_environment()

    def resolve(self, specs: Optional[List[ContextSpec]], steps: Iterable[Any]) -> List[ExecutionContext]:
        return resolve_contexts(specs, is_driver_required(steps), self.environment)
