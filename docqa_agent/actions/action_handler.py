import logging
import re
from typing import Optional

from playwright.async_api import Locator, Page

_HTML_TAGS = {"a", "button", "input", "select", "textarea", "form", "img", "label", "li", "div", "span",
              "h1", "h2", "h3", "h4", "h5", "h6", "p", "nav", "table", "tr", "td"}


class ActionHandler:
    """Playwright page operations addressed by selector."""

    def __init__(self, timeout_ms: int = 30000):
        self.page: Optional[Page] = None
        self.timeout_ms = timeout_ms

    async def initialize(self, page: Page | None = None):
        if page is not None:
            self.page = page
        return self

    @staticmethod
    def _is_valid_css_selector(selector: str) -> bool:
        """Validate if CSS selector format is valid.

        Args:
            selector: CSS selector string

        Returns:
            bool: True if selector format is valid, False otherwise
        """
        if not selector or not isinstance(selector, str):
            return False

        selector = selector.strip()
        if not selector:
            return False

        # Cannot start with a number
        if re.match(r"^[0-9]", selector):
            return False

        css_pattern = r'^[a-zA-Z_\-\[\]().,:#*>+~\s="\'0-9^$|]+$'
        if not re.match(css_pattern, selector):
            return False

        if selector.count("[") != selector.count("]"):
            return False
        if selector.count("(") != selector.count(")"):
            return False

        return True

    def _locator(self, selector: str) -> Locator:
        """CSS, xpath= and text= selectors go to ``locator``; anything else is matched as visible text."""
        selector = selector.strip()
        if selector.startswith(("text=", "xpath=", "css=", "role=", "//")):
            return self.page.locator(selector).first
        looks_css = any(ch in selector for ch in "#.[:>") or selector.lower() in _HTML_TAGS
        if looks_css and self._is_valid_css_selector(selector):
            return self.page.locator(selector).first
        return self.page.get_by_text(selector.strip("\"'")).first

    async def go_to_page(self, url: str) -> bool:
        try:
            await self.page.goto(url=url, wait_until="domcontentloaded", timeout=self.timeout_ms)
            try:
                await self.page.wait_for_load_state("networkidle", timeout=self.timeout_ms)
            except Exception as e:
                logging.debug(f"networkidle not reached after navigating to {url}: {e}")
            return True
        except Exception as e:
            logging.error(f"Failed to navigate to {url}: {e}")
            return False

    async def click(self, selector: str) -> bool:
        try:
            logging.debug(f"Attempting to click element: selector='{selector}'")
            await self._locator(selector).click(timeout=self.timeout_ms)
            return True
        except Exception as e:
            logging.error(f"Failed to click element '{selector}': {e}")
            return False

    async def type(self, selector: str, text: str, clear_before_type: bool = True) -> bool:
        """Types text into the element, clearing it first by default."""
        try:
            locator = self._locator(selector)
            if clear_before_type:
                await locator.fill(text, timeout=self.timeout_ms)
            else:
                await locator.press_sequentially(text, timeout=self.timeout_ms)
            return True
        except Exception as e:
            logging.error(f"Failed to type into element '{selector}': {e}")
            return False

    async def find(self, selector: str, match_text: Optional[str] = None) -> bool:
        try:
            locator = self._locator(selector)
            await locator.wait_for(state="visible", timeout=self.timeout_ms)
            if match_text:
                content = await locator.inner_text(timeout=self.timeout_ms)
                if match_text not in content:
                    logging.debug(f"Element '{selector}' found but text '{match_text}' not in '{content[:80]}'")
                    return False
            return True
        except Exception as e:
            logging.error(f"Failed to find element '{selector}': {e}")
            return False

    async def take_screenshot(self, file_path: str | None = None, full_page: bool = False) -> bool:
        try:
            try:
                await self.page.wait_for_load_state(timeout=self.timeout_ms)
            except Exception as e:
                logging.warning(f"wait_for_load_state before screenshot failed: {e}; attempting screenshot anyway")
            await self.page.screenshot(path=file_path, full_page=full_page, timeout=self.timeout_ms)
            return True
        except Exception as e:
            logging.error(f"Page screenshot failed: {e}")
            return False
