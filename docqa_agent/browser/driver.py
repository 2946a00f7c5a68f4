import asyncio
import logging

from playwright.async_api import async_playwright

# Browser names used in configs mapped to (playwright engine, channel)
ENGINES = {
    "chrome": ("chromium", None),
    "chromium": ("chromium", None),
    "edge": ("chromium", "msedge"),
    "firefox": ("firefox", None),
    "webkit": ("webkit", None),
    "safari": ("webkit", None),
}

CHROMIUM_ARGS = [
    "--disable-dev-shm-usage",  # Mitigate shared memory issues in Docker
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-gpu",
    "--force-device-scale-factor=1",
]


class Driver:
    # Serializes playwright start-up when several contexts launch at once
    __lock = asyncio.Lock()

    @staticmethod
    async def getInstance(browser_config, *args, **kwargs):
        """Create a new, independent browser driver.

        Every execution context owns its own driver; nothing is shared.

        Args:
            browser_config (dict): Browser configuration options.
        """
        logging.info(f"Driver.getInstance called with browser_config: {browser_config}")

        async with Driver.__lock:
            driver = Driver(browser_config=browser_config)
            await driver.create_browser(browser_config=browser_config)
            return driver

    def __init__(self, browser_config=None, *args, **kwargs):
        self._is_closed = False
        self.page = None
        self.browser = None
        self.context = None
        self.playwright = None
        self.config = browser_config

    def is_closed(self):
        """Check if the browser instance is closed."""
        return getattr(self, "_is_closed", True)

    async def create_browser(self, browser_config):
        """Launch the configured engine and open a page.

        Args:
            browser_config (dict): Browser configuration containing:
                - browser (str): chrome, edge, firefox, webkit or safari
                - headless (bool): Whether to run browser in headless mode
                - viewport (dict): width and height of the page viewport
                - language (str): Locale of the browser context

        Returns:
            Page: The new page.
        """
        name = str(browser_config.get("browser", "chrome")).lower()
        if name not in ENGINES:
            raise ValueError(f"Unsupported browser: {name}")
        engine, channel = ENGINES[name]
        viewport = browser_config["viewport"]

        try:
            self.playwright = await async_playwright().start()
            launch_options = {"headless": browser_config["headless"]}
            if engine == "chromium":
                launch_options["args"] = CHROMIUM_ARGS + [f'--window-size={viewport["width"]},{viewport["height"]}']
            if channel:
                launch_options["channel"] = channel
            self.browser = await getattr(self.playwright, engine).launch(**launch_options)

            self.context = await self.browser.new_context(
                viewport={"width": viewport["width"], "height": viewport["height"]},
                device_scale_factor=1,
                is_mobile=False,
                locale=browser_config["language"],
            )
            self.page = await self.context.new_page()
            self.config = browser_config

            logging.debug(f"Browser instance ({name} via {engine}) created successfully")
            return self.page

        except Exception as e:
            logging.error(f"Failed to create {name} browser instance.", exc_info=True)
            if self.playwright:
                await self.playwright.stop()
            raise e

    def get_context(self):
        return self.context

    def get_page(self):
        """Returns the current page instance.

        Returns:
            Page: The current page instance.
        """
        return self.page

    async def close_browser(self):
        """Closes the browser instance and stops Playwright."""
        try:
            if not self.is_closed():
                await self.browser.close()
                await self.playwright.stop()
                self._is_closed = True
                logging.info("Browser instance closed successfully.")
        except Exception as e:
            logging.error("Failed to close browser instance.", exc_info=True)
            raise e
