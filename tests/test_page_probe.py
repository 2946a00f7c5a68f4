import pytest

from docqa_agent.crawler.page_probe import PageStateProbe, PageSurface, SurfaceElement, SurfaceForm, target_visible
from docqa_agent.llm.prompt import render_surface


class StubPage:
    def __init__(self, data=None, error=None):
        self.data = data
        self.error = error
        self.url = "https://example.com/login"

    async def evaluate(self, script):
        if self.error:
            raise self.error
        return self.data

    async def title(self):
        return "Login"

    async def content(self):
        return "<html><body><h1>Welcome</h1><p>Please sign in.</p></body></html>"


def login_surface():
    return PageSurface(
        url="https://example.com/login",
        title="Login",
        headings=[SurfaceElement(tag="h1", text="Welcome back")],
        forms=[
            SurfaceForm(
                id="login",
                inputs=[SurfaceElement(tag="input", id="email", name="email", type="email", label="Email")],
            )
        ],
        buttons=[SurfaceElement(tag="button", id="submit", class_name="btn btn-primary", text="Sign in")],
        links=[SurfaceElement(tag="a", text="Forgot password?", href="/reset", visible=False)],
    )


@pytest.mark.parametrize(
    "target",
    ["#submit", ".btn-primary", '[name="email"]', '[id*="sub"]', "button", "text=Sign in", "Sign in", "Email"],
)
def test_visible_targets(target):
    assert target_visible(login_surface(), target)


@pytest.mark.parametrize("target", ["#missing", ".btn-danger", '[name="password"]', "Register", "Forgot password?"])
def test_invisible_targets(target):
    assert not target_visible(login_surface(), target)


def test_undecidable_targets_count_as_visible():
    assert target_visible(login_surface(), "form > div:nth-child(2) input")
    assert target_visible(PageSurface.empty("no browser session"), "#anything")
    assert target_visible(PageSurface(url="about:blank"), "#anything")


@pytest.mark.asyncio
async def test_capture_without_page():
    surface = await PageStateProbe(None).capture()
    assert surface.error == "no browser session"
    assert not surface.has_elements


@pytest.mark.asyncio
async def test_capture_parses_evaluated_surface():
    data = {
        "url": "https://example.com",
        "title": "Home",
        "headings": [{"tag": "h1", "text": "Home"}],
        "buttons": [{"tag": "button", "text": "Go", "selector": "#go", "id": "go"}],
    }
    surface = await PageStateProbe(StubPage(data)).capture()
    assert surface.error is None
    assert surface.title == "Home"
    assert surface.buttons[0].selector == "#go"
    assert surface.summary()["buttons"] == ["Go"]


@pytest.mark.asyncio
async def test_capture_degrades_to_partial_surface():
    surface = await PageStateProbe(StubPage(error=RuntimeError("context destroyed"))).capture()
    assert surface.error == "context destroyed"
    assert surface.url == "https://example.com/login"
    assert surface.title == "Login"
    assert "Welcome" in surface.visible_text


def test_render_surface_lists_elements():
    text = render_surface(login_surface())
    assert "URL: https://example.com/login" in text
    assert "Sign in" in text
    assert "email" in text


@pytest.mark.asyncio
async def test_live_capture(live_url):
    from docqa_agent.browser.session import BrowserSession

    async with BrowserSession(browser_config={"browser": "chrome", "headless": True}) as session:
        await session.get_page().goto(live_url)
        surface = await PageStateProbe(session.get_page()).capture()
    assert surface.url
    assert surface.error is None
