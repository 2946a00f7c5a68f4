import logging
import re
from typing import Any, Callable, Dict, Iterator, List, Optional

from html2text import html2text
from playwright.async_api import Page
from pydantic import BaseModel, Field

# Collects the interactive surface of the current document in one round trip.
SURFACE_JS = """
() => {
  const attrs = (el) => {
    const out = {};
    if (!el || !el.attributes) return out;
    for (const attr of el.attributes) out[attr.name] = attr.value;
    return out;
  };
  const visible = (el) => {
    if (!el) return false;
    const style = window.getComputedStyle(el);
    return style.display !== 'none' && style.visibility !== 'hidden' &&
      style.opacity !== '0' && el.offsetParent !== null;
  };
  const text = (el) => (el && el.offsetParent !== null ? (el.innerText || el.textContent || '') : '').trim();
  const label = (el) => (el.labels && el.labels[0] ? el.labels[0].innerText.trim() : '');
  const selector = (el) => {
    if (el.id) return '#' + el.id;
    if (el.name) return '[name="' + el.name + '"]';
    const cls = typeof el.className === 'string' ? el.className.trim().split(/\\s+/)[0] : '';
    return cls ? '.' + cls : '';
  };
  const element = (el) => ({
    tag: el.tagName.toLowerCase(),
    text: text(el) || el.value || '',
    id: el.id || '',
    name: el.getAttribute('name') || '',
    class_name: typeof el.className === 'string' ? el.className : '',
    type: el.getAttribute('type') || '',
    placeholder: el.getAttribute('placeholder') || '',
    label: label(el),
    aria_label: el.getAttribute('aria-label') || '',
    href: el.href || '',
    value: el.type === 'password' ? '' : (el.value || ''),
    selector: selector(el),
    visible: visible(el),
    attributes: attrs(el),
  });
  const all = (query) => Array.from(document.querySelectorAll(query));
  const forms = all('form').map((form) => ({
    id: form.id || '',
    name: form.getAttribute('name') || '',
    action: form.getAttribute('action') || '',
    method: (form.getAttribute('method') || 'get').toLowerCase(),
    visible: visible(form),
    inputs: Array.from(form.querySelectorAll('input, textarea, select')).map(element),
  }));
  return {
    url: window.location.href,
    title: document.title,
    headings: all('h1, h2, h3, h4, h5, h6').map(element).filter((h) => h.text).slice(0, 10),
    forms: forms,
    inputs: all('input, textarea, select').map(element).filter((e) => e.visible).slice(0, 20),
    buttons: all('button, input[type="button"], input[type="submit"], [role="button"]')
      .map(element).filter((e) => e.visible).slice(0, 20),
    links: all('a[href]').map(element).filter((e) => e.visible && e.text).slice(0, 30),
    visible_text: text(document.body).substring(0, 2000),
    raw_markup: document.documentElement.outerHTML,
  };
}
"""


class SurfaceElement(BaseModel):
    tag: str = ""
    text: str = ""
    id: str = ""
    name: str = ""
    class_name: str = ""
    type: str = ""
    placeholder: str = ""
    label: str = ""
    aria_label: str = ""
    href: str = ""
    value: str = ""
    selector: str = ""
    visible: bool = True
    attributes: Dict[str, str] = Field(default_factory=dict)


class SurfaceForm(BaseModel):
    id: str = ""
    name: str = ""
    action: str = ""
    method: str = "get"
    visible: bool = True
    inputs: List[SurfaceElement] = Field(default_factory=list)


class PageSurface(BaseModel):
    """Snapshot of the page an instruction is about to act on."""

    url: str = ""
    title: str = ""
    headings: List[SurfaceElement] = Field(default_factory=list)
    forms: List[SurfaceForm] = Field(default_factory=list)
    inputs: List[SurfaceElement] = Field(default_factory=list)
    buttons: List[SurfaceElement] = Field(default_factory=list)
    links: List[SurfaceElement] = Field(default_factory=list)
    visible_text: str = ""
    raw_markup: str = ""
    error: Optional[str] = None

    @classmethod
    def empty(cls, error: Optional[str] = None, **fields) -> "PageSurface":
        return cls(error=error, **fields)

    def elements(self) -> Iterator[SurfaceElement]:
        yield from self.headings
        yield from self.inputs
        yield from self.buttons
        yield from self.links
        for form in self.forms:
            yield from form.inputs

    @property
    def has_elements(self) -> bool:
        return next(self.elements(), None) is not None

    def summary(self) -> Dict[str, Any]:
        """Compact view shown to operators; the raw markup is left out."""
        return {
            "url": self.url,
            "title": self.title,
            "headings": [h.text for h in self.headings],
            "inputs": [e.selector or e.name or e.label for e in self.inputs],
            "buttons": [e.text or e.selector for e in self.buttons],
            "links": [e.text for e in self.links][:10],
            "error": self.error,
        }


class PageStateProbe:
    """Samples the live page surface. Never raises."""

    def __init__(self, page: Optional[Page] = None):
        self.page = page

    async def capture(self) -> PageSurface:
        if self.page is None:
            return PageSurface.empty("no browser session")
        try:
            data = await self.page.evaluate(SURFACE_JS)
            return PageSurface.model_validate(data)
        except Exception as e:
            logging.warning(f"Page probe failed, continuing with a partial surface: {e}")
            return await self._partial_surface(str(e))

    async def _partial_surface(self, error: str) -> PageSurface:
        fields = {}
        try:
            fields["url"] = self.page.url
        except Exception:
            fields["url"] = "unknown"
        try:
            fields["title"] = await self.page.title()
        except Exception:
            fields["title"] = "unknown"
        try:
            markup = await self.page.content()
            fields["raw_markup"] = markup
            fields["visible_text"] = html2text(markup).strip()[:2000]
        except Exception as e:
            logging.debug(f"Page content unavailable for partial surface: {e}")
        return PageSurface.empty(error, **fields)


_TAGS = {"a", "button", "input", "select", "textarea", "form", "h1", "h2", "h3", "h4", "h5", "h6"}
_ATTRIBUTE_FIELDS = {"id": "id", "name": "name", "class": "class_name", "type": "type", "placeholder": "placeholder",
                     "aria-label": "aria_label", "href": "href"}


def _attribute(element: SurfaceElement, name: str) -> str:
    if name in element.attributes:
        return element.attributes[name]
    field = _ATTRIBUTE_FIELDS.get(name)
    return getattr(element, field) if field else ""


def _text_of(element: SurfaceElement) -> str:
    return " ".join([element.text, element.label, element.aria_label, element.placeholder, element.value]).lower()


def _matcher(target: str) -> Optional[Callable[[SurfaceElement], bool]]:
    target = target.strip()
    m = re.fullmatch(r"#([\w-]+)", target)
    if m:
        return lambda el: el.id == m.group(1)
    m = re.fullmatch(r"\.([\w-]+)", target)
    if m:
        return lambda el: m.group(1) in el.class_name.split()
    m = re.fullmatch(r"""\[([\w-]+)(\*?)=["']([^"']*)["']\]""", target)
    if m:
        attr, contains, value = m.groups()
        if contains:
            return lambda el: value in _attribute(el, attr)
        return lambda el: _attribute(el, attr) == value
    if target.lower() in _TAGS:
        return lambda el: el.tag == target.lower()
    m = re.fullmatch(r"text=(.+)", target)
    if m or re.fullmatch(r"[\w][\w\s'.,!?:&-]*", target):
        needle = (m.group(1) if m else target).strip("\"'").lower()
        return lambda el: needle in _text_of(el)
    return None


def target_visible(surface: PageSurface, target: str) -> bool:
    """Soft precondition check: does ``target`` appear visible on the surface?

    Undecidable cases (probe error, empty surface, selectors this check does
    not understand) count as visible.
    """
    if surface.error or not target or not surface.has_elements:
        return True
    matches = _matcher(target)
    if matches is None:
        return True
    return any(el.visible and matches(el) for el in surface.elements())
