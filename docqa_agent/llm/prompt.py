from jinja2 import Environment, StrictUndefined

_env = Environment(trim_blocks=True, lstrip_blocks=True, undefined=StrictUndefined, autoescape=False)

ACTION_VOCABULARY = """
    - `navigate`: open a URL. `target` is the absolute URL.
    - `click`: click an element. `target` is a CSS selector or the element's visible text.
    - `type`: type text into an input. `target` is a selector, `value` is the text.
    - `find`: assert an element is visible. `target` is a selector; `params.match_text` optionally holds expected text.
    - `wait`: pause. `value` is the duration in milliseconds.
    - `http_request`: call an API. `target` is the URL; `params` may hold `method`, `headers`, `body`, `expected_status`.
    - `run_command`: run a shell command. `target` is the command; `params.exit_code` is the expected exit code.
    - `screenshot`: capture the page. `target` is an optional file path.
"""


class LLMPrompt:
    extraction_system_prompt = f"""
    ## Role
    You turn product documentation into executable test steps.

    ## Objective
    - Read the numbered documentation segments and list every concrete action a user is told to perform, in order.
    - Only extract actions the text actually describes. Do not invent navigation, logins or checks.
    - When a secret is needed (password, token, API key), never write a literal value: use a placeholder such as `$PASSWORD` or `$API_KEY`.

    ## Allowed actions
    {ACTION_VOCABULARY}

    ## Output Format
    Return a single JSON object and nothing else:
    {{
      "steps": [
        {{
          "action": "navigate",
          "target": "https://example.com",
          "value": null,
          "params": {{}},
          "description": "Open the home page",
          "segment": 1
        }}
      ]
    }}
    `segment` is the number of the segment the step was taken from.
    """

    reinterpretation_system_prompt = f"""
    ## Role
    You are a UI automation engineer. You translate one documentation instruction into exactly ONE test step
    that will run against the page described below.

    ## Rules
    - Use the current page state to pick a concrete target. Prefer ids, then `name` attributes, then stable
      attribute selectors, then visible text.
    - Steps already completed describe how the page got into its current state. Do not repeat them.
    - If the instruction refers to something not on the page, still propose your best step and lower `confidence`.
    - Keep placeholders such as `$PASSWORD` untouched.
    - `confidence` is a number between 0 and 1: how sure you are that the target is correct for this page.
    - `alternatives` lists other target expressions for the same element, most likely first.

    ## Allowed actions
    {ACTION_VOCABULARY}

    ## Output Format
    Return a single JSON object and nothing else:
    {{
      "action": "click",
      "target": "#login-button",
      "value": null,
      "params": {{}},
      "description": "Click the Login button",
      "confidence": 0.9,
      "notes": ["Matched the button labelled 'Log in'"],
      "alternatives": ["button[type=\\"submit\\"]", "text=Log in"]
    }}
    """


SURFACE_TEMPLATE = _env.from_string(
    """CURRENT PAGE STATE:
URL: {{ surface.url or "unknown" }}
Title: {{ surface.title or "unknown" }}
{% if surface.error %}
(Page state is partial: {{ surface.error }})
{% endif %}
{% if surface.headings %}

Headings:
{% for h in surface.headings %}
- {{ h.tag }}: {{ h.text }}
{% endfor %}
{% endif %}
{% if surface.forms %}

Forms:
{% for form in surface.forms %}
Form {{ loop.index0 }}: {{ form.id or form.name or "unnamed" }}
{% for field in form.inputs %}
  - {{ field.type or field.tag }}: {{ field.name or field.id or "unnamed" }}{% if field.label %} ({{ field.label }}){% endif %}

{% endfor %}
{% endfor %}
{% endif %}
{% if surface.inputs %}

Input Fields:
{% for field in surface.inputs %}
- {{ field.type or field.tag }}: "{{ field.label or field.placeholder or field.aria_label or field.name }}" selector: {{ field.selector or "needs detection" }}
{% endfor %}
{% endif %}
{% if surface.buttons %}

Buttons:
{% for button in surface.buttons %}
- "{{ button.text or button.aria_label }}"{% if button.selector %} selector: {{ button.selector }}{% endif %}

{% endfor %}
{% endif %}
{% if surface.links %}

Links (first 10):
{% for link in surface.links[:10] %}
- "{{ link.text }}" -> {{ link.href }}
{% endfor %}
{% endif %}
{% if surface.visible_text %}

Visible text (truncated):
{{ surface.visible_text[:1000] }}
{% endif %}
"""
)

REINTERPRETATION_TEMPLATE = _env.from_string(
    """{{ surface_block }}

STEPS COMPLETED SO FAR:
{% for step in completed %}
{{ loop.index }}. {{ step.description or (step.kind.value ~ " " ~ step.target) }}
{% else %}
(none)
{% endfor %}

{% if hint %}
ROUGH STEP EXTRACTED FROM THE DOCUMENT:
{{ hint }}

{% endif %}
INSTRUCTION TO IMPLEMENT:
{{ instruction }}
"""
)

EXTRACTION_TEMPLATE = _env.from_string(
    """DOCUMENTATION SEGMENTS:
{% for segment in segments %}
[{{ loop.index }}] (line {{ segment.line_number }}, {{ segment.segment_type }})
{{ segment.raw_text }}

{% endfor %}
"""
)


def render_surface(surface) -> str:
    return SURFACE_TEMPLATE.render(surface=surface).strip()


def get_reinterpretation_user_prompt(instruction, surface, completed_steps, hint=None) -> str:
    return REINTERPRETATION_TEMPLATE.render(
        surface_block=render_surface(surface),
        completed=completed_steps,
        hint=hint,
        instruction=instruction,
    )


def get_extraction_user_prompt(segments) -> str:
    return EXTRACTION_TEMPLATE.render(segments=segments)
