"""
Notification text rendering.

Every title and message a channel receives comes from a pair of Jinja2
templates in ddos_guard/templates/: <kind>_title.jinja2 and
<kind>_message.jinja2, where kind is alert, incident or system.
"""

from __future__ import annotations

import re
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, StrictUndefined

_TEMPLATES_DIR = Path(__file__).parent.parent / "templates"

_env = Environment(
    loader=FileSystemLoader(str(_TEMPLATES_DIR)),
    undefined=StrictUndefined,
    trim_blocks=True,
    lstrip_blocks=True,
    keep_trailing_newline=False,
)

_WHITESPACE = re.compile(r"\s+")
_BLANK_LINES = re.compile(r"\n\s*\n+")


def render_template(name: str, **kwargs: object) -> str:
    """Render one template with surrounding whitespace stripped.

    Raises:
        jinja2.TemplateNotFound: If the template file doesn't exist.
        jinja2.UndefinedError: If the template references a variable not in kwargs.
    """
    return _env.get_template(name).render(**kwargs).strip()


def render_notification(kind: str, **context: object) -> tuple[str, str]:
    """Render the (title, message) pair for a notification *kind*.

    The title is folded onto a single line (it becomes an email subject or
    a Slack header). Runs of blank lines in the message collapse to one.
    """
    title = render_template(f"{kind}_title.jinja2", **context)
    message = render_template(f"{kind}_message.jinja2", **context)
    return _WHITESPACE.sub(" ", title), _BLANK_LINES.sub("\n\n", message)
