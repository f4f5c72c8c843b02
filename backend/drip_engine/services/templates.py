import logging
from typing import Optional

from jinja2 import TemplateError
from jinja2.sandbox import SandboxedEnvironment

logger = logging.getLogger(__name__)

# Campaign authors write the templates, so they render sandboxed.
_env = SandboxedEnvironment(autoescape=False, keep_trailing_newline=False)


def render_template(template: Optional[str], context: dict) -> str:
    """
    Substitute lead fields into a step template. Unknown fields render empty;
    a template with a syntax error is sent as written.
    """
    if not template:
        return ""
    try:
        return _env.from_string(template).render(**context)
    except TemplateError as e:
        logger.error(f"[TEMPLATE] Failed to render template: {e}")
        return template
