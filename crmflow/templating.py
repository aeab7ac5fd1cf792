"""Message template rendering for action steps."""

from __future__ import annotations

from typing import Any, Dict, Optional

from jinja2 import StrictUndefined, TemplateError as JinjaTemplateError
from jinja2.sandbox import SandboxedEnvironment

from .errors import TemplateError

_env = SandboxedEnvironment(undefined=StrictUndefined, autoescape=False)


def render_template(source: Optional[str], variables: Dict[str, Any]) -> Optional[str]:
    """Render ``source`` against ``variables``.

    Templates use Jinja2 syntax, e.g. ``Hi {{ contact.first_name }}``. Any
    reference to a variable that is not present raises ``TemplateError``.
    """
    if source is None:
        return None
    try:
        return _env.from_string(source).render(**variables)
    except JinjaTemplateError as e:
        raise TemplateError(f"cannot render template: {e}") from e
