from __future__ import annotations

from functools import lru_cache
from typing import Any

from jinja2 import StrictUndefined, Template, TemplateError
from jinja2.sandbox import SandboxedEnvironment

from leadops.errors import TemplateRenderFailure
from leadops.leads.models import Lead


_env = SandboxedEnvironment(undefined=StrictUndefined, autoescape=False, keep_trailing_newline=False)


@lru_cache(maxsize=256)
def _compile(source: str) -> Template:
    return _env.from_string(source)


def lead_context(lead: Lead) -> dict[str, Any]:
    return {
        "name": lead.name,
        "location": lead.location,
        "project_type": lead.project_type,
        "funnel": lead.funnel,
    }


def render_template(source: str, context: dict[str, Any], template_name: str = "inline") -> str:
    """Render ``{{ name }}`` placeholders and ``{% if location %}`` sections.

    Unknown placeholders and syntax errors raise TemplateRenderFailure.
    """
    try:
        return _compile(source).render(**context).strip()
    except TemplateError as exc:
        raise TemplateRenderFailure(template_name, str(exc)) from exc
