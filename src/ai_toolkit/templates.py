"""Template loading and rendering using Jinja2.

Templates are looked up in the user's template directory first and in the
packaged defaults second, so a user file named ``stage2.jinja`` replaces the
built-in stage 2 prompt.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, List, Mapping, Optional, Tuple

import jinja2

from .errors import MissingTemplateVariable, TemplateNotFound, TemplateSyntaxError

logger = logging.getLogger(__name__)

TEMPLATE_SUFFIX = ".jinja"


def default_templates_dir() -> Path:
    return Path(__file__).resolve().parent / "templates"


@lru_cache(maxsize=8)
def _env(search_path: Tuple[str, ...]) -> jinja2.Environment:
    loader = jinja2.ChoiceLoader([jinja2.FileSystemLoader(path) for path in search_path])
    env = jinja2.Environment(
        loader=loader,
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
        undefined=jinja2.StrictUndefined,
    )
    env.globals["enumerate"] = enumerate
    env.globals["len"] = len
    return env


def _file_name(template_name: str) -> str:
    return template_name if template_name.endswith(TEMPLATE_SUFFIX) else template_name + TEMPLATE_SUFFIX


class TemplateRenderer:
    """Render named prompt templates against a context mapping."""

    def __init__(self, templates_dir: Optional[Path] = None) -> None:
        paths: List[str] = []
        if templates_dir is not None:
            if not templates_dir.is_dir():
                logger.warning("Template directory %s does not exist; using built-in templates", templates_dir)
            else:
                paths.append(str(templates_dir))
        paths.append(str(default_templates_dir()))
        self.search_path = tuple(paths)

    @property
    def env(self) -> jinja2.Environment:
        return _env(self.search_path)

    def template_names(self) -> List[str]:
        return sorted(
            name[: -len(TEMPLATE_SUFFIX)] for name in self.env.list_templates() if name.endswith(TEMPLATE_SUFFIX)
        )

    def has_template(self, template_name: str) -> bool:
        try:
            self.env.get_template(_file_name(template_name))
        except jinja2.TemplateNotFound:
            return False
        return True

    def render(self, template_name: str, context: Mapping[str, Any]) -> str:
        """Render ``template_name`` with ``context``.

        Raises:
            TemplateNotFound: No template with that name on the search path.
            TemplateSyntaxError: The template could not be parsed.
            MissingTemplateVariable: The context lacks a variable the template uses.
        """
        try:
            template = self.env.get_template(_file_name(template_name))
        except jinja2.TemplateNotFound as exc:
            raise TemplateNotFound(f"Template '{template_name}' not found in {', '.join(self.search_path)}") from exc
        except jinja2.TemplateSyntaxError as exc:
            raise TemplateSyntaxError(
                f"Template '{template_name}' line {exc.lineno}: {exc.message}", lineno=exc.lineno
            ) from exc

        try:
            return template.render(**context)
        except jinja2.UndefinedError as exc:
            raise MissingTemplateVariable(f"Template '{template_name}': {exc.message}") from exc
