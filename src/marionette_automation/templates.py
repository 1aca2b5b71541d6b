"""Jinja2 rendering for deployed files and templated task parameters.

Rendering is a pure function of the template and the variables: nothing is
written here, so callers can render speculatively to compare hashes in check
mode. Undefined variables raise :class:`TemplateError` instead of producing
partial output; ``{{ name | default('x') }}`` still works inside templates.
"""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional
import re

import jinja2

from .errors import TemplateError

_EXPRESSION_RE = re.compile(r"{[{%#]")
_SINGLE_EXPRESSION_RE = re.compile(r"^\s*{{(?P<expr>.*?)}}\s*$", re.DOTALL)


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode()).hexdigest()


class TemplateRenderer:
    def __init__(self, search_path: Iterable[Path] = ()):
        self.search_path = [Path(p) for p in search_path]
        self.env = jinja2.Environment(
            loader=jinja2.FileSystemLoader([str(p) for p in self.search_path]),
            undefined=jinja2.StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )

    def render_file(self, template: str, variables: Mapping[str, Any], *, extra: Optional[Mapping[str, Any]] = None) -> str:
        """Render the template file ``template`` (absolute or on the search path)."""

        path = Path(template).expanduser()
        try:
            if path.is_absolute():
                tmpl = self.env.from_string(path.read_text())
            else:
                tmpl = self.env.get_template(str(template))
        except jinja2.TemplateNotFound:
            raise TemplateError(f"template '{template}' not found") from None
        except FileNotFoundError:
            raise TemplateError(f"template '{template}' not found") from None
        except jinja2.TemplateSyntaxError as exc:
            raise TemplateError(f"{template}:{exc.lineno}: {exc.message}") from None
        return self._render(tmpl, variables, extra, template)

    def render_string(self, text: str, variables: Mapping[str, Any], *, extra: Optional[Mapping[str, Any]] = None) -> str:
        try:
            tmpl = self.env.from_string(text)
        except jinja2.TemplateSyntaxError as exc:
            raise TemplateError(f"line {exc.lineno}: {exc.message}") from None
        return self._render(tmpl, variables, extra, "<string>")

    def render_value(self, value: Any, variables: Mapping[str, Any], *, extra: Optional[Mapping[str, Any]] = None) -> Any:
        """Render every string inside ``value``.

        A string that is exactly one ``{{ expression }}`` evaluates to the
        native value, so ``loop: "{{ accounts }}"`` yields the list itself.
        """

        if isinstance(value, str):
            if not _EXPRESSION_RE.search(value):
                return value
            single = _SINGLE_EXPRESSION_RE.match(value)
            if single and "}}" not in single.group("expr"):
                return self.evaluate(single.group("expr"), variables, extra=extra)
            return self.render_string(value, variables, extra=extra)
        if isinstance(value, dict):
            return {k: self.render_value(v, variables, extra=extra) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.render_value(v, variables, extra=extra) for v in value]
        return value

    def evaluate(self, expression: str, variables: Mapping[str, Any], *, extra: Optional[Mapping[str, Any]] = None) -> Any:
        try:
            compiled = self.env.compile_expression(expression.strip(), undefined_to_none=False)
        except jinja2.TemplateSyntaxError as exc:
            raise TemplateError(f"invalid expression '{expression.strip()}': {exc.message}") from None
        context = self._context(variables, extra)
        try:
            result = compiled(**context)
        except jinja2.UndefinedError as exc:
            raise TemplateError(str(exc)) from None
        if isinstance(result, jinja2.Undefined):
            # StrictUndefined only raises once it is used
            try:
                str(result)
            except jinja2.UndefinedError as exc:
                raise TemplateError(str(exc)) from None
        return result

    def _render(self, tmpl: jinja2.Template, variables, extra, name: str) -> str:
        try:
            return tmpl.render(**self._context(variables, extra))
        except jinja2.UndefinedError as exc:
            raise TemplateError(f"{name}: {exc}") from None

    @staticmethod
    def _context(variables: Mapping[str, Any], extra: Optional[Mapping[str, Any]]) -> dict[str, Any]:
        context: dict[str, Any] = dict(variables)
        if extra:
            context.update(extra)
        return context
