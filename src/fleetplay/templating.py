"""Lazy Jinja2 templating for fleetplay.

Variable resolution is two-phase. The effective variable mapping is built
eagerly as plain data (cheap), and ``{{ expr }}`` values inside it are only
rendered when a consumer reads that key through ``LazyVars``. A template that
references a missing key raises UndefinedVariableError at read time, never
while the layers are merged.
"""

import json
import logging
import re
from collections import ChainMap
from collections.abc import Iterator, Mapping
from typing import Any

import yaml
from jinja2 import StrictUndefined, Template, TemplateSyntaxError, Undefined, UndefinedError, nodes
from jinja2 import TemplateError as Jinja2TemplateError
from jinja2.nativetypes import NativeEnvironment, native_concat

from .exceptions import TemplateError, UndefinedVariableError
from .vault import EncryptedValue, Vault

logger = logging.getLogger(__name__)

_UNDEFINED_NAME = re.compile(r"'([^']+)' is undefined")

# a lone reference hands back the variable as stored, str included
_REFERENCE_NODES = (nodes.Name, nodes.Getattr, nodes.Getitem)


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("yes", "on", "1", "true", "y")
    return bool(value)


class Templar:
    """Renders templates against a variable mapping.

    Attributes:
        environment: Native Jinja2 environment with strict undefined handling
        vault: Vault used to decrypt EncryptedValue leaves, if any

    Example:
        >>> templar = Templar()
        >>> templar.template("{{ port }}", {"port": 80})
        80
        >>> templar.template("http://{{ host }}:{{ port }}", {"host": "a", "port": 80})
        'http://a:80'
    """

    def __init__(self, vault: Vault | None = None) -> None:
        self.vault = vault
        self.environment = NativeEnvironment(
            undefined=StrictUndefined,
            keep_trailing_newline=True,
        )
        self.environment.filters.update(
            {
                "bool": _to_bool,
                "to_json": json.dumps,
                "from_json": json.loads,
                "to_yaml": lambda value: yaml.safe_dump(value, default_flow_style=False),
                "from_yaml": yaml.safe_load,
            }
        )
        self._compiled: dict[str, tuple[Template, bool]] = {}

    @staticmethod
    def is_template(value: Any) -> bool:
        return isinstance(value, str) and ("{{" in value or "{%" in value)

    def template(self, value: Any, variables: Mapping[str, Any]) -> Any:
        """Render a value recursively: strings, lists, dicts, encrypted leaves."""
        if isinstance(value, EncryptedValue):
            return value.decrypt(self.vault)
        if isinstance(value, str):
            if not self.is_template(value):
                return value
            return self.render_string(value, variables)
        if isinstance(value, dict):
            return {key: self.template(item, variables) for key, item in value.items()}
        if isinstance(value, list):
            return [self.template(item, variables) for item in value]
        if isinstance(value, tuple):
            return tuple(self.template(item, variables) for item in value)
        return value

    def render_string(
        self, source: str, variables: Mapping[str, Any], native: bool = True
    ) -> Any:
        """Render one template string without copying the variable mapping.

        With ``native`` a lone expression keeps its Python type and other
        output is literal-evaluated the way Jinja's native environment does.
        Without it the output is always text, as for template files.

        Raises:
            UndefinedVariableError: If the template reads a missing variable
            TemplateError: On syntax or evaluation errors
        """
        template, is_reference = self._compile(source)
        # shared=True hands the mapping to Jinja as-is so LazyVars stays lazy
        context = template.new_context(variables, shared=True)
        try:
            chunks = template.root_render_func(context)
            if not native:
                result = "".join(str(chunk) for chunk in chunks)
            elif is_reference:
                result = next(iter(chunks), None)
            else:
                result = native_concat(chunks)
            if isinstance(result, Undefined):
                # native rendering hands back a lone undefined expression as-is
                str(result)
            return result
        except UndefinedError as e:
            match = _UNDEFINED_NAME.search(str(e))
            raise UndefinedVariableError(
                f"Undefined variable in '{source}': {e}",
                name=match.group(1) if match else None,
            ) from e
        except TemplateError:
            raise
        except Jinja2TemplateError as e:
            raise TemplateError(f"Error rendering '{source}': {e}", template=source) from e

    def evaluate_conditional(self, condition: Any, variables: Mapping[str, Any]) -> bool:
        """Evaluate a ``when``-style expression, or a list of them (all must hold)."""
        if condition is None:
            return True
        if isinstance(condition, bool):
            return condition
        if isinstance(condition, (list, tuple)):
            return all(self.evaluate_conditional(item, variables) for item in condition)

        expression = str(condition).strip()
        if expression.startswith("{{") and expression.endswith("}}"):
            expression = expression[2:-2].strip()
        result = self.render_string(
            "{% if " + expression + " %}True{% else %}False{% endif %}", variables
        )
        return result is True or result == "True"

    def _compile(self, source: str) -> tuple[Template, bool]:
        compiled = self._compiled.get(source)
        if compiled is None:
            try:
                tree = self.environment.parse(source)
                template = self.environment.from_string(tree)
            except TemplateSyntaxError as e:
                raise TemplateError(
                    f"Template syntax error in '{source}': {e}", template=source
                ) from e
            body = tree.body
            is_reference = (
                len(body) == 1
                and isinstance(body[0], nodes.Output)
                and len(body[0].nodes) == 1
                and isinstance(body[0].nodes[0], _REFERENCE_NODES)
            )
            compiled = self._compiled[source] = (template, is_reference)
        return compiled


class LazyVars(Mapping[str, Any]):
    """Read-only view of an effective variable mapping that templates on read.

    Values are rendered the first time they are read and cached for the
    lifetime of this view. Reading a key that is absent raises
    UndefinedVariableError through ``resolve``; Jinja lookups of missing
    names surface the same error from the template that made them.

    Example:
        >>> lazy = LazyVars({"a": "{{ b }}", "b": 1, "c": "{{ missing }}"}, Templar())
        >>> lazy["a"]
        1
        >>> lazy["c"]
        Traceback (most recent call last):
        UndefinedVariableError: ...
    """

    def __init__(self, data: Mapping[str, Any], templar: Templar) -> None:
        self._data = data
        self._templar = templar
        self._globals = templar.environment.globals
        self._cache: dict[str, Any] = {}
        self._resolving: set[str] = set()

    @property
    def templar(self) -> Templar:
        return self._templar

    def __getitem__(self, key: str) -> Any:
        if key in self._cache:
            return self._cache[key]
        if key not in self._data:
            if key in self._globals:
                return self._globals[key]
            raise KeyError(key)
        if key in self._resolving:
            raise TemplateError(f"Recursive loop detected while templating variable '{key}'")

        self._resolving.add(key)
        try:
            value = self._templar.template(self._data[key], self)
        finally:
            self._resolving.discard(key)
        self._cache[key] = value
        return value

    def __contains__(self, key: object) -> bool:
        return key in self._data or key in self._globals

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def raw(self, key: str) -> Any:
        """The stored value without templating."""
        return self._data[key]

    def resolve(self, key: str) -> Any:
        """Read a key, raising UndefinedVariableError when it is missing."""
        if key not in self._data:
            raise UndefinedVariableError(f"'{key}' is undefined", name=key)
        return self[key]

    def new_child(self, extra: Mapping[str, Any]) -> "LazyVars":
        """A view with ``extra`` layered on top of this one."""
        return LazyVars(ChainMap(dict(extra), self._data), self._templar)

    def template(self, value: Any) -> Any:
        """Render an arbitrary value against this view."""
        return self._templar.template(value, self)

    def evaluate(self, condition: Any) -> bool:
        return self._templar.evaluate_conditional(condition, self)
