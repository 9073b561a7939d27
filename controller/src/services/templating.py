"""
Step parameter templating.

Parameters reference run context with ``${{ scope.key }}`` expressions:

    steps.<step>.<output>   output of an earlier step
    target.<field>          resolved environment binding
    run.<field>             run_id, build_number, branch, commit_sha
    env.<name>              pipeline-level variable

A string made of a single expression renders to the referenced value
unchanged; expressions embedded in longer strings are substituted as text.
"""

import re
from typing import Any, Dict, Iterator, Mapping

EXPRESSION = re.compile(r"\$\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")

SCOPES = ("steps", "target", "run", "env")
TARGET_FIELDS = ("name", "namespace", "manifest", "image_tag")
RUN_FIELDS = ("run_id", "build_number", "branch", "commit_sha")


class UnresolvedReference(Exception):
    """An expression refers to a value that is not available."""

    def __init__(self, path: str):
        super().__init__(f"Unresolved reference '${{{{ {path} }}}}'")
        self.path = path


def references(value: Any) -> Iterator[str]:
    """Yield every expression path found in a (nested) parameter value."""
    if isinstance(value, str):
        for match in EXPRESSION.finditer(value):
            yield match.group(1)
    elif isinstance(value, dict):
        for item in value.values():
            yield from references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from references(item)


def lookup(path: str, context: Mapping[str, Mapping[str, Any]]) -> Any:
    scope, _, rest = path.partition(".")

    if scope == "steps":
        step, _, output = rest.partition(".")
        outputs = context.get("steps", {}).get(step)
        if outputs is None or output not in outputs:
            raise UnresolvedReference(path)
        return outputs[output]

    values = context.get(scope)
    if values is None or rest not in values:
        raise UnresolvedReference(path)
    return values[rest]


def render(value: Any, context: Mapping[str, Mapping[str, Any]]) -> Any:
    """Render expressions in a (nested) parameter value."""
    if isinstance(value, str):
        whole = EXPRESSION.fullmatch(value.strip())
        if whole:
            return lookup(whole.group(1), context)
        return EXPRESSION.sub(lambda m: str(lookup(m.group(1), context)), value)

    if isinstance(value, dict):
        return {key: render(item, context) for key, item in value.items()}

    if isinstance(value, (list, tuple)):
        return [render(item, context) for item in value]

    return value


def build_context(
    run: Mapping[str, Any],
    env: Mapping[str, str],
    target: Mapping[str, Any],
    steps: Mapping[str, Dict[str, Any]],
) -> Dict[str, Mapping[str, Any]]:
    return {"run": run, "env": env, "target": target, "steps": steps}
