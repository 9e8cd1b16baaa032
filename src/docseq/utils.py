from typing import Any, Mapping, MutableMapping

_MISSING = object()


def _get(container: Any, key: str, default: Any = None) -> Any:
    if container is None:
        return default
    if isinstance(container, Mapping):
        return container.get(key, default)
    return getattr(container, key, default)


def _set(container: Any, key: str, value: Any):
    if isinstance(container, MutableMapping):
        container[key] = value
    else:
        setattr(container, key, value)


def resolve_path(obj: Any, path: str, default: Any = None) -> Any:
    """
    Resolve a dotted path against models, mappings or a mix of both.

    Args:
        obj: A pydantic model, a mapping or any object with attributes.
        path (str): A dotted path like ``"parent.nested"``.
        default: Returned when any step of the path is missing.

    Examples:
        #>>> resolve_path({"parent": {"nested": 3}}, "parent.nested")
        3
    """
    value = obj
    for part in path.split("."):
        value = _get(value, part, _MISSING)
        if value is _MISSING:
            return default
    return value


def assign_path(obj: Any, path: str, value: Any):
    """
    Assign ``value`` at the dotted ``path`` of ``obj``.

    Intermediate containers that are missing (or ``None``) are created as
    plain dicts.
    """
    *parents, leaf = path.split(".")
    container = obj
    for part in parents:
        child = _get(container, part)
        if child is None:
            child = {}
            _set(container, part, child)
        container = child
    _set(container, leaf, value)


def expand_dotted(values: Mapping[str, Any]) -> dict[str, Any]:
    """
    Turn ``{"a.b": 1, "c": 2}`` into ``{"a": {"b": 1}, "c": 2}``.

    Operator keys (starting with ``$``) are skipped, so a mongo filter can be
    expanded into the document it would match on insert.
    """
    expanded: dict[str, Any] = {}
    for key, value in values.items():
        if key.startswith("$"):
            continue
        if isinstance(value, Mapping) and any(k.startswith("$") for k in value):
            continue
        assign_path(expanded, key, value)
    return expanded

