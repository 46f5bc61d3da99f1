from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Any, Literal, Mapping, TypeVar, get_type_hints

from loguru import logger

ParamType = Literal["int","float","bool","str"]

S = TypeVar("S")

_TRUE = ("1","true","t","yes","y","on")
_FALSE = ("0","false","f","no","n","off")

@dataclass(frozen=True)
class ParamSpec:
    key: str
    type: ParamType
    default: Any
    label: str = ""
    help: str = ""
    min: float | None = None
    max: float | None = None
    step: float | None = None

def coerce(value: Any, typ: ParamType) -> Any:
    """Coerce a grid value (str, int, float or bool) to ``typ``."""
    if typ == "bool":
        if isinstance(value, bool):
            return value
        v = str(value).strip().lower()
        if v in _TRUE:
            return True
        if v in _FALSE:
            return False
        raise ValueError(f"Cannot coerce '{value}' to bool")
    if isinstance(value, bool):
        raise ValueError(f"Cannot coerce bool {value!r} to {typ}")
    if typ == "int":
        f = float(str(value).strip()) if isinstance(value, str) else float(value)
        if not f.is_integer():
            raise ValueError(f"Cannot coerce '{value}' to int without truncation")
        return int(f)
    if typ == "float":
        return float(str(value).strip()) if isinstance(value, str) else float(value)
    return str(value)

def parse_kv_list(kvs: list[str], schema: list[ParamSpec]) -> dict[str, Any]:
    specs = {s.key: s for s in schema}
    out: dict[str, Any] = {}
    for kv in kvs:
        if "=" not in kv:
            raise ValueError(f"Bad param '{kv}'. Use key=value")
        k, v = kv.split("=", 1)
        k = k.strip()
        if k not in specs:
            raise KeyError(f"Unknown param '{k}'. Known: {sorted(specs.keys())}")
        out[k] = coerce(v, specs[k].type)
    return out

def _check_bounds(spec: ParamSpec, v: Any) -> None:
    if spec.type in ("int","float") and isinstance(v, (int,float)):
        if spec.min is not None and v < spec.min: raise ValueError(f"{spec.key} < min ({v} < {spec.min})")
        if spec.max is not None and v > spec.max: raise ValueError(f"{spec.key} > max ({v} > {spec.max})")

def merge_params(overrides: dict[str, Any], schema: list[ParamSpec]) -> dict[str, Any]:
    params = {s.key: s.default for s in schema}
    params.update(overrides or {})
    for s in schema:
        _check_bounds(s, params[s.key])
    return params

def _field_types(settings_cls: type) -> dict[str, ParamType]:
    names = {int: "int", float: "float", bool: "bool", str: "str"}
    hints = get_type_hints(settings_cls)
    out: dict[str, ParamType] = {}
    for f in fields(settings_cls):
        typ = names.get(hints.get(f.name))
        if typ is not None:
            out[f.name] = typ
    return out

def to_settings(
    settings: S,
    values: Mapping[str, Any],
    schema: list[ParamSpec] | None = None,
    strict: bool = False,
) -> S:
    """Apply generic grid values to a frozen settings dataclass.

    Keys missing from ``values`` keep the current setting. Unknown keys raise
    ``KeyError`` when ``strict``; otherwise they are logged and ignored.
    Values are coerced to the field's declared type and checked against the
    ``schema`` bounds when one is given.
    """
    types = _field_types(type(settings))
    specs = {s.key: s for s in (schema or [])}
    changes: dict[str, Any] = {}
    for key, raw in values.items():
        if key not in types:
            if strict:
                raise KeyError(f"Unknown param '{key}' for {type(settings).__name__}. Known: {sorted(types)}")
            logger.debug(f"Ignoring unknown param '{key}' for {type(settings).__name__}")
            continue
        v = coerce(raw, types[key])
        if key in specs:
            _check_bounds(specs[key], v)
        changes[key] = v
    return replace(settings, **changes) if changes else settings
