"""
params.py — tagged parameter values shared by generators, the guard and presets.

    Number(0.6)       unit-range knob, the only kind the similarity guard nudges
    Flag(True)        on/off feature switch
    Choice("spooky")  enum-like option

A ParamMap is a plain dict of name -> one of the above.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Union

__all__ = [
    "Choice",
    "Flag",
    "Number",
    "ParamMap",
    "ParamValue",
    "choice",
    "coerce_params",
    "coerce_value",
    "flag",
    "number",
    "plain_params",
]


@dataclass(frozen=True)
class Number:
    value: float

    def nudged(self, delta: float) -> "Number":
        return Number(min(1.0, max(0.0, self.value + delta)))


@dataclass(frozen=True)
class Flag:
    value: bool


@dataclass(frozen=True)
class Choice:
    value: str


ParamValue = Union[Number, Flag, Choice]
ParamMap = Dict[str, ParamValue]


def coerce_value(v: Any) -> ParamValue:
    """Map a plain value (or a CLI string) to its tagged form."""
    if isinstance(v, (Number, Flag, Choice)):
        return v
    if isinstance(v, bool):
        return Flag(v)
    if isinstance(v, (int, float)):
        return Number(float(v))
    s = str(v).strip()
    low = s.lower()
    if low in ("true", "false"):
        return Flag(low == "true")
    try:
        return Number(float(s))
    except ValueError:
        return Choice(s)


def coerce_params(raw: Mapping[str, Any] | None) -> ParamMap:
    return {str(k): coerce_value(v) for k, v in (raw or {}).items()}


def plain_params(params: Mapping[str, ParamValue]) -> Dict[str, Any]:
    return {k: v.value for k, v in params.items()}


def number(params: Mapping[str, ParamValue], key: str, default: float) -> float:
    v = params.get(key)
    return v.value if isinstance(v, Number) else float(default)


def flag(params: Mapping[str, ParamValue], key: str, default: bool = False) -> bool:
    v = params.get(key)
    return v.value if isinstance(v, Flag) else bool(default)


def choice(params: Mapping[str, ParamValue], key: str, default: str) -> str:
    v = params.get(key)
    return v.value if isinstance(v, Choice) else default
