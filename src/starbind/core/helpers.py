"""
StarBind Core - Script Helpers

The fixed allow-list of pure functions callable from script and transform
expressions. Nothing outside this table is reachable from an expression.
"""

import math
from typing import Any, Callable, Dict, Mapping, Sequence

from .values import UNRESOLVED


def _number(value: Any) -> float:
    if value is UNRESOLVED or value is None:
        raise TypeError("expected a number, got no value")
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        return float(value)
    raise TypeError(f"expected a number, got {type(value).__name__}")


def clamp(value, low, high):
    return min(max(_number(value), _number(low)), _number(high))


def lerp(start, end, t):
    start = _number(start)
    return start + (_number(end) - start) * _number(t)


def round_to(value, precision=0):
    """Round half up like ``Math.round`` rather than Python's banker's rounding."""
    factor = 10 ** int(_number(precision))
    result = math.floor(_number(value) * factor + 0.5) / factor
    return int(result) if precision == 0 else result


def format_value(value, digits=2):
    if value is None or value is UNRESOLVED:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return str(value)
        return f"{value:.{int(digits)}f}"
    return str(value)


def _stop(entry: Any):
    if isinstance(entry, Mapping):
        return _number(entry["stop"]), entry["color"]
    stop, color = entry
    return _number(stop), color


def color_ramp(value, stops: Sequence):
    """Pick the nearest color stop for ``value``; stops are ``[stop, color]`` pairs or ``{stop, color}`` maps."""
    if not stops:
        return "#ffffff"
    ordered = sorted((_stop(entry) for entry in stops), key=lambda item: item[0])
    value = _number(value)
    if value <= ordered[0][0]:
        return ordered[0][1]
    if value >= ordered[-1][0]:
        return ordered[-1][1]
    for (low, low_color), (high, high_color) in zip(ordered, ordered[1:]):
        if low <= value <= high:
            ratio = (value - low) / (high - low) if high != low else 0.0
            return low_color if ratio < 0.5 else high_color
    return ordered[-1][1]


def average(*values):
    if len(values) == 1 and isinstance(values[0], (list, tuple)):
        values = tuple(values[0])
    if not values:
        raise ValueError("avg() requires at least one value")
    numbers = [_number(v) for v in values]
    return sum(numbers) / len(numbers)


def _unary(fn: Callable[[float], float]) -> Callable[[Any], float]:
    def wrapper(value):
        return fn(_number(value))
    wrapper.__name__ = fn.__name__
    return wrapper


def _extremum(fn):
    def wrapper(*values):
        if len(values) == 1 and isinstance(values[0], (list, tuple)):
            values = tuple(values[0])
        return fn(_number(v) for v in values)
    wrapper.__name__ = fn.__name__
    return wrapper


SCRIPT_HELPERS: Dict[str, Callable[..., Any]] = {
    "clamp": clamp,
    "lerp": lerp,
    "round": round_to,
    "format": format_value,
    "colorRamp": color_ramp,
    "abs": _unary(abs),
    "sqrt": _unary(math.sqrt),
    "floor": _unary(math.floor),
    "ceil": _unary(math.ceil),
    "log": _unary(math.log),
    "log10": _unary(math.log10),
    "exp": _unary(math.exp),
    "sin": _unary(math.sin),
    "cos": _unary(math.cos),
    "tan": _unary(math.tan),
    "pow": lambda base, exponent: _number(base) ** _number(exponent),
    "min": _extremum(min),
    "max": _extremum(max),
    "avg": average,
}

SCRIPT_CONSTANTS: Dict[str, Any] = {
    "pi": math.pi,
}


__all__ = [
    "SCRIPT_HELPERS", "SCRIPT_CONSTANTS",
    "clamp", "lerp", "round_to", "format_value", "color_ramp", "average",
]
