"""Display-oriented value rendering shared by the diff engine and the resolver.

Two values are "equal" when their display strings match: ``None`` renders as
the empty string and ``10`` renders the same as ``"10"``. This is a lossy,
presentation-level equality; every comparison in the package goes through
:func:`values_equal` so a stricter rule can be swapped in at one place.
"""

from __future__ import annotations

import json
import math
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any
from uuid import UUID


def _json_default(v: Any):
    if isinstance(v, (datetime, date, time)):
        return v.isoformat()
    if isinstance(v, (bytes, bytearray, memoryview)):
        return bytes(v).hex()
    return str(v)


def _number_string(v: float) -> str:
    """Shortest round-trip digits laid out like ECMAScript Number::toString.

    Fixed notation for 1e-6 <= |v| < 1e21, otherwise "1.5e-7" / "1e+21".
    """
    if v == 0:
        return "0"
    sign, digits, exp = Decimal(repr(v)).normalize().as_tuple()
    ds = "".join(map(str, digits))
    k = len(ds)
    n = exp + k
    if k <= n <= 21:
        body = ds + "0" * (n - k)
    elif 0 < n <= 21:
        body = ds[:n] + "." + ds[n:]
    elif -6 < n <= 0:
        body = "0." + "0" * -n + ds
    else:
        e = n - 1
        mantissa = ds if k == 1 else ds[0] + "." + ds[1:]
        body = f"{mantissa}e{'+' if e >= 0 else '-'}{abs(e)}"
    return "-" + body if sign else body


def display_string(v: Any) -> str:
    if v is None:
        return ""
    if isinstance(v, str):
        return v
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, int):
        return str(v)
    if isinstance(v, float):
        if math.isnan(v):
            return "NaN"
        if math.isinf(v):
            return "Infinity" if v > 0 else "-Infinity"
        return _number_string(v)
    if isinstance(v, (Decimal, UUID)):
        return str(v)
    if isinstance(v, (datetime, date, time)):
        return v.isoformat()
    if isinstance(v, (bytes, bytearray, memoryview)):
        return bytes(v).hex()
    if isinstance(v, (dict, list, tuple)):
        return json.dumps(v, sort_keys=True, separators=(",", ":"), default=_json_default)
    return str(v)


def values_equal(a: Any, b: Any) -> bool:
    return display_string(a) == display_string(b)
