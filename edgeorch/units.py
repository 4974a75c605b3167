from __future__ import annotations

import re

_MEM_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-zA-Z]*)\s*$")

_MEM_UNITS = {
    "": 1,
    "b": 1,
    "k": 1000,
    "kb": 1000,
    "m": 1000**2,
    "mb": 1000**2,
    "g": 1000**3,
    "gb": 1000**3,
    "t": 1000**4,
    "ki": 1024,
    "mi": 1024**2,
    "gi": 1024**3,
    "ti": 1024**4,
}


def parse_memory(value: str | int | None) -> int | None:
    """Memory quantity to bytes: "512M", "1G", "256Mi", "1024Ki", 4096.

    Docker-style single letters (k, m, g) are decimal here, as in Kubernetes.
    """
    if value is None:
        return None
    if isinstance(value, int):
        return value
    m = _MEM_RE.match(value)
    if not m:
        raise ValueError(f"invalid memory quantity: {value!r}")
    number, unit = m.groups()
    factor = _MEM_UNITS.get(unit.lower())
    if factor is None:
        raise ValueError(f"invalid memory unit in {value!r}")
    return int(float(number) * factor)


def parse_cpu(value: str | float | None) -> float | None:
    """CPU quantity to cores: "0.5", "2", "500m", "250000n"."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    v = value.strip()
    if v.endswith("n"):
        return float(v[:-1]) / 1e9
    if v.endswith("u"):
        return float(v[:-1]) / 1e6
    if v.endswith("m"):
        return float(v[:-1]) / 1000.0
    return float(v)
