from __future__ import annotations


def sample_value(exposition: str, series: str) -> float | None:
    """Value of one series line (``name{labels}``) in exposition text."""

    for line in exposition.splitlines():
        if line.startswith("#"):
            continue
        key, _, value = line.rpartition(" ")
        if key == series:
            return float(value)
    return None
