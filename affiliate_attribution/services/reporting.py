"""Small-number suppression for aggregate affiliate reports.

Counts between 1 and 4 can identify individual patients, so they are masked
as '<5' together with every value derived from the same rows.
"""
from __future__ import annotations

from typing import Any, Iterable, Union

SUPPRESSION_THRESHOLD = 5
SUPPRESSED = f"<{SUPPRESSION_THRESHOLD}"


def suppress_small_number(count: int) -> Union[int, str]:
    if 0 < count < SUPPRESSION_THRESHOLD:
        return SUPPRESSED
    return count


def suppress_row(
    row: dict[str, Any],
    count_field: str = "conversions",
    correlated: Iterable[str] = ("revenue_cents", "commission_cents"),
) -> dict[str, Any]:
    """Return a copy of `row` with the count masked and, when masked, its
    correlated amounts blanked out as well."""
    out = dict(row)
    count = out.get(count_field)
    if count is None:
        return out
    masked = suppress_small_number(count)
    out[count_field] = masked
    if masked == SUPPRESSED:
        for name in correlated:
            if name in out:
                out[name] = None
    return out
