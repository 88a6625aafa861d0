from __future__ import annotations

import copy
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

CONDITION_READY = "Ready"

STATUS_TRUE = "True"
STATUS_FALSE = "False"
STATUS_UNKNOWN = "Unknown"
_VALID_STATUSES = {STATUS_TRUE, STATUS_FALSE, STATUS_UNKNOWN}


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def get_condition(conditions: list[dict[str, Any]] | None, condition_type: str) -> dict[str, Any] | None:
    for condition in conditions or []:
        if condition.get("type") == condition_type:
            return condition
    return None


class ConditionTracker:
    """Status-condition state machine for ``status.conditions`` lists.

    ``lastTransitionTime`` moves only when a condition's ``status`` flips.
    A reason or message change on an unchanged status is recorded in place
    with the original transition time, so re-evaluating a steady state
    yields a list equal by value to the input.
    """

    def __init__(self, now_fn: Callable[[], str] = utc_now_rfc3339) -> None:
        self.now_fn = now_fn

    def set_condition(
        self,
        conditions: list[dict[str, Any]] | None,
        condition_type: str,
        status: str,
        reason: str,
        message: str,
    ) -> list[dict[str, Any]]:
        """Return a new condition list with *condition_type* evaluated.

        The input list is never mutated; other condition types pass through
        unchanged and in their original order.
        """
        if status not in _VALID_STATUSES:
            raise ValueError(f"invalid condition status: {status!r}")

        updated: list[dict[str, Any]] = []
        found = False
        for existing in conditions or []:
            if existing.get("type") != condition_type:
                updated.append(copy.deepcopy(existing))
                continue
            if found:
                # Collapse duplicates of the same type.
                continue
            found = True
            condition = {
                "type": condition_type,
                "status": status,
                "reason": reason,
                "message": message,
            }
            if existing.get("status") == status and existing.get("lastTransitionTime"):
                condition["lastTransitionTime"] = existing["lastTransitionTime"]
            else:
                condition["lastTransitionTime"] = self.now_fn()
            updated.append(condition)

        if not found:
            updated.append(
                {
                    "type": condition_type,
                    "status": status,
                    "reason": reason,
                    "message": message,
                    "lastTransitionTime": self.now_fn(),
                }
            )
        return updated
