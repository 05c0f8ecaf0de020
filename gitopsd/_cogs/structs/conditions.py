"""
Status conditions of the API objects, as the users see them.

A condition is identified by its type. The transition time is only changed
when the condition's status flips, the last-checked time on every update.
"""
import datetime
from typing import List, Optional, Sequence

from typing_extensions import TypedDict

ERROR_OCCURRED = 'ErrorOccurred'


class Condition(TypedDict, total=False):
    type: str
    status: str  # "True", "False", "Unknown"
    reason: str
    message: str
    lastProbeTime: str
    lastTransitionTime: str


def _now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def set_condition(
        conditions: Optional[Sequence[Condition]],
        *,
        type: str,
        status: str,
        reason: str,
        message: str,
) -> List[Condition]:
    """
    Add or update the condition of the type. The original list is not modified.

    If the condition is already as requested (except the last-checked time),
    the original list is returned as a copy with no changes at all,
    so that no status patch is needed.
    """
    conditions = list(conditions or [])
    for idx, condition in enumerate(conditions):
        if condition.get('type') == type:
            if (condition.get('status'), condition.get('reason'), condition.get('message')) == \
                    (status, reason, message):
                return conditions
            now = _now()
            updated = Condition(condition)
            updated.update(status=status, reason=reason, message=message, lastProbeTime=now)
            if condition.get('status') != status:
                updated['lastTransitionTime'] = now
            conditions[idx] = updated
            return conditions

    now = _now()
    conditions.append(Condition(type=type, status=status, reason=reason, message=message,
                                lastProbeTime=now, lastTransitionTime=now))
    return conditions


def remove_condition(
        conditions: Optional[Sequence[Condition]],
        *,
        type: str,
) -> List[Condition]:
    return [condition for condition in conditions or [] if condition.get('type') != type]


def find_condition(
        conditions: Optional[Sequence[Condition]],
        *,
        type: str,
) -> Optional[Condition]:
    return next((condition for condition in conditions or [] if condition.get('type') == type), None)
