"""Policy change requests.

A change to an existing policy is either scheduled for a future moment or
applied at once as an emergency override. Both carry the same ``changes``
mapping; the variant decides the audit action and when the change lands.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union


@dataclass(frozen=True)
class ScheduledChange:
    effective_at: datetime
    changes: dict[str, Any] = field(default_factory=dict)

    kind = "scheduled"
    audit_action = "update_scheduled"


@dataclass(frozen=True)
class EmergencyChange:
    reason: str
    changes: dict[str, Any] = field(default_factory=dict)

    kind = "emergency"
    audit_action = "emergency_update"


PolicyChangeRequest = Union[ScheduledChange, EmergencyChange]
