"""Append-only audit trail.

Every mutating operation of the sale engine writes here. Recording is
best-effort: a storage failure is logged and swallowed so it can never block
or undo the operation being audited.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, List, Optional, Union

from . import data_manager, log
from .constants import SYSTEM_ACTOR, AuditAction

if TYPE_CHECKING:
    from .core_logic import RuntimeContext


def record(
    context: "RuntimeContext",
    action: Union[AuditAction, str],
    details: str,
    actor: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.AuditEvent:
    """Append one event to the audit log and try to persist it.

    Args:
        context (RuntimeContext): Runtime state owning the audit log.
        action (AuditAction | str): Action name such as ``"sale"``.
        details (str): Human-readable description.
        actor (str | None): Who performed the action. Defaults to the
            context's current actor, then ``"system"``.
        timestamp (datetime | None): Event time; now (UTC) when omitted.

    Returns:
        data_manager.AuditEvent: The appended event.
    """

    action_name = action.value if isinstance(action, AuditAction) else str(action)
    when = timestamp if timestamp is not None else datetime.now(UTC)
    event = data_manager.AuditEvent(
        action=action_name,
        details=details,
        timestamp=when.isoformat(),
        user=actor or context.actor or SYSTEM_ACTOR,
    )
    context.audit_log.append(event)
    log.info("[Audit] %s: %s", action_name, details)

    try:
        data_manager.save_audit_log(context.store, context.audit_log)
    except data_manager.StorageError as exc:
        log.warning("Audit event '%s' kept in memory only: %s", action_name, exc)
    return event


def list_events(context: "RuntimeContext", *, action: Optional[str] = None) -> List[data_manager.AuditEvent]:
    """Return audit events in insertion order, optionally for one action."""

    if action is None:
        return list(context.audit_log)
    return [event for event in context.audit_log if event.action == action]


def clear(context: "RuntimeContext", actor: Optional[str] = None) -> data_manager.AuditEvent:
    """Wipe the audit log and record the wipe as its first new event."""

    removed = len(context.audit_log)
    context.audit_log.clear()
    log.warning("Audit log wiped (%d events removed)", removed)
    return record(
        context,
        AuditAction.CLEAR_AUDIT,
        f"Cleared {removed} audit events",
        actor=actor,
    )


__all__ = ["record", "list_events", "clear"]
