"""Unit tests for the best-effort audit trail."""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from pharmastore import audit, constants, data_manager


def test_record_appends_and_persists_event(context, store):
    """Each recorded event is appended and the whole log is saved."""

    moment = datetime(2026, 10, 18, 9, 30, tzinfo=UTC)

    event = audit.record(context, constants.AuditAction.SALE, "Sold 1 of Aspirin", actor="amy", timestamp=moment)

    assert context.audit_log == [event]
    assert event == data_manager.AuditEvent(
        action="sale",
        details="Sold 1 of Aspirin",
        timestamp="2026-10-18T09:30:00+00:00",
        user="amy",
    )
    store.save.assert_called_once_with(
        constants.StorageKey.AUDIT_LOG.value,
        [data_manager.serialize_audit_event(event)],
    )


def test_record_defaults_user_to_session_actor_then_system(context):
    """Without an explicit actor the session actor is used, then ``system``."""

    first = audit.record(context, "custom", "with session actor")
    context.actor = None
    second = audit.record(context, "custom", "without any actor")

    assert first.user == "pharmacist"
    assert second.user == constants.SYSTEM_ACTOR
    assert first.action == "custom"


def test_record_swallows_storage_failure(context, store, caplog):
    """A failed write keeps the event in memory and only logs a warning."""

    store.save.side_effect = data_manager.StorageError("disk full")

    with caplog.at_level(logging.WARNING, logger="pharmastore"):
        event = audit.record(context, constants.AuditAction.EXPORT, "Exported")

    assert context.audit_log == [event]
    assert "kept in memory only" in caplog.text


def test_list_events_filters_by_action(context):
    """list_events returns events in insertion order, optionally filtered."""

    audit.record(context, constants.AuditAction.SALE, "one")
    audit.record(context, constants.AuditAction.ADD_DRUG, "two")
    audit.record(context, constants.AuditAction.SALE, "three")

    assert [event.details for event in audit.list_events(context)] == ["one", "two", "three"]
    assert [event.details for event in audit.list_events(context, action="sale")] == ["one", "three"]


def test_clear_wipes_log_and_records_the_wipe(context, store):
    """Clearing leaves exactly one event describing the wipe."""

    audit.record(context, constants.AuditAction.SALE, "one")
    audit.record(context, constants.AuditAction.SALE, "two")
    store.save.reset_mock()

    event = audit.clear(context, actor="manager")

    assert context.audit_log == [event]
    assert event.action == constants.AuditAction.CLEAR_AUDIT.value
    assert event.details == "Cleared 2 audit events"
    assert event.user == "manager"
    store.save.assert_called_once()
