import sqlite3
from datetime import datetime

import pytest

from database import identity_store
from database import init_db as db_init
from identity import propagation
from identity.errors import NotFound, PropagationLimitExceeded
from identity.propagation import (
    INVITE_MAX_DEPTH,
    INVITE_MAX_USES,
    advance_invite_status,
    create_invite,
    get_invite_limits,
    resolve_invite_graph_context,
)

LIMITS = {"max_depth": 2, "max_uses": 3, "expiry_hours": 72}


def _invite_count(conn):
    return conn.execute("SELECT COUNT(*) AS count FROM invites").fetchone()["count"]


def test_root_invite_context(conn):
    context = resolve_invite_graph_context(conn, None, limits=LIMITS)
    assert context == {"parent_invite_id": None, "depth": 0, "max_uses": 3}


def test_child_invite_increments_depth_and_carries_max_uses(conn, family_note):
    root_id, created = create_invite(conn, family_note["event"], "Amy Grant", limits=LIMITS)
    assert created is True

    child_id, _ = create_invite(
        conn, family_note["event"], "Sam Miller", parent_invite_id=root_id, limits=LIMITS
    )
    child = identity_store.get_invite(conn, child_id)
    assert child["depth"] == 1
    assert child["max_uses"] == 3
    assert child["parent_invite_id"] == root_id
    assert child["status"] == "pending"
    assert identity_store.get_invite(conn, root_id)["uses_count"] == 1


def test_parent_at_max_depth_cannot_spawn(conn, family_note):
    event = family_note["event"]
    parent_id, _ = create_invite(conn, event, "Level 0", limits=LIMITS)
    for level in (1, 2):
        parent_id, _ = create_invite(conn, event, f"Level {level}", parent_invite_id=parent_id, limits=LIMITS)
    assert identity_store.get_invite(conn, parent_id)["depth"] == 2
    before = _invite_count(conn)

    with pytest.raises(PropagationLimitExceeded) as excinfo:
        create_invite(conn, event, "Level 3", parent_invite_id=parent_id, limits=LIMITS)

    assert excinfo.value.reason == "Invite chain limit reached."
    assert excinfo.value.parent_invite_id == parent_id
    assert _invite_count(conn) == before


def test_fan_out_is_bounded(conn, family_note):
    event = family_note["event"]
    root_id, _ = create_invite(conn, event, "Root", limits=LIMITS)
    for idx in range(LIMITS["max_uses"]):
        create_invite(conn, event, f"Child {idx}", parent_invite_id=root_id, limits=LIMITS)

    with pytest.raises(PropagationLimitExceeded):
        create_invite(conn, event, "One too many", parent_invite_id=root_id, limits=LIMITS)
    assert identity_store.count_child_invites(conn, root_id) == LIMITS["max_uses"]


def test_expired_parent_cannot_spawn(conn, family_note):
    event = family_note["event"]
    root_id, _ = create_invite(conn, event, "Root", limits=LIMITS, now=datetime(2020, 1, 1))

    with pytest.raises(PropagationLimitExceeded) as excinfo:
        create_invite(conn, event, "Late", parent_invite_id=root_id, limits=LIMITS)
    assert excinfo.value.reason == "Parent invite has expired."


def test_unknown_parent_is_not_found(conn, family_note):
    with pytest.raises(NotFound):
        create_invite(conn, family_note["event"], "Orphan", parent_invite_id=9999, limits=LIMITS)
    assert _invite_count(conn) == 0


def test_reinviting_same_contact_refreshes_existing_invite(conn, family_note):
    event = family_note["event"]
    first_id, created = create_invite(conn, event, "Amy Grant", recipient_contact="amy@example.org", limits=LIMITS)
    second_id, created_again = create_invite(
        conn, event, "Amy G.", recipient_contact="amy@example.org", message="Reminder", limits=LIMITS
    )

    assert created is True
    assert created_again is False
    assert second_id == first_id
    invite = identity_store.get_invite(conn, first_id)
    assert invite["method"] == "email"
    assert invite["message"] == "Reminder"
    assert _invite_count(conn) == 1


def test_blank_recipient_name_rejected(conn, family_note):
    with pytest.raises(ValueError):
        create_invite(conn, family_note["event"], "   ", limits=LIMITS)


def test_status_only_moves_forward(conn, family_note):
    invite_id, _ = create_invite(conn, family_note["event"], "Amy Grant", limits=LIMITS)

    opened = advance_invite_status(conn, invite_id, "opened", now=datetime(2024, 5, 1, 9, 30))
    assert opened["status"] == "opened"
    assert opened["sent_at"] == "2024-05-01 09:30:00"
    assert opened["opened_at"] == "2024-05-01 09:30:00"

    unchanged = advance_invite_status(conn, invite_id, "sent")
    assert unchanged["status"] == "opened"

    with pytest.raises(ValueError):
        advance_invite_status(conn, invite_id, "archived")
    with pytest.raises(NotFound):
        advance_invite_status(conn, 9999, "sent")


def test_invite_limits_defaults_yaml_and_env(monkeypatch):
    assert get_invite_limits(config={}) == {
        "max_depth": INVITE_MAX_DEPTH,
        "max_uses": INVITE_MAX_USES,
        "expiry_hours": 72,
    }

    yaml_config = {"invites": {"max_depth": 5, "max_uses": 4, "expiry_hours": 24}}
    assert get_invite_limits(config=yaml_config) == {"max_depth": 5, "max_uses": 4, "expiry_hours": 24}

    monkeypatch.setenv("ARCHIVE_INVITE_MAX_DEPTH", "1")
    monkeypatch.setenv("ARCHIVE_INVITE_MAX_USES", "not-a-number")
    assert get_invite_limits(config=yaml_config) == {"max_depth": 1, "max_uses": 4, "expiry_hours": 24}


def test_invite_limits_read_bundled_config(archive_db):
    assert get_invite_limits() == {"max_depth": 3, "max_uses": 10, "expiry_hours": 72}


def test_fan_out_check_runs_under_the_write_lock(conn, family_note, archive_db, monkeypatch):
    event = family_note["event"]
    limits = dict(LIMITS, max_uses=1)
    root_id, _ = create_invite(conn, event, "Root", limits=limits)

    checked = []
    real_resolve = propagation.resolve_invite_graph_context

    def _recording_resolve(inner_conn, *args, **kwargs):
        checked.append(inner_conn.in_transaction)
        return real_resolve(inner_conn, *args, **kwargs)

    monkeypatch.setattr(propagation, "resolve_invite_graph_context", _recording_resolve)

    # A second writer has inserted a child but not committed yet.
    writer = db_init.get_connection()
    writer.execute("BEGIN IMMEDIATE")
    identity_store.insert_invite(
        writer,
        {"event_id": event, "recipient_name": "First child", "parent_invite_id": root_id, "depth": 1, "max_uses": 1},
    )

    racer = sqlite3.connect(str(archive_db), timeout=0.05)
    racer.row_factory = sqlite3.Row
    try:
        with pytest.raises(sqlite3.OperationalError):
            create_invite(racer, event, "Second child", parent_invite_id=root_id, limits=limits)
        assert checked == []

        writer.commit()
        with pytest.raises(PropagationLimitExceeded):
            create_invite(racer, event, "Second child", parent_invite_id=root_id, limits=limits)
        assert checked == [True]
    finally:
        racer.close()
        writer.close()

    assert identity_store.count_child_invites(conn, root_id) == 1
