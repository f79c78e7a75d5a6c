import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT))

from api.main import _claim_limiter, app
from database import identity_store
from database import init_db as db_init


@pytest.fixture
def archive_db(tmp_path, monkeypatch):
    db_path = Path(tmp_path) / "archive_test.db"
    monkeypatch.setattr(db_init, "DB_PATH", str(db_path))
    for name in ("ARCHIVE_INVITE_MAX_DEPTH", "ARCHIVE_INVITE_MAX_USES", "ARCHIVE_CONFIG_PATH"):
        monkeypatch.delenv(name, raising=False)

    db_init.init_db()
    db_init.migrate_schema()
    db_init.seed_default_people()
    return db_path


@pytest.fixture
def conn(archive_db):
    connection = db_init.get_connection()
    yield connection
    connection.close()


@pytest.fixture
def client(archive_db):
    # Reset rate limiter between tests so claim endpoints are not blocked
    _claim_limiter.reset()

    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client


@pytest.fixture
def family_note(conn):
    """
    One note by Julie mentioning Amy Grant (cousin) and Sam Miller (friend),
    plus a link reference. Marcus is a second author with no notes yet.
    """
    julie = identity_store.create_contributor(conn, "Julie Hart")
    marcus = identity_store.create_contributor(conn, "Marcus Lee")
    amy = identity_store.create_person(conn, "Amy Grant", created_by=julie, aliases=["Ames"])
    sam = identity_store.create_person(conn, "Sam Miller", created_by=julie)
    event = identity_store.create_event(
        conn,
        "Summer at the lake",
        "<p>Amy Grant and Sam Miller drove Val to the lake. Ames packed lunch and Sam brought the boat.</p>",
        contributor_id=julie,
        year=1994,
    )
    amy_ref = identity_store.add_reference(
        conn,
        event,
        person_id=amy,
        role="witness",
        relationship_to_subject="cousin",
        added_by=julie,
    )
    sam_ref = identity_store.add_reference(
        conn,
        event,
        person_id=sam,
        role="heard_from",
        relationship_to_subject="friend",
        added_by=julie,
    )
    link_ref = identity_store.add_reference(
        conn,
        event,
        ref_type="link",
        url="https://example.org/lake-photos",
        display_name="Lake photos",
        role="source",
        visibility="approved",
        added_by=julie,
    )
    conn.commit()
    return {
        "julie": julie,
        "marcus": marcus,
        "amy": amy,
        "sam": sam,
        "event": event,
        "amy_ref": amy_ref,
        "sam_ref": sam_ref,
        "link_ref": link_ref,
    }
