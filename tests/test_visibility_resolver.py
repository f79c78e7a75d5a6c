import sqlite3
from itertools import product

import pytest

from database import identity_store
from identity.errors import InvalidScope, InvalidVisibility, NotFound
from identity.visibility import (
    GlobalDefault,
    TrustAuthor,
    apply_visibility_choice,
    can_reveal_identity,
    explain_visibility,
    is_more_private_or_equal,
    normalize_scope,
    normalize_visibility,
    parse_scope,
    preference_scope,
    resolve_person_visibility,
    resolve_visibility,
    set_author_reference_visibility,
    shape_person_payload,
)

LAYER_VALUES = [None, "approved", "blurred", "anonymized", "removed", "pending"]


def _preference_rows(conn, person_id):
    return conn.execute(
        """SELECT contributor_id, visibility FROM visibility_preferences
        WHERE person_id = ? ORDER BY id""",
        (person_id,),
    ).fetchall()


def test_ladder_falls_through_each_layer_in_order():
    assert resolve_visibility("blurred", "approved", "removed", "anonymized") == "blurred"
    assert resolve_visibility(None, "approved", "removed", "anonymized") == "approved"
    assert resolve_visibility(None, None, "removed", "anonymized") == "removed"
    assert resolve_visibility(None, None, None, "anonymized") == "anonymized"
    assert resolve_visibility() == "pending"


def test_pending_and_unknown_values_defer_to_next_layer():
    assert normalize_visibility("bogus") == "pending"
    assert normalize_visibility(" Approved ") == "approved"
    assert explain_visibility("pending", "garbage", None, "blurred") == ("blurred", "base_visibility")
    assert explain_visibility(None, None, None, None) == ("pending", "default")


@pytest.mark.parametrize("override", ["approved", "blurred", "anonymized", "removed"])
def test_reference_override_always_wins(override):
    for author_pref, global_pref, base in product(LAYER_VALUES, repeat=3):
        assert resolve_visibility(override, author_pref, global_pref, base) == override


def test_scope_parsing_defaults_to_this_note():
    assert normalize_scope("by_author") == "by_author"
    assert normalize_scope("everywhere") == "this_note"
    assert normalize_scope(None) == "this_note"
    with pytest.raises(InvalidScope):
        parse_scope("everywhere")


def test_preference_scope_is_a_sum_type():
    assert preference_scope(None) == GlobalDefault()
    assert preference_scope(7) == TrustAuthor(7)
    assert GlobalDefault().contributor_id is None
    assert TrustAuthor(7).contributor_id == 7


def test_privacy_rank_and_reveal_rules():
    assert is_more_private_or_equal("removed", "approved")
    assert is_more_private_or_equal("blurred", "anonymized")
    assert not is_more_private_or_equal("approved", "pending")

    assert can_reveal_identity(True, "approved")
    assert not can_reveal_identity(False, "approved")
    assert not can_reveal_identity(True, "pending")

    assert shape_person_payload(True, 4, "Amy Grant", "approved")["name"] == "Amy Grant"
    assert shape_person_payload(True, 4, "Amy Grant", "blurred")["name"] is None
    assert shape_person_payload(True, 4, "Amy Grant", "removed") is None
    assert shape_person_payload(False, 4, "Amy Grant", "approved") is None


def test_by_author_escalation_only_applies_to_that_author(conn, family_note):
    amy = family_note["amy"]
    julie = family_note["julie"]
    marcus = family_note["marcus"]

    apply_visibility_choice(conn, family_note["amy_ref"], "approved", "by_author")

    assert resolve_person_visibility(conn, amy, julie) == "approved"
    assert resolve_person_visibility(conn, amy, marcus) == "pending"
    rows = _preference_rows(conn, amy)
    assert [(row["contributor_id"], row["visibility"]) for row in rows] == [(julie, "approved")]
    assert identity_store.get_reference(conn, family_note["amy_ref"])["visibility"] == "approved"


def test_this_note_writes_only_the_reference(conn, family_note):
    result = apply_visibility_choice(conn, family_note["sam_ref"], "blurred", "this_note")

    assert result["scope"] == "this_note"
    assert result["preference_scope"] is None
    assert _preference_rows(conn, family_note["sam"]) == []
    assert identity_store.get_person(conn, family_note["sam"])["visibility"] == "pending"
    assert identity_store.get_reference(conn, family_note["sam_ref"])["visibility"] == "blurred"


def test_unknown_scope_degrades_to_this_note(conn, family_note):
    result = apply_visibility_choice(conn, family_note["sam_ref"], "anonymized", "galaxy")
    assert result["scope"] == "this_note"
    assert _preference_rows(conn, family_note["sam"]) == []


def test_all_notes_write_is_idempotent(conn, family_note):
    amy = family_note["amy"]

    apply_visibility_choice(conn, family_note["amy_ref"], "blurred", "all_notes")
    apply_visibility_choice(conn, family_note["amy_ref"], "anonymized", "all_notes")

    rows = _preference_rows(conn, amy)
    assert len(rows) == 1
    assert rows[0]["contributor_id"] is None
    assert rows[0]["visibility"] == "anonymized"
    assert identity_store.get_person(conn, amy)["visibility"] == "anonymized"
    assert identity_store.get_reference(conn, family_note["amy_ref"])["visibility"] == "anonymized"


def test_write_is_visible_to_the_next_read(conn, family_note):
    amy = family_note["amy"]
    julie = family_note["julie"]
    assert resolve_person_visibility(conn, amy, julie) == "pending"

    apply_visibility_choice(conn, family_note["amy_ref"], "removed", "all_notes")

    assert resolve_person_visibility(conn, amy, julie) == "removed"
    assert resolve_person_visibility(conn, amy, family_note["marcus"]) == "removed"


def test_invalid_visibility_is_rejected_before_any_write(conn, family_note):
    with pytest.raises(InvalidVisibility):
        apply_visibility_choice(conn, family_note["amy_ref"], "pending", "all_notes")
    with pytest.raises(InvalidVisibility):
        apply_visibility_choice(conn, family_note["amy_ref"], "public", "this_note")

    assert _preference_rows(conn, family_note["amy"]) == []
    assert identity_store.get_reference(conn, family_note["amy_ref"])["visibility"] == "pending"


def test_preference_write_without_a_person_fails_closed(conn, family_note):
    orphan_ref = identity_store.add_reference(
        conn,
        family_note["event"],
        display_name="The neighbor",
        added_by=family_note["julie"],
    )
    conn.commit()
    before = conn.execute("SELECT COUNT(*) AS count FROM visibility_preferences").fetchone()["count"]

    with pytest.raises(NotFound):
        apply_visibility_choice(conn, orphan_ref, "approved", "by_author")
    with pytest.raises(NotFound):
        apply_visibility_choice(conn, orphan_ref, "approved", "all_notes")

    after = conn.execute("SELECT COUNT(*) AS count FROM visibility_preferences").fetchone()["count"]
    assert after == before
    assert identity_store.get_reference(conn, orphan_ref)["visibility"] == "pending"


def test_multi_part_write_rolls_back_together(conn, family_note, monkeypatch):
    def _fail(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(identity_store, "set_reference_visibility", _fail)

    with pytest.raises(sqlite3.OperationalError):
        apply_visibility_choice(conn, family_note["amy_ref"], "approved", "all_notes")

    assert _preference_rows(conn, family_note["amy"]) == []
    assert identity_store.get_person(conn, family_note["amy"])["visibility"] == "pending"


def test_link_reference_cannot_take_a_person_choice(conn, family_note):
    with pytest.raises(NotFound):
        apply_visibility_choice(conn, family_note["link_ref"], "approved", "this_note")


def test_authors_can_only_make_mentions_more_private(conn, family_note):
    julie = family_note["julie"]

    result = set_author_reference_visibility(conn, family_note["sam_ref"], "removed", julie)
    assert result["baseline"] == "pending"
    assert identity_store.get_reference(conn, family_note["sam_ref"])["visibility"] == "removed"

    with pytest.raises(InvalidVisibility):
        set_author_reference_visibility(conn, family_note["amy_ref"], "approved", julie)

    with pytest.raises(NotFound):
        set_author_reference_visibility(conn, family_note["amy_ref"], "removed", family_note["marcus"])
