"""
Visibility Resolver.

Single source of the precedence rules deciding how a mentioned person's
identity is disclosed on a note, plus the only sanctioned write paths for
people's disclosure choices.

Read precedence (first non-pending value wins):
  1. Per-note override (event_references.visibility)
  2. Trust-this-author preference (visibility_preferences scoped to the note author)
  3. Global default preference (visibility_preferences with no contributor)
  4. Person base visibility (people.visibility)
  5. ``pending``

Write scopes:
  - this_note:  reference override only
  - by_author:  author preference + reference override
  - all_notes:  global preference + people.visibility cache + reference override
"""

import logging
from dataclasses import dataclass

from database import identity_store
from identity.errors import InvalidScope, InvalidVisibility, NotFound

logger = logging.getLogger(__name__)

VISIBILITY_VALUES = ("approved", "blurred", "anonymized", "removed", "pending")
WRITABLE_VISIBILITY = {"approved", "blurred", "anonymized", "removed"}

# Higher rank = more private.
PRIVACY_RANK = {
    "approved": 0,
    "blurred": 1,
    "anonymized": 1,
    "pending": 1,
    "removed": 2,
}

SCOPE_THIS_NOTE = "this_note"
SCOPE_BY_AUTHOR = "by_author"
SCOPE_ALL_NOTES = "all_notes"
SCOPES = (SCOPE_THIS_NOTE, SCOPE_BY_AUTHOR, SCOPE_ALL_NOTES)
DEFAULT_SCOPE = SCOPE_THIS_NOTE


@dataclass(frozen=True)
class GlobalDefault:
    """Preference that applies to every author."""

    @property
    def contributor_id(self):
        return None


@dataclass(frozen=True)
class TrustAuthor:
    """Preference that applies only to notes written by one contributor."""

    contributor_id: int


def preference_scope(contributor_id):
    if contributor_id is None:
        return GlobalDefault()
    return TrustAuthor(int(contributor_id))


def normalize_visibility(value):
    """Unknown or missing values become ``pending`` (no choice at this level)."""
    if not value:
        return "pending"
    cleaned = str(value).strip().lower()
    return cleaned if cleaned in PRIVACY_RANK else "pending"


def validate_visibility(value):
    cleaned = str(value or "").strip().lower()
    if cleaned not in WRITABLE_VISIBILITY:
        raise InvalidVisibility(f"Invalid visibility value: {value!r}")
    return cleaned


def is_more_private_or_equal(candidate, base):
    return PRIVACY_RANK[normalize_visibility(candidate)] >= PRIVACY_RANK[normalize_visibility(base)]


def parse_scope(scope):
    cleaned = str(scope or "").strip().lower()
    if cleaned not in SCOPES:
        raise InvalidScope(f"Invalid scope: {scope!r}")
    return cleaned


def normalize_scope(scope):
    """Unknown scopes fall back to this_note, the smallest blast radius."""
    try:
        return parse_scope(scope)
    except InvalidScope:
        if scope:
            logger.info("visibility_scope_defaulted", extra={"requested_scope": str(scope)[:40]})
        return DEFAULT_SCOPE


def explain_visibility(
    reference_override=None,
    author_preference=None,
    global_preference=None,
    base_visibility=None,
):
    """Return ``(visibility, layer)`` where layer names the level that decided."""
    ladder = (
        ("reference_override", reference_override),
        ("author_preference", author_preference),
        ("global_preference", global_preference),
        ("base_visibility", base_visibility),
    )
    for layer, raw in ladder:
        value = normalize_visibility(raw)
        if value != "pending":
            return value, layer
    return "pending", "default"


def resolve_visibility(
    reference_override=None,
    author_preference=None,
    global_preference=None,
    base_visibility=None,
):
    return explain_visibility(
        reference_override=reference_override,
        author_preference=author_preference,
        global_preference=global_preference,
        base_visibility=base_visibility,
    )[0]


def resolve_person_visibility(conn, person_id, note_author_contributor_id=None, reference_override=None):
    """Effective visibility for one person on one note, read from the store."""
    person = identity_store.get_person(conn, person_id)
    if person is None:
        raise NotFound("Person not found")
    prefs = identity_store.get_visibility_preferences(
        conn, [person_id], note_author_contributor_id
    )[person_id]
    return resolve_visibility(
        reference_override=reference_override,
        author_preference=prefs["author"],
        global_preference=prefs["global"],
        base_visibility=person["visibility"],
    )


def attach_effective_visibility(conn, references, note_author_contributor_id=None):
    """
    Copy each reference row and add ``effective_visibility`` and
    ``visibility_source``.

    Link references keep their own stored visibility. Person references
    without a linked person have no preferences, only their override.
    """
    person_ids = [ref.get("person_id") for ref in references if ref.get("type") == "person"]
    prefs = identity_store.get_visibility_preferences(conn, person_ids, note_author_contributor_id)

    resolved = []
    for ref in references:
        item = dict(ref)
        if ref.get("type") == "link":
            item["effective_visibility"] = normalize_visibility(ref.get("visibility"))
            item["visibility_source"] = "reference_override"
        else:
            person_prefs = prefs.get(ref.get("person_id")) or {}
            value, layer = explain_visibility(
                reference_override=ref.get("visibility"),
                author_preference=person_prefs.get("author"),
                global_preference=person_prefs.get("global"),
                base_visibility=ref.get("person_visibility"),
            )
            item["effective_visibility"] = value
            item["visibility_source"] = layer
        resolved.append(item)
    return resolved


def can_reveal_identity(claim_exists, visibility):
    if not claim_exists:
        return False
    return normalize_visibility(visibility) not in {"removed", "pending"}


def shape_person_payload(claim_exists, person_id, canonical_name, visibility):
    """Person payload for API responses; the name is only present when approved."""
    resolved = normalize_visibility(visibility)
    if not claim_exists or resolved == "removed":
        return None
    return {
        "id": person_id,
        "name": canonical_name if resolved == "approved" else None,
        "visibility": resolved,
    }


def plan_visibility_choice(conn, reference_id, visibility, scope=DEFAULT_SCOPE):
    """
    Validate a disclosure choice and work out what it writes, without writing.

    Raises InvalidVisibility or NotFound.
    """
    value = validate_visibility(visibility)
    normalized_scope = normalize_scope(scope)

    reference = identity_store.get_reference(conn, reference_id)
    if reference is None or reference["type"] != "person":
        raise NotFound("Reference not found")

    person_id = reference["person_id"]
    author_id = None
    if normalized_scope != SCOPE_THIS_NOTE:
        if person_id is None:
            raise NotFound("No person is linked to this reference")
        if normalized_scope == SCOPE_BY_AUTHOR:
            event = identity_store.get_event(conn, reference["event_id"])
            author_id = event["contributor_id"] if event else None
            if author_id is None:
                raise NotFound("Note has no author to trust")

    return {
        "reference_id": reference_id,
        "person_id": person_id,
        "scope": normalized_scope,
        "preference_scope": (
            preference_scope(author_id) if normalized_scope != SCOPE_THIS_NOTE else None
        ),
        "visibility": value,
    }


def write_visibility_choice(conn, plan):
    """Execute a planned choice. The caller owns the transaction."""
    scope = plan["scope"]
    if scope == SCOPE_BY_AUTHOR:
        identity_store.upsert_visibility_preference(
            conn, plan["person_id"], plan["preference_scope"].contributor_id, plan["visibility"]
        )
    elif scope == SCOPE_ALL_NOTES:
        identity_store.upsert_visibility_preference(conn, plan["person_id"], None, plan["visibility"])
        identity_store.set_person_base_visibility(conn, plan["person_id"], plan["visibility"])
    identity_store.set_reference_visibility(conn, plan["reference_id"], plan["visibility"])


def log_visibility_write(plan):
    logger.info(
        "visibility_write_applied",
        extra={
            "reference_id": plan["reference_id"],
            "person_id": plan["person_id"],
            "scope": plan["scope"],
            "visibility": plan["visibility"],
        },
    )


def apply_visibility_choice(conn, reference_id, visibility, scope=DEFAULT_SCOPE):
    """
    Persist a mentioned person's disclosure choice made from one note.

    All parts of a scope are written in one transaction. Returns a summary
    dict; raises InvalidVisibility or NotFound without writing anything.
    """
    plan = plan_visibility_choice(conn, reference_id, visibility, scope)
    with conn:
        write_visibility_choice(conn, plan)
    log_visibility_write(plan)
    return plan


def set_author_reference_visibility(conn, reference_id, visibility, contributor_id):
    """
    Editor path: a note's author changes how a person appears on that note.

    Authors may only make a mention more private than what the person's own
    preferences resolve to.
    """
    value = validate_visibility(visibility)
    reference = identity_store.get_reference(conn, reference_id)
    if reference is None or reference["type"] != "person":
        raise NotFound("Reference not found")
    event = identity_store.get_event(conn, reference["event_id"])
    owners = {reference.get("added_by"), event["contributor_id"] if event else None}
    if contributor_id is None or contributor_id not in owners:
        raise NotFound("Reference not found")

    baseline = "pending"
    if reference["person_id"] is not None:
        baseline = resolve_person_visibility(
            conn, reference["person_id"], event["contributor_id"] if event else None
        )
    if not is_more_private_or_equal(value, baseline):
        raise InvalidVisibility(
            f"Authors can only make a mention more private (current default: {baseline})"
        )

    with conn:
        identity_store.set_reference_visibility(conn, reference_id, value)
    return {"reference_id": reference_id, "visibility": value, "baseline": baseline}
