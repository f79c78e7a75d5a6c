"""Claim and respond flows: a mentioned person chooses how they appear.

Both flows arrive with only a token or invite id plus the recipient's name,
locate the reference through the shared matcher, then write the choice
through the same plan and write steps as ``apply_visibility_choice``, together
with the token or invite update.
"""

from database import identity_store
from identity.errors import AmbiguousMatch, NotFound
from identity.name_matching import find_reference_for_recipient
from identity.propagation import advance_invite_status, invite_status_fields
from identity.redaction import project_reference
from identity.utils import format_timestamp, is_expired, utcnow
from identity.visibility import (
    DEFAULT_SCOPE,
    attach_effective_visibility,
    log_visibility_write,
    plan_visibility_choice,
    validate_visibility,
    write_visibility_choice,
)


def load_claim(conn, token, now=None):
    claim = identity_store.get_claim_token(conn, token) if token else None
    if claim is None:
        raise NotFound("Invalid or expired token")
    if is_expired(claim.get("expires_at"), now=now):
        raise NotFound("Token has expired")
    return claim


def _event_context(event):
    return {
        "id": event["id"],
        "title": event["title"],
        "year": event.get("year"),
        "contributor_id": event.get("contributor_id"),
        "contributor_name": event.get("contributor_name") or "Someone",
    }


def get_claim_context(conn, token, now=None):
    """What the claim page shows: the note and how the recipient currently appears."""
    claim = load_claim(conn, token, now=now)
    event = identity_store.get_event(conn, claim["event_id"])
    if event is None:
        raise NotFound("Event not found")

    references = identity_store.get_event_references(conn, event["id"], ref_type="person")
    current = None
    try:
        match = find_reference_for_recipient(
            claim["recipient_name"], references, person_id_hint=claim.get("person_id")
        )
    except (NotFound, AmbiguousMatch):
        # The page still renders; the recipient just sees no current state.
        match = None
    if match is not None:
        resolved = attach_effective_visibility(conn, [match], event.get("contributor_id"))[0]
        current = project_reference(resolved)

    return {
        "claim": {
            "id": claim["id"],
            "recipient_name": claim["recipient_name"],
            "already_used": bool(claim.get("used_at")),
        },
        "event": _event_context(event),
        "reference": current,
    }


def claim_visibility(conn, token, visibility, scope=DEFAULT_SCOPE, now=None):
    """Persist a claimant's choice and mark the token used, in one transaction."""
    validate_visibility(visibility)
    claim = load_claim(conn, token, now=now)
    references = identity_store.get_event_references(conn, claim["event_id"], ref_type="person")
    match = find_reference_for_recipient(
        claim["recipient_name"], references, person_id_hint=claim.get("person_id")
    )
    plan = plan_visibility_choice(conn, match["id"], visibility, scope)
    with conn:
        write_visibility_choice(conn, plan)
        identity_store.mark_claim_token_used(conn, claim["id"], format_timestamp(now or utcnow()))
    log_visibility_write(plan)
    return plan


def open_invite(conn, invite_id, now=None):
    """Respond page load: mark the invite opened and return the note context."""
    invite = identity_store.get_invite(conn, invite_id)
    if invite is None:
        raise NotFound("Invite not found")
    if is_expired(invite.get("expires_at"), now=now):
        raise NotFound("Invite has expired")
    invite = advance_invite_status(conn, invite_id, "opened", now=now)
    event = identity_store.get_event(conn, invite["event_id"])
    if event is None:
        raise NotFound("Event not found")
    return {
        "invite": {
            "id": invite["id"],
            "recipient_name": invite["recipient_name"],
            "status": invite["status"],
            "depth": invite["depth"],
        },
        "event": _event_context(event),
    }


def respond_visibility(conn, invite_id, visibility, scope=DEFAULT_SCOPE, now=None):
    """
    Invite recipients set their visibility; the invite id is their credential.

    Acting on the invite marks it ``contributed`` in the same transaction.
    """
    validate_visibility(visibility)
    invite = identity_store.get_invite(conn, invite_id)
    if invite is None:
        raise NotFound("Invite not found")
    references = identity_store.get_event_references(conn, invite["event_id"], ref_type="person")
    match = find_reference_for_recipient(invite["recipient_name"], references)
    plan = plan_visibility_choice(conn, match["id"], visibility, scope)
    status_fields = invite_status_fields(invite, "contributed", now=now)
    with conn:
        write_visibility_choice(conn, plan)
        if status_fields:
            identity_store.update_invite(conn, invite_id, **status_fields)
    log_visibility_write(plan)
    return plan
