"""
Propagation Guard for chain invites.

An invite recipient may invite the person who told them the story, which
forms a referral tree. The guard bounds that tree before any invite row is
written:

  - depth:   root invites have depth 0; a parent at ``max_depth`` cannot spawn
  - fan-out: an invite may spawn at most ``max_uses`` children
  - liveness: expired or unknown-status parents cannot spawn

``max_uses`` is set on the root and carried unchanged down the chain
(capped by the configured ceiling).
"""

import logging
import os
from datetime import timedelta

from database import identity_store
from database.init_db import load_archive_config
from identity.errors import NotFound, PropagationLimitExceeded
from identity.utils import format_timestamp, is_expired, utcnow

logger = logging.getLogger(__name__)

INVITE_MAX_DEPTH = 3
INVITE_MAX_USES = 10
INVITE_EXPIRY_HOURS = 72

INVITE_STATUSES = ("pending", "sent", "opened", "contributed")
INVITE_ACTIVE_STATUSES = set(INVITE_STATUSES)


def _env_int(name):
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value > 0 else None


def get_invite_limits(config=None):
    """Env beats YAML config beats module constants."""
    if config is None:
        config = load_archive_config()
    invite_block = (config or {}).get("invites", {})
    max_depth = _env_int("ARCHIVE_INVITE_MAX_DEPTH") or invite_block.get("max_depth") or INVITE_MAX_DEPTH
    max_uses = _env_int("ARCHIVE_INVITE_MAX_USES") or invite_block.get("max_uses") or INVITE_MAX_USES
    expiry_hours = invite_block.get("expiry_hours") or INVITE_EXPIRY_HOURS
    return {
        "max_depth": int(max_depth),
        "max_uses": int(max_uses),
        "expiry_hours": int(expiry_hours),
    }


def invite_expiry(limits, now=None):
    return format_timestamp((now or utcnow()) + timedelta(hours=limits["expiry_hours"]))


def resolve_invite_graph_context(conn, parent_invite_id=None, limits=None, now=None):
    """
    Return ``{"parent_invite_id", "depth", "max_uses"}`` for a new invite.

    Raises NotFound for an unknown parent and PropagationLimitExceeded when
    the chain may not grow from that parent.
    """
    limits = limits or get_invite_limits()
    if parent_invite_id is None:
        return {"parent_invite_id": None, "depth": 0, "max_uses": limits["max_uses"]}

    parent = identity_store.get_invite(conn, parent_invite_id)
    if parent is None:
        raise NotFound("Parent invite not found.")

    if parent.get("status") and parent["status"] not in INVITE_ACTIVE_STATUSES:
        raise PropagationLimitExceeded("Parent invite is no longer active.", parent_invite_id)
    if is_expired(parent.get("expires_at"), now=now):
        raise PropagationLimitExceeded("Parent invite has expired.", parent_invite_id)

    parent_depth = int(parent.get("depth") or 0)
    if parent_depth >= limits["max_depth"]:
        raise PropagationLimitExceeded("Invite chain limit reached.", parent_invite_id)

    parent_max_uses = min(int(parent.get("max_uses") or limits["max_uses"]), limits["max_uses"])
    if identity_store.count_child_invites(conn, parent_invite_id) >= parent_max_uses:
        raise PropagationLimitExceeded("Invite has no uses left.", parent_invite_id)

    return {
        "parent_invite_id": parent_invite_id,
        "depth": parent_depth + 1,
        "max_uses": parent_max_uses,
    }


def invite_method(recipient_contact):
    return "email" if "@" in (recipient_contact or "") else "sms"


def create_invite(
    conn,
    event_id,
    recipient_name,
    recipient_contact=None,
    sender_id=None,
    parent_invite_id=None,
    message=None,
    limits=None,
    now=None,
):
    """
    Create (or refresh) the invite for one recipient on one note.

    An existing invite for the same note and contact is refreshed in place
    rather than growing the tree. Returns ``(invite_id, created)``.
    """
    name = (recipient_name or "").strip()
    if not name:
        raise ValueError("recipient_name is required")
    contact = (recipient_contact or "").strip() or None
    limits = limits or get_invite_limits()
    now = now or utcnow()

    with conn:
        # Take the write lock before reading the child count so concurrent
        # invites from the same parent are serialized.
        if not conn.in_transaction:
            conn.execute("BEGIN IMMEDIATE")
        if contact:
            existing = identity_store.find_invite_by_contact(conn, event_id, contact)
            if existing:
                identity_store.update_invite(
                    conn,
                    existing["id"],
                    expires_at=invite_expiry(limits, now),
                    message=message or existing.get("message"),
                    method=invite_method(contact),
                )
                return existing["id"], False

        try:
            context = resolve_invite_graph_context(conn, parent_invite_id, limits=limits, now=now)
        except PropagationLimitExceeded as exc:
            logger.info(
                "invite_rejected",
                extra={"event_id": event_id, "parent_invite_id": parent_invite_id, "reason": exc.reason},
            )
            raise

        invite_id = identity_store.insert_invite(
            conn,
            {
                "event_id": event_id,
                "recipient_name": name,
                "recipient_contact": contact,
                "method": invite_method(contact),
                "message": message,
                "sender_id": sender_id,
                "status": "pending",
                "parent_invite_id": context["parent_invite_id"],
                "depth": context["depth"],
                "max_uses": context["max_uses"],
                "expires_at": invite_expiry(limits, now),
            },
        )
        if context["parent_invite_id"] is not None:
            identity_store.update_invite(
                conn,
                context["parent_invite_id"],
                uses_count=identity_store.count_child_invites(conn, context["parent_invite_id"]),
            )

    logger.info(
        "invite_created",
        extra={"invite_id": invite_id, "event_id": event_id, "depth": context["depth"]},
    )
    return invite_id, True


_STATUS_TIMESTAMP = {
    "sent": "sent_at",
    "opened": "opened_at",
    "contributed": "contributed_at",
}


def invite_status_fields(invite, new_status, now=None):
    """Column updates that move ``invite`` forward to ``new_status``.

    Returns an empty dict when ``new_status`` is the current or an earlier
    status; statuses never regress.
    """
    if new_status not in INVITE_STATUSES:
        raise ValueError(f"Unknown invite status: {new_status!r}")
    current = invite.get("status") or "pending"
    current_rank = INVITE_STATUSES.index(current) if current in INVITE_STATUSES else 0
    target_rank = INVITE_STATUSES.index(new_status)
    if target_rank <= current_rank:
        return {}

    fields = {"status": new_status}
    stamp = format_timestamp(now or utcnow())
    for status in INVITE_STATUSES[current_rank + 1 : target_rank + 1]:
        column = _STATUS_TIMESTAMP.get(status)
        if column and not invite.get(column):
            fields[column] = stamp
    return fields


def advance_invite_status(conn, invite_id, new_status, now=None):
    """Move an invite forward through pending -> sent -> opened -> contributed.

    Returns the (possibly unchanged) invite row.
    """
    if new_status not in INVITE_STATUSES:
        raise ValueError(f"Unknown invite status: {new_status!r}")
    invite = identity_store.get_invite(conn, invite_id)
    if invite is None:
        raise NotFound("Invite not found")

    fields = invite_status_fields(invite, new_status, now=now)
    if not fields:
        return invite
    with conn:
        identity_store.update_invite(conn, invite_id, **fields)
    return identity_store.get_invite(conn, invite_id)
