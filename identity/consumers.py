"""
Read-path assemblers.

Every surface that renders a note (detail page, editor, chat context, graph)
builds its payload here so the resolve -> project -> mask sequence is the
same everywhere.
"""

import logging
from collections import defaultdict

from database import identity_store
from database.init_db import load_archive_config
from identity.errors import NotFound
from identity.masking import DEFAULT_WRAP, mask_note_content
from identity.redaction import project_references
from identity.utils import strip_html
from identity.visibility import attach_effective_visibility, resolve_visibility

logger = logging.getLogger(__name__)

MAX_CONSENT_NAMES = 20


def get_mask_wrap(config=None):
    if config is None:
        config = load_archive_config()
    return ((config or {}).get("masking") or {}).get("wrap") or DEFAULT_WRAP


def _resolved_references(conn, event):
    references = identity_store.get_event_references(conn, event["id"])
    return attach_effective_visibility(conn, references, event.get("contributor_id"))


def _aliases_for(conn, references):
    return identity_store.get_person_aliases(
        conn, [ref.get("person_id") for ref in references if ref.get("type") == "person"]
    )


def build_note_payload(conn, event_id, wrap=None):
    """Public note detail: projected references and masked prose."""
    event = identity_store.get_event(conn, event_id)
    if event is None:
        raise NotFound("Event not found")

    references = _resolved_references(conn, event)
    projections = project_references(references)
    content = mask_note_content(
        event.get("content") or "",
        references,
        projections,
        aliases_by_person=_aliases_for(conn, references),
        wrap=wrap or get_mask_wrap(),
    )
    return {
        "id": event["id"],
        "title": event["title"],
        "year": event.get("year"),
        "contributor_name": event.get("contributor_name") or "Someone",
        "content": content,
        "references": projections,
    }


def build_editor_payload(conn, event_id, contributor_id):
    """The author's own view: raw prose, every reference, removed names withheld."""
    event = identity_store.get_event(conn, event_id)
    if event is None or contributor_id is None or event.get("contributor_id") != contributor_id:
        raise NotFound("Event not found")

    references = _resolved_references(conn, event)
    return {
        "id": event["id"],
        "title": event["title"],
        "content": event.get("content") or "",
        "references": project_references(references, include_author_payload=True),
    }


def build_chat_context(conn, event_ids, wrap=None):
    """Note excerpts safe to place in an LLM prompt."""
    wrap = wrap or get_mask_wrap()
    context = []
    for event_id in event_ids:
        try:
            payload = build_note_payload(conn, event_id, wrap=wrap)
        except NotFound:
            logger.info("chat_context_event_missing", extra={"event_id": event_id})
            continue
        context.append(
            {
                "event_id": payload["id"],
                "title": payload["title"],
                "year": payload["year"],
                "content": strip_html(payload["content"]),
                "people": [
                    {
                        "label": ref["render_label"],
                        "role": ref.get("role"),
                        "identity_state": ref["identity_state"],
                    }
                    for ref in payload["references"]
                    if ref["type"] == "person"
                ],
            }
        )
    return context


def build_consent_context(conn, detected_names, contributor_id=None):
    """
    People the LLM reviewer may name outright.

    ``detected_names`` comes from the external name recognizer. Each name is
    looked up by alias, then canonical name; only people whose preferences
    resolve to ``approved`` for this contributor are returned. There is no
    per-note override because the note may not exist yet.
    """
    consented = []
    seen_people = set()
    for raw_name in list(detected_names or [])[:MAX_CONSENT_NAMES]:
        name = (raw_name or "").strip()
        if not name:
            continue
        person_id = identity_store.find_person_id_by_name(conn, name)
        if person_id is None or person_id in seen_people:
            continue
        seen_people.add(person_id)

        person = identity_store.get_person(conn, person_id)
        prefs = identity_store.get_visibility_preferences(conn, [person_id], contributor_id)[person_id]
        visibility = resolve_visibility(
            author_preference=prefs["author"],
            global_preference=prefs["global"],
            base_visibility=person["visibility"] if person else None,
        )
        if visibility != "approved":
            continue
        relationship = conn.execute(
            """SELECT relationship_to_subject FROM event_references
            WHERE person_id = ? AND COALESCE(relationship_to_subject, '') != ''
            ORDER BY id DESC LIMIT 1""",
            (person_id,),
        ).fetchone()
        consented.append(
            {
                "name": name,
                "relationship": relationship["relationship_to_subject"] if relationship else None,
            }
        )
    return {"consentedNames": consented}


def build_graph(conn, event_ids=None, limit_events=200):
    """
    Note/person graph.

    Approved mentions merge into one node per person. Any other mention gets
    its own node keyed by reference, so masked people can't be linked across
    notes. Removed mentions are left out.
    """
    safe_limit = max(1, min(int(limit_events), 1000))
    if event_ids is None:
        rows = conn.execute(
            "SELECT id FROM events ORDER BY id DESC LIMIT ?", (safe_limit,)
        ).fetchall()
        event_ids = [row["id"] for row in rows]

    nodes = {}
    edges = []
    degree = defaultdict(int)

    for event_id in event_ids:
        event = identity_store.get_event(conn, event_id)
        if event is None:
            continue
        event_node = f"event:{event['id']}"
        nodes[event_node] = {
            "id": event_node,
            "type": "event",
            "label": event["title"] or (str(event["year"]) if event.get("year") else "Untitled"),
        }
        references = [
            ref for ref in _resolved_references(conn, event) if ref.get("type") == "person"
        ]
        by_id = {ref["id"]: ref for ref in references}
        for projected in project_references(references):
            ref = by_id[projected["id"]]
            if projected["identity_state"] == "approved" and ref.get("person_id") is not None:
                node_id = f"person:{ref['person_id']}"
            else:
                node_id = f"mention:{ref['id']}"
            nodes.setdefault(
                node_id,
                {
                    "id": node_id,
                    "type": "person",
                    "label": projected["render_label"],
                    "visibility": projected["identity_state"],
                },
            )
            degree[node_id] += 1
            edges.append(
                {
                    "source": event_node,
                    "target": node_id,
                    "label": ref.get("role") or "related",
                }
            )

    for node_id, count in degree.items():
        nodes[node_id]["weight"] = count
    return {"nodes": list(nodes.values()), "edges": edges}
