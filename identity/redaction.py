"""
Redaction Projector.

Turns reference rows (already carrying ``effective_visibility``) into
render-safe dicts. Every read path (note page, chat context, graph, claim
page, editor) goes through ``project_references`` so a masked name never
reaches a client.
"""

from identity.utils import name_tokens
from identity.visibility import normalize_visibility, resolve_visibility

PLACEHOLDER_LABEL = "Someone"


def _effective_visibility(ref):
    if ref.get("effective_visibility"):
        return normalize_visibility(ref["effective_visibility"])
    if ref.get("type") == "link":
        return normalize_visibility(ref.get("visibility"))
    return resolve_visibility(
        reference_override=ref.get("visibility"),
        base_visibility=ref.get("person_visibility"),
    )


def full_name(ref):
    return (
        ref.get("person_canonical_name")
        or ref.get("display_name")
        or ref.get("contributor_name")
        or ""
    )


def initials(name):
    """``"Sam Marie Jones"`` -> ``"S.M."``; empty input -> ``""``."""
    tokens = name_tokens(name)[:2]
    return "".join(f"{token[0].upper()}." for token in tokens)


def render_label(ref, visibility):
    if visibility == "removed":
        return ""
    if visibility == "approved":
        return full_name(ref) or PLACEHOLDER_LABEL
    if visibility == "blurred":
        return initials(full_name(ref)) or PLACEHOLDER_LABEL
    # anonymized and pending share the relational label
    relationship = (ref.get("relationship_to_subject") or "").strip()
    return relationship or PLACEHOLDER_LABEL


def media_presentation(visibility):
    if visibility == "removed":
        return "hidden"
    if visibility == "blurred":
        return "blurred"
    return "normal"


def _author_payload(author_label, label, visibility, media):
    return {
        "author_label": author_label,
        "render_label": label,
        "identity_state": visibility,
        "media_presentation": media,
        # Only the identity owner can flip these.
        "canApprove": False,
        "canAnonymize": False,
        "canRemove": False,
        "canInvite": False,
        "canEditDescriptor": False,
    }


def _project_link(ref, include_author_payload):
    visibility = _effective_visibility(ref)
    if visibility == "removed":
        return None
    label = ref.get("display_name") or ""
    projected = {
        "id": ref["id"],
        "type": "link",
        "url": ref.get("url"),
        "display_name": ref.get("display_name"),
        "role": ref.get("role"),
        "note": ref.get("note"),
        "visibility": visibility,
        "identity_state": visibility,
        "media_presentation": "normal",
        "render_label": label,
    }
    if include_author_payload:
        projected["author_payload"] = _author_payload(label, label, visibility, "normal")
    return projected


def _project_person(ref, include_author_payload):
    visibility = _effective_visibility(ref)
    if visibility == "removed" and not include_author_payload:
        return None

    label = render_label(ref, visibility)
    media = media_presentation(visibility)
    projected = {
        "id": ref["id"],
        "type": "person",
        "role": ref.get("role"),
        "note": ref.get("note"),
        "visibility": visibility,
        "relationship_to_subject": ref.get("relationship_to_subject"),
        "person_display_name": label,
        "identity_state": visibility,
        "media_presentation": media,
        "render_label": label,
    }
    if include_author_payload:
        # The author keeps the row to manage it but never sees a removed name.
        author_label = label if visibility == "removed" else (full_name(ref) or label)
        projected["author_payload"] = _author_payload(author_label, label, visibility, media)
    return projected


def project_references(references, include_author_payload=False):
    """
    Project reference rows for display, preserving their order.

    Removed references are dropped unless ``include_author_payload`` is set,
    in which case they are kept with an empty label for the author's editor.
    """
    projected = []
    for ref in references or []:
        if ref.get("type") == "link":
            item = _project_link(ref, include_author_payload)
        else:
            item = _project_person(ref, include_author_payload)
        if item is not None:
            projected.append(item)
    return projected


def project_reference(ref, include_author_payload=False):
    items = project_references([ref], include_author_payload=include_author_payload)
    return items[0] if items else None
