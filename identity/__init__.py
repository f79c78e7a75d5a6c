"""Identity visibility resolution and content redaction."""

from identity.errors import (
    AmbiguousMatch,
    IdentityError,
    InvalidScope,
    InvalidVisibility,
    NotFound,
    PropagationLimitExceeded,
)
from identity.visibility import (
    apply_visibility_choice,
    attach_effective_visibility,
    resolve_person_visibility,
    resolve_visibility,
)
from identity.name_matching import find_reference_for_recipient, match_reference
from identity.redaction import project_references
from identity.masking import mask_content, mask_note_content
from identity.propagation import create_invite, resolve_invite_graph_context

__all__ = [
    "AmbiguousMatch",
    "IdentityError",
    "InvalidScope",
    "InvalidVisibility",
    "NotFound",
    "PropagationLimitExceeded",
    "apply_visibility_choice",
    "attach_effective_visibility",
    "resolve_person_visibility",
    "resolve_visibility",
    "find_reference_for_recipient",
    "match_reference",
    "project_references",
    "mask_content",
    "mask_note_content",
    "create_invite",
    "resolve_invite_graph_context",
]
