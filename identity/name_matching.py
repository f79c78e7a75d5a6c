"""Recipient name -> note reference matching.

Invite and claim links only carry the recipient's display name, so the
reference they point at has to be recovered from the note's person
references. Strategies run in a fixed order; within a strategy, references
are scanned in their original order and the first hit wins.
"""

from identity.errors import AmbiguousMatch, NotFound
from identity.utils import normalize_name


def candidate_name(reference):
    """Person canonical name, then the reference's display name, then the contributor name."""
    return (
        reference.get("person_canonical_name")
        or reference.get("display_name")
        or reference.get("contributor_name")
        or ""
    )


def match_exact(recipient, candidate):
    return recipient == candidate


def match_partial(recipient, candidate):
    return recipient in candidate or candidate in recipient


def match_token_overlap(recipient, candidate):
    candidate_tokens = set(candidate.split(" "))
    return any(token in candidate_tokens for token in recipient.split(" "))


MATCH_STRATEGIES = (
    ("exact", match_exact),
    ("partial", match_partial),
    ("token", match_token_overlap),
)


def _person_references(references):
    return [ref for ref in references if ref.get("type", "person") == "person"]


def match_reference_detailed(recipient_name, references, person_id_hint=None, strategies=MATCH_STRATEGIES):
    """
    Return ``(reference, strategy_name)`` or ``(None, None)``.

    A ``person_id_hint`` (e.g. from a claim token) is checked first by id;
    only when it finds nothing does the name ladder run.
    """
    people = _person_references(references)

    if person_id_hint is not None:
        for ref in people:
            if ref.get("person_id") == person_id_hint:
                return ref, "person_id"

    recipient = normalize_name(recipient_name)
    if recipient:
        candidates = [(ref, normalize_name(candidate_name(ref))) for ref in people]
        # A reference with no name at all can't be compared.
        candidates = [(ref, name) for ref, name in candidates if name]
        for strategy_name, strategy in strategies:
            for ref, name in candidates:
                if strategy(recipient, name):
                    return ref, strategy_name

    if len(people) == 1:
        return people[0], "singleton"
    return None, None


def match_reference(recipient_name, references, person_id_hint=None):
    return match_reference_detailed(recipient_name, references, person_id_hint)[0]


def find_reference_for_recipient(recipient_name, references, person_id_hint=None):
    """Like ``match_reference`` but raises instead of returning None."""
    people = _person_references(references)
    if not people:
        raise NotFound("No person references on this note")
    match = match_reference(recipient_name, people, person_id_hint)
    if match is None:
        raise AmbiguousMatch(
            "Reference not found for this recipient",
            candidate_ids=[ref.get("id") for ref in people],
        )
    return match
