"""Content Masker: rewrite note prose so masked names never leak.

All names are compiled into one alternation, longest first, and applied in a
single left-to-right pass over the text between HTML tags and over the
attribute values inside them. A replaced span is never revisited, so
substitutions cannot nest or overlap. Approved names are
part of the same pattern and map to themselves, which keeps a shorter masked
alias from eating into an approved full name.
"""

import html
import re

from identity.redaction import PLACEHOLDER_LABEL

DEFAULT_WRAP = "[{label}]"
MIN_NAME_LENGTH = 2

# Only real tag openers; "<3" or "->" in plain prose is text.
_TAG_SPLIT_RE = re.compile(r"(<[A-Za-z/!?][^>]*>)")
_ATTR_VALUE_RE = re.compile(r"""(=\s*)("[^"]*"|'[^']*'|[^\s"'>]+)""")


def collect_reference_names(ref, aliases_by_person=None):
    """Every spelling of a reference's person that could appear in prose."""
    names = [ref.get("person_canonical_name")]
    person_id = ref.get("person_id")
    if aliases_by_person and person_id is not None:
        names.extend(aliases_by_person.get(person_id, []))
    names.append(ref.get("display_name"))
    seen = set()
    cleaned = []
    for name in names:
        value = " ".join((name or "").split())
        if len(value) < MIN_NAME_LENGTH or value.lower() in seen:
            continue
        seen.add(value.lower())
        cleaned.append(value)
    return cleaned


def build_mask_rules(references, projections, aliases_by_person=None):
    """
    Pair each name with its replacement label.

    ``references`` are the raw rows (with ``effective_visibility``);
    ``projections`` are ``project_references`` output for the same note.
    References missing from the projection were removed and mask to the
    placeholder. Approved references produce rules with replacement None.
    """
    labels = {item["id"]: item for item in projections or []}
    rules = []
    for ref in references or []:
        if ref.get("type") == "link":
            continue
        projected = labels.get(ref.get("id"))
        if projected is None:
            replacement = PLACEHOLDER_LABEL
        elif projected["identity_state"] == "approved":
            replacement = None
        else:
            replacement = projected["render_label"] or PLACEHOLDER_LABEL
        for name in collect_reference_names(ref, aliases_by_person):
            rules.append({"text": name, "replacement": replacement, "reference_id": ref.get("id")})
    return rules


def _compile(rules):
    replacements = {}
    for rule in rules:
        key = rule["text"].lower()
        if key in replacements:
            # approved wins a tie; otherwise the earlier reference keeps the name
            if rule["replacement"] is None:
                replacements[key] = None
            continue
        replacements[key] = rule["replacement"]
    if not replacements:
        return None, replacements
    ordered = sorted(replacements, key=len, reverse=True)
    pattern = re.compile(
        r"(?<!\w)(?:" + "|".join(re.escape(name) for name in ordered) + r")(?!\w)",
        flags=re.IGNORECASE,
    )
    return pattern, replacements


def mask_content(content, rules, wrap=DEFAULT_WRAP, escape_html=True):
    """
    Mask every occurrence outside tag syntax: text between tags and the
    values of tag attributes (``alt``, ``title``, ``data-*``). Tag and
    attribute names are never rewritten.
    """
    if not content or not rules:
        return content or ""
    pattern, replacements = _compile(rules)
    if pattern is None:
        return content

    def _label_for(match):
        key = match.group(0).lower()
        # Unknown key means case folding disagreed with the regex; fail closed.
        return replacements.get(key, PLACEHOLDER_LABEL)

    def _substitute_text(match):
        replacement = _label_for(match)
        if replacement is None:
            return match.group(0)
        label = html.escape(replacement, quote=False) if escape_html else replacement
        return wrap.format(label=label)

    def _substitute_attribute(match):
        replacement = _label_for(match)
        if replacement is None:
            return match.group(0)
        # Markup in the wrap would break out of the attribute value.
        return DEFAULT_WRAP.format(label=html.escape(replacement, quote=True))

    def _mask_attribute(match):
        return match.group(1) + pattern.sub(_substitute_attribute, match.group(2))

    pieces = _TAG_SPLIT_RE.split(content)
    for idx, piece in enumerate(pieces):
        if not piece:
            continue
        if idx % 2:
            pieces[idx] = _ATTR_VALUE_RE.sub(_mask_attribute, piece)
        else:
            pieces[idx] = pattern.sub(_substitute_text, piece)
    return "".join(pieces)


def mask_note_content(content, references, projections, aliases_by_person=None, wrap=DEFAULT_WRAP):
    rules = build_mask_rules(references, projections, aliases_by_person)
    return mask_content(content, rules, wrap=wrap)
