from identity.masking import build_mask_rules, collect_reference_names, mask_content, mask_note_content
from identity.redaction import project_references


def _ref(ref_id, name, visibility, relationship=None, person_id=None, display_name=None):
    return {
        "id": ref_id,
        "type": "person",
        "person_id": person_id,
        "person_canonical_name": name,
        "display_name": display_name,
        "contributor_name": None,
        "relationship_to_subject": relationship,
        "effective_visibility": visibility,
    }


def _mask(content, refs, aliases=None, wrap="[{label}]"):
    return mask_note_content(content, refs, project_references(refs), aliases, wrap=wrap)


def test_blurred_name_becomes_initials():
    refs = [_ref(1, "Sam Miller", "blurred")]
    assert _mask("Sam Miller came by.", refs) == "[S.M.] came by."


def test_approved_name_left_alone():
    refs = [_ref(1, "Amy Grant", "approved")]
    assert _mask("Amy Grant came by.", refs) == "Amy Grant came by."


def test_anonymized_uses_relationship():
    refs = [_ref(1, "Amy Grant", "anonymized", relationship="cousin")]
    assert _mask("We met Amy Grant there.", refs) == "We met [cousin] there."


def test_longest_name_replaced_first():
    refs = [_ref(1, "Sam Miller", "blurred", person_id=5)]
    aliases = {5: ["Sam"]}
    masked = _mask("Sam Miller and Sam", refs, aliases)
    assert masked == "[S.M.] and [S.M.]"


def test_replacements_never_nest_across_references():
    # "Sam" belongs to a different blurred person whose label is also in play.
    refs = [
        _ref(1, "Sam Miller", "blurred", person_id=5),
        _ref(2, "Miller Boy", "anonymized", relationship="Sam's brother", person_id=6),
    ]
    aliases = {5: ["Sam"]}
    masked = _mask("Sam Miller met Miller Boy.", refs, aliases)
    assert masked == "[S.M.] met [Sam's brother]."


def test_approved_full_name_protected_from_masked_alias():
    refs = [
        _ref(1, "Sam Grant", "approved", person_id=5),
        _ref(2, "Sam", "blurred", person_id=6),
    ]
    assert _mask("Sam Grant and Sam", refs) == "Sam Grant and [S.]"


def test_whole_words_only():
    refs = [_ref(1, "Sam", "blurred")]
    assert _mask("Samuel and Sam and Samantha", refs) == "Samuel and [S.] and Samantha"


def test_case_insensitive():
    refs = [_ref(1, "Sam Miller", "blurred")]
    assert _mask("SAM MILLER and sam miller", refs) == "[S.M.] and [S.M.]"


def test_attribute_values_are_masked_but_markup_kept():
    refs = [_ref(1, "Sam Miller", "blurred")]
    content = '<a title="Sam Miller" href="/p/sam">Sam Miller</a>'
    assert _mask(content, refs) == '<a title="[S.M.]" href="/p/sam">[S.M.]</a>'


def test_removed_name_in_image_alt_is_masked():
    refs = [_ref(1, "Amy Grant", "removed")]
    content = "<img alt='Amy Grant at the lake' data-who=Amy src=\"x.jpg\">"
    masked = _mask(content, refs)
    assert masked == "<img alt='[Someone] at the lake' data-who=Amy src=\"x.jpg\">"
    assert "Amy Grant" not in masked


def test_attribute_labels_cannot_break_out_of_quotes():
    refs = [_ref(1, "Amy Grant", "anonymized", relationship='aunt" onload="x')]
    masked = _mask('<img title="Amy Grant">', refs, wrap="<mark>{label}</mark>")
    assert masked == '<img title="[aunt&quot; onload=&quot;x]">'


def test_angle_brackets_in_plain_prose_are_not_tags():
    refs = [_ref(1, "Sam Miller", "anonymized", relationship="friend")]
    assert _mask("Amy <3 Sam Miller -> best summer", refs) == "Amy <3 [friend] -> best summer"
    assert _mask("a < b and Sam Miller > c", refs) == "a < b and [friend] > c"


def test_removed_reference_masks_to_placeholder():
    refs = [_ref(1, "Sam Miller", "removed")]
    assert project_references(refs) == []
    assert _mask("Sam Miller was there.", refs) == "[Someone] was there."


def test_no_names_present_is_a_noop():
    refs = [_ref(1, "Sam Miller", "blurred")]
    content = "<p>Nothing to see.</p>"
    assert _mask(content, refs) == content
    assert mask_content(content, []) == content
    assert mask_content(None, []) == ""


def test_labels_are_html_escaped():
    refs = [_ref(1, "Amy Grant", "anonymized", relationship="<b>aunt</b>")]
    assert _mask("Amy Grant", refs) == "[&lt;b&gt;aunt&lt;/b&gt;]"


def test_custom_wrap():
    refs = [_ref(1, "Sam Miller", "blurred")]
    assert _mask("Sam Miller", refs, wrap="<span>{label}</span>") == "<span>S.M.</span>"


def test_collect_reference_names_dedupes_and_skips_short():
    ref = _ref(1, "Amy Grant", "approved", person_id=4, display_name="amy grant")
    assert collect_reference_names(ref, {4: ["Ames", "A", ""]}) == ["Amy Grant", "Ames"]


def test_link_references_produce_no_rules():
    refs = [{"id": 3, "type": "link", "display_name": "Lake photos", "visibility": "approved"}]
    assert build_mask_rules(refs, project_references(refs)) == []
