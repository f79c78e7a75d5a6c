"""Identity Store: row access for people, references, preferences and invites.

No disclosure policy lives here; callers in ``identity`` decide what to write.
"""

REFERENCE_COLUMNS = """r.id, r.event_id, r.type, r.person_id, r.url, r.display_name, r.role,
                  r.visibility, r.relationship_to_subject, r.note, r.added_by,
                  p.canonical_name AS person_canonical_name,
                  p.visibility AS person_visibility,
                  c.name AS contributor_name"""


def _placeholders(values):
    return ",".join("?" for _ in values)


def create_contributor(conn, name, email=None):
    conn.execute(
        "INSERT INTO contributors (name, email) VALUES (?, ?)",
        (name, email),
    )
    return conn.execute("SELECT last_insert_rowid()").fetchone()[0]


def get_person(conn, person_id):
    row = conn.execute(
        "SELECT id, canonical_name, visibility, created_by FROM people WHERE id = ?",
        (person_id,),
    ).fetchone()
    return dict(row) if row else None


def create_person(conn, canonical_name, created_by=None, aliases=None):
    """Insert a person and return ID. New people always start as pending."""
    conn.execute(
        "INSERT INTO people (canonical_name, visibility, created_by) VALUES (?, 'pending', ?)",
        (canonical_name, created_by),
    )
    person_id = conn.execute("SELECT last_insert_rowid()").fetchone()[0]
    for alias in aliases or []:
        add_person_alias(conn, person_id, alias, created_by=created_by)
    return person_id


def add_person_alias(conn, person_id, alias, created_by=None):
    cleaned = (alias or "").strip()
    if not cleaned:
        return
    conn.execute(
        """INSERT INTO person_aliases (person_id, alias, created_by)
        VALUES (?, ?, ?)
        ON CONFLICT(person_id, alias) DO NOTHING""",
        (person_id, cleaned, created_by),
    )


def get_person_aliases(conn, person_ids):
    """Return ``{person_id: [alias, ...]}`` for the given people."""
    ids = [pid for pid in dict.fromkeys(person_ids) if pid is not None]
    aliases = {pid: [] for pid in ids}
    if not ids:
        return aliases
    rows = conn.execute(
        f"""SELECT person_id, alias FROM person_aliases
        WHERE person_id IN ({_placeholders(ids)})
        ORDER BY id""",
        ids,
    ).fetchall()
    for row in rows:
        aliases[row["person_id"]].append(row["alias"])
    return aliases


def find_person_id_by_name(conn, name):
    """Alias first, then canonical name; both case-insensitive."""
    cleaned = (name or "").strip()
    if not cleaned:
        return None
    row = conn.execute(
        """SELECT person_id FROM person_aliases
        WHERE alias = ? COLLATE NOCASE
        ORDER BY id LIMIT 1""",
        (cleaned,),
    ).fetchone()
    if row:
        return row["person_id"]
    row = conn.execute(
        """SELECT id FROM people
        WHERE canonical_name = ? COLLATE NOCASE
        ORDER BY id LIMIT 1""",
        (cleaned,),
    ).fetchone()
    return row["id"] if row else None


def set_person_base_visibility(conn, person_id, visibility):
    conn.execute(
        "UPDATE people SET visibility = ? WHERE id = ?",
        (visibility, person_id),
    )


def create_event(conn, title, content, contributor_id=None, year=None):
    conn.execute(
        "INSERT INTO events (title, content, year, contributor_id) VALUES (?, ?, ?, ?)",
        (title, content, year, contributor_id),
    )
    return conn.execute("SELECT last_insert_rowid()").fetchone()[0]


def get_event(conn, event_id):
    row = conn.execute(
        """SELECT e.id, e.title, e.content, e.year, e.contributor_id,
                  c.name AS contributor_name
        FROM events e
        LEFT JOIN contributors c ON c.id = e.contributor_id
        WHERE e.id = ?""",
        (event_id,),
    ).fetchone()
    return dict(row) if row else None


def add_reference(
    conn,
    event_id,
    ref_type="person",
    person_id=None,
    display_name=None,
    role="related",
    visibility="pending",
    relationship_to_subject=None,
    added_by=None,
    url=None,
    note=None,
):
    conn.execute(
        """INSERT INTO event_references
        (event_id, type, person_id, url, display_name, role, visibility,
         relationship_to_subject, note, added_by)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            event_id,
            ref_type,
            person_id,
            url,
            display_name,
            role,
            visibility or "pending",
            relationship_to_subject,
            note,
            added_by,
        ),
    )
    return conn.execute("SELECT last_insert_rowid()").fetchone()[0]


def get_reference(conn, reference_id):
    row = conn.execute(
        f"""SELECT {REFERENCE_COLUMNS}
        FROM event_references r
        LEFT JOIN people p ON p.id = r.person_id
        LEFT JOIN contributors c ON c.id = r.added_by
        WHERE r.id = ?""",
        (reference_id,),
    ).fetchone()
    return dict(row) if row else None


def get_event_references(conn, event_ids, ref_type=None):
    """Reference rows for one or more notes, in insertion order."""
    if isinstance(event_ids, int):
        event_ids = [event_ids]
    ids = list(dict.fromkeys(event_ids))
    if not ids:
        return []
    query = f"""SELECT {REFERENCE_COLUMNS}
        FROM event_references r
        LEFT JOIN people p ON p.id = r.person_id
        LEFT JOIN contributors c ON c.id = r.added_by
        WHERE r.event_id IN ({_placeholders(ids)})"""
    params = list(ids)
    if ref_type:
        query += " AND r.type = ?"
        params.append(ref_type)
    query += " ORDER BY r.event_id, r.id"
    return [dict(row) for row in conn.execute(query, params).fetchall()]


def set_reference_visibility(conn, reference_id, visibility):
    result = conn.execute(
        "UPDATE event_references SET visibility = ? WHERE id = ?",
        (visibility, reference_id),
    )
    return int(result.rowcount or 0)


def get_visibility_preferences(conn, person_ids, contributor_id=None):
    """
    Return ``{person_id: {"author": value|None, "global": value|None}}``.

    ``author`` is the row scoped to ``contributor_id``; ``global`` is the row
    with no contributor.
    """
    ids = [pid for pid in dict.fromkeys(person_ids) if pid is not None]
    prefs = {pid: {"author": None, "global": None} for pid in ids}
    if not ids:
        return prefs
    scope_keys = [0]
    if contributor_id is not None:
        scope_keys.append(int(contributor_id))
    rows = conn.execute(
        f"""SELECT person_id, scope_key, visibility
        FROM visibility_preferences
        WHERE person_id IN ({_placeholders(ids)})
          AND scope_key IN ({_placeholders(scope_keys)})""",
        ids + scope_keys,
    ).fetchall()
    for row in rows:
        slot = "global" if row["scope_key"] == 0 else "author"
        prefs[row["person_id"]][slot] = row["visibility"]
    return prefs


def upsert_visibility_preference(conn, person_id, contributor_id, visibility):
    """One row per (person, scope); the global default uses scope_key 0."""
    scope_key = int(contributor_id) if contributor_id is not None else 0
    conn.execute(
        """INSERT INTO visibility_preferences
        (person_id, contributor_id, scope_key, visibility, created_at, updated_at)
        VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
        ON CONFLICT(person_id, scope_key) DO UPDATE SET
            visibility = excluded.visibility,
            updated_at = CURRENT_TIMESTAMP""",
        (person_id, contributor_id, scope_key, visibility),
    )


def get_invite(conn, invite_id):
    row = conn.execute("SELECT * FROM invites WHERE id = ?", (invite_id,)).fetchone()
    return dict(row) if row else None


def find_invite_by_contact(conn, event_id, recipient_contact):
    row = conn.execute(
        """SELECT * FROM invites
        WHERE event_id = ? AND recipient_contact = ?
        ORDER BY id LIMIT 1""",
        (event_id, recipient_contact),
    ).fetchone()
    return dict(row) if row else None


def count_child_invites(conn, parent_invite_id):
    return conn.execute(
        "SELECT COUNT(*) AS count FROM invites WHERE parent_invite_id = ?",
        (parent_invite_id,),
    ).fetchone()["count"]


def insert_invite(conn, invite):
    conn.execute(
        """INSERT INTO invites
        (event_id, recipient_name, recipient_contact, method, message, sender_id,
         status, parent_invite_id, depth, max_uses, sent_at, expires_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            invite["event_id"],
            invite["recipient_name"],
            invite.get("recipient_contact"),
            invite.get("method", "sms"),
            invite.get("message"),
            invite.get("sender_id"),
            invite.get("status", "pending"),
            invite.get("parent_invite_id"),
            int(invite.get("depth", 0)),
            int(invite["max_uses"]),
            invite.get("sent_at"),
            invite.get("expires_at"),
        ),
    )
    return conn.execute("SELECT last_insert_rowid()").fetchone()[0]


def update_invite(conn, invite_id, **fields):
    if not fields:
        return 0
    allowed = {
        "status",
        "message",
        "method",
        "sent_at",
        "opened_at",
        "contributed_at",
        "expires_at",
        "uses_count",
        "max_uses",
    }
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unknown invite fields: {sorted(unknown)!r}")
    columns = sorted(fields)
    assignments = ", ".join(f"{col} = ?" for col in columns)
    result = conn.execute(
        f"UPDATE invites SET {assignments} WHERE id = ?",
        [fields[col] for col in columns] + [invite_id],
    )
    return int(result.rowcount or 0)


def create_claim_token(conn, token, event_id, recipient_name, person_id=None, invite_id=None, expires_at=None):
    conn.execute(
        """INSERT INTO claim_tokens
        (token, invite_id, person_id, recipient_name, event_id, expires_at)
        VALUES (?, ?, ?, ?, ?, ?)""",
        (token, invite_id, person_id, recipient_name, event_id, expires_at),
    )
    return conn.execute("SELECT last_insert_rowid()").fetchone()[0]


def get_claim_token(conn, token):
    row = conn.execute(
        """SELECT id, token, invite_id, person_id, recipient_name, event_id,
                  expires_at, used_at
        FROM claim_tokens WHERE token = ?""",
        (token,),
    ).fetchone()
    return dict(row) if row else None


def mark_claim_token_used(conn, claim_id, used_at):
    conn.execute(
        "UPDATE claim_tokens SET used_at = ? WHERE id = ?",
        (used_at, claim_id),
    )


def person_has_claimed(conn, person_id):
    """True once the person has recorded a choice of their own."""
    row = conn.execute(
        """SELECT 1 FROM visibility_preferences WHERE person_id = ?
        UNION ALL
        SELECT 1 FROM claim_tokens WHERE person_id = ? AND used_at IS NOT NULL
        LIMIT 1""",
        (person_id, person_id),
    ).fetchone()
    return row is not None
