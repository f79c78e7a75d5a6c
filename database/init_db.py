import logging
import os
import sqlite3

import yaml

DEFAULT_DB_PATH = os.path.join(os.path.dirname(__file__), "family_archive.db")
DB_PATH = DEFAULT_DB_PATH
ARCHIVE_CONFIG_PATH = os.path.abspath(
    os.path.join(os.path.dirname(__file__), "..", "config", "archive.yaml")
)

ALLOWED_SEED_VISIBILITY = {"approved", "pending", "anonymized", "blurred", "removed"}

logger = logging.getLogger(__name__)


def get_connection():
    db_path = _resolve_db_path()
    os.makedirs(os.path.dirname(db_path), exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_db():
    conn = get_connection()
    schema_path = os.path.join(os.path.dirname(__file__), "schema.sql")
    with open(schema_path, "r") as f:
        conn.executescript(f.read())
    conn.commit()
    conn.close()
    logger.info("database_initialized", extra={"db_path": _resolve_db_path()})


def _resolve_db_path():
    # Respect explicit overrides (e.g., tests monkeypatching DB_PATH).
    if DB_PATH != DEFAULT_DB_PATH:
        return DB_PATH
    env_path = os.getenv("ARCHIVE_DB_PATH", "").strip()
    if env_path:
        return os.path.abspath(env_path)
    return DEFAULT_DB_PATH


def _get_table_columns(conn, table_name):
    # Validate table_name is a simple identifier to prevent injection
    if not table_name or not table_name.isidentifier():
        raise ValueError(f"Invalid table name: {table_name!r}")
    return [row["name"] for row in conn.execute(f"PRAGMA table_info({table_name})").fetchall()]


def _ensure_schema_migrations_table(conn):
    conn.execute(
        """CREATE TABLE IF NOT EXISTS schema_migrations (
            name TEXT PRIMARY KEY,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )"""
    )


def _has_schema_migration(conn, name):
    row = conn.execute("SELECT 1 FROM schema_migrations WHERE name = ?", (name,)).fetchone()
    return row is not None


def _mark_schema_migration(conn, name):
    conn.execute(
        "INSERT OR IGNORE INTO schema_migrations (name, applied_at) VALUES (?, CURRENT_TIMESTAMP)",
        (name,),
    )


def _backfill_preference_scope_keys(conn):
    """Older rows stored the global default as contributor_id NULL only."""
    cols = set(_get_table_columns(conn, "visibility_preferences"))
    if "scope_key" in cols:
        return 0
    conn.execute("ALTER TABLE visibility_preferences ADD COLUMN scope_key INTEGER NOT NULL DEFAULT 0")
    conn.execute(
        """UPDATE visibility_preferences
        SET scope_key = COALESCE(contributor_id, 0)"""
    )
    # Keep the most recently updated row per (person, scope).
    result = conn.execute(
        """DELETE FROM visibility_preferences
        WHERE id NOT IN (
            SELECT id FROM (
                SELECT id, ROW_NUMBER() OVER (
                    PARTITION BY person_id, scope_key
                    ORDER BY datetime(updated_at) DESC, id DESC
                ) AS rn
                FROM visibility_preferences
            ) WHERE rn = 1
        )"""
    )
    return int(result.rowcount or 0)


def migrate_schema():
    """Add new columns and indexes to existing tables. Safe to run multiple times."""
    conn = get_connection()
    migrations = [
        "ALTER TABLE event_references ADD COLUMN note TEXT",
        "ALTER TABLE invites ADD COLUMN uses_count INTEGER NOT NULL DEFAULT 0",
        "ALTER TABLE invites ADD COLUMN expires_at TIMESTAMP",
    ]
    for sql in migrations:
        try:
            conn.execute(sql)
        except sqlite3.OperationalError:
            pass  # Column already exists

    _ensure_schema_migrations_table(conn)
    if not _has_schema_migration(conn, "visibility_preferences_scope_key"):
        removed = _backfill_preference_scope_keys(conn)
        if removed:
            logger.info("visibility_preferences_deduplicated", extra={"rows_removed": removed})
        _mark_schema_migration(conn, "visibility_preferences_scope_key")

    conn.executescript(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_visibility_preferences_scope
            ON visibility_preferences(person_id, scope_key);
        CREATE INDEX IF NOT EXISTS idx_visibility_preferences_person
            ON visibility_preferences(person_id);
        CREATE INDEX IF NOT EXISTS idx_event_references_event
            ON event_references(event_id, type);
        CREATE INDEX IF NOT EXISTS idx_person_aliases_alias
            ON person_aliases(alias COLLATE NOCASE);
        CREATE INDEX IF NOT EXISTS idx_invites_parent ON invites(parent_invite_id);
        CREATE INDEX IF NOT EXISTS idx_invites_expires_at ON invites(expires_at);
        """
    )
    conn.commit()
    conn.close()


def _coerce_positive_int(raw, default):
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def load_archive_config(config_path=None):
    """
    Load archive config from YAML.

    Expected structure:
      invites: {max_depth, max_uses, expiry_hours}
      masking: {wrap: "[{label}]"}
      people: [{name, visibility, aliases: [...]}]

    Returns None when the file is missing or unreadable so callers fall back
    to their built-in defaults.
    """
    config_path = config_path or os.getenv("ARCHIVE_CONFIG_PATH") or ARCHIVE_CONFIG_PATH
    if not os.path.exists(config_path):
        return None

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            payload = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError):
        logger.warning("archive_config_unreadable", extra={"path": config_path})
        return None

    if not isinstance(payload, dict):
        return None

    parsed = {
        "path": config_path,
        "invites": {},
        "masking": {},
        "people": [],
    }

    invite_block = payload.get("invites", {})
    if isinstance(invite_block, dict):
        for key in ("max_depth", "max_uses", "expiry_hours"):
            if key in invite_block:
                value = _coerce_positive_int(invite_block.get(key), None)
                if value is not None:
                    parsed["invites"][key] = value

    masking_block = payload.get("masking", {})
    if isinstance(masking_block, dict):
        wrap = str(masking_block.get("wrap", "")).strip()
        if wrap and "{label}" in wrap:
            parsed["masking"]["wrap"] = wrap

    people = payload.get("people", [])
    if isinstance(people, list):
        for entry in people:
            if not isinstance(entry, dict):
                continue
            name = str(entry.get("name", "")).strip()
            if not name:
                continue
            visibility = str(entry.get("visibility", "pending")).strip().lower()
            if visibility not in ALLOWED_SEED_VISIBILITY:
                visibility = "pending"
            aliases = entry.get("aliases") or []
            if not isinstance(aliases, list):
                aliases = []
            parsed["people"].append(
                {
                    "name": name,
                    "visibility": visibility,
                    "aliases": [str(alias).strip() for alias in aliases if str(alias).strip()],
                }
            )

    return parsed


def seed_default_people():
    conn = get_connection()
    config = load_archive_config()
    people = config["people"] if config else []
    seed_origin = f"config ({config['path']})" if config else "no config"

    for person in people:
        existing = conn.execute(
            "SELECT id FROM people WHERE canonical_name = ?", (person["name"],)
        ).fetchone()
        if existing:
            person_id = existing["id"]
        else:
            conn.execute(
                "INSERT INTO people (canonical_name, visibility) VALUES (?, ?)",
                (person["name"], person["visibility"]),
            )
            person_id = conn.execute("SELECT last_insert_rowid()").fetchone()[0]

        for alias in person["aliases"]:
            conn.execute(
                """INSERT INTO person_aliases (person_id, alias)
                VALUES (?, ?)
                ON CONFLICT(person_id, alias) DO NOTHING""",
                (person_id, alias),
            )
    conn.commit()
    conn.close()
    logger.info("people_seeded", extra={"origin": seed_origin, "count": len(people)})


if __name__ == "__main__":
    logging.basicConfig(level=os.getenv("ARCHIVE_LOG_LEVEL", "INFO").upper())
    init_db()
    migrate_schema()
    seed_default_people()
    print("Setup complete.")
