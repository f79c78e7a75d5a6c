"""
Family Archive Identity Engine - Entry Point

Usage:
    python run.py init                      Initialize DB and seed people from config/archive.yaml
    python run.py sync                      Re-apply config seeds to an existing DB
    python run.py api                       Start FastAPI server
    python run.py resolve PERSON [AUTHOR]   Print a person's effective visibility (and deciding layer)
    python run.py limits                    Print the active invite chain limits
"""

import logging
import os
import subprocess
import sys

from database import identity_store
from database.init_db import get_connection, init_db, migrate_schema, seed_default_people
from identity.propagation import get_invite_limits
from identity.visibility import explain_visibility


def resolve_command(args):
    if not args:
        print("Usage: python run.py resolve PERSON_ID [AUTHOR_CONTRIBUTOR_ID]")
        return 2
    try:
        person_id = int(args[0])
        author_id = int(args[1]) if len(args) > 1 else None
    except ValueError:
        print("PERSON_ID and AUTHOR_CONTRIBUTOR_ID must be integers")
        return 2

    conn = get_connection()
    try:
        person = identity_store.get_person(conn, person_id)
        if person is None:
            print(f"Person {person_id} not found")
            return 1
        prefs = identity_store.get_visibility_preferences(conn, [person_id], author_id)[person_id]
    finally:
        conn.close()

    visibility, layer = explain_visibility(
        author_preference=prefs["author"],
        global_preference=prefs["global"],
        base_visibility=person["visibility"],
    )
    print(f"person={person_id} author={author_id} visibility={visibility} source={layer}")
    return 0


def main():
    logging.basicConfig(level=os.getenv("ARCHIVE_LOG_LEVEL", "INFO").upper())
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)

    command = sys.argv[1].lower()

    if command == "init":
        init_db()
        migrate_schema()
        conn = get_connection()
        people_count = conn.execute("SELECT COUNT(*) AS count FROM people").fetchone()["count"]
        conn.close()
        if people_count == 0:
            seed_default_people()

    elif command == "sync":
        init_db()
        migrate_schema()
        seed_default_people()

    elif command == "api":
        init_db()
        migrate_schema()
        api_host = os.getenv("ARCHIVE_API_HOST", "127.0.0.1")
        api_port = str(os.getenv("ARCHIVE_API_PORT", "8000"))
        subprocess.run(
            ["uvicorn", "api.main:app", "--host", api_host, "--port", api_port, "--reload"]
        )

    elif command == "resolve":
        init_db()
        migrate_schema()
        sys.exit(resolve_command(sys.argv[2:]))

    elif command == "limits":
        limits = get_invite_limits()
        for key in ("max_depth", "max_uses", "expiry_hours"):
            print(f"{key}: {limits[key]}")

    else:
        print(f"Unknown command: {command}")
        print(__doc__)


if __name__ == "__main__":
    main()
