import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from usersapi.database import Database, StorageError, resolve_database_path


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create a user directly in the database")
    parser.add_argument("name", help="Display name for the user")
    parser.add_argument("email", help="Email address for the user")
    parser.add_argument(
        "--db",
        dest="db_path",
        default=None,
        help="Path to the SQLite database (defaults to USERS_DB_PATH or data/users.sqlite3)",
    )
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)

    db_env = args.db_path or os.getenv("USERS_DB_PATH")
    db_path = resolve_database_path(db_env)

    database = Database(db_path)
    try:
        database.initialize()
        user = database.create_user(args.name.strip(), args.email.strip())
        total = database.count_users()
    except StorageError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(f"Created user #{user.id}: {user.name} <{user.email}>")
    print(f"{total} active user(s) in {db_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
