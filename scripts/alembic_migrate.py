#!/usr/bin/env python3
"""Alembic Database Migration Helper.

Runs Alembic migrations, copying a file-backed SQLite database aside first.

Usage:
    python scripts/alembic_migrate.py upgrade head    # Upgrade to latest
    python scripts/alembic_migrate.py downgrade -1    # Downgrade one version
    python scripts/alembic_migrate.py history         # Show migration history
    python scripts/alembic_migrate.py current         # Show current version
    python scripts/alembic_migrate.py stamp head      # Mark an existing database as current
"""

import shutil
import subprocess
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
load_dotenv()

from mixerex.config import get_settings

# Ensure we're in the project root
PROJECT_ROOT = Path(__file__).parent.parent
BACKUP_DIR = PROJECT_ROOT / "data" / "backups"


def run_alembic(*args):
    """Run an alembic command."""
    cmd = ["alembic"] + list(args)
    print(f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, cwd=PROJECT_ROOT)
    return result.returncode


def sqlite_path() -> Optional[Path]:
    """Database file of a SQLite URL, or None for other backends."""
    url = get_settings().database_url
    for prefix in ("sqlite+aiosqlite:///", "sqlite:///"):
        if url.startswith(prefix) and ":memory:" not in url:
            path = Path(url[len(prefix):])
            return path if path.is_absolute() else PROJECT_ROOT / path
    return None


def backup_before_migration() -> Optional[Path]:
    """Copy the SQLite database aside. Holds encrypted deposit keys: keep it private."""
    db_path = sqlite_path()
    if db_path is None or not db_path.exists():
        return None

    BACKUP_DIR.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    backup_path = BACKUP_DIR / f"pre_migration_{timestamp}.db"
    shutil.copy2(db_path, backup_path)
    return backup_path


def main():
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)

    command = sys.argv[1]
    args = sys.argv[2:]

    if command in ("upgrade", "downgrade"):
        backup_path = backup_before_migration()
        if backup_path:
            print(f"Backup created: {backup_path}")
        else:
            print("No SQLite database to back up")

        default = "head" if command == "upgrade" else "-1"
        return run_alembic(command, args[0] if args else default)

    elif command == "history":
        return run_alembic("history", "--verbose")

    else:
        # Pass through to alembic
        return run_alembic(command, *args)


if __name__ == "__main__":
    sys.exit(main() or 0)
