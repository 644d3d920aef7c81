#!/usr/bin/env python3
"""
Reset Event Bus state by removing the local databases and logs.
Run from project root or any directory; paths are resolved relative to this script.
"""

from pathlib import Path
import sys

# Make project imports available when executing as: python scripts/reset.py
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from eventbus.settings import get_setting, load_settings  # noqa: E402

# SQLite sidecar files that belong to each database
_SQLITE_SUFFIXES = ("", "-wal", "-shm")


def get_project_root() -> Path:
    """Project root is the parent of the directory containing this script."""
    return Path(__file__).resolve().parent.parent


def confirm() -> bool:
    """Prompt until user enters Y (proceed) or n (abort). Returns True only for Y, False for n."""
    while True:
        answer = input("Are you sure? [Y/n]: ").strip().lower()
        if answer in ("y", "yes"):
            return True
        if answer in ("n", "no"):
            return False


def collect_targets(root: Path, settings: dict) -> list[Path]:
    """Event store, outbox and log files named in settings, with SQLite sidecars."""
    targets: list[Path] = []
    for key in ("event_bus.db_path", "broker.outbox.db_path"):
        rel = get_setting(settings, key)
        if rel:
            targets.extend(root / f"{rel}{suffix}" for suffix in _SQLITE_SUFFIXES)
    log_file = get_setting(settings, "logging.file")
    if log_file:
        log_path = root / log_file
        targets.append(log_path)
        targets.extend(sorted(log_path.parent.glob(f"{log_path.name}.*")))
    return targets


def main() -> int:
    if not confirm():
        print("Aborted.")
        return 0

    root = get_project_root()
    removed = 0
    errors = []

    for path in collect_targets(root, load_settings()):
        if path.exists():
            try:
                path.unlink()
                print(f"Removed: {path.relative_to(root)}")
                removed += 1
            except OSError as e:
                errors.append((path, e))
                print(f"Error removing {path.relative_to(root)}: {e}", file=sys.stderr)
        else:
            print(f"Skip (not found): {path.relative_to(root)}")

    if errors:
        print(f"\n{len(errors)} file(s) could not be removed.", file=sys.stderr)
        return 1
    print(f"\nDone. Removed {removed} file(s).")
    return 0


if __name__ == "__main__":
    sys.exit(main())
