from __future__ import annotations

import argparse
import json
import logging
import pathlib
import sys

backend_dir = pathlib.Path(__file__).resolve().parents[1]
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from app.core.config import settings  # noqa: E402
from app.services.book_jobs import migrate_books_job, migrate_covers_job, reconcile_release_assets_job  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(description="Move GyanDhara book PDFs onto one storage backend")
    parser.add_argument(
        "--target",
        choices=["github_release", "supabase_storage"],
        default=settings.migration_target,
        help="backend every record should end up on",
    )
    parser.add_argument("--limit", type=int, default=None, help="process at most this many records")
    parser.add_argument("--active-only", action="store_true", help="skip records with is_active = false")
    parser.add_argument(
        "--reconcile",
        action="store_true",
        help="afterwards, delete release assets no record points at",
    )
    parser.add_argument("--dry-run", action="store_true", help="with --reconcile, only list orphaned assets")
    parser.add_argument("--covers", action="store_true", help="also move legacy uploads-directory covers into the bucket")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    report = migrate_books_job(target=args.target, limit=args.limit, include_inactive=not args.active_only)
    out: dict[str, object] = {"migration": report}
    if args.reconcile:
        out["reconcile"] = reconcile_release_assets_job(dry_run=args.dry_run)
    if args.covers:
        out["covers"] = migrate_covers_job()

    print(json.dumps(out, indent=2, ensure_ascii=False, default=str))
    return 1 if report.get("failed") else 0


if __name__ == "__main__":
    sys.exit(main())
