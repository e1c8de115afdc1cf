from __future__ import annotations

import argparse
import json
import os
from datetime import UTC, datetime, timedelta

from generation_api.app.models import OPEN_STATUSES, GenerationTask
from generation_api.storage.base import GenerationStore
from generation_api.storage.postgres import PostgresGenerationStore


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="List generation tasks that are still pending or processing after a cutoff."
    )
    parser.add_argument(
        "--database-url",
        type=str,
        default=os.getenv("GENERATION_DATABASE_URL") or os.getenv("DATABASE_URL", ""),
        help="PostgreSQL connection URL (default: GENERATION_DATABASE_URL or DATABASE_URL).",
    )
    parser.add_argument(
        "--older-than-minutes",
        type=int,
        default=30,
        help="Only report tasks submitted at least this many minutes ago (default: 30).",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print one JSON object per task instead of a table.",
    )
    return parser.parse_args()


def find_stale_tasks(
    store: GenerationStore,
    *,
    older_than: timedelta,
    now: datetime | None = None,
) -> list[GenerationTask]:
    cutoff = (now or datetime.now(tz=UTC)) - older_than
    return [task for task in store.list_tasks(statuses=OPEN_STATUSES) if task.submitted_at <= cutoff]


def main() -> None:
    args = _parse_args()
    if not args.database_url:
        raise SystemExit("A database URL is required (--database-url or GENERATION_DATABASE_URL).")
    store = PostgresGenerationStore(args.database_url)
    stale = find_stale_tasks(store, older_than=timedelta(minutes=args.older_than_minutes))

    if args.json:
        for task in stale:
            print(json.dumps(task.model_dump(mode="json")))
        return
    for task in stale:
        print(f"{task.task_id}\t{task.record_id}\t{task.status}\t{task.submitted_at.isoformat()}")
    print(f"{len(stale)} task(s) open for more than {args.older_than_minutes} minute(s).")


if __name__ == "__main__":
    main()
