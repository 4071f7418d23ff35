#!/usr/bin/env python3
"""
One-Shot Collection Script

Runs a single scheduled-style collection for the current minute bucket
against the configured stores, then the cascade. Useful to verify an API
key, the collection mode and the batch plan before deploying.

Usage:
    python -m services.price_collector.scripts.collect_once --mode top10
    python -m services.price_collector.scripts.collect_once --mode top250 --batch-size 100 --dry-run
    python -m services.price_collector.scripts.collect_once --json

Exit code is 0 when the run completed, 1 otherwise.
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone

from ..app.components import build_components, open_repositories
from ..app.config import Settings
from ..core.types import CollectionMode, RunStatus

logger = logging.getLogger(__name__)


async def collect_once(settings: Settings, dry_run: bool = False) -> dict:
    repositories, db_pool = await open_repositories(settings)
    components = build_components(settings, repositories, db_pool=db_pool)
    mode = settings.collection_mode_enum

    try:
        await components.priorities.load()
        if not components.priorities.entries:
            await components.priorities.refresh(mode)

        batches = components.priorities.batches(mode, settings.effective_batch_size)
        output = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "mode": mode.value,
            "batch_size": settings.effective_batch_size,
            "batches": [len(b) for b in batches],
            "first_batch_head": batches[0][:10] if batches else [],
        }
        if dry_run:
            return output

        record = await components.collection_run.execute(mode)
        await components.cascade.run_due()
        output["run"] = record.model_dump(mode="json")
        return output
    finally:
        await components.close()


def main():
    parser = argparse.ArgumentParser(
        description="Run one price collection pass",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m services.price_collector.scripts.collect_once --mode top10
  python -m services.price_collector.scripts.collect_once --mode all --dry-run

Settings not given on the command line come from the environment / .env.
        """,
    )
    parser.add_argument(
        "--mode",
        type=str,
        choices=[m.value for m in CollectionMode],
        help="Collection mode (default: COLLECTION_MODE)",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        help="Ids per upstream call (default: BATCH_SIZE, max 250)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Load or refresh the ranking and print the batch plan without collecting",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output results as JSON",
    )

    args = parser.parse_args()

    overrides = {}
    if args.mode:
        overrides["collection_mode"] = args.mode
    if args.batch_size:
        overrides["batch_size"] = args.batch_size
    settings = Settings(**overrides)

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    output = asyncio.run(collect_once(settings, dry_run=args.dry_run))

    if args.json:
        print(json.dumps(output, indent=2))
    else:
        print(f"Mode: {output['mode']}  batch size: {output['batch_size']}")
        print(f"Batches: {len(output['batches'])} {output['batches']}")
        print(f"First batch starts with: {', '.join(output['first_batch_head'])}")
        run = output.get("run")
        if run:
            print(
                f"Run {run['run_id']}: {run['terminal_status']} "
                f"({run['assets_succeeded']}/{run['assets_attempted']} succeeded, {run['assets_failed']} failed)"
            )
            if run["failure_detail"]:
                print(f"Detail: {run['failure_detail']}")

    run = output.get("run")
    if run and run["terminal_status"] != RunStatus.COMPLETED.value:
        sys.exit(1)


if __name__ == "__main__":
    main()
