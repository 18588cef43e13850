#!/usr/bin/env python3
"""
Standalone Tally sync worker.

Runs the same single-flight cycle as the API's in-process scheduler, for
deployments that keep sync out of the web process (set SYNC_ENABLED=0 on the
API then). Run from the repo root:

  python3 -m backend.workers.tally_sync --db postgresql://... [--once]
"""

import argparse
import sys
import time
import traceback

import psycopg
from psycopg.rows import dict_row

from backend.app.config import settings
from backend.app.errors import DispatchError
from backend.app.ingestion import IngestionPipeline
from backend.app.logs import json_log
from backend.app.tally.base import METHOD_NONE
from backend.app.tally.selector import source_manager

WORKER_NAME = "tally-sync"


def connect_factory(db_url: str):
    def connect():
        # psycopg's connection context commits on success, rolls back on error, then closes.
        return psycopg.connect(db_url, row_factory=dict_row)

    return connect


def run_tally_sync(pipeline: IngestionPipeline):
    """One cycle. Returns the cycle summary, or None when another cycle was running."""
    return pipeline.run_cycle()


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", default=settings.db_url)
    parser.add_argument("--sleep", type=float, default=float(settings.sync_interval_seconds))
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    parser.add_argument("--probe-only", action="store_true", help="Detect the Tally connection method and exit")
    args = parser.parse_args()

    if args.probe_only:
        method = source_manager.probe()
        print(method)
        return 0 if method != METHOD_NONE else 1

    pipeline = IngestionPipeline(sources=source_manager, connect=connect_factory(args.db))
    json_log("info", "worker.start", worker=WORKER_NAME, interval_seconds=args.sleep)
    failed = False
    while True:
        try:
            run_tally_sync(pipeline)
            failed = False
        except DispatchError as ex:
            # Already logged as sync.cycle.failed; the next tick retries.
            failed = True
            if args.once:
                json_log("error", "worker.sync.error", worker=WORKER_NAME, reason=ex.reason, error=ex.detail)
        except Exception as ex:
            # Never crash the worker loop due to a bad cycle.
            failed = True
            json_log("error", "worker.sync.error", worker=WORKER_NAME, error=str(ex))
            traceback.print_exc(file=sys.stderr)

        if args.once:
            return 1 if failed else 0

        time.sleep(args.sleep)


if __name__ == "__main__":
    raise SystemExit(main())
