from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List

from threatscore.config import SETTINGS
from threatscore.db import SqlStore
from threatscore.io.ndjson import read_ndjson, write_ndjson
from threatscore.runtime.artifacts import load_artifacts
from threatscore.runtime.engine import ThreatPipeline
from threatscore.runtime.state import InMemoryStore


def main(argv: List[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Score an NDJSON file of security events and report per-item results.")
    p.add_argument("--events", required=True, help="NDJSON file of raw or normalized events")
    p.add_argument("--db", default=SETTINGS.database_url, help="SQLAlchemy database URL")
    p.add_argument("--memory", action="store_true", help="Use a throwaway in-memory store instead of --db")
    p.add_argument("--artifacts", default=None, help="Trained artifacts directory (optional)")
    p.add_argument("--workers", type=int, default=SETTINGS.batch_max_workers)
    p.add_argument("--alerts-out", default=None, help="Write the stored alerts to this NDJSON file")
    p.add_argument("--log-level", default="WARNING")
    args = p.parse_args(argv)

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    store = InMemoryStore() if args.memory else SqlStore(args.db)
    if args.artifacts:
        pipeline = ThreatPipeline.from_artifacts(store, load_artifacts(args.artifacts))
    else:
        pipeline = ThreatPipeline(store)

    events = list(read_ndjson(Path(args.events), skip_invalid=True))
    report = pipeline.analyze_batch(events, max_workers=args.workers)
    print(report.model_dump_json(indent=2))

    if args.alerts_out:
        n = write_ndjson(args.alerts_out, store.list_alerts())
        logging.getLogger(__name__).info("wrote %d alerts to %s", n, args.alerts_out)

    return 0 if report.failed == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
