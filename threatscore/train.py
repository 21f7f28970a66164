from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any, Dict, List

import numpy as np

from threatscore.config import SETTINGS
from threatscore.errors import NoDataError
from threatscore.features.extract import NORMALIZED_FEATURE_NAMES
from threatscore.io.ndjson import read_ndjson
from threatscore.models.isoforest import save_isoforest, train_isoforest
from threatscore.runtime.artifacts import ISOFOREST_FILE, META_FILE
from threatscore.runtime.engine import ThreatPipeline
from threatscore.runtime.state import InMemoryStore


logger = logging.getLogger(__name__)


def _event_files(path: Path) -> List[Path]:
    if path.is_dir():
        return sorted(path.glob("*.ndjson"))
    return [path]


def _load_events(path: Path) -> List[Dict[str, Any]]:
    events: List[Dict[str, Any]] = []
    for f in _event_files(path):
        events.extend(read_ndjson(f, skip_invalid=True))
    return events


def build_training_matrix(events: List[Dict[str, Any]]) -> np.ndarray:
    """Replay events into a scratch store; one normalized row per indicator."""
    pipeline = ThreatPipeline(InMemoryStore())
    indicator_ids: Dict[str, None] = {}
    for raw in events:
        indicator, _ = pipeline.ingest(raw)
        indicator_ids.setdefault(indicator.id, None)

    rows = []
    for indicator_id in indicator_ids:
        try:
            rows.append(pipeline.extract_features(indicator_id).normalized())
        except NoDataError:
            logger.info("indicator %s has no events; skipped", indicator_id)
            continue
    if not rows:
        return np.zeros((0, len(NORMALIZED_FEATURE_NAMES)), dtype=np.float64)
    return np.stack(rows, axis=0)


def main(argv: List[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Train the anomaly model over per-indicator feature vectors.")
    p.add_argument("--events", required=True, help="NDJSON event file, or a directory of *.ndjson files")
    p.add_argument("--artifacts", required=True, help="Artifacts output directory")
    p.add_argument("--seed", type=int, default=7)
    p.add_argument("--log-level", default="INFO")
    args = p.parse_args(argv)

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    src = Path(args.events)
    art_dir = Path(args.artifacts)

    events = _load_events(src)
    if not events:
        raise SystemExit(f"No events found in {src}")

    X = build_training_matrix(events)
    logger.info("built %d training rows from %d events", X.shape[0], len(events))
    if X.shape[0] < 2:
        raise SystemExit(f"Need at least 2 indicators to train, found {X.shape[0]}")

    art_dir.mkdir(parents=True, exist_ok=True)
    iso = train_isoforest(X, NORMALIZED_FEATURE_NAMES, random_state=int(args.seed))
    save_isoforest(str(art_dir / ISOFOREST_FILE), iso)

    meta = {
        "feature_names": NORMALIZED_FEATURE_NAMES,
        "feature_stats": iso.feature_stats,
        "rows": int(X.shape[0]),
        "settings": {
            "max_history_events": SETTINGS.max_history_events,
            "rate_window_minute_seconds": SETTINGS.rate_window_minute_seconds,
        },
    }
    (art_dir / META_FILE).write_text(json.dumps(meta, indent=2), encoding="utf-8")

    print(f"Trained isolation forest on events={len(events)} indicators={X.shape[0]}")
    print(f"Artifacts written to {art_dir}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
