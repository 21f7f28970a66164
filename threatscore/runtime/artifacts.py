from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List

from threatscore.features.extract import NORMALIZED_FEATURE_NAMES
from threatscore.models.isoforest import IsoForestArtifact, load_isoforest


ISOFOREST_FILE = "isoforest.joblib"
META_FILE = "meta.json"


@dataclass(frozen=True)
class Artifacts:
    iso: IsoForestArtifact
    feature_names: List[str]
    feature_stats: Dict[str, Dict[str, float]]  # feature_name -> {mean, std, p50, p95}
    meta: Dict[str, Any]


def load_artifacts(art_dir: str | Path) -> Artifacts:
    d = Path(art_dir)
    meta = json.loads((d / META_FILE).read_text(encoding="utf-8"))
    feature_names = list(meta["feature_names"])
    if feature_names != NORMALIZED_FEATURE_NAMES:
        raise ValueError(f"Artifacts in {d} were trained on a different feature layout: {feature_names}")
    iso = load_isoforest(str(d / ISOFOREST_FILE))
    return Artifacts(
        iso=iso,
        feature_names=feature_names,
        feature_stats=meta.get("feature_stats", iso.feature_stats),
        meta=meta,
    )
