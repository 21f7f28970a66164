from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, Iterable, Iterator

from pydantic import BaseModel


logger = logging.getLogger(__name__)


def read_ndjson(path: str | Path, skip_invalid: bool = False) -> Iterator[Dict]:
    """Yield one JSON object per non-blank line.

    With skip_invalid, lines that are not JSON objects are logged and dropped
    instead of raising.
    """
    p = Path(path)
    with p.open("r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError as e:
                if not skip_invalid:
                    raise ValueError(f"{p}:{lineno}: invalid JSON: {e.msg}") from e
                logger.warning("%s:%d: skipping invalid JSON line", p, lineno)
                continue
            if not isinstance(obj, dict):
                if not skip_invalid:
                    raise ValueError(f"{p}:{lineno}: expected a JSON object, got {type(obj).__name__}")
                logger.warning("%s:%d: skipping non-object line", p, lineno)
                continue
            yield obj


def write_ndjson(path: str | Path, items: Iterable[Dict | BaseModel]) -> int:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    n = 0
    with p.open("w", encoding="utf-8") as f:
        for it in items:
            if isinstance(it, BaseModel):
                f.write(it.model_dump_json())
            else:
                f.write(json.dumps(it, default=str))
            f.write("\n")
            n += 1
    return n
