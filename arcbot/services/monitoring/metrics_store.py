from __future__ import annotations
import json
from pathlib import Path
from typing import Any, Dict, Union

DEFAULT_METRICS_PATH = Path("data/metrics.json")

PathLike = Union[str, Path]


def write_metrics(data: Dict[str, Any], path: PathLike = DEFAULT_METRICS_PATH) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp = target.with_suffix(".tmp")
    tmp.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
    tmp.replace(target)  # atomic replace


def read_metrics(path: PathLike = DEFAULT_METRICS_PATH) -> Dict[str, Any]:
    target = Path(path)
    if not target.exists():
        return {"connected": False, "message": "metrics not yet available"}
    return json.loads(target.read_text(encoding="utf-8"))
