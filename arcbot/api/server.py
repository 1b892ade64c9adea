from __future__ import annotations

import os
from typing import Any, Dict

from fastapi import FastAPI, HTTPException

from arcbot.services.monitoring.metrics_store import DEFAULT_METRICS_PATH, read_metrics

JsonDict = Dict[str, Any]

app = FastAPI(title="arcbot status API", version="0.1.0")


def _metrics_path() -> str:
    return os.getenv("METRICS_PATH", str(DEFAULT_METRICS_PATH))


@app.get("/health")
def health() -> JsonDict:
    return {"ok": True}


@app.get("/metrics")
def metrics() -> JsonDict:
    try:
        return {"ok": True, "metrics": read_metrics(_metrics_path())}
    except (OSError, ValueError) as e:
        raise HTTPException(status_code=500, detail=f"/metrics failed: {e}")
