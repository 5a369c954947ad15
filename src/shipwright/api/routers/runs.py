"""Read-only access to archived pipeline runs.

Endpoints
---------
``GET /runs``            — newest runs first
``GET /runs/{run_id}``   — one run record
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Query

from shipwright.api.deps import Archive

router = APIRouter(prefix="/runs", tags=["runs"])


@router.get("")
def list_runs(archive: Archive, limit: int = Query(20, ge=1, le=500)) -> list[dict[str, Any]]:
    return [run.model_dump(mode="json") for run in archive.list_runs(limit=limit)]


@router.get("/{run_id}")
def get_run(run_id: str, archive: Archive) -> dict[str, Any]:
    """Return one archived run.

    Raises:
        HTTPException 404: No run with that id has been archived.
    """
    run = archive.load(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found")
    return run.model_dump(mode="json")
