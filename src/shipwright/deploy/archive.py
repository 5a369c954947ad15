"""Run archive: the terminal record of every pipeline run.

Every run produces a self-contained ``{output_dir}/{run_id}/`` directory
that can be uploaded as a CI artifact or served by the webhook receiver.

Output Structure::

    {output_dir}/{run_id}/
    ├── pipeline_run.json     PipelineRun.model_dump_json()
    └── remote.log            redacted log tail of a failed container

Architecture Decisions:
    - Directory-per-run: runs never collide, even when the receiver runs
      deployments for different hosts in parallel.
    - JSON via pydantic: ``load()`` restores a PipelineRun with
      ``model_validate_json`` so the CLI and the API read the same record.
"""

from __future__ import annotations

import re
from pathlib import Path

from shipwright.core.errors import InvalidConfigError
from shipwright.core.logging import get_logger
from shipwright.deploy.models import PipelineRun

logger = get_logger(__name__)

RUN_FILE = "pipeline_run.json"
REMOTE_LOG_FILE = "remote.log"

_RUN_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class RunArchive:
    """Reads and writes archived PipelineRun records."""

    def __init__(self, output_dir: Path) -> None:
        self.output_dir = Path(output_dir)

    def run_dir(self, run_id: str) -> Path:
        if not _RUN_ID_RE.match(run_id):
            raise InvalidConfigError("run_id", run_id)
        return self.output_dir / run_id

    def save(self, run: PipelineRun) -> Path:
        """Write the run record (and the remote log tail, if any)."""
        run_dir = self.run_dir(run.run_id)
        run_dir.mkdir(parents=True, exist_ok=True)
        path = run_dir / RUN_FILE
        path.write_text(run.model_dump_json(indent=2), encoding="utf-8")
        if run.logs_tail:
            (run_dir / REMOTE_LOG_FILE).write_text("\n".join(run.logs_tail) + "\n", encoding="utf-8")
        logger.info("archive.saved", run_id=run.run_id, path=str(path), state=run.state.value)
        return path

    def load(self, run_id: str) -> PipelineRun | None:
        path = self.run_dir(run_id) / RUN_FILE
        if not path.is_file():
            return None
        return PipelineRun.model_validate_json(path.read_text(encoding="utf-8"))

    def list_runs(self, limit: int | None = None) -> list[PipelineRun]:
        """Archived runs, newest first."""
        if not self.output_dir.is_dir():
            return []
        runs = [
            PipelineRun.model_validate_json(path.read_text(encoding="utf-8"))
            for path in self.output_dir.glob(f"*/{RUN_FILE}")
        ]
        runs.sort(key=lambda r: r.created_at, reverse=True)
        return runs[:limit] if limit else runs


__all__ = ["RunArchive", "RUN_FILE", "REMOTE_LOG_FILE"]
