"""
Persistent record of pipeline runs, used to refuse releasing the same push
twice.
"""
import json
import logging
import os
import tempfile
from typing import List, Optional

from pydantic import ValidationError

from ..MODELS.pipeline_definition import PipelineState
from ..MODELS.pipeline_run import PipelineRun, RunOutcome
from ..exceptions import LedgerError

logger = logging.getLogger(__name__)

DEFAULT_LEDGER_PATH = os.path.join(".p2r", "runs.json")


class RunLedger:
    """
    JSON file holding one entry per finished run, oldest first.
    """
    def __init__(self, path: str = DEFAULT_LEDGER_PATH):
        self.path = path

    def runs(self) -> List[PipelineRun]:
        """
        :raises LedgerError: If the file exists but cannot be read.
        """
        if not os.path.exists(self.path):
            return []
        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise LedgerError(f"Cannot read run ledger {self.path}: {e}") from e
        if not isinstance(data, list):
            raise LedgerError(f"Run ledger {self.path} must hold a list of runs")
        try:
            return [PipelineRun.model_validate(entry) for entry in data]
        except ValidationError as e:
            raise LedgerError(f"Corrupt entry in run ledger {self.path}: {e}") from e

    def find_release(self, pipeline: str, sha: Optional[str]) -> Optional[PipelineRun]:
        """The released run of ``pipeline`` for ``sha``, if there is one."""
        if not sha:
            return None
        for run in self.runs():
            if (run.pipeline == pipeline and run.event.sha == sha
                    and run.outcome == RunOutcome.SUCCEEDED
                    and run.state == PipelineState.RELEASED
                    and not run.dry_run):
                return run
        return None

    def record(self, run: PipelineRun) -> None:
        """
        Appends a run. The file is replaced atomically so an interrupted
        write never leaves a truncated ledger.
        """
        runs = self.runs()
        runs.append(run)
        directory = os.path.dirname(self.path) or "."
        os.makedirs(directory, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".runs-", suffix=".json")
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump([r.model_dump(mode="json") for r in runs], f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise LedgerError(f"Cannot write run ledger {self.path}: {e}") from e
        logger.debug("Recorded run %s in %s", run.run_id, self.path)
