# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import gc
import os
import tracemalloc

import psutil

from p2r.MANAGERS.run_ledger import RunLedger
from p2r.MODELS.push_event import PushEvent
from p2r.PARSERS.workflow_parser import WorkflowParser
from p2r.RUNNERS.command_executor import RecordingExecutor
from p2r.RUNNERS.pipeline_runner import STEP_TAIL_LINES, PipelineRunner
from p2r.RUNNERS.process_runner import CommandResult
from p2r.UTILS.secret_masker import SecretMasker, SecretStore
from conftest import CI_WORKFLOW, INSPECT_NON_ROOT


def test_runner_memory_leak(workspace):
    """
    Checks for memory growth when repeatedly running the pipeline.
    """
    definition = WorkflowParser().parse_from_string(CI_WORKFLOW)

    def run_once():
        executor = RecordingExecutor(INSPECT_NON_ROOT)
        store = SecretStore(SecretMasker(), environ={"HEROKU_API_KEY": "s3cret"})
        runner = PipelineRunner(executor, store, workspace=str(workspace), environ={})
        return runner.run(definition, PushEvent(ref="master", sha="abc"))

    # warm up caches (regexes, pydantic validators)
    run_once()

    tracemalloc.start()
    try:
        gc.collect()
        snapshot1 = tracemalloc.take_snapshot()
        for _ in range(50):
            assert run_once().succeeded
        gc.collect()
        snapshot2 = tracemalloc.take_snapshot()
    finally:
        tracemalloc.stop()

    total_diff = sum(stat.size_diff for stat in snapshot2.compare_to(snapshot1, "lineno"))
    assert total_diff < 1024 * 1024


def test_step_output_is_bounded(workspace):
    """
    A step that prints a lot keeps only the tail of its output in the run record.
    """
    content = "on: push\njobs:\n  build:\n    steps:\n    - run: cargo test\n"
    definition = WorkflowParser().parse_from_string(content)
    output = [f"test case_{i} ... ok" for i in range(20000)]
    executor = RecordingExecutor({"cargo test": CommandResult(exit_code=0, output=output)})
    store = SecretStore(SecretMasker(), environ={})
    run = PipelineRunner(executor, store, workspace=str(workspace), environ={}).run(
        definition, PushEvent(ref="master")
    )
    assert run.succeeded
    assert run.steps[0].output_tail == output[-STEP_TAIL_LINES:]


def test_run_logs_are_closed(workspace, tmp_path):
    """
    Checks that run log files are not left open across runs.
    """
    process = psutil.Process(os.getpid())
    initial_fds = process.num_fds() if hasattr(process, "num_fds") else 0

    definition = WorkflowParser().parse_from_string(CI_WORKFLOW)
    ledger = RunLedger(str(tmp_path / "runs.json"))
    for i in range(30):
        executor = RecordingExecutor(INSPECT_NON_ROOT)
        store = SecretStore(SecretMasker(), environ={})
        runner = PipelineRunner(executor, store, workspace=str(workspace), ledger=ledger,
                                log_dir=str(tmp_path / "logs"), environ={})
        runner.run(definition, PushEvent(ref="master", sha=f"sha{i}"))

    gc.collect()
    assert len(ledger.runs()) == 30
    if hasattr(process, "num_fds"):
        assert process.num_fds() <= initial_fds + 5
