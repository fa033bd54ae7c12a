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

"""
Parsers for CI workflow YAML files (the GitHub Actions subset a linear,
single-job release pipeline needs).
"""
import logging
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from ..MODELS.pipeline_definition import (
    STATE_REACHED_BY,
    PipelineDefinition,
    PipelineState,
    PushTrigger,
    Step,
    StepCategory,
)
from ..MODELS.release_settings import lint_denies_warnings
from ..RUNNERS.actions import action_category, required_inputs
from ..UTILS.step_classifier import classify_command, classify_script, script_commands
from ..exceptions import P2RError, PipelineDefinitionError

logger = logging.getLogger(__name__)

# Keys that would make the pipeline branch or tolerate failures.
UNSUPPORTED_STEP_KEYS = ("if", "continue-on-error")

# Check and lint verify as much as test does; they may not follow a build.
ORDERING_STATE = dict(STATE_REACHED_BY)
ORDERING_STATE[StepCategory.CHECK] = PipelineState.VERIFIED
ORDERING_STATE[StepCategory.LINT] = PipelineState.VERIFIED


class WorkflowParser:
    """
    Parser for pipeline definition files.
    """
    def parse(self, workflow_path: str) -> PipelineDefinition:
        """
        Parses a workflow file from a path.

        :param workflow_path: Path to the workflow YAML.
        :return: Parsed pipeline definition.
        """
        try:
            with open(workflow_path, 'r') as f:
                content = f.read()
        except OSError as e:
            raise PipelineDefinitionError(f"Cannot read pipeline definition {workflow_path}: {e}") from e
        definition = self.parse_from_string(content)
        definition.path = workflow_path
        return definition

    def parse_from_string(self, content: str) -> PipelineDefinition:
        """
        Parses a workflow from YAML content.

        :param content: YAML content of the workflow.
        :return: Parsed pipeline definition.
        """
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise PipelineDefinitionError(f"Invalid YAML: {e}") from e
        if not isinstance(data, dict):
            raise PipelineDefinitionError("A pipeline definition must be a mapping")

        # YAML 1.1 reads a bare `on` key as boolean True
        triggers = data.get("on", data.get(True))
        trigger = self._parse_trigger(triggers)

        jobs = data.get("jobs")
        if not isinstance(jobs, dict) or not jobs:
            raise PipelineDefinitionError("A pipeline definition needs a 'jobs' mapping with one job")
        if len(jobs) != 1:
            raise PipelineDefinitionError(
                f"Only single-job pipelines are supported, found {len(jobs)}: {', '.join(map(str, jobs))}"
            )
        job_name, job = next(iter(jobs.items()))
        if not isinstance(job, dict):
            raise PipelineDefinitionError(f"Job {job_name!r} must be a mapping")

        raw_steps = job.get("steps") or []
        if not isinstance(raw_steps, list):
            raise PipelineDefinitionError(f"Job {job_name!r}: 'steps' must be a list")
        steps = [self._parse_step(index, raw) for index, raw in enumerate(raw_steps, start=1)]
        self.check_order(steps)

        try:
            return PipelineDefinition(
                name=str(data.get("name") or job_name),
                trigger=trigger,
                env=data.get("env") or {},
                job_name=str(job_name),
                runs_on=job.get("runs-on"),
                job_env=job.get("env") or {},
                steps=steps,
            )
        except ValidationError as e:
            raise PipelineDefinitionError(f"Invalid pipeline definition: {e}") from e

    def _parse_trigger(self, triggers: Any) -> PushTrigger:
        if triggers == "push":
            return PushTrigger()
        if isinstance(triggers, list):
            if "push" in triggers:
                return PushTrigger()
        elif isinstance(triggers, dict) and "push" in triggers:
            push = triggers["push"] or {}
            if not isinstance(push, dict):
                raise PipelineDefinitionError("'on.push' must be a mapping")
            try:
                return PushTrigger(
                    branches=self._as_list(push.get("branches")),
                    branches_ignore=self._as_list(push.get("branches-ignore")),
                )
            except ValidationError as e:
                raise PipelineDefinitionError(f"Invalid push trigger: {e}") from e
        raise PipelineDefinitionError("Pipeline has no push trigger")

    def _parse_step(self, index: int, raw: Any) -> Step:
        if not isinstance(raw, dict):
            raise PipelineDefinitionError(f"Step #{index} must be a mapping")
        for key in UNSUPPORTED_STEP_KEYS:
            if key in raw:
                raise PipelineDefinitionError(
                    f"Step #{index}: '{key}' is not supported; steps run linearly and every failure is fatal"
                )
        try:
            step = Step.model_validate(raw)
        except ValidationError as e:
            raise PipelineDefinitionError(f"Step #{index}: {e}") from e

        try:
            categories = self.resolve_categories(step)
        except P2RError as e:
            raise PipelineDefinitionError(f"Step #{index} ({step.display_name}): {e}") from e
        if step.uses:
            missing = [name for name in required_inputs(step.uses) if not step.with_.get(name)]
            if missing:
                raise PipelineDefinitionError(
                    f"Step #{index} ({step.display_name}): {step.uses} needs input(s) {', '.join(missing)}"
                )
        return step.model_copy(update={"categories": categories})

    @staticmethod
    def resolve_categories(step: Step) -> List[StepCategory]:
        """
        Categories of a step: the explicit one, the builtin action's, or the
        ones inferred from its script. Lint commands must deny warnings.
        """
        if step.uses:
            category = action_category(step.uses)
            return [step.category or category]
        for command in script_commands(step.run or ""):
            if classify_command(command) == StepCategory.LINT and "clippy" in command \
                    and not lint_denies_warnings(command):
                raise PipelineDefinitionError(
                    f"lint command {command!r} must treat warnings as errors (-D warnings)"
                )
        if step.category:
            return [step.category]
        return classify_script(step.run or "")

    @staticmethod
    def check_order(steps: List[Step]) -> None:
        """
        Steps must follow the release order: none may reach a state below
        one an earlier step (or an earlier command of the same step) reached.

        :raises PipelineDefinitionError: If a step goes backwards.
        """
        reached = PipelineState.TRIGGERED
        reached_by: Optional[str] = None
        for index, step in enumerate(steps, start=1):
            for category in step.categories:
                state = ORDERING_STATE.get(category)
                if state is None:
                    continue
                if state.rank < reached.rank:
                    raise PipelineDefinitionError(
                        f"Step #{index} ({step.display_name}) is a {category.value} step after "
                        f"{reached_by!r} reached {reached.value}; steps must follow the release order"
                    )
                reached, reached_by = state, step.display_name

    @staticmethod
    def _as_list(value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, (str, int)):
            return [str(value)]
        if not isinstance(value, list):
            raise PipelineDefinitionError(f"Expected a branch name or a list of branch names, got {value!r}")
        return [str(v) for v in value]
