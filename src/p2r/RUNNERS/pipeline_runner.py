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
Linear fail-fast execution of a pipeline definition.

Steps run one after another in declaration order. The first failing step
ends the run: every later step is recorded as skipped and the run keeps the
category and exit status of the failure. Nothing is retried.
"""
import logging
import os
import re
import shlex
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Mapping, Optional, TextIO

from .actions import ActionContext, create_action
from .command_executor import COMMAND_MARKER, FAILED_COMMAND_MARKER, CommandExecutor, shell_command
from .process_runner import INTERRUPTED_EXIT_CODE, TIMEOUT_EXIT_CODE, CommandResult
from ..BUILDERS.image_builder import ImageBuilder
from ..MANAGERS.environment_manager import EnvironmentManager
from ..MANAGERS.run_ledger import RunLedger
from ..MODELS.pipeline_definition import PipelineDefinition, Step, StepCategory
from ..MODELS.pipeline_run import PipelineRun, RunOutcome, StepResult, StepStatus
from ..MODELS.push_event import PushEvent
from ..PARSERS.dockerfile_parser import DockerfileParser
from ..REGISTRY.image_reference import ImageReference
from ..UTILS.secret_masker import SecretStore
from ..UTILS.step_classifier import classify_command, script_commands
from ..UTILS.string_interpolation import EnvironmentInterpolator, ExpressionEvaluator
from ..exceptions import (
    ImageBuildError,
    ManifestError,
    PipelineInterruptedError,
    PipelineStepError,
    PublishError,
    RegistryAuthError,
    ReleaseError,
    StaticVerificationError,
    TestFailureError,
    ToolchainError,
)

logger = logging.getLogger(__name__)

ERROR_FOR_CATEGORY = {
    StepCategory.TOOLCHAIN: ToolchainError,
    StepCategory.CHECK: StaticVerificationError,
    StepCategory.LINT: StaticVerificationError,
    StepCategory.TEST: TestFailureError,
    StepCategory.BUILD: ImageBuildError,
    StepCategory.LOGIN: RegistryAuthError,
    StepCategory.PUBLISH: PublishError,
    StepCategory.RELEASE: ReleaseError,
}

# rustc/clippy diagnostics, e.g. "warning: unused variable: `x`"
LINT_WARNING = re.compile(r"^\s*warning(\[[\w:-]+\])?:")
STEP_TAIL_LINES = 50


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PreparedStep:
    """A step with every expression resolved."""
    step: Step
    env: Dict[str, str]
    script: Optional[str] = None
    inputs: Dict[str, str] = field(default_factory=dict)
    working_dir: Optional[str] = None
    timeout: Optional[float] = None

    @property
    def name(self) -> str:
        return self.step.display_name


class _StreamingExecutor(CommandExecutor):
    """Routes the output of commands an action runs into the step's log."""

    def __init__(self, inner: CommandExecutor, on_line: Callable[[str], None], timeout: Optional[float]):
        self.inner = inner
        self.on_line = on_line
        self.timeout = timeout
        self.dry_run = inner.dry_run

    def execute(self, command, env, working_dir=None, timeout=None, input=None,
                on_line=None, label="step"):
        return self.inner.execute(command, env, working_dir=working_dir,
                                  timeout=timeout or self.timeout, input=input,
                                  on_line=self.on_line, label=label)


def failed_command(output: List[str]) -> Optional[str]:
    """The command reported by the shell's ERR trap, if any."""
    for line in reversed(output):
        if line.startswith(FAILED_COMMAND_MARKER):
            return line[len(FAILED_COMMAND_MARKER):].strip()
    return None


# options of `docker build` that take a value as the next argument
BUILD_OPTIONS_WITH_VALUE = {
    "-f", "--file", "-t", "--tag", "--build-arg", "--target", "--platform", "--label", "--network",
}
# redirections and command separators end the arguments of a command
SHELL_OPERATORS = ("<", ">", "|", "&", ";")


@dataclass
class DockerBuild:
    """A `docker build` command found in a step script."""
    manifest: Optional[str]
    tags: List[str] = field(default_factory=list)
    build_args: Dict[str, str] = field(default_factory=dict)


def docker_builds(script: str, working_dir: str, env: Optional[Dict[str, str]] = None) -> List[DockerBuild]:
    """
    The `docker build` commands of a script: the Dockerfile each one uses
    (-f/--file, or the Dockerfile at the root of the build context), its -t
    tags and its --build-arg values. Shell variables are expanded from
    ``env``; a Dockerfile read from stdin is None.
    """
    env = env or {}
    builds = []
    for line in script_commands(script):
        if classify_command(line) != StepCategory.BUILD:
            continue
        try:
            args = shlex.split(line)
        except ValueError:
            continue
        if "build" not in args:
            continue
        args = [EnvironmentInterpolator.interpolate_shell(a, env) for a in args[args.index("build") + 1:]]
        build = DockerBuild(manifest=None)
        manifest, positional = None, []
        while args:
            arg = args.pop(0)
            if arg.startswith(SHELL_OPERATORS):
                break
            if arg.startswith("--") and "=" in arg:
                option, value = arg.split("=", 1)
            elif arg in BUILD_OPTIONS_WITH_VALUE:
                option, value = arg, args.pop(0) if args else ""
            else:
                option, value = arg, None
            if option in ("-f", "--file"):
                manifest = value
            elif option in ("-t", "--tag"):
                if value:
                    build.tags.append(value)
            elif option == "--build-arg":
                name, sep, arg_value = (value or "").partition("=")
                # a bare name takes its value from the environment, if set
                if sep:
                    build.build_args[name] = arg_value
                elif name in env:
                    build.build_args[name] = env[name]
            elif value is None and (option == "-" or not option.startswith("-")):
                positional.append(option)
        context = positional[-1] if positional else "."
        if manifest is None and context != "-":
            manifest = os.path.join(context, "Dockerfile")
        if manifest not in (None, "-"):
            build.manifest = os.path.normpath(os.path.join(working_dir, manifest))
        builds.append(build)
    return builds


def error_class(step: Step, command: Optional[str] = None):
    """
    The exception class for a failure of ``step``: the category of the
    failing command when it belongs to the step, else the step's own.
    """
    category = classify_command(command) if command else None
    if category in step.categories and category in ERROR_FOR_CATEGORY:
        return ERROR_FOR_CATEGORY[category]
    for category in step.categories:
        if category in ERROR_FOR_CATEGORY:
            return ERROR_FOR_CATEGORY[category]
    return PipelineStepError


class PipelineRunner:
    """
    Executes a PipelineDefinition for one push event.
    """
    def __init__(self,
                 executor: CommandExecutor,
                 secrets: SecretStore,
                 workspace: str = ".",
                 ledger: Optional[RunLedger] = None,
                 log_dir: Optional[str] = None,
                 force: bool = False,
                 environ: Optional[Mapping[str, str]] = None,
                 env_files: Optional[List[str]] = None):
        """
        :param executor: Runs the step commands.
        :param secrets: Secrets available to ``${{ secrets.NAME }}``.
        :param workspace: Source tree the steps run in.
        :param ledger: Run ledger; when given, a sha that was already released
            is refused and finished runs are recorded.
        :param log_dir: Directory for per-run log files, or None.
        :param force: Run even if the sha was already released.
        :param environ: Host environment of the steps; defaults to os.environ.
        :param env_files: .env files layered over the host environment.
        """
        self.executor = executor
        self.secrets = secrets
        self.masker = secrets.masker
        self.workspace = os.path.abspath(workspace)
        self.ledger = ledger
        self.log_dir = log_dir
        self.force = force
        self.env_manager = EnvironmentManager(self.workspace, environ)
        self.env_files = list(env_files or [])

    def run(self, definition: PipelineDefinition, event: PushEvent) -> PipelineRun:
        """
        Runs the pipeline.

        :return: The finished run. A failed step does not raise; the run
            records it (see PipelineRun.raise_for_status).
        :raises ExpressionError: If an expression cannot be resolved. This is
            checked for every step before the first one runs.
        """
        run = PipelineRun(pipeline=definition.name, event=event, dry_run=self.executor.dry_run)

        if not definition.is_triggered_by(event):
            logger.info("%s is not triggered by a push to %s", definition.name, event.ref)
            run.finish(RunOutcome.NOT_TRIGGERED)
            return run

        if self.ledger is not None and not self.force:
            previous = self.ledger.find_release(definition.name, event.sha)
            if previous is not None:
                logger.warning("%s already released %s in run %s; use --force to release again",
                               definition.name, event.sha, previous.run_id)
                run.finish(RunOutcome.DUPLICATE)
                return run

        prepared = self.prepare(definition, event, run.run_id)
        logger.info("Running %s (%d steps) for %s%s", definition.name, len(prepared),
                    event.sha or event.ref, " [dry run]" if run.dry_run else "")

        log_file = self._open_log(run.run_id)
        try:
            self._run_steps(prepared, run, log_file)
        finally:
            if log_file:
                log_file.close()

        if run.outcome == RunOutcome.RUNNING:
            run.finish(RunOutcome.SUCCEEDED)
            logger.info("%s finished: %s", definition.name, run.state.value)
        else:
            logger.error("%s failed at step %r (%s, exit code %s): %s", definition.name,
                         run.failed_step, run.error_category, run.exit_code, run.error_message)

        if self.ledger is not None and not run.dry_run:
            self.ledger.record(run)
        return run

    def github_context(self, event: PushEvent, run_id: str) -> Dict[str, str]:
        return {
            "event_name": "push",
            "ref": event.ref,
            "ref_name": event.ref_name,
            "sha": event.sha or "",
            "repository": event.repository or "",
            "workspace": self.workspace,
            "run_id": run_id,
        }

    def prepare(self, definition: PipelineDefinition, event: PushEvent, run_id: str) -> List[PreparedStep]:
        """
        Resolves every expression of every step. Each env layer (pipeline,
        job, step) may reference the layers above it.
        """
        evaluator = ExpressionEvaluator(self.secrets.get, github=self.github_context(event, run_id))
        pipeline_env = evaluator.evaluate_mapping(definition.env)
        evaluator = evaluator.with_env(pipeline_env)
        job_env = evaluator.evaluate_mapping(definition.job_env)
        evaluator = evaluator.with_env(job_env)

        prepared = []
        for step in definition.steps:
            step_env = evaluator.evaluate_mapping(step.env)
            step_evaluator = evaluator.with_env(step_env)
            working_dir = self.workspace
            if step.working_directory:
                working_dir = os.path.join(self.workspace, step_evaluator.evaluate(step.working_directory))
            prepared.append(PreparedStep(
                step=step,
                env=step_evaluator.env,
                script=step_evaluator.evaluate(step.run) if step.run else None,
                inputs=step_evaluator.evaluate_mapping(step.with_),
                working_dir=working_dir,
                timeout=step.timeout_minutes * 60 if step.timeout_minutes else None,
            ))
        return prepared

    def _run_steps(self, prepared: List[PreparedStep], run: PipelineRun, log_file: Optional[TextIO]) -> None:
        ci_env = EnvironmentManager.ci_variables(run.event, run.run_id, self.workspace)
        for index, item in enumerate(prepared, start=1):
            if run.outcome == RunOutcome.FAILED:
                run.steps.append(StepResult(name=item.name, categories=item.step.categories,
                                            status=StepStatus.SKIPPED))
                continue

            logger.info("Step %d/%d: %s [%s]", index, len(prepared), item.name,
                        ", ".join(c.value for c in item.step.categories))
            if log_file:
                log_file.write(f"== {item.name}\n")
            env = self.env_manager.get_merged_environment(item.env, self.env_files, ci_env)

            started = _now()
            output: List[str] = []
            try:
                exit_code = self._run_step(item, run.event, env, output, log_file)
                error = None
            except PipelineStepError as e:
                error = e
                exit_code = e.exit_code
            except KeyboardInterrupt:
                error = PipelineInterruptedError("interrupted", exit_code=INTERRUPTED_EXIT_CODE)
                exit_code = INTERRUPTED_EXIT_CODE

            result = StepResult(
                name=item.name,
                categories=item.step.categories,
                status=StepStatus.SUCCESS if error is None else StepStatus.FAILED,
                exit_code=exit_code,
                started_at=started,
                finished_at=_now(),
                output_tail=output[-STEP_TAIL_LINES:],
                error=self.masker.mask(str(error)) if error else None,
            )
            run.steps.append(result)

            if error is None:
                run.advance(item.step.target_state)
                continue
            if error.step is None:
                error.step = item.name
            run.fail(error)
            run.error_message = self.masker.mask(run.error_message or "")

    def _run_step(self, item: PreparedStep, event: PushEvent, env: Dict[str, str],
                  output: List[str], log_file: Optional[TextIO]) -> int:
        """
        Runs one step, appending its masked output to ``output``.

        Only output printed while a lint command runs is scanned for warnings.

        :return: The step's exit code (0).
        :raises PipelineStepError: The categorised failure of the step.
        """
        warnings: List[str] = []
        linting = False

        def on_line(line: str) -> None:
            nonlocal linting
            line = self.masker.mask(line)
            if line.startswith(COMMAND_MARKER):
                linting = classify_command(line[len(COMMAND_MARKER):]) == StepCategory.LINT
                return
            if line.startswith(FAILED_COMMAND_MARKER):
                logger.debug("[%s] %s", item.name, line)
                return
            output.append(line)
            logger.info("[%s] %s", item.name, line)
            if log_file:
                log_file.write(line + "\n")
            if linting and LINT_WARNING.match(line):
                warnings.append(line)

        if item.step.uses:
            ctx = ActionContext(
                executor=_StreamingExecutor(self.executor, on_line, item.timeout),
                workspace=item.working_dir or self.workspace,
                event=event,
                env=env,
                inputs=item.inputs,
                error=error_class(item.step),
            )
            create_action(item.step.uses).run(ctx)
            return 0

        builds: List[DockerBuild] = []
        if StepCategory.BUILD in item.step.categories:
            builds = docker_builds(item.script or "", item.working_dir or self.workspace, env)
            self._check_build_manifests(item, builds)

        result = self.executor.execute(
            shell_command(item.script or ""),
            env=env,
            working_dir=item.working_dir,
            timeout=item.timeout,
            on_line=on_line,
            label=item.name,
        )
        self._check_result(item, result, warnings)
        if builds and not self.executor.dry_run:
            self._verify_built_images(item, builds, env)
        return result.exit_code

    def _check_build_manifests(self, item: PreparedStep, builds: List[DockerBuild]) -> None:
        """Refuses to build an image whose manifest runs as root."""
        parser = DockerfileParser()
        for build in builds:
            if build.manifest is None:
                continue
            try:
                manifest = parser.parse_manifest(build.manifest, build.build_args)
            except ManifestError as e:
                raise ImageBuildError(str(e), step=item.name) from e
            ImageBuilder.check_privileges(manifest)

    def _verify_built_images(self, item: PreparedStep, builds: List[DockerBuild], env: Dict[str, str]) -> None:
        """Inspects every image the step tagged; one that runs as root is removed."""
        builder = ImageBuilder(self.executor, base_dir=item.working_dir or self.workspace, env=env)
        for build in builds:
            for tag in build.tags:
                try:
                    ref = ImageReference.parse(tag)
                except ValueError as e:
                    raise ImageBuildError(str(e), step=item.name) from e
                builder.verify_user(ref)

    def _check_result(self, item: PreparedStep, result: CommandResult, warnings: List[str]) -> None:
        command = failed_command(result.output)
        if result.timed_out:
            minutes = item.step.timeout_minutes
            message = f"timed out after {minutes:g} minute(s)" if minutes else "timed out"
            raise error_class(item.step, command)(message, step=item.name, exit_code=TIMEOUT_EXIT_CODE)
        if not result.ok:
            failing = f"'{self.masker.mask(command)}'" if command else "step"
            raise error_class(item.step, command)(
                f"{failing} exited with status {result.exit_code}",
                step=item.name, exit_code=result.exit_code,
            )
        if warnings:
            raise StaticVerificationError(
                f"lint reported {len(warnings)} warning(s); warnings are errors: {warnings[0].strip()}",
                step=item.name, exit_code=1,
            )

    def _open_log(self, run_id: str) -> Optional[TextIO]:
        if not self.log_dir:
            return None
        os.makedirs(self.log_dir, exist_ok=True)
        path = os.path.join(self.log_dir, f"{run_id}.log")
        logger.debug("Writing run log to %s", path)
        return open(path, 'w')
