"""
Builds the standard release pipeline from ReleaseSettings.
"""
from typing import Dict, List, Optional

from ..MODELS.pipeline_definition import PipelineDefinition, PushTrigger, Step
from ..MODELS.release_settings import ReleaseSettings
from ..PARSERS.workflow_parser import WorkflowParser


def _script(commands: List[str]) -> str:
    return "\n".join(commands)


def _step(name: Optional[str] = None,
          run: Optional[str] = None,
          uses: Optional[str] = None,
          with_: Optional[Dict[str, str]] = None,
          env: Optional[Dict[str, str]] = None,
          timeout_minutes: Optional[float] = None) -> Step:
    step = Step(name=name, run=run, uses=uses, with_=with_ or {}, env=env or {},
                timeout_minutes=timeout_minutes)
    return step.model_copy(update={"categories": WorkflowParser.resolve_categories(step)})


def build_release_steps(settings: ReleaseSettings) -> List[Step]:
    """
    The ordered steps: checkout, toolchain preparation, toolchain info,
    check, lint, test, image build, image info, registry login, publish,
    release.
    """
    timeout = settings.step_timeout_minutes
    secret_env = {settings.api_key_secret: "${{ secrets.%s }}" % settings.api_key_secret}

    steps = [_step(uses="actions/checkout@v3")]
    if settings.toolchain_commands:
        steps.append(_step("Update local toolchain", run=_script(settings.toolchain_commands),
                           timeout_minutes=timeout))
    if settings.info_commands:
        steps.append(_step("Toolchain info", run=_script(settings.info_commands)))
    if settings.check_commands:
        steps.append(_step("Check", run=_script(settings.check_commands), timeout_minutes=timeout))
    if settings.lint_commands:
        steps.append(_step("Lint", run=_script(settings.lint_commands), timeout_minutes=timeout))
    if settings.test_commands:
        steps.append(_step("Test", run=_script(settings.test_commands), timeout_minutes=timeout))

    steps += [
        _step("Build Docker image", uses="p2r/build-image",
              with_={"tag": settings.image, "manifest": settings.manifest, "context": settings.context},
              timeout_minutes=timeout),
        _step("Docker image info", run="docker images"),
        _step("Login to container registry", uses="p2r/registry-login",
              with_={"method": settings.login_method, "api-key-var": settings.api_key_secret},
              env=secret_env, timeout_minutes=timeout),
        _step("Push Docker image", uses="p2r/push-image",
              with_={"image": settings.image}, timeout_minutes=timeout),
        _step("Release", uses="p2r/release",
              with_={"app": settings.app, "process-type": settings.process_type,
                     "api-key-var": settings.api_key_secret},
              env=secret_env, timeout_minutes=timeout),
    ]
    return steps


def build_release_pipeline(settings: ReleaseSettings) -> PipelineDefinition:
    """
    The seven-state release pipeline for a push to ``settings.branch``.
    """
    steps = build_release_steps(settings)
    WorkflowParser.check_order(steps)
    return PipelineDefinition(
        name=settings.name,
        trigger=PushTrigger(branches=[settings.branch]),
        env=settings.env,
        job_name="build",
        steps=steps,
    )
