"""
Builtin actions for `uses:` steps.

``actions/checkout`` is accepted so hosted-CI workflows run unchanged; the
``p2r/*`` actions wrap the image builder, registry and platform clients.
"""
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Tuple, Type

from .command_executor import CommandExecutor
from ..BUILDERS.image_builder import ImageBuilder
from ..MODELS.pipeline_definition import StepCategory
from ..MODELS.push_event import PushEvent
from ..REGISTRY.platform_client import HerokuPlatform
from ..REGISTRY.registry_client import RegistryClient
from ..exceptions import PipelineDefinitionError, PipelineStepError

logger = logging.getLogger(__name__)


@dataclass
class ActionContext:
    """Everything an action needs for one step."""
    executor: CommandExecutor
    workspace: str
    event: PushEvent
    env: Dict[str, str] = field(default_factory=dict)
    inputs: Dict[str, str] = field(default_factory=dict)
    # raised for an input that resolved to nothing
    error: Type[PipelineStepError] = PipelineStepError

    def require(self, name: str) -> str:
        value = self.inputs.get(name)
        if not value:
            raise self.error(f"input '{name}' is empty")
        return value


class Action(ABC):
    category: StepCategory
    # `with:` inputs the action cannot run without
    required: Tuple[str, ...] = ()

    @abstractmethod
    def run(self, ctx: ActionContext) -> None:
        """Raises a PipelineStepError subclass on failure."""


class CheckoutAction(Action):
    """
    The workspace already holds the pushed source tree; only checks it exists.
    """
    category = StepCategory.CHECKOUT

    def run(self, ctx: ActionContext) -> None:
        if not os.path.isdir(ctx.workspace):
            raise PipelineStepError(f"workspace {ctx.workspace} does not exist")
        logger.info("Using workspace %s at %s", ctx.workspace, ctx.event.sha or ctx.event.ref)


class BuildImageAction(Action):
    """inputs: tag (required), manifest (Dockerfile), context (.)"""
    category = StepCategory.BUILD
    required = ("tag",)

    def run(self, ctx: ActionContext) -> None:
        builder = ImageBuilder(ctx.executor, base_dir=ctx.workspace, env=ctx.env)
        builder.build(
            ctx.inputs.get("manifest") or "Dockerfile",
            ctx.require("tag"),
            context=ctx.inputs.get("context") or ".",
        )


class RegistryLoginAction(Action):
    """inputs: method (heroku-cli), api-key-var (HEROKU_API_KEY)"""
    category = StepCategory.LOGIN

    def run(self, ctx: ActionContext) -> None:
        platform = HerokuPlatform(ctx.executor, ctx.env, api_key_var=ctx.inputs.get("api-key-var") or "HEROKU_API_KEY")
        platform.login(ctx.inputs.get("method") or "heroku-cli")


class PushImageAction(Action):
    """inputs: image (required)"""
    category = StepCategory.PUBLISH
    required = ("image",)

    def run(self, ctx: ActionContext) -> None:
        RegistryClient(ctx.executor, ctx.env).push(ctx.require("image"))


class ReleaseAction(Action):
    """inputs: app, process-type (both required), api-key-var (HEROKU_API_KEY)"""
    category = StepCategory.RELEASE
    required = ("app", "process-type")

    def run(self, ctx: ActionContext) -> None:
        platform = HerokuPlatform(ctx.executor, ctx.env, api_key_var=ctx.inputs.get("api-key-var") or "HEROKU_API_KEY")
        platform.release(ctx.require("app"), ctx.require("process-type"))


BUILTIN_ACTIONS: Dict[str, Type[Action]] = {
    "actions/checkout": CheckoutAction,
    "p2r/build-image": BuildImageAction,
    "p2r/registry-login": RegistryLoginAction,
    "p2r/push-image": PushImageAction,
    "p2r/release": ReleaseAction,
}


def action_name(uses: str) -> str:
    """'actions/checkout@v3' -> 'actions/checkout'"""
    return uses.split("@", 1)[0].strip()


def _lookup(uses: str) -> Type[Action]:
    try:
        return BUILTIN_ACTIONS[action_name(uses)]
    except KeyError:
        raise PipelineDefinitionError(
            f"Unsupported action {uses!r}; available: {', '.join(sorted(BUILTIN_ACTIONS))}"
        ) from None


def action_category(uses: str) -> StepCategory:
    return _lookup(uses).category


def required_inputs(uses: str) -> Tuple[str, ...]:
    return _lookup(uses).required


def create_action(uses: str) -> Action:
    return _lookup(uses)()
