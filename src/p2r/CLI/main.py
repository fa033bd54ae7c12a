"""
Command Line Interface for P2R.
"""
import os

import click

from ..BUILDERS.image_builder import ImageBuilder
from ..BUILDERS.pipeline_builder import build_release_pipeline
from ..CONVERTERS.scaffold import ScaffoldConverter
from ..MANAGERS.run_ledger import RunLedger
from ..MODELS.pipeline_definition import PipelineDefinition
from ..MODELS.pipeline_run import PipelineRun, RunOutcome
from ..MODELS.push_event import PushEvent
from ..PARSERS.dockerfile_parser import DockerfileParser
from ..PARSERS.settings_loader import load_settings
from ..PARSERS.workflow_parser import WorkflowParser
from ..RUNNERS.command_executor import RecordingExecutor, SubprocessExecutor
from ..RUNNERS.pipeline_runner import PipelineRunner
from ..UTILS.logging_setup import configure_logging
from ..UTILS.secret_masker import SecretMasker, SecretStore
from ..exceptions import P2RError, PipelineStepError
from .. import __version__

LOAD_ERROR_EXIT_CODE = 2


def _fail(ctx, error: Exception):
    click.echo(f"Error: {error}", err=True)
    ctx.exit(LOAD_ERROR_EXIT_CODE)


def _load_settings(ctx, config):
    """Settings from --config, or from p2r.yml and .env in the working directory."""
    workdir = ctx.obj['workdir']
    return load_settings(config, dotenv_path=os.path.join(workdir, '.env'), base_dir=workdir)


@click.group()
@click.option('--log-level', '-l', default=None, help='Log level (default: $P2R_LOG or info)')
@click.option('--workdir', '-C', default='.', type=click.Path(file_okay=False),
              help='Source tree the pipeline runs in')
@click.version_option(__version__, prog_name='p2r')
@click.pass_context
def cli(ctx, log_level, workdir):
    """
    P2R - Push to Release.

    Runs the linear fail-fast release pipeline of a containerised
    application: toolchain, verification, image build, registry login,
    publish and release.
    """
    ctx.ensure_object(dict)
    masker = SecretMasker()
    try:
        configure_logging(log_level, masker)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint='--log-level')
    ctx.obj['masker'] = masker
    ctx.obj['workdir'] = workdir
    ctx.obj['ledger'] = RunLedger(os.path.join(workdir, '.p2r', 'runs.json'))


def run_options(f):
    f = click.option('--sha', default=None, envvar='P2R_SHA', help='Commit sha of the push')(f)
    f = click.option('--repository', default=None, help='Repository name of the push')(f)
    f = click.option('--secrets-file', '-s', default=None, type=click.Path(exists=True, dir_okay=False),
                     help='.env file with secrets (overrides the environment)')(f)
    f = click.option('--dry-run', is_flag=True, help='Print the commands instead of running them')(f)
    f = click.option('--force', is_flag=True, help='Release even if this sha was already released')(f)
    return f


def _execute(ctx, definition: PipelineDefinition, ref: str, sha, repository, secrets_file, dry_run, force):
    try:
        event = PushEvent(ref=ref, sha=sha, repository=repository)
    except ValueError as e:
        _fail(ctx, e)
    executor = RecordingExecutor(dry_run=True) if dry_run else SubprocessExecutor()
    workdir = ctx.obj['workdir']
    runner = PipelineRunner(
        executor,
        SecretStore(ctx.obj['masker'], secrets_file=secrets_file),
        workspace=workdir,
        ledger=ctx.obj['ledger'],
        log_dir=os.path.join(workdir, '.p2r', 'logs'),
        force=force,
    )
    try:
        run = runner.run(definition, event)
    except P2RError as e:
        _fail(ctx, e)
    _print_run(run)
    ctx.exit(run.exit_code)


def _print_run(run: PipelineRun):
    if run.outcome == RunOutcome.NOT_TRIGGERED:
        click.echo(f"{run.pipeline}: not triggered by a push to {run.event.ref}")
        return
    if run.outcome == RunOutcome.DUPLICATE:
        click.echo(f"{run.pipeline}: {run.event.sha} was already released; nothing to do")
        return

    for step in run.steps:
        code = "" if step.exit_code is None else f" (exit {step.exit_code})"
        click.echo(f"  {step.status.value:8} {step.name}{code}")
    if run.outcome == RunOutcome.FAILED:
        click.echo(f"{run.pipeline}: FAILED at '{run.failed_step}' "
                   f"[{run.error_category}]: {run.error_message}", err=True)
    else:
        suffix = " (dry run)" if run.dry_run else ""
        click.echo(f"{run.pipeline}: {run.state.value}{suffix} [run {run.run_id}]")


@cli.command()
@click.argument('workflow', type=click.Path(exists=True, dir_okay=False))
@click.option('--ref', '-r', required=True, envvar='P2R_REF', help='Pushed ref or branch name')
@run_options
@click.pass_context
def run(ctx, workflow, ref, sha, repository, secrets_file, dry_run, force):
    """Run a workflow file for a push."""
    try:
        definition = WorkflowParser().parse(workflow)
    except P2RError as e:
        _fail(ctx, e)
    _execute(ctx, definition, ref, sha, repository, secrets_file, dry_run, force)


@cli.command()
@click.option('--config', '-c', default=None, type=click.Path(exists=True, dir_okay=False),
              help='Settings file (default: p2r.yml if present)')
@click.option('--ref', '-r', default=None, envvar='P2R_REF', help='Pushed ref (default: the release branch)')
@run_options
@click.pass_context
def release(ctx, config, ref, sha, repository, secrets_file, dry_run, force):
    """Run the standard release pipeline built from settings."""
    try:
        settings = _load_settings(ctx, config)
    except P2RError as e:
        _fail(ctx, e)
    definition = build_release_pipeline(settings)
    _execute(ctx, definition, ref or settings.branch, sha, repository, secrets_file, dry_run, force)


@cli.command()
@click.argument('workflow', required=False, type=click.Path(exists=True, dir_okay=False))
@click.option('--config', '-c', default=None, type=click.Path(exists=True, dir_okay=False),
              help='Settings file used when no workflow is given')
@click.pass_context
def plan(ctx, workflow, config):
    """Show the ordered steps of a pipeline."""
    try:
        if workflow:
            definition = WorkflowParser().parse(workflow)
        else:
            definition = build_release_pipeline(_load_settings(ctx, config))
    except P2RError as e:
        _fail(ctx, e)

    branches = ", ".join(definition.trigger.branches) or "*"
    click.echo(f"{definition.name} (push to {branches})")
    for index, step in enumerate(definition.steps, start=1):
        categories = ", ".join(c.value for c in step.categories)
        state = step.target_state.value if step.target_state else "-"
        click.echo(f"{index:3}. {step.display_name:32} {categories:24} -> {state}")


@cli.group()
def manifest():
    """Inspect build manifests."""


@manifest.command()
@click.argument('path', required=False, type=click.Path(dir_okay=False))
@click.pass_context
def check(ctx, path):
    """Check that a Dockerfile drops root privileges."""
    path = path or os.path.join(ctx.obj['workdir'], 'Dockerfile')
    try:
        parsed = DockerfileParser().parse_manifest(path)
    except P2RError as e:
        _fail(ctx, e)
    click.echo(f"{path}: {len(parsed.stages)} stage(s), base {parsed.base_image}")
    try:
        ImageBuilder.check_privileges(parsed)
    except PipelineStepError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(1)
    click.echo(f"{path}: runs as {parsed.runtime_user}")


@cli.command()
@click.option('--config', '-c', default=None, type=click.Path(exists=True, dir_okay=False),
              help='Settings file (default: p2r.yml if present)')
@click.option('--out', '-o', default=None, help='Output directory (default: the working directory)')
@click.option('--force', is_flag=True, help='Overwrite existing files')
@click.pass_context
def scaffold(ctx, config, out, force):
    """Generate a Dockerfile and CI workflow."""
    try:
        settings = _load_settings(ctx, config)
        paths = ScaffoldConverter(settings).convert(out or ctx.obj['workdir'], force=force)
    except P2RError as e:
        _fail(ctx, e)
    for path in paths:
        click.echo(f"Generated {path}")


@cli.command()
@click.option('--limit', '-n', default=20, show_default=True, help='Number of runs to show')
@click.pass_context
def history(ctx, limit):
    """List recorded runs"""
    try:
        runs = ctx.obj['ledger'].runs()
    except P2RError as e:
        _fail(ctx, e)
    if not runs:
        click.echo("No runs recorded.")
        return
    click.echo(f"{'RUN':12} {'PIPELINE':24} {'SHA':10} {'STATE':18} {'OUTCOME':10}")
    click.echo("-" * 78)
    for r in runs[-limit:]:
        sha = (r.event.sha or "-")[:10]
        click.echo(f"{r.run_id:12} {r.pipeline[:24]:24} {sha:10} {r.terminal_state.value:18} {r.outcome.value:10}")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
