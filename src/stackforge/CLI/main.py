"""
Command Line Interface for stackforge.
"""
import functools
import os

import click
import structlog

from ..CLIENTS.control_plane import ControlPlaneClient
from ..exceptions import Cancelled, ConfigurationError, StackforgeError
from ..MANAGERS.change_preview import ChangePreviewEngine
from ..MANAGERS.lifecycle import StackLifecycle
from ..MANAGERS.resource_sweeper import ResourceSweeper
from ..MANAGERS.stack_orchestrator import StackOrchestrator
from ..MANAGERS.template_source import TemplateSource
from ..MODELS.report import RunReport
from ..PARSERS.environment_parser import EnvironmentParser
from ..UTILS.confirmation import AutoConfirmer, ClickConfirmer
from ..UTILS.logging_config import configure_logging
from ..UTILS.settings import Settings

logger = structlog.get_logger(__name__)

EXIT_FAILURE = 1
EXIT_CANCELLED = 2


def handle_errors(f):
    """Turns stackforge errors into an operator message and an exit code."""
    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except Cancelled as e:
            click.echo(f"Cancelled: {_describe_error(e)}", err=True)
            raise SystemExit(EXIT_CANCELLED)
        except StackforgeError as e:
            click.echo(f"Error: {_describe_error(e)}", err=True)
            raise SystemExit(EXIT_FAILURE)
    return wrapper


def _describe_error(error: StackforgeError) -> str:
    message = str(error)
    context = []
    if error.stack_name and error.stack_name not in message:
        context.append(f"stack {error.stack_name}")
    if error.status and error.status not in message:
        context.append(f"state {error.status}")
    if context:
        message += f" [{', '.join(context)}]"
    return message


@click.group()
@click.option('--config', '-c', default=None, help='Environments file (default: stacks.yml)')
@click.option('--templates-dir', default=None, help='Directory holding the templates')
@click.option('--parameters-dir', default=None, help='Directory holding the parameter files')
@click.option('--region', default=None, help='Region overriding the environment file and settings')
@click.option('--log-level', default=None, help='Diagnostic log level written to stderr')
@click.pass_context
def cli(ctx, config, templates_dir, parameters_dir, region, log_level):
    """
    stackforge - drives an environment's CloudFormation stacks through their lifecycle.

    Stacks are applied in dependency order, every update is previewed as a change
    set before it runs, and teardown empties buckets and image repositories first.
    """
    ctx.ensure_object(dict)
    settings = ctx.obj.get('settings') or Settings.from_env()
    overrides = {
        'config_file': config,
        'templates_dir': templates_dir,
        'parameters_dir': parameters_dir,
        'log_level': log_level,
    }
    settings = settings.model_copy(update={k: v for k, v in overrides.items() if v is not None})
    configure_logging(settings.log_level)
    ctx.obj['settings'] = settings
    ctx.obj['region'] = region


def _environment(ctx, name):
    settings = ctx.obj['settings']
    parser = EnvironmentParser(default_region=settings.region)
    if os.path.exists(settings.config_file):
        config = parser.parse(settings.config_file)
    else:
        logger.debug("No environments file, using the default chain", path=settings.config_file)
        config = parser.parse_from_string("")
    return parser.resolve(config, name, region=ctx.obj.get('region'))


def _client(ctx, environment):
    client = ctx.obj.get('client')
    if client is None:
        settings = ctx.obj['settings']
        client = ControlPlaneClient(
            region=environment.region,
            capabilities=settings.capabilities,
            max_attempts=settings.max_attempts,
            poll_interval=settings.poll_interval,
            max_poll_interval=settings.max_poll_interval,
        )
        ctx.obj['client'] = client
    return client


def _orchestrator(ctx, environment, confirmer):
    settings = ctx.obj['settings']
    client = _client(ctx, environment)
    preview = ChangePreviewEngine(client, confirmer, change_set_timeout=settings.change_set_timeout)
    lifecycle = StackLifecycle(client, preview, ResourceSweeper(client), wait_timeout=settings.wait_timeout)
    source = TemplateSource(settings.templates_dir, settings.parameters_dir)
    return StackOrchestrator(environment, lifecycle, source, confirmer)


def _print_results(report: RunReport):
    if not report.results:
        return
    click.echo(f"{'STACK':24} {'OUTCOME':16} {'STATUS':16}")
    click.echo("-" * 58)
    for result in report.results:
        click.echo(f"{result.name:24} {result.outcome.value:16} {result.status.value:16}")


def _print_outputs(outputs):
    if not outputs:
        click.echo("No outputs.")
        return
    width = max(len(key) for key in outputs) + 2
    click.echo(f"{'OUTPUT':{width}} VALUE")
    click.echo("-" * (width + 30))
    for key, value in outputs.items():
        click.echo(f"{key:{width}} {value}")


def _finish(report: RunReport):
    """Raises the error that halted the run, if any, after its results were shown."""
    _print_results(report)
    if report.error is not None:
        raise report.error


@cli.command()
@click.argument('stack')
@click.argument('template')
@click.argument('environment')
@click.option('--yes', '-y', is_flag=True, help='Execute change sets without asking')
@click.pass_context
@handle_errors
def apply(ctx, stack, template, environment, yes):
    """Create STACK from TEMPLATE in ENVIRONMENT, or update it if it exists."""
    env = _environment(ctx, environment)
    confirmer = AutoConfirmer() if yes else ClickConfirmer()
    report = _orchestrator(ctx, env, confirmer).apply_stack(stack, template=template)
    _finish(report)
    click.echo(f"\nOutputs of {env.qualified_name(stack)}:")
    _print_outputs(report.outputs(stack))


@cli.command(name='preview-update')
@click.argument('stack')
@click.argument('template')
@click.argument('environment')
@click.option('--yes', '-y', is_flag=True, help='Execute the change set without asking')
@click.option('--dry-run', is_flag=True, help='Show the change set and discard it')
@click.pass_context
@handle_errors
def preview_update(ctx, stack, template, environment, yes, dry_run):
    """Preview and apply an update of an existing STACK."""
    env = _environment(ctx, environment)
    confirmer = AutoConfirmer() if yes else ClickConfirmer()
    report = _orchestrator(ctx, env, confirmer).apply_stack(
        stack, template=template, require_existing=True, dry_run=dry_run
    )
    _finish(report)


@cli.command()
@click.argument('environment')
@click.option('--yes', '-y', is_flag=True, help='Execute change sets without asking')
@click.pass_context
@handle_errors
def deploy(ctx, environment, yes):
    """Apply every stack of ENVIRONMENT in dependency order."""
    env = _environment(ctx, environment)
    confirmer = AutoConfirmer() if yes else ClickConfirmer()
    report = _orchestrator(ctx, env, confirmer).up()
    _finish(report)
    click.echo(f"Environment {env.name} deployed.")


@cli.command()
@click.argument('environment')
@click.option('--confirm', 'token', default=None, help='Teardown token, for non-interactive runs')
@click.pass_context
@handle_errors
def teardown(ctx, environment, token):
    """Empty and delete every stack of ENVIRONMENT in reverse order."""
    env = _environment(ctx, environment)
    confirmer = AutoConfirmer(approve=False, token=token) if token is not None else ClickConfirmer()
    report = _orchestrator(ctx, env, confirmer).down()
    _finish(report)
    click.echo(f"Environment {env.name} torn down.")


@cli.command()
@click.argument('environment')
@click.pass_context
@handle_errors
def status(ctx, environment):
    """List the live status of every stack of ENVIRONMENT."""
    env = _environment(ctx, environment)
    stacks = _orchestrator(ctx, env, ClickConfirmer()).ps()
    click.echo(f"{'STACK':24} {'NAME':32} {'STATUS':16}")
    click.echo("-" * 74)
    for name, stack in stacks.items():
        click.echo(f"{name:24} {stack.name:32} {stack.describe_status():16}")


@cli.command()
@click.argument('stack')
@click.argument('environment')
@click.pass_context
@handle_errors
def outputs(ctx, stack, environment):
    """Show the outputs of STACK in ENVIRONMENT."""
    env = _environment(ctx, environment)
    live = _client(ctx, env).describe_stack(env.qualified_name(stack))
    if not live.exists:
        raise ConfigurationError(
            f"stack {live.name} does not exist", stack_name=live.name, status=live.status.value
        )
    _print_outputs(live.outputs)


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
