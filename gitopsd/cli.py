import asyncio
import dataclasses
import functools
import pathlib
from typing import Any, Callable, Optional

import click

from gitopsd._cogs.configs import configuration
from gitopsd._cogs.helpers import versions
from gitopsd._core.actions import loggers
from gitopsd._core.reactor import running


@dataclasses.dataclass()
class CLIControls:
    """ Controls, which are impossible to pass via CLI (used in tests). """
    stop_flag: Optional[asyncio.Event] = None
    settings: Optional[configuration.OperatorSettings] = None


class LogFormatParamType(click.Choice):

    def __init__(self) -> None:
        super().__init__(choices=[v.name.lower() for v in loggers.LogFormat])

    def convert(self, value: Any, param: Any, ctx: Any) -> loggers.LogFormat:
        name: str = super().convert(value, param, ctx)
        return loggers.LogFormat[name.upper()]


def logging_options(fn: Callable[..., Any]) -> Callable[..., Any]:
    """ A decorator to configure logging in all commands the same way."""
    @click.option('-v', '--verbose', is_flag=True)
    @click.option('-d', '--debug', is_flag=True)
    @click.option('-q', '--quiet', is_flag=True)
    @click.option('--log-format', type=LogFormatParamType(), default='full')
    @click.option('--log-refkey', type=str)
    @click.option('--log-prefix/--no-log-prefix', default=None)
    @functools.wraps(fn)  # to preserve other opts/args
    def wrapper(verbose: bool, quiet: bool, debug: bool,
                log_format: loggers.LogFormat = loggers.LogFormat.FULL,
                log_prefix: Optional[bool] = False,
                log_refkey: Optional[str] = None,
                *args: Any, **kwargs: Any) -> Any:
        loggers.configure(debug=debug, verbose=verbose, quiet=quiet,
                          log_format=log_format, log_refkey=log_refkey, log_prefix=log_prefix)
        return fn(*args, **kwargs)

    return wrapper


@click.version_option(version=versions.version, prog_name='gitopsd')
@click.group(name='gitopsd', context_settings=dict(
    auto_envvar_prefix='GITOPSD',
))
def main() -> None:
    pass


@main.command()
@logging_options
@click.option('-n', '--namespace', type=str, default=None,
              help="Serve only this namespace's objects (all namespaces by default).")
@click.option('--database', 'database_path', type=click.Path(dir_okay=False, path_type=pathlib.Path))
@click.option('--pool-size', type=int)
@click.option('--engine-namespace', type=str)
@click.option('--worker-limit', type=int)
@click.option('--max-attempts', type=int)
@click.option('--operation-timeout', type=float)
@click.make_pass_decorator(CLIControls, ensure=True)
def run(
        __controls: CLIControls,
        namespace: Optional[str],
        database_path: Optional[pathlib.Path],
        pool_size: Optional[int],
        engine_namespace: Optional[str],
        worker_limit: Optional[int],
        max_attempts: Optional[int],
        operation_timeout: Optional[float],
) -> None:
    """ Start the control plane and serve all the notifications. """
    settings = __controls.settings if __controls.settings is not None else configuration.OperatorSettings()
    if database_path is not None:
        settings.database.path = database_path
    if pool_size is not None:
        settings.database.pool_size = pool_size
    if engine_namespace is not None:
        settings.engine.namespace = engine_namespace
    if worker_limit is not None:
        settings.queueing.worker_limit = worker_limit
    if max_attempts is not None:
        settings.retrying.max_attempts = max_attempts
    if operation_timeout is not None:
        settings.engine.operation_timeout = operation_timeout
    return running.run(
        settings=settings,
        namespace=namespace,
        stop_flag=__controls.stop_flag,
    )
