import functools

import click.testing
import pytest

from gitopsd.cli import main


@pytest.fixture()
def runner():
    runner = click.testing.CliRunner()
    return runner


@pytest.fixture()
def invoke(runner):
    return functools.partial(runner.invoke, main)


@pytest.fixture()
def real_run(mocker):
    return mocker.patch('gitopsd._core.reactor.running.run')
