import pytest


@pytest.mark.parametrize('options, envvars, flag', [
    (['--verbose'], {}, 'verbose'),
    (['-v'], {}, 'verbose'),
    (['--debug'], {}, 'debug'),
    (['-d'], {}, 'debug'),
    (['--quiet'], {}, 'quiet'),
    (['-q'], {}, 'quiet'),
    ([], {'GITOPSD_RUN_VERBOSE': 'true'}, 'verbose'),
    ([], {'GITOPSD_RUN_DEBUG': 'true'}, 'debug'),
])
def test_verbosity(invoke, real_run, mocker, options, envvars, flag):
    configure = mocker.patch('gitopsd._core.actions.loggers.configure')
    result = invoke(['run'] + options, env=envvars)
    assert result.exit_code == 0
    assert configure.called
    assert configure.call_args[1][flag] is True
    assert real_run.called


def test_default_verbosity(invoke, real_run, mocker):
    configure = mocker.patch('gitopsd._core.actions.loggers.configure')
    result = invoke(['run'])
    assert result.exit_code == 0
    assert configure.call_args[1]['verbose'] is False
    assert configure.call_args[1]['debug'] is False
    assert configure.call_args[1]['quiet'] is False


@pytest.mark.parametrize('value', ['plain', 'full', 'json'])
def test_log_formats(invoke, real_run, mocker, value):
    configure = mocker.patch('gitopsd._core.actions.loggers.configure')
    result = invoke(['run', '--log-format', value])
    assert result.exit_code == 0
    assert configure.call_args[1]['log_format'].name.lower() == value


def test_unknown_log_format(invoke, real_run):
    result = invoke(['run', '--log-format', 'xml'])
    assert result.exit_code != 0
    assert not real_run.called
