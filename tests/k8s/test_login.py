import os

import pytest

from gitopsd._cogs.clients.auth import decode_to_pem, login, login_with_kubeconfig, \
                                       login_with_service_account
from gitopsd._cogs.structs.credentials import LoginError

# As per https://kubernetes.io/docs/tasks/run-application/access-api-from-pod/
NAMESPACE_PATH = '/var/run/secrets/kubernetes.io/serviceaccount/namespace'
SA_TOKEN_PATH = '/var/run/secrets/kubernetes.io/serviceaccount/token'
CA_PATH = '/var/run/secrets/kubernetes.io/serviceaccount/ca.crt'

MINICONFIG = '''
    kind: Config
    current-context: ctx
    contexts:
      - name: ctx
        context:
          cluster: clstr
          user: usr
    clusters:
      - name: clstr
        cluster:
          server: https://hostname:1234/
    users:
      - name: usr
        user:
          token: tkn
'''


def test_serviceaccount_with_all_absent_files(mocker):
    exists_mock = mocker.patch('os.path.exists', return_value=False)
    open_mock = mocker.patch('gitopsd._cogs.clients.auth.open')
    info = login_with_service_account()
    assert info is None
    assert exists_mock.call_args_list[0][0][0] == SA_TOKEN_PATH
    assert not open_mock.called


def test_serviceaccount_with_all_present_files(mocker):
    mocker.patch('os.path.exists', return_value=True)
    open_mock = mocker.patch('gitopsd._cogs.clients.auth.open')
    open_mock.return_value.__enter__.return_value.read.side_effect = [' tkn ', ' ns ']
    info = login_with_service_account()
    assert info is not None
    assert info.server == 'https://kubernetes.default.svc'
    assert info.token == 'tkn'
    assert info.default_namespace == 'ns'
    assert info.ca_path == CA_PATH
    assert [call[0][0] for call in open_mock.call_args_list] == [SA_TOKEN_PATH, NAMESPACE_PATH]


def test_serviceaccount_with_only_the_token(mocker):
    mocker.patch('os.path.exists', side_effect=lambda path: path == SA_TOKEN_PATH)
    open_mock = mocker.patch('gitopsd._cogs.clients.auth.open')
    open_mock.return_value.__enter__.return_value.read.return_value = 'tkn'
    info = login_with_service_account()
    assert info.token == 'tkn'
    assert info.default_namespace is None
    assert info.ca_path is None


def test_kubeconfig_from_envvar(mocker, tmp_path):
    path = tmp_path / 'config'
    path.write_text(MINICONFIG)
    mocker.patch.dict(os.environ, {'KUBECONFIG': str(path)}, clear=True)
    info = login_with_kubeconfig()
    assert info.server == 'https://hostname:1234/'
    assert info.token == 'tkn'


def test_kubeconfig_absent(mocker):
    mocker.patch('os.path.exists', return_value=False)
    mocker.patch.dict(os.environ, {}, clear=True)
    assert login_with_kubeconfig() is None


def test_login_prefers_the_serviceaccount(mocker, logger):
    sa = mocker.patch('gitopsd._cogs.clients.auth.login_with_service_account')
    kc = mocker.patch('gitopsd._cogs.clients.auth.login_with_kubeconfig')
    info = login(logger=logger)
    assert info is sa.return_value
    assert not kc.called


def test_login_falls_back_to_kubeconfig(mocker, logger):
    mocker.patch('gitopsd._cogs.clients.auth.login_with_service_account', return_value=None)
    kc = mocker.patch('gitopsd._cogs.clients.auth.login_with_kubeconfig')
    info = login(logger=logger)
    assert info is kc.return_value


def test_login_fails_with_nothing(mocker, logger):
    mocker.patch('gitopsd._cogs.clients.auth.login_with_service_account', return_value=None)
    mocker.patch('gitopsd._cogs.clients.auth.login_with_kubeconfig', return_value=None)
    with pytest.raises(LoginError):
        login(logger=logger)


@pytest.mark.parametrize('data', [
    '-----BEGIN CERTIFICATE-----\nxyz\n',
    b'-----BEGIN CERTIFICATE-----\nxyz\n',
    'LS0tLS1CRUdJTiBDRVJUSUZJQ0FURS0tLS0tCnh5ego=',
], ids=['str', 'bytes', 'base64'])
def test_pem_decoding(data):
    assert decode_to_pem(data).startswith('-----BEGIN CERTIFICATE-----\nxyz')
