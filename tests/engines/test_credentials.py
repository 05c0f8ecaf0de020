import json

import pytest

from gitopsd._cogs.structs.references import SECRETS
from gitopsd._core.actions.execution import ErrorKind, classify
from gitopsd._core.engines import credentials
from gitopsd._core.engines.credentials import CredentialsError

OTHER_KUBECONFIG = """
clusters:
  - name: other
    cluster: {server: 'https://other.example.com'}
contexts:
  - name: other
    context: {cluster: other, user: nobody}
users:
  - name: nobody
    user: {}
"""

FILES_KUBECONFIG = """
clusters:
  - name: target
    cluster: {server: 'https://files.example.com', certificate-authority: /etc/ca.pem}
contexts:
  - name: target
    context: {cluster: target, user: admin}
users:
  - name: admin
    user: {token: secret-token}
"""


@pytest.fixture()
def creds(secret_factory, target_server):
    return credentials.extract(secret_factory(), api_url=target_server)


def test_extracting_the_material(secret_factory, target_server):
    creds = credentials.extract(secret_factory(), api_url=target_server)
    assert creds.server == target_server
    assert creds.config == {
        'tlsClientConfig': {'insecure': False, 'caData': 'Y2EtZGF0YQ=='},
        'bearerToken': 'secret-token',
    }


def test_extracting_with_a_trailing_slash(secret_factory, target_server):
    creds = credentials.extract(secret_factory(), api_url=target_server + '/')
    assert creds.config['bearerToken'] == 'secret-token'


def test_insecure_flag_is_propagated(secret_factory, target_server):
    creds = credentials.extract(secret_factory(), api_url=target_server, insecure=True)
    assert creds.config['tlsClientConfig']['insecure'] is True


def test_secrets_are_never_in_the_repr(creds):
    assert 'secret-token' not in repr(creds)


def test_digest_follows_the_material(secret_factory, target_server):
    creds1 = credentials.extract(secret_factory(), api_url=target_server)
    creds2 = credentials.extract(secret_factory(), api_url=target_server)
    creds3 = credentials.extract(secret_factory(), api_url=target_server, insecure=True)
    assert creds1.digest == creds2.digest
    assert creds1.digest != creds3.digest


@pytest.mark.parametrize('kwargs, match', [
    (dict(type='Opaque', kubeconfig='irrelevant'), r"must be of type"),
    (dict(other='value'), r"has no 'kubeconfig' key"),
    (dict(kubeconfig=OTHER_KUBECONFIG), r"not usable"),
    (dict(kubeconfig='a: [b'), r"not usable"),
    (dict(kubeconfig=FILES_KUBECONFIG.replace('files.example.com', 'target.example.com:6443')),
     r"local files"),
])
def test_unusable_secrets(secret_factory, target_server, kwargs, match):
    with pytest.raises(CredentialsError, match=match):
        credentials.extract(secret_factory(**kwargs), api_url=target_server)


def test_no_material_for_the_server(secret_factory):
    kubeconfig = OTHER_KUBECONFIG
    with pytest.raises(CredentialsError, match=r"no credentials"):
        credentials.extract(secret_factory(kubeconfig=kubeconfig), api_url='https://other.example.com')


def test_invalid_base64_data():
    secret = {'type': credentials.MANAGED_ENVIRONMENT_SECRET_TYPE, 'data': {'kubeconfig': 'abc'}}
    with pytest.raises(CredentialsError, match=r"not a valid base64"):
        credentials.extract(secret, api_url='https://example.com')


def test_credentials_error_is_permanent():
    assert classify(CredentialsError()) == ErrorKind.PERMANENT


def test_artifact_is_named_after_the_entity(settings, creds, target_server):
    body = credentials.build_artifact(settings=settings, entity_id='entity-1', creds=creds)
    assert body['metadata']['name'] == 'managed-env-entity-1'
    assert body['metadata']['namespace'] == 'engine'
    assert body['metadata']['labels'] == {
        'argocd.argoproj.io/secret-type': 'cluster',
        'managed-gitops.redhat.com/managed-environment-id': 'entity-1',
    }
    assert body['metadata']['annotations'] == {
        'managed-gitops.redhat.com/credentials-digest': creds.digest,
    }
    assert body['stringData']['server'] == target_server
    assert json.loads(body['stringData']['config']) == creds.config


async def test_reading_an_absent_secret(settings, logger, fake_cluster, target_server):
    with pytest.raises(CredentialsError, match=r"not found"):
        await credentials.read_credentials(settings=settings, namespace='ns1', secret_name='absent',
                                           api_url=target_server, logger=logger)


async def test_reading_a_secret(settings, logger, fake_cluster, secret_factory, target_server):
    fake_cluster.add(SECRETS, secret_factory('creds1'))
    creds = await credentials.read_credentials(settings=settings, namespace='ns1', secret_name='creds1',
                                               api_url=target_server, logger=logger)
    assert creds.server == target_server


async def test_artifact_is_created(settings, logger, fake_cluster, creds):
    changed = await credentials.ensure_artifact(settings=settings, entity_id='entity-1',
                                                creds=creds, logger=logger)
    assert changed
    assert fake_cluster.names(SECRETS, 'engine') == ['managed-env-entity-1']


async def test_unchanged_artifact_is_left_as_is(settings, logger, fake_cluster, creds):
    await credentials.ensure_artifact(settings=settings, entity_id='entity-1', creds=creds, logger=logger)
    fake_cluster.calls.clear()

    changed = await credentials.ensure_artifact(settings=settings, entity_id='entity-1',
                                                creds=creds, logger=logger)
    assert not changed
    assert [call[0] for call in fake_cluster.calls] == ['read']


async def test_rotated_artifact_is_deleted_and_recreated(settings, logger, fake_cluster, creds,
                                                         secret_factory, target_server):
    await credentials.ensure_artifact(settings=settings, entity_id='entity-1', creds=creds, logger=logger)
    uid = fake_cluster.get(SECRETS, 'engine', 'managed-env-entity-1')['metadata']['uid']
    fake_cluster.calls.clear()

    insecure = credentials.extract(secret_factory(), api_url=target_server, insecure=True)
    changed = await credentials.ensure_artifact(settings=settings, entity_id='entity-1',
                                                creds=insecure, logger=logger)

    assert changed
    assert [call[0] for call in fake_cluster.calls] == ['read', 'delete', 'create']
    artifact = fake_cluster.get(SECRETS, 'engine', 'managed-env-entity-1')
    assert artifact['metadata']['uid'] != uid
    assert artifact['metadata']['annotations'][credentials.DIGEST_ANNOTATION] == insecure.digest


async def test_artifact_created_in_parallel_is_replaced(settings, logger, fake_cluster, creds, mocker):
    await credentials.ensure_artifact(settings=settings, entity_id='entity-1', creds=creds, logger=logger)
    uid = fake_cluster.get(SECRETS, 'engine', 'managed-env-entity-1')['metadata']['uid']
    mocker.patch('gitopsd._cogs.clients.fetching.read_obj', mocker.AsyncMock(return_value=None))
    fake_cluster.calls.clear()

    changed = await credentials.ensure_artifact(settings=settings, entity_id='entity-1',
                                                creds=creds, logger=logger)

    assert changed
    assert [call[0] for call in fake_cluster.calls] == ['create', 'replace']
    assert fake_cluster.get(SECRETS, 'engine', 'managed-env-entity-1')['metadata']['uid'] == uid


async def test_artifact_is_deleted(settings, logger, fake_cluster, creds):
    await credentials.ensure_artifact(settings=settings, entity_id='entity-1', creds=creds, logger=logger)
    deleted = await credentials.delete_artifact(settings=settings, entity_id='entity-1', logger=logger)
    assert deleted
    assert fake_cluster.names(SECRETS, 'engine') == []


async def test_absent_artifact_deletion_is_not_an_error(settings, logger, fake_cluster):
    deleted = await credentials.delete_artifact(settings=settings, entity_id='entity-1', logger=logger)
    assert not deleted
