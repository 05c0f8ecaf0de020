import aiohttp.web
import pytest

from gitopsd._cogs.clients.errors import APIError
from gitopsd._cogs.clients.fetching import list_objs, read_obj
from gitopsd._cogs.structs.references import GITOPSDEPLOYMENTS, NAMESPACES

DEPLOYMENTS_URL = '/apis/managed-gitops.redhat.com/v1alpha1/namespaces/ns1/gitopsdeployments'


async def test_reading_an_existing_object(aresponses, hostname, settings, logger):
    aresponses.add(hostname, f'{DEPLOYMENTS_URL}/name1', 'get',
                   aiohttp.web.json_response({'metadata': {'name': 'name1', 'uid': 'uid1'}}))

    body = await read_obj(settings=settings, resource=GITOPSDEPLOYMENTS,
                          namespace='ns1', name='name1', logger=logger)

    assert body == {'metadata': {'name': 'name1', 'uid': 'uid1'}}


async def test_reading_an_absent_object(aresponses, hostname, settings, logger):
    aresponses.add(hostname, f'{DEPLOYMENTS_URL}/name1', 'get',
                   aresponses.Response(status=404))

    body = await read_obj(settings=settings, resource=GITOPSDEPLOYMENTS,
                          namespace='ns1', name='name1', logger=logger)

    assert body is None


@pytest.mark.parametrize('status', [400, 401, 403, 500, 666])
async def test_reading_escalates_other_errors(aresponses, hostname, settings, logger, status):
    aresponses.add(hostname, f'{DEPLOYMENTS_URL}/name1', 'get',
                   aresponses.Response(status=status))

    with pytest.raises(APIError) as err:
        await read_obj(settings=settings, resource=GITOPSDEPLOYMENTS,
                       namespace='ns1', name='name1', logger=logger)

    assert err.value.status == status


async def test_reading_retries_the_server_errors(aresponses, hostname, settings, logger):
    settings.networking.error_backoffs = [0, 0]
    aresponses.add(hostname, f'{DEPLOYMENTS_URL}/name1', 'get', aresponses.Response(status=502))
    aresponses.add(hostname, f'{DEPLOYMENTS_URL}/name1', 'get', aresponses.Response(status=503))
    aresponses.add(hostname, f'{DEPLOYMENTS_URL}/name1', 'get',
                   aiohttp.web.json_response({'metadata': {'name': 'name1'}}))

    body = await read_obj(settings=settings, resource=GITOPSDEPLOYMENTS,
                          namespace='ns1', name='name1', logger=logger)

    assert body == {'metadata': {'name': 'name1'}}


async def test_listing_in_a_namespace(aresponses, hostname, settings, logger):
    aresponses.add(hostname, DEPLOYMENTS_URL, 'get', aiohttp.web.json_response({
        'apiVersion': 'managed-gitops.redhat.com/v1alpha1',
        'kind': 'GitOpsDeploymentList',
        'metadata': {'resourceVersion': '123'},
        'items': [{'metadata': {'name': 'name1'}}, {'metadata': {'name': 'name2'}}],
    }))

    items, resource_version = await list_objs(settings=settings, resource=GITOPSDEPLOYMENTS,
                                              namespace='ns1', logger=logger)

    assert resource_version == '123'
    assert [item['metadata']['name'] for item in items] == ['name1', 'name2']
    assert all(item['kind'] == 'GitOpsDeployment' for item in items)
    assert all(item['apiVersion'] == 'managed-gitops.redhat.com/v1alpha1' for item in items)


async def test_listing_cluster_wide(aresponses, hostname, settings, logger):
    aresponses.add(hostname, '/api/v1/namespaces', 'get', aiohttp.web.json_response({
        'metadata': {'resourceVersion': '456'},
        'items': [{'metadata': {'name': 'ns1'}}],
    }))

    items, resource_version = await list_objs(settings=settings, resource=NAMESPACES,
                                              namespace=None, logger=logger)

    assert resource_version == '456'
    assert list(items) == [{'metadata': {'name': 'ns1'}}]
