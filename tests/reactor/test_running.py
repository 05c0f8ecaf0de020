import asyncio

import pytest

from gitopsd._cogs.storage import mappings
from gitopsd._cogs.structs.references import GITOPSDEPLOYMENTS
from gitopsd._core.engines import notifiers
from gitopsd._core.intents.events import ChangeKind, ResourceKind
from gitopsd._core.reactor import running
from gitopsd._core.reactor.receiving import Request


@pytest.fixture()
def stop_flag():
    return asyncio.Event()


async def test_serving_until_stopped(settings, database, stop_flag, mocker, timer):
    async def idle_notifier(**_):
        await asyncio.Event().wait()

    namespace_notifier = mocker.patch.object(notifiers, 'namespace_notifier', side_effect=idle_notifier)
    resource_notifier = mocker.patch.object(notifiers, 'resource_notifier', side_effect=idle_notifier)
    asyncio.get_running_loop().call_later(0.1, stop_flag.set)

    async with timer:
        await running.serve(settings=settings, database=database, stop_flag=stop_flag)

    assert timer.seconds < 1.0
    assert namespace_notifier.call_count == 1
    assert resource_notifier.call_count == len(notifiers.NOTIFIED_KINDS)
    served_kinds = {call.kwargs['resource_kind'] for call in resource_notifier.call_args_list}
    assert served_kinds == set(notifiers.NOTIFIED_KINDS)


async def test_namespace_is_passed_to_the_notifiers(settings, database, stop_flag, mocker):
    async def idle_notifier(**_):
        await asyncio.Event().wait()

    mocker.patch.object(notifiers, 'namespace_notifier', side_effect=idle_notifier)
    resource_notifier = mocker.patch.object(notifiers, 'resource_notifier', side_effect=idle_notifier)
    stop_flag.set()

    await running.serve(settings=settings, database=database, namespace='ns1', stop_flag=stop_flag)

    assert all(call.kwargs['namespace'] == 'ns1' for call in resource_notifier.call_args_list)


async def test_notifications_are_reconciled(settings, database, stop_flag, mocker, fake_cluster):
    body = fake_cluster.add(GITOPSDEPLOYMENTS, {
        'metadata': {'namespace': 'ns1', 'name': 'app1'},
        'spec': {'source': {'repoURL': 'https://github.com/example/app.git'}, 'type': 'manual'},
    })

    async def namespace_notifier(*, namespaces, **_):
        namespaces.update('ns1', 'uid-ns1')
        await asyncio.Event().wait()

    async def resource_notifier(*, settings, normalizer, resource_kind, context=None, **_):
        if resource_kind is ResourceKind.DEPLOYMENT:
            notifiers.deliver(
                settings=settings,
                normalizer=normalizer,
                request=Request('ns1', 'app1', uid=body['metadata']['uid']),
                resource_kind=resource_kind,
                change_kind=ChangeKind.CREATED,
                context=context,
            )
        await asyncio.Event().wait()

    mocker.patch.object(notifiers, 'namespace_notifier', side_effect=namespace_notifier)
    mocker.patch.object(notifiers, 'resource_notifier', side_effect=resource_notifier)
    asyncio.get_running_loop().call_later(0.3, stop_flag.set)

    await running.serve(settings=settings, database=database, stop_flag=stop_flag)

    [mapping] = await database.run(mappings.list_all)
    assert mapping.api_resource_uid == body['metadata']['uid']
    assert mapping.db_relation_key
    assert fake_cluster.get(GITOPSDEPLOYMENTS, 'ns1', 'app1')['status']['sync']['status'] == 'Unknown'


async def test_failed_notifier_stops_the_control_plane(settings, database, mocker):
    async def idle_notifier(**_):
        await asyncio.Event().wait()

    async def failing_notifier(**_):
        raise ValueError('boo!')

    mocker.patch.object(notifiers, 'namespace_notifier', side_effect=failing_notifier)
    mocker.patch.object(notifiers, 'resource_notifier', side_effect=idle_notifier)

    with pytest.raises(ValueError, match='boo!'):
        await running.serve(settings=settings, database=database)
