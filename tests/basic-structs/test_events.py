import datetime

from gitopsd._core.intents.events import CanonicalEvent, ChangeKind, ResourceKey, ResourceKind
from gitopsd._core.intents.kinds import KINDS


def test_event_key_is_the_kind_namespace_and_name():
    event = CanonicalEvent(
        resource_kind=ResourceKind.DEPLOYMENT,
        namespace='ns1',
        name='name1',
        tenant_key='tenant1',
        change_kind=ChangeKind.CREATED,
    )
    assert event.key == ResourceKey(ResourceKind.DEPLOYMENT, 'ns1', 'name1')
    assert event.uid is None
    assert event.client is None
    assert isinstance(event.received_at, datetime.datetime)
    assert event.received_at.tzinfo is not None


def test_event_keys_ignore_the_tenants_and_the_change_kinds():
    event1 = CanonicalEvent(ResourceKind.SECRET, 'ns1', 's1', 'tenant1', ChangeKind.CREATED)
    event2 = CanonicalEvent(ResourceKind.SECRET, 'ns1', 's1', 'tenant2', ChangeKind.DELETED)
    assert event1.key == event2.key


def test_key_strings():
    assert str(ResourceKey(ResourceKind.SECRET, 'ns1', 's1')) == 'Secret:ns1/s1'
    assert str(ResourceKey(ResourceKind.NAMESPACE, None, 'ns1')) == 'Namespace:ns1'


def test_kinds_are_all_described():
    assert set(KINDS) == set(ResourceKind)
    for kind, info in KINDS.items():
        assert info.kind is kind
        assert info.resource.kind == kind.value


def test_only_the_custom_resources_have_entities():
    with_entities = {kind for kind, info in KINDS.items() if info.relation_type is not None}
    assert with_entities == {
        ResourceKind.DEPLOYMENT,
        ResourceKind.SYNC_RUN,
        ResourceKind.MANAGED_ENVIRONMENT,
        ResourceKind.REPOSITORY_CREDENTIAL,
    }
