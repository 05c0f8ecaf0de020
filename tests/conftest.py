import asyncio
import base64
import copy
import dataclasses
import logging
import re
import time
import uuid
from typing import Any, Dict, List, Mapping, Optional, Tuple

import pytest

from gitopsd._cogs.clients import auth, errors
from gitopsd._cogs.configs.configuration import OperatorSettings
from gitopsd._cogs.storage.connections import Database
from gitopsd._cogs.structs.credentials import ConnectionInfo
from gitopsd._core.intents.events import CanonicalEvent, ChangeKind, ResourceKind


# Make all tests in this directory and below asyncio-compatible by default.
# Due to how pytest-async checks for these markers, they should be added as early as possible.
@pytest.hookimpl(hookwrapper=True)
def pytest_pycollect_makeitem(collector, name, obj):
    if collector.funcnamefilter(name) and asyncio.iscoroutinefunction(obj):
        pytest.mark.asyncio(obj)
    yield


@pytest.fixture()
def settings(tmp_path):
    """ The settings with the timings shortened, so that the tests run fast. """
    settings = OperatorSettings()
    settings.networking.error_backoffs = []
    settings.watching.reconnect_backoff = 0
    settings.queueing.idle_timeout = 0.1
    settings.queueing.exit_timeout = 1.0
    settings.retrying.backoffs = [0]
    settings.intake.retry_delay = 0.01
    settings.database.path = tmp_path / 'gitopsd.sqlite'
    settings.database.pool_size = 2
    settings.engine.namespace = 'engine'
    settings.engine.poll_interval = 0.01
    settings.engine.operation_timeout = 0.05
    settings.engine.refresh_delay = 10
    return settings


@pytest.fixture()
async def database(settings):
    db = Database(path=settings.database.path, pool_size=settings.database.pool_size)
    async with db:
        yield db


@pytest.fixture()
def logger():
    return logging.getLogger('gitopsd.tests')


@pytest.fixture()
def event_factory():
    """ A factory of canonical events with reasonable defaults for the tests. """
    def make_event(
            name: str = 'name1',
            *,
            resource_kind: ResourceKind = ResourceKind.DEPLOYMENT,
            change_kind: ChangeKind = ChangeKind.MODIFIED,
            namespace: Optional[str] = 'ns1',
            tenant_key: str = 'tenant-uid-1',
            uid: Optional[str] = None,
    ) -> CanonicalEvent:
        return CanonicalEvent(
            resource_kind=resource_kind,
            namespace=namespace,
            name=name,
            uid=uid,
            tenant_key=tenant_key,
            change_kind=change_kind,
        )
    return make_event


#
# Mocks for the Kubernetes API: either at the HTTP level (for the clients),
# or at the level of the client functions (for everything above them).
#

@pytest.fixture()
def hostname():
    """ A fake hostname to be used in all aiohttp/aresponses tests. """
    return 'fake-host'


@pytest.fixture()
async def fake_context(hostname):
    """
    Provide a freshly created API context for every test, as the running
    control plane does. The requests go to the fake host only.
    """
    context = auth.APIContext(ConnectionInfo(server=f'http://{hostname}'))
    token = auth.context_var.set(context)
    try:
        yield context
    finally:
        auth.context_var.reset(token)
        await context.close()


ObjectKey = Tuple[str, Optional[str], str]


def _merge(target: Dict[str, Any], patch: Mapping[str, Any]) -> None:
    for key, value in patch.items():
        if value is None:
            target.pop(key, None)
        elif isinstance(value, Mapping) and isinstance(target.get(key), Mapping):
            _merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)


class FakeCluster:
    """
    An in-memory API server, good enough for the reconciliation logic.

    The objects are stored by their plural names, namespaces, and names;
    every newly created object gets a new UID. All the returned bodies
    are copies, so the stored objects can only be changed via the API.
    """

    def __init__(self) -> None:
        super().__init__()
        self.objects: Dict[ObjectKey, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str, Optional[str], Optional[str]]] = []

    def add(self, resource, body: Mapping[str, Any]) -> Dict[str, Any]:
        obj = copy.deepcopy(dict(body))
        meta = obj.setdefault('metadata', {})
        meta.setdefault('uid', str(uuid.uuid4()))
        obj.setdefault('apiVersion', resource.api_version)
        obj.setdefault('kind', resource.kind)
        self.objects[(resource.plural, meta.get('namespace'), meta['name'])] = obj
        return copy.deepcopy(obj)

    def get(self, resource, namespace: Optional[str], name: str) -> Optional[Dict[str, Any]]:
        return self.objects.get((resource.plural, namespace, name))

    def remove(self, resource, namespace: Optional[str], name: str) -> Optional[Dict[str, Any]]:
        return self.objects.pop((resource.plural, namespace, name), None)

    def list(self, resource, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        return [obj for (plural, ns, _), obj in self.objects.items()
                if plural == resource.plural and (namespace is None or ns == namespace)]

    def names(self, resource, namespace: Optional[str] = None) -> List[str]:
        return sorted(obj['metadata']['name'] for obj in self.list(resource, namespace))

    async def read_obj(self, *, resource, namespace, name, **_: Any):
        self.calls.append(('read', resource.plural, namespace, name))
        obj = self.get(resource, namespace, name)
        return copy.deepcopy(obj) if obj is not None else None

    async def list_objs(self, *, resource, namespace, **_: Any):
        self.calls.append(('list', resource.plural, namespace, None))
        return [copy.deepcopy(obj) for obj in self.list(resource, namespace)], '1'

    async def create_obj(self, *, resource, namespace=None, name=None, body=None, **_: Any):
        body = copy.deepcopy(body) if body is not None else {}
        meta = body.setdefault('metadata', {})
        if namespace is not None:
            meta.setdefault('namespace', namespace)
        if name is not None:
            meta.setdefault('name', name)
        self.calls.append(('create', resource.plural, meta.get('namespace'), meta.get('name')))
        if self.get(resource, meta.get('namespace'), meta['name']) is not None:
            raise errors.APIConflictError({'kind': 'Status', 'code': 409}, status=409)
        meta.pop('uid', None)
        return self.add(resource, body)

    async def patch_obj(self, *, resource, namespace, name, patch, **_: Any):
        self.calls.append(('patch', resource.plural, namespace, name))
        obj = self.get(resource, namespace, name)
        if obj is None:
            return None
        _merge(obj, patch)
        return copy.deepcopy(obj)

    async def replace_obj(self, *, resource, namespace, name, body, **_: Any):
        self.calls.append(('replace', resource.plural, namespace, name))
        obj = self.get(resource, namespace, name)
        if obj is None:
            return None
        replaced = copy.deepcopy(dict(body))
        replaced.setdefault('metadata', {})['uid'] = obj['metadata']['uid']
        if 'status' in obj:
            replaced['status'] = obj['status']
        return self.add(resource, replaced)

    async def delete_obj(self, *, resource, namespace, name, **_: Any):
        self.calls.append(('delete', resource.plural, namespace, name))
        return self.remove(resource, namespace, name) is not None


@pytest.fixture()
def fake_cluster(mocker):
    cluster = FakeCluster()
    mocker.patch('gitopsd._cogs.clients.fetching.read_obj', side_effect=cluster.read_obj)
    mocker.patch('gitopsd._cogs.clients.fetching.list_objs', side_effect=cluster.list_objs)
    mocker.patch('gitopsd._cogs.clients.creating.create_obj', side_effect=cluster.create_obj)
    mocker.patch('gitopsd._cogs.clients.patching.patch_obj', side_effect=cluster.patch_obj)
    mocker.patch('gitopsd._cogs.clients.patching.replace_obj', side_effect=cluster.replace_obj)
    mocker.patch('gitopsd._cogs.clients.deleting.delete_obj', side_effect=cluster.delete_obj)
    return cluster


#
# Helpers for the timing checks.
#

@pytest.fixture()
def timer():
    return Timer()


class Timer(object):
    """
    A helper context manager to measure the time of the code-blocks.
    Also, supports direct comparison with time-deltas and the numbers of seconds.

    Usage:

        with Timer() as timer:
            do_something()
            print(f"Executing for {timer.seconds}s already.")
            do_something_else()

        print(f"Executed in {timer.seconds}s.")
        assert timer < 5.0
    """

    def __init__(self):
        super().__init__()
        self._ts = None
        self._te = None

    @property
    def seconds(self):
        if self._ts is None:
            return None
        elif self._te is None:
            return time.perf_counter() - self._ts
        else:
            return self._te - self._ts

    def __repr__(self):
        status = 'new' if self._ts is None else 'running' if self._te is None else 'finished'
        return f'<Timer: {self.seconds}s ({status})>'

    def __enter__(self):
        self._ts = time.perf_counter()
        self._te = None
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self._te = time.perf_counter()

    async def __aenter__(self):
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return self.__exit__(exc_type, exc_val, exc_tb)

    def __int__(self):
        return int(self.seconds)

    def __float__(self):
        return float(self.seconds)


#
# Helpers for the logging checks.
#

@pytest.fixture()
def assert_logs(caplog):
    """
    A function to assert the logs are present (by pattern).

    The listed message patterns MUST be present, in the order specified.
    Some other log messages can also be present, but they are ignored.
    """
    caplog.set_level(logging.DEBUG)

    def assert_logs_fn(patterns, prohibited=[]):
        __traceback_hide__ = True
        remaining_patterns = list(patterns)
        for message in caplog.messages:
            if remaining_patterns and re.search(remaining_patterns[0], message):
                remaining_patterns[:1] = []
            for pattern in prohibited:
                if re.search(pattern, message):
                    raise AssertionError(f"Prohibited log pattern found: {message!r} ~ {pattern!r}")
        if remaining_patterns:
            raise AssertionError(f"Few patterns were missed: {remaining_patterns!r}")

    return assert_logs_fn


@dataclasses.dataclass()
class Submissions:
    """ A collector of the re-submitted events, instead of the real dispatcher. """
    events: List[CanonicalEvent] = dataclasses.field(default_factory=list)

    def __call__(self, event: CanonicalEvent) -> None:
        self.events.append(event)

    @property
    def keys(self):
        return [event.key for event in self.events]


@pytest.fixture()
def submit():
    return Submissions()


TARGET_SERVER = 'https://target.example.com:6443'

TARGET_KUBECONFIG = f"""
apiVersion: v1
kind: Config
current-context: target
clusters:
  - name: target
    cluster:
      server: {TARGET_SERVER}
      certificate-authority-data: Y2EtZGF0YQ==
contexts:
  - name: target
    context: {{cluster: target, user: admin}}
users:
  - name: admin
    user: {{token: secret-token}}
"""


@pytest.fixture()
def secret_factory():
    """ A factory of the secrets in the shape the API returns them (base64-encoded data). """
    def make_secret(
            name: str = 'creds1',
            *,
            namespace: str = 'ns1',
            type: str = 'managed-gitops.redhat.com/managed-environment',
            **data: str,
    ) -> Dict[str, Any]:
        if not data and type == 'managed-gitops.redhat.com/managed-environment':
            data = {'kubeconfig': TARGET_KUBECONFIG}
        return {
            'metadata': {'name': name, 'namespace': namespace},
            'type': type,
            'data': {key: base64.b64encode(val.encode('utf-8')).decode('ascii')
                     for key, val in data.items()},
        }
    return make_secret


@pytest.fixture()
def target_server():
    """ The API URL of the managed environments, as in the secrets' kubeconfigs. """
    return TARGET_SERVER
