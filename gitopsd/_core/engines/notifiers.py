"""
The change notifiers: thin watch-streams of the served resource kinds.

The notifiers have no business logic. They forward every watch-event
to the normalizer as a notification of a change of an object with that name.
The objects themselves are re-read by the workers when processed.

The namespace notifier is special: it only maintains the index of namespaces,
which is used by the normalizer to resolve the tenants.
"""
import asyncio
import logging
from typing import Mapping, Optional

from gitopsd._cogs.clients import auth, watching
from gitopsd._cogs.configs import configuration
from gitopsd._cogs.structs import bodies, references
from gitopsd._core.intents import events, kinds
from gitopsd._core.reactor import queueing, receiving

logger = logging.getLogger(__name__)

# The initial listing has no type: those objects are seen for the first time.
CHANGE_KINDS: Mapping[Optional[str], events.ChangeKind] = {
    None: events.ChangeKind.CREATED,
    'ADDED': events.ChangeKind.CREATED,
    'MODIFIED': events.ChangeKind.MODIFIED,
    'DELETED': events.ChangeKind.DELETED,
}

NOTIFIED_KINDS = [
    events.ResourceKind.DEPLOYMENT,
    events.ResourceKind.SYNC_RUN,
    events.ResourceKind.MANAGED_ENVIRONMENT,
    events.ResourceKind.REPOSITORY_CREDENTIAL,
    events.ResourceKind.SECRET,
]


async def namespace_notifier(
        *,
        settings: configuration.OperatorSettings,
        namespaces: receiving.NamespaceIndex,
        context: Optional[auth.APIContext] = None,
        _iterations: Optional[int] = None,  # used in tests/mocks/fixtures
) -> None:
    async for raw_event in watching.infinite_watch(
        settings=settings,
        resource=references.NAMESPACES,
        namespace=None,
        context=context,
        _iterations=_iterations,
    ):
        if isinstance(raw_event, watching.Bookmark):
            continue
        body = raw_event['object']
        name = bodies.get_name(body)
        uid = bodies.get_uid(body)
        if name is None or uid is None:
            continue
        if raw_event['type'] == 'DELETED':
            namespaces.discard(name, uid)
            logger.debug(f"Namespace {name!r} is forgotten.")
        else:
            namespaces.update(name, uid)


async def resource_notifier(
        *,
        settings: configuration.OperatorSettings,
        normalizer: receiving.Normalizer,
        resource_kind: events.ResourceKind,
        namespace: references.Namespace = None,
        context: Optional[auth.APIContext] = None,
        _iterations: Optional[int] = None,  # used in tests/mocks/fixtures
) -> None:
    info = kinds.KINDS[resource_kind]
    secret_types = set(settings.watching.secret_types)
    async for raw_event in watching.infinite_watch(
        settings=settings,
        resource=info.resource,
        namespace=namespace,
        context=context,
        _iterations=_iterations,
    ):
        if isinstance(raw_event, watching.Bookmark):
            continue
        body = raw_event['object']
        if resource_kind is events.ResourceKind.SECRET and body.get('type') not in secret_types:
            continue

        name = bodies.get_name(body)
        if name is None:
            continue
        request = receiving.Request(namespace=bodies.get_namespace(body), name=name, uid=bodies.get_uid(body))
        deliver(
            settings=settings,
            normalizer=normalizer,
            request=request,
            resource_kind=resource_kind,
            change_kind=CHANGE_KINDS[raw_event['type']],
            context=context,
        )


def deliver(
        *,
        settings: configuration.OperatorSettings,
        normalizer: receiving.Normalizer,
        request: receiving.Request,
        resource_kind: events.ResourceKind,
        change_kind: events.ChangeKind,
        context: Optional[auth.APIContext] = None,
        attempt: int = 1,
) -> None:
    """
    Hand the notification over to the normalizer, or re-deliver it later.

    The unknown tenant is usually a race with the namespace notifier,
    which has not seen the namespace yet. If it never sees it, the notification
    is dropped after as many attempts as the events are retried.
    """
    try:
        normalizer.receive(request, resource_kind, client=context, change_kind=change_kind)
    except queueing.DispatcherClosedError:
        logger.debug(f"Dropping a notification for {request.name!r}: the dispatcher is closed.")
    except receiving.TenantResolutionError as e:
        max_attempts = settings.retrying.max_attempts
        if max_attempts is not None and attempt >= max_attempts:
            logger.error(f"Dropping a notification for {request.namespace}/{request.name} "
                         f"after {attempt} attempts: {e}")
            return
        logger.debug(f"Re-delivering a notification for {request.namespace}/{request.name} "
                     f"in {settings.intake.retry_delay}s: {e}")
        loop = asyncio.get_running_loop()
        loop.call_later(settings.intake.retry_delay, lambda: deliver(
            settings=settings,
            normalizer=normalizer,
            request=request,
            resource_kind=resource_kind,
            change_kind=change_kind,
            context=context,
            attempt=attempt + 1,
        ))
