"""
The normalization of the change notifications into the canonical events.

The normalizer is the only entry point of the notifications into the core.
It never blocks and never does any I/O: the tenant key is resolved from
the in-memory index of the namespaces, which is maintained by the namespace
notifier; the event is put onto the dispatcher's intake without waiting.
"""
import dataclasses
import logging
from typing import Dict, Iterator, Optional

from gitopsd._cogs.clients import auth
from gitopsd._core.actions import execution
from gitopsd._core.intents import events
from gitopsd._core.reactor import queueing

logger = logging.getLogger(__name__)


class TenantResolutionError(execution.TemporaryError):
    """
    Raised when the namespace of the notification is not known (yet).

    It is usually a race between the namespace's and the object's notifiers.
    The notification should be re-delivered a bit later.
    """


class NamespaceIndex:
    """
    An in-memory index of the namespaces' immutable identities by their names.

    A deleted-and-recreated namespace gets a new UID, and so a new tenant key.
    """

    def __init__(self) -> None:
        super().__init__()
        self._uids: Dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._uids)

    def __iter__(self) -> Iterator[str]:
        return iter(self._uids)

    def __contains__(self, name: object) -> bool:
        return name in self._uids

    def update(self, name: str, uid: str) -> None:
        self._uids[name] = uid

    def discard(self, name: str, uid: Optional[str] = None) -> None:
        # A late deletion of the old namespace must not forget the new one with the same name.
        if uid is None or self._uids.get(name) == uid:
            self._uids.pop(name, None)

    def resolve(self, name: str) -> Optional[str]:
        return self._uids.get(name)


@dataclasses.dataclass(frozen=True)
class Request:
    """ A raw notification: something has happened to an object with this name. """
    namespace: Optional[str]
    name: str
    uid: Optional[str] = None


class Normalizer:

    def __init__(
            self,
            *,
            dispatcher: queueing.Dispatcher,
            namespaces: NamespaceIndex,
    ) -> None:
        super().__init__()
        self.dispatcher = dispatcher
        self.namespaces = namespaces

    def receive(
            self,
            request: Request,
            resource_kind: events.ResourceKind,
            client: Optional[auth.APIContext] = None,
            change_kind: events.ChangeKind = events.ChangeKind.MODIFIED,
            tenant_key: Optional[str] = None,
    ) -> events.CanonicalEvent:
        """
        Convert a notification to a canonical event and enqueue it.

        Raises :class:`TenantResolutionError` if the tenant cannot be resolved;
        nothing is enqueued in that case.
        """
        if tenant_key is None and request.namespace is not None:
            tenant_key = self.namespaces.resolve(request.namespace)
        if tenant_key is None:
            raise TenantResolutionError(f"Namespace {request.namespace!r} is not known (yet).")

        event = events.CanonicalEvent(
            resource_kind=resource_kind,
            namespace=request.namespace,
            name=request.name,
            uid=request.uid,
            tenant_key=tenant_key,
            change_kind=change_kind,
            client=client,
        )
        self.dispatcher.submit(event)
        logger.debug(f"Received a {change_kind} notification for {event.key}.")
        return event
