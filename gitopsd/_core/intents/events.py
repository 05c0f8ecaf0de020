"""
Canonical events: the one uniform shape of all the change notifications.

The notifiers of every resource kind produce the same canonical events,
which are then serialized per resource key and processed by the workers.
The kind is a tagged variant in the event, not a type of the event.
"""
import dataclasses
import datetime
import enum
from typing import NamedTuple, Optional

from gitopsd._cogs.clients import auth


class ResourceKind(str, enum.Enum):
    DEPLOYMENT = 'GitOpsDeployment'
    SYNC_RUN = 'GitOpsDeploymentSyncRun'
    MANAGED_ENVIRONMENT = 'GitOpsDeploymentManagedEnvironment'
    REPOSITORY_CREDENTIAL = 'GitOpsDeploymentRepositoryCredential'
    SECRET = 'Secret'
    NAMESPACE = 'Namespace'

    def __str__(self) -> str:
        return str(self.value)


class ChangeKind(str, enum.Enum):
    CREATED = 'Created'
    MODIFIED = 'Modified'
    DELETED = 'Deleted'

    def __str__(self) -> str:
        return str(self.value)


class ResourceKey(NamedTuple):
    """ The unit of serialization: at most one worker per key at a time. """
    kind: ResourceKind
    namespace: Optional[str]
    name: str

    def __str__(self) -> str:
        return f'{self.kind}:{self.namespace}/{self.name}' if self.namespace else f'{self.kind}:{self.name}'


@dataclasses.dataclass(frozen=True)
class CanonicalEvent:
    resource_kind: ResourceKind
    namespace: Optional[str]
    name: str
    tenant_key: str
    change_kind: ChangeKind
    received_at: datetime.datetime = dataclasses.field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc))

    # The object's identity as last seen by the notifier, if known.
    # Used to find the mapping when the object is already gone from the API.
    uid: Optional[str] = None

    # The API context the notifier used, if any; the process-wide one otherwise.
    client: Optional[auth.APIContext] = dataclasses.field(default=None, compare=False, repr=False)

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(self.resource_kind, self.namespace, self.name)
