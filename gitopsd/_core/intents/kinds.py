"""
The fixed set of resource kinds served by the control plane.

Every kind is described once here: which API resource it is, and which
durable entity (if any) stands behind its objects.
"""
import dataclasses
from typing import Mapping, Optional

from gitopsd._cogs.storage import entities
from gitopsd._cogs.structs import references
from gitopsd._core.intents import events


@dataclasses.dataclass(frozen=True)
class KindInfo:
    kind: events.ResourceKind
    resource: references.Resource
    relation_type: Optional[str]  # None for the kinds with no entities behind them.


KINDS: Mapping[events.ResourceKind, KindInfo] = {
    events.ResourceKind.DEPLOYMENT: KindInfo(
        kind=events.ResourceKind.DEPLOYMENT,
        resource=references.GITOPSDEPLOYMENTS,
        relation_type=entities.APPLICATION,
    ),
    events.ResourceKind.SYNC_RUN: KindInfo(
        kind=events.ResourceKind.SYNC_RUN,
        resource=references.GITOPSDEPLOYMENTSYNCRUNS,
        relation_type=entities.SYNC_OPERATION,
    ),
    events.ResourceKind.MANAGED_ENVIRONMENT: KindInfo(
        kind=events.ResourceKind.MANAGED_ENVIRONMENT,
        resource=references.MANAGED_ENVIRONMENTS,
        relation_type=entities.MANAGED_ENVIRONMENT,
    ),
    events.ResourceKind.REPOSITORY_CREDENTIAL: KindInfo(
        kind=events.ResourceKind.REPOSITORY_CREDENTIAL,
        resource=references.REPOSITORY_CREDENTIALS,
        relation_type=entities.REPOSITORY_CREDENTIAL,
    ),
    events.ResourceKind.SECRET: KindInfo(
        kind=events.ResourceKind.SECRET,
        resource=references.SECRETS,
        relation_type=None,
    ),
    events.ResourceKind.NAMESPACE: KindInfo(
        kind=events.ResourceKind.NAMESPACE,
        resource=references.NAMESPACES,
        relation_type=None,
    ),
}
