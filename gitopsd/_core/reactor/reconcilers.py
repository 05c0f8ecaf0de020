"""
The per-kind specifics of the reconciliation.

The worker's state machine is written once (see :mod:`processing`), generic
over the resource kinds. Everything that differs between the kinds is here:
how the spec's essence and the claimed target are derived from the object,
which side-effects follow the entity's changes, when the engine is involved,
what is written back to the status, and which other keys must be re-queued.

The reconcilers never mutate the entities of other keys. To propagate
a change to other objects, they submit ``Modified`` events for their keys.
"""
import dataclasses
from typing import Any, Callable, ClassVar, Collection, Dict, Mapping, Optional, Sequence

from sqlalchemy.engine import Connection

from gitopsd._cogs.clients import auth, fetching
from gitopsd._cogs.configs import configuration
from gitopsd._cogs.helpers import typedefs
from gitopsd._cogs.storage import connections, entities, mappings
from gitopsd._cogs.storage.operations import OperationState
from gitopsd._cogs.structs import bodies, references
from gitopsd._core.actions import execution
from gitopsd._core.engines import credentials, operations
from gitopsd._core.intents import events, kinds
from gitopsd._core.reactor import queueing

LOCAL_ENVIRONMENT = 'local'
AUTOMATED = 'automated'
MANUAL = 'manual'

SYNC_UNKNOWN = 'Unknown'
SYNC_SYNCED = 'Synced'
SYNC_OUT_OF_SYNC = 'OutOfSync'


class InvalidSpecError(execution.PermanentError):
    reason = 'InvalidSpec'


class ReferenceNotFoundError(execution.PermanentError):
    reason = 'ReferenceNotFound'


@dataclasses.dataclass(frozen=True)
class Cause:
    """ Everything needed to reconcile one event of one key. """
    event: events.CanonicalEvent
    settings: configuration.OperatorSettings
    database: connections.Database
    logger: typedefs.Logger
    submit: Callable[[events.CanonicalEvent], None]

    @property
    def info(self) -> kinds.KindInfo:
        return kinds.KINDS[self.event.resource_kind]

    @property
    def context(self) -> Optional[auth.APIContext]:
        return self.event.client


@dataclasses.dataclass(frozen=True)
class Description:
    """
    What the entity must look like for the current state of the object.

    The material is what the side-effects need besides the essence
    (e.g. the decoded credentials); it is never stored.
    """
    spec: Mapping[str, Any]
    target_key: Optional[str]
    material: Optional[Any] = None


async def read_related(
        cause: Cause,
        *,
        resource: references.Resource,
        name: str,
) -> Optional[bodies.RawBody]:
    return await fetching.read_obj(
        settings=cause.settings,
        resource=resource,
        namespace=cause.event.namespace,
        name=name,
        context=cause.context,
        logger=cause.logger,
    )


async def list_related(
        cause: Cause,
        *,
        resource: references.Resource,
) -> Collection[bodies.RawBody]:
    items, _ = await fetching.list_objs(
        settings=cause.settings,
        resource=resource,
        namespace=cause.event.namespace,
        context=cause.context,
        logger=cause.logger,
    )
    return items


def resubmit(
        cause: Cause,
        *,
        resource_kind: events.ResourceKind,
        body: bodies.RawBody,
) -> None:
    """ Re-queue a related object of the same tenant, as if it was modified. """
    event = events.CanonicalEvent(
        resource_kind=resource_kind,
        namespace=bodies.get_namespace(body),
        name=bodies.get_name(body) or '',
        uid=bodies.get_uid(body),
        tenant_key=cause.event.tenant_key,
        change_kind=events.ChangeKind.MODIFIED,
        client=cause.event.client,
    )
    try:
        cause.submit(event)
    except queueing.DispatcherClosedError:
        cause.logger.debug(f"Cannot re-queue {event.key}: the dispatcher is closed.")
    else:
        cause.logger.debug(f"Re-queued {event.key}.")


def get_entity_spec(
        conn: Connection,
        *,
        api_resource_type: str,
        api_resource_uid: str,
) -> Optional[Mapping[str, Any]]:
    """ The last-applied essence of the object's entity, if it is mapped. """
    mapping = mappings.get_by_uid(conn, api_resource_type=api_resource_type, api_resource_uid=api_resource_uid)
    if mapping is None:
        return None
    entity = entities.get(conn, relation_type=mapping.db_relation_type, id=mapping.db_relation_key)
    return entity.spec if entity is not None else None


class Reconciler:
    kind: ClassVar[events.ResourceKind]

    async def describe(self, cause: Cause, body: bodies.RawBody) -> Description:
        raise NotImplementedError

    async def apply(
            self,
            cause: Cause,
            body: bodies.RawBody,
            entity: entities.Entity,
            description: Description,
    ) -> None:
        """ The side-effects of the stored entity, on every pass. """

    def wants_dispatch(self, entity: entities.Entity) -> bool:
        return entity.needs_dispatch

    async def cleanup(self, cause: Cause, entity_id: str) -> None:
        """ The removal of the side-effects, before the entity is deleted. """

    def compose_status(
            self,
            body: bodies.RawBody,
            entity: entities.Entity,
            observations: Sequence[operations.Observation],
            changed: bool,
    ) -> Dict[str, Any]:
        return dict(bodies.get_status(body))

    async def fan_out(self, cause: Cause, body: Optional[bodies.RawBody]) -> None:
        """ Re-queue other objects affected by a change (or a deletion) of this one. """


class DeploymentReconciler(Reconciler):
    kind = events.ResourceKind.DEPLOYMENT

    async def describe(self, cause: Cause, body: bodies.RawBody) -> Description:
        spec = bodies.get_spec(body)
        source = spec.get('source') or {}
        destination = spec.get('destination') or {}
        sync_type = spec.get('type') or AUTOMATED
        if not source.get('repoURL'):
            raise InvalidSpecError("spec.source.repoURL is required.")
        if sync_type not in (AUTOMATED, MANUAL):
            raise InvalidSpecError(f"spec.type must be {AUTOMATED!r} or {MANUAL!r}, got {sync_type!r}.")

        environment_name = destination.get('environment') or ''
        environment_id = await self._resolve_environment(cause, body, environment_name)
        namespace = destination.get('namespace') or cause.event.namespace
        essence = {
            'repoURL': source['repoURL'],
            'path': source.get('path') or '',
            'targetRevision': source.get('targetRevision') or '',
            'environment': environment_id,
            'environmentName': environment_name,
            'namespace': namespace,
            'type': sync_type,
        }
        target_key = (f"env:{environment_id}|ns:{namespace}"
                      f"|repo:{essence['repoURL']}|path:{essence['path']}")
        return Description(spec=essence, target_key=target_key)

    async def _resolve_environment(self, cause: Cause, body: bodies.RawBody, name: str) -> str:
        if not name:
            return LOCAL_ENVIRONMENT

        env_body = await read_related(cause, resource=references.MANAGED_ENVIRONMENTS, name=name)
        if env_body is not None:
            mapping = await cause.database.run(
                mappings.get_by_uid,
                api_resource_type=events.ResourceKind.MANAGED_ENVIRONMENT.value,
                api_resource_uid=bodies.get_uid(env_body) or '',
            )
            if mapping is not None:
                return mapping.db_relation_key

        # Once targeted, a deleted environment leaves the deployment on the local cluster
        # until an environment of this name is registered again (its pass re-queues us).
        previous = await cause.database.run(get_entity_spec, api_resource_type=self.kind.value,
                                            api_resource_uid=bodies.get_uid(body) or '')
        if previous is not None and previous.get('environmentName') == name:
            if previous.get('environment') != LOCAL_ENVIRONMENT:
                cause.logger.warning(f"The managed environment {name!r} is gone; "
                                     f"falling back to the local cluster.")
            return LOCAL_ENVIRONMENT

        # The environment's own pass re-queues this deployment once it is registered.
        if env_body is None:
            raise ReferenceNotFoundError(f"The managed environment {name!r} is not found.")
        raise ReferenceNotFoundError(f"The managed environment {name!r} is not ready.")

    def wants_dispatch(self, entity: entities.Entity) -> bool:
        return entity.needs_dispatch and entity.spec.get('type') == AUTOMATED

    def compose_status(
            self,
            body: bodies.RawBody,
            entity: entities.Entity,
            observations: Sequence[operations.Observation],
            changed: bool,
    ) -> Dict[str, Any]:
        status = dict(bodies.get_status(body))
        sync = dict(status.get('sync') or {})
        sync.setdefault('status', SYNC_UNKNOWN)
        if changed and sync['status'] == SYNC_SYNCED:
            sync['status'] = SYNC_OUT_OF_SYNC

        for observation in observations:
            if observation.state == OperationState.COMPLETED:
                sync['status'] = SYNC_SYNCED
                sync['revision'] = observation.revision or entity.spec.get('targetRevision') or None
                if observation.health is not None:
                    status['health'] = dict(observation.health)
                if observation.resources is not None:
                    status['resources'] = [dict(resource) for resource in observation.resources]
            elif observation.state == OperationState.FAILED:
                sync['status'] = SYNC_OUT_OF_SYNC

        if sync.get('revision') is None:
            sync.pop('revision', None)
        status['sync'] = sync
        return status


class SyncRunReconciler(Reconciler):
    kind = events.ResourceKind.SYNC_RUN

    async def describe(self, cause: Cause, body: bodies.RawBody) -> Description:
        spec = bodies.get_spec(body)
        deployment_name = spec.get('gitopsDeploymentName')
        if not deployment_name:
            raise InvalidSpecError("spec.gitopsDeploymentName is required.")

        deployment = await read_related(cause, resource=references.GITOPSDEPLOYMENTS, name=deployment_name)
        if deployment is None:
            raise ReferenceNotFoundError(f"The deployment {deployment_name!r} is not found.")
        mapping = await cause.database.run(
            mappings.get_by_uid,
            api_resource_type=events.ResourceKind.DEPLOYMENT.value,
            api_resource_uid=bodies.get_uid(deployment) or '',
        )
        if mapping is None:
            raise execution.TemporaryError(f"The deployment {deployment_name!r} is not registered yet.")

        essence = {
            'application': mapping.db_relation_key,
            'revisionID': spec.get('revisionID') or '',
        }
        return Description(spec=essence, target_key=None)


class ManagedEnvironmentReconciler(Reconciler):
    kind = events.ResourceKind.MANAGED_ENVIRONMENT

    async def describe(self, cause: Cause, body: bodies.RawBody) -> Description:
        spec = bodies.get_spec(body)
        api_url = spec.get('apiURL')
        secret_name = spec.get('credentialsSecret')
        insecure = bool(spec.get('allowInsecureSkipTLSVerify', False))
        try:
            if not api_url:
                raise InvalidSpecError("spec.apiURL is required.")
            if not secret_name:
                raise InvalidSpecError("spec.credentialsSecret is required.")
            creds = await credentials.read_credentials(
                settings=cause.settings,
                namespace=cause.event.namespace,
                secret_name=secret_name,
                api_url=api_url,
                insecure=insecure,
                context=cause.context,
                logger=cause.logger,
            )
        except execution.PermanentError:
            # No usable material: the engine must not keep the old credentials either.
            await self._revoke(cause, body)
            raise

        essence = {
            'apiURL': api_url,
            'credentialsSecret': secret_name,
            'allowInsecureSkipTLSVerify': insecure,
            'credentialsDigest': creds.digest,
        }
        target_key = f"tenant:{cause.event.tenant_key}|server:{api_url.rstrip('/')}"
        return Description(spec=essence, target_key=target_key, material=creds)

    async def _revoke(self, cause: Cause, body: bodies.RawBody) -> None:
        mapping = await cause.database.run(
            mappings.get_by_uid,
            api_resource_type=self.kind.value,
            api_resource_uid=bodies.get_uid(body) or '',
        )
        if mapping is not None:
            await self.cleanup(cause, mapping.db_relation_key)

    async def apply(
            self,
            cause: Cause,
            body: bodies.RawBody,
            entity: entities.Entity,
            description: Description,
    ) -> None:
        await credentials.ensure_artifact(
            settings=cause.settings,
            entity_id=entity.id,
            creds=description.material,
            context=cause.context,
            logger=cause.logger,
        )

    async def cleanup(self, cause: Cause, entity_id: str) -> None:
        await credentials.delete_artifact(
            settings=cause.settings,
            entity_id=entity_id,
            context=cause.context,
            logger=cause.logger,
        )

    async def fan_out(self, cause: Cause, body: Optional[bodies.RawBody]) -> None:
        for deployment in await list_related(cause, resource=references.GITOPSDEPLOYMENTS):
            destination = bodies.get_spec(deployment).get('destination') or {}
            if destination.get('environment') == cause.event.name:
                resubmit(cause, resource_kind=events.ResourceKind.DEPLOYMENT, body=deployment)


class RepositoryCredentialReconciler(Reconciler):
    kind = events.ResourceKind.REPOSITORY_CREDENTIAL

    async def describe(self, cause: Cause, body: bodies.RawBody) -> Description:
        spec = bodies.get_spec(body)
        repository = spec.get('repository')
        secret_name = spec.get('secret')
        if not repository:
            raise InvalidSpecError("spec.repository is required.")
        if not secret_name:
            raise InvalidSpecError("spec.secret is required.")

        secret = await read_related(cause, resource=references.SECRETS, name=secret_name)
        if secret is None:
            raise credentials.CredentialsError(f"The secret {secret_name!r} is not found.")
        data = credentials.decode_data(secret)
        has_password = bool(data.get('username') and data.get('password'))
        has_ssh_key = bool(data.get('sshPrivateKey'))
        if not has_password and not has_ssh_key:
            raise credentials.CredentialsError(
                f"The secret {secret_name!r} has neither username & password nor sshPrivateKey.")

        essence = {
            'repository': repository,
            'secret': secret_name,
            'credentialsDigest': credentials.digest(data),
        }
        target_key = f"tenant:{cause.event.tenant_key}|repo:{repository}"
        return Description(spec=essence, target_key=target_key)


RECONCILERS: Mapping[events.ResourceKind, Reconciler] = {
    reconciler.kind: reconciler for reconciler in [
        DeploymentReconciler(),
        SyncRunReconciler(),
        ManagedEnvironmentReconciler(),
        RepositoryCredentialReconciler(),
    ]
}


async def fan_out_secret(cause: Cause) -> None:
    """
    Re-queue the objects referring to the secret: they re-read it on their own.

    The secret's deletion is handled the same way: the referring objects
    find it absent and revoke the credentials derived from it.
    """
    secret_name = cause.event.name
    for env in await list_related(cause, resource=references.MANAGED_ENVIRONMENTS):
        if bodies.get_spec(env).get('credentialsSecret') == secret_name:
            resubmit(cause, resource_kind=events.ResourceKind.MANAGED_ENVIRONMENT, body=env)
    for repocred in await list_related(cause, resource=references.REPOSITORY_CREDENTIALS):
        if bodies.get_spec(repocred).get('secret') == secret_name:
            resubmit(cause, resource_kind=events.ResourceKind.REPOSITORY_CREDENTIAL, body=repocred)
