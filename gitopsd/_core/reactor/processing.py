"""
The reconciliation of one canonical event: the per-key worker's state machine.

The states are::

    Start → ResolveMapping → {CreateEntity | UpdateEntity | DeleteEntity}
          → DispatchOperation (optional) → WriteBackStatus → Done

The state machine is generic over the resource kinds; the per-kind specifics
are in :mod:`reconcilers`. All the failures are classified here, at the worker's
boundary, into the transient, permanent, and fatal ones (see :mod:`execution`).

Every step is idempotent: the same event can be processed again after
a transient failure or a redelivery, with the same final effect.
"""
import asyncio
from typing import Any, Callable, Dict, List, Optional, Tuple

from gitopsd._cogs.clients import fetching
from gitopsd._cogs.configs import configuration
from gitopsd._cogs.storage import connections, entities, errors as storage_errors, mappings, \
                                  operations as records
from gitopsd._cogs.storage.operations import OperationState
from gitopsd._cogs.structs import bodies, conditions
from gitopsd._core.actions import execution, loggers, writeback
from gitopsd._core.engines import operations
from gitopsd._core.intents import events
from gitopsd._core.reactor import reconcilers

OPERATION_FAILED = 'OperationFailed'


async def process_event(
        *,
        event: events.CanonicalEvent,
        pressure: asyncio.Event,
        submit: Callable[[events.CanonicalEvent], None],
        settings: configuration.OperatorSettings,
        database: connections.Database,
) -> execution.Outcome:
    """
    Process one event of one key, and classify its failures if any.

    Only the fatal errors are escalated; they are dead-lettered by the dispatcher.
    """
    logger = loggers.ObjectLogger(event=event)
    cause = reconcilers.Cause(
        event=event,
        settings=settings,
        database=database,
        logger=logger,
        submit=submit,
    )
    try:
        return await reconcile(cause, pressure=pressure)
    except Exception as e:
        kind = execution.classify(e)
        if kind is execution.ErrorKind.TRANSIENT:
            logger.warning(f"Reconciliation has failed temporarily and will be retried: {e!r}")
            return execution.Outcome(final=False, delay=getattr(e, 'delay', None), exception=e)
        elif kind is execution.ErrorKind.PERMANENT:
            logger.error(f"Reconciliation has failed permanently: {e}")
            return await _surface_failure(cause, e)
        else:
            logger.exception(f"Reconciliation has failed fatally: {e!r}")
            raise


async def _surface_failure(cause: reconcilers.Cause, exc: Exception) -> execution.Outcome:
    reason = getattr(exc, 'reason', None) or type(exc).__name__
    try:
        await writeback.surface_error(
            settings=cause.settings,
            resource=cause.info.resource,
            namespace=cause.event.namespace,
            name=cause.event.name,
            reason=reason,
            message=str(exc),
            context=cause.context,
            logger=cause.logger,
        )
    except Exception as e:
        # The status must reflect the outcome; so the event is not done until it does.
        if execution.classify(e) is execution.ErrorKind.TRANSIENT:
            cause.logger.warning(f"Failed to surface the failure; will retry: {e!r}")
            return execution.Outcome(final=False, delay=getattr(e, 'delay', None), exception=e)
        raise
    return execution.Outcome(final=True, exception=exc)


async def reconcile(
        cause: reconcilers.Cause,
        *,
        pressure: asyncio.Event,
) -> execution.Outcome:
    event = cause.event
    if event.resource_kind is events.ResourceKind.NAMESPACE:
        return execution.Outcome(final=True)  # the tenant index is maintained by the notifier.
    if event.resource_kind is events.ResourceKind.SECRET:
        await reconcilers.fan_out_secret(cause)
        return execution.Outcome(final=True)

    reconciler = reconcilers.RECONCILERS[event.resource_kind]

    # ResolveMapping: the live object is the source of truth, not the notification.
    body = await fetching.read_obj(
        settings=cause.settings,
        resource=cause.info.resource,
        namespace=event.namespace,
        name=event.name,
        context=cause.context,
        logger=cause.logger,
    )
    live_uid = bodies.get_uid(body) if body is not None else None
    if body is None or body.get('metadata', {}).get('deletionTimestamp'):
        deleted = True
    elif event.change_kind == events.ChangeKind.DELETED:
        # A deletion of an older object with the same name: the live one is new.
        # Without the deleted object's UID, the live object is the only truth.
        deleted = event.uid is not None and event.uid == live_uid
    else:
        deleted = False

    if deleted or live_uid is None:
        await delete_entities(cause, reconciler, uid=event.uid or live_uid)
        return execution.Outcome(final=True)

    assert body is not None
    await delete_entities(cause, reconciler, uid=None, except_uid=live_uid)

    description = await reconciler.describe(cause, body)
    entity, changed = await upsert_entity(cause, uid=live_uid, description=description)
    await reconciler.apply(cause, body, entity, description)

    # DispatchOperation: only once per generation, even if redelivered.
    if reconciler.wants_dispatch(entity):
        await operations.dispatch(
            settings=cause.settings,
            database=cause.database,
            resource_type=entity.relation_type,
            entity_id=entity.id,
            generation=entity.generation,
            context=cause.context,
            logger=cause.logger,
        )
        entity = await mark_dispatched(cause, entity)

    # WriteBackStatus: always, no matter if there are operations in flight.
    observations = await observe_operations(cause, entity, pressure=pressure)
    status = reconciler.compose_status(body, entity, observations, changed)
    status = compose_conditions(status, observations)
    await writeback.write_status(
        settings=cause.settings,
        resource=cause.info.resource,
        body=body,
        status=status,
        context=cause.context,
        logger=cause.logger,
    )

    # Terminal operations are garbage-collected only once surfaced.
    for observation in observations:
        if observation.terminal:
            await operations.collect(
                settings=cause.settings,
                database=cause.database,
                record=observation.record,
                context=cause.context,
                logger=cause.logger,
            )

    if changed:
        await reconciler.fan_out(cause, body)

    in_flight = any(not observation.terminal for observation in observations)
    refresh = cause.settings.engine.refresh_delay if in_flight and not pressure.is_set() else None
    return execution.Outcome(final=True, refresh=refresh)


async def delete_entities(
        cause: reconcilers.Cause,
        reconciler: reconcilers.Reconciler,
        *,
        uid: Optional[str],
        except_uid: Optional[str] = None,
) -> None:
    """
    DeleteEntity: delete the entities of this object, and of its older namesakes.

    The side-effects in the API are removed first, then the entity in the database:
    if interrupted in between, the next attempt finds the entity and retries.
    Deleting the already deleted entities is not an error.
    """
    event = cause.event
    api_resource_type = event.resource_kind.value
    found = await cause.database.run(
        mappings.find_by_name,
        api_resource_type=api_resource_type,
        api_namespace=event.namespace,
        api_name=event.name,
    )
    if uid is not None:
        mapping = await cause.database.run(
            mappings.get_by_uid,
            api_resource_type=api_resource_type,
            api_resource_uid=uid,
        )
        if mapping is not None:
            found.append(mapping)

    stale: Dict[str, mappings.EntityMapping] = {
        mapping.api_resource_uid: mapping for mapping in found
        if mapping.api_resource_uid != except_uid
    }
    for mapping in stale.values():
        await reconciler.cleanup(cause, mapping.db_relation_key)
        await operations.discard(
            settings=cause.settings,
            database=cause.database,
            resource_type=mapping.db_relation_type,
            entity_id=mapping.db_relation_key,
            context=cause.context,
            logger=cause.logger,
        )
        await cause.database.run(mappings.delete_entity, mapping)
        cause.logger.info(f"Deleted {mapping.db_relation_type} {mapping.db_relation_key} "
                          f"of the object {mapping.api_resource_uid}.")

    if stale and except_uid is None:
        await reconciler.fan_out(cause, None)


async def upsert_entity(
        cause: reconcilers.Cause,
        *,
        uid: str,
        description: reconcilers.Description,
) -> Tuple[entities.Entity, bool]:
    """
    CreateEntity or UpdateEntity, depending on the mapping's presence.

    Returns the stored entity, and whether it was created or changed now.
    A lost optimistic-concurrency race is retried with a freshly reloaded entity.
    """
    event = cause.event
    relation_type = cause.info.relation_type
    assert relation_type is not None
    for _ in range(max(1, cause.settings.retrying.conflict_attempts)):
        mapping = await cause.database.run(
            mappings.get_by_uid,
            api_resource_type=event.resource_kind.value,
            api_resource_uid=uid,
        )
        entity = None
        if mapping is not None:
            entity = await cause.database.run(
                entities.get,
                relation_type=mapping.db_relation_type,
                id=mapping.db_relation_key,
            )

        if entity is None:
            entity, created = await cause.database.run(
                mappings.create_entity,
                api_resource_type=event.resource_kind.value,
                api_resource_uid=uid,
                api_namespace=event.namespace,
                api_name=event.name,
                relation_type=relation_type,
                tenant_key=event.tenant_key,
                target_key=description.target_key,
                spec=description.spec,
            )
            if created:
                cause.logger.info(f"Created {relation_type} {entity.id}.")
            return entity, created

        try:
            updated = await cause.database.run(
                entities.update, entity,
                target_key=description.target_key,
                spec=description.spec,
            )
        except storage_errors.ConflictError as e:
            cause.logger.debug(f"Lost a race for {relation_type} {entity.id}; reloading: {e}")
            continue

        changed = updated.generation != entity.generation
        if changed:
            cause.logger.info(f"Updated {relation_type} {entity.id} to generation {updated.generation}.")
        return updated, changed

    raise execution.TemporaryError(
        f"Lost the races for the entity {cause.settings.retrying.conflict_attempts} times.")


async def mark_dispatched(
        cause: reconcilers.Cause,
        entity: entities.Entity,
) -> entities.Entity:
    generation = entity.generation
    for _ in range(max(1, cause.settings.retrying.conflict_attempts)):
        try:
            return await cause.database.run(entities.mark_dispatched, entity, generation=generation)
        except storage_errors.ConflictError:
            reloaded = await cause.database.run(entities.get, relation_type=entity.relation_type, id=entity.id)
            if reloaded is None:
                raise execution.TemporaryError(f"{entity.relation_type} {entity.id} is gone while dispatching.")
            entity = reloaded
    raise execution.TemporaryError(
        f"Lost the races for the entity {cause.settings.retrying.conflict_attempts} times.")


async def observe_operations(
        cause: reconcilers.Cause,
        entity: entities.Entity,
        *,
        pressure: asyncio.Event,
) -> List[operations.Observation]:
    """
    Observe all the entity's known operations, within one time limit for all of them.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + cause.settings.engine.operation_timeout
    observations: List[operations.Observation] = []
    for record in await cause.database.run(records.list_for, resource_type=entity.relation_type,
                                           resource_key=entity.id):
        observation = await operations.observe(
            settings=cause.settings,
            database=cause.database,
            record=record,
            pressure=pressure,
            deadline=deadline,
            context=cause.context,
            logger=cause.logger,
        )
        observations.append(observation)
    return observations


def compose_conditions(
        status: Dict[str, Any],
        observations: List[operations.Observation],
) -> Dict[str, Any]:
    """
    Reflect the latest terminal outcome in the ``ErrorOccurred`` condition.

    A failed operation is not retried, so its error stays until the next success.
    All other errors are cleared by this successful pass.
    """
    terminal = [observation for observation in observations if observation.terminal]
    latest = terminal[-1] if terminal else None
    if latest is not None and latest.state == OperationState.FAILED:
        return writeback.with_error(
            status,
            reason=OPERATION_FAILED,
            message=latest.message or f"Operation {latest.record.id} has failed.",
        )
    elif latest is not None:
        return writeback.without_error(status)

    error = conditions.find_condition(status.get('conditions'), type=conditions.ERROR_OCCURRED)
    if error is not None and error.get('reason') == OPERATION_FAILED:
        return status
    return writeback.without_error(status)
