"""
The hand-off of the durable entities' changes to the external GitOps engine.

The control plane does not apply anything to the clusters itself. Instead,
it records an operation for every new generation of an entity, and creates
an operation signal object in the engine's well-known namespace. The engine's
agent picks the signal up, does the actual work, and reports the state back
in the signal's status.

The workers poll the signals for a limited time only: an operation still
in flight after the timeout frees the key, and a status refresh is re-queued.

Terminal operations are recorded, surfaced to the users, and only then
garbage-collected: the signal object first, the record second (so that
a crash in between leaves a record which re-creates nothing on the next pass).
"""
import asyncio
import dataclasses
import datetime
from typing import Any, Mapping, Optional, Sequence

import iso8601

from gitopsd._cogs.clients import auth, creating, deleting, errors, fetching
from gitopsd._cogs.configs import configuration
from gitopsd._cogs.helpers import typedefs
from gitopsd._cogs.storage import connections, operations as records
from gitopsd._cogs.structs import bodies, references

SIGNAL_PREFIX = 'operation-'
OPERATION_ID_LABEL = 'managed-gitops.redhat.com/operation-id'


@dataclasses.dataclass(frozen=True)
class Observation:
    """ The last known state of one operation, as reported by the engine's agent. """
    record: records.OperationRecord
    revision: Optional[str] = None
    health: Optional[Mapping[str, Any]] = None
    resources: Optional[Sequence[Mapping[str, Any]]] = None

    @property
    def state(self) -> records.OperationState:
        return self.record.state

    @property
    def message(self) -> Optional[str]:
        return self.record.message

    @property
    def terminal(self) -> bool:
        return self.record.state.terminal

    @property
    def age(self) -> datetime.timedelta:
        created_at = iso8601.parse_date(self.record.created_at)
        return datetime.datetime.now(datetime.timezone.utc) - created_at


def signal_name(operation_id: str) -> str:
    return f'{SIGNAL_PREFIX}{operation_id}'


def build_signal(
        *,
        settings: configuration.OperatorSettings,
        record: records.OperationRecord,
) -> bodies.RawBody:
    return {
        'metadata': {
            'name': signal_name(record.id),
            'namespace': settings.engine.namespace,
            'labels': {OPERATION_ID_LABEL: record.id},
        },
        'spec': {
            'operationID': record.id,
            'resourceType': record.resource_type,
            'durableEntityID': record.resource_key,
        },
    }


async def ensure_signal(
        *,
        settings: configuration.OperatorSettings,
        record: records.OperationRecord,
        context: Optional[auth.APIContext] = None,
        logger: typedefs.Logger,
) -> None:
    """ Create the operation's signal object unless it already exists. """
    try:
        await creating.create_obj(
            settings=settings,
            resource=references.OPERATIONS,
            body=build_signal(settings=settings, record=record),
            context=context,
            logger=logger,
        )
    except errors.APIConflictError:
        logger.debug(f"The signal of operation {record.id} already exists.")
    else:
        logger.debug(f"Created the signal of operation {record.id}.")


async def dispatch(
        *,
        settings: configuration.OperatorSettings,
        database: connections.Database,
        resource_type: str,
        entity_id: str,
        generation: int,
        context: Optional[auth.APIContext] = None,
        logger: typedefs.Logger,
) -> records.OperationRecord:
    """
    Record an operation for the entity's generation and signal it to the engine.

    Re-dispatching the same generation is not an error: the existing record
    is reused, and its signal is re-created only if it is missing.
    """
    record, created = await database.run(
        records.insert_or_get,
        resource_type=resource_type,
        resource_key=entity_id,
        generation=generation,
    )
    if created:
        logger.info(f"Dispatching operation {record.id} for {resource_type} {entity_id} "
                    f"of generation {generation}.")
    else:
        logger.debug(f"Operation {record.id} for {resource_type} {entity_id} "
                     f"of generation {generation} is already dispatched.")
    await ensure_signal(settings=settings, record=record, context=context, logger=logger)
    return record


def interpret(
        record: records.OperationRecord,
        status: Mapping[str, Any],
        *,
        logger: typedefs.Logger,
) -> Observation:
    """ Interpret the agent-reported status of the signal object. """
    raw_state = status.get('state')
    try:
        state = records.OperationState(raw_state) if raw_state else records.OperationState.PENDING
    except ValueError:
        logger.warning(f"Operation {record.id} reports an unknown state {raw_state!r}; "
                       f"considering it as {records.OperationState.PENDING.value}.")
        state = records.OperationState.PENDING
    message = status.get('message') or None
    return Observation(
        record=dataclasses.replace(record, state=state, message=message),
        revision=status.get('revision') or None,
        health=status.get('health') or None,
        resources=status.get('resources'),
    )


async def observe(
        *,
        settings: configuration.OperatorSettings,
        database: connections.Database,
        record: records.OperationRecord,
        pressure: asyncio.Event,
        deadline: float,
        context: Optional[auth.APIContext] = None,
        logger: typedefs.Logger,
) -> Observation:
    """
    Poll the operation's signal until it is terminal, or until the deadline.

    The polling is also interrupted when new events arrive for the same key
    (the "pressure"): they will observe the same operation anyway.
    The signal is checked at least once in any case.
    A changed state is stored to the operation's record on every check.
    """
    loop = asyncio.get_running_loop()
    while True:
        body = await fetching.read_obj(
            settings=settings,
            resource=references.OPERATIONS,
            namespace=settings.engine.namespace,
            name=signal_name(record.id),
            context=context,
            logger=logger,
        )
        if body is None:
            logger.warning(f"The signal of operation {record.id} is gone; re-creating it.")
            await ensure_signal(settings=settings, record=record, context=context, logger=logger)
            observation = Observation(record=record)
        else:
            observation = interpret(record, bodies.get_status(body), logger=logger)

        if (observation.state, observation.message) != (record.state, record.message):
            logger.debug(f"Operation {record.id} is {observation.state.value} now.")
            record = await database.run(
                records.update_state, record,
                state=observation.state,
                message=observation.message,
            )
            observation = dataclasses.replace(observation, record=record)

        if observation.terminal:
            return observation

        remaining = deadline - loop.time()
        if remaining <= 0:
            logger.info(f"Operation {record.id} is still {observation.state.value} "
                        f"after {observation.age.total_seconds():.1f}s; will check later.")
            return observation
        if pressure.is_set():
            return observation

        try:
            await asyncio.wait_for(pressure.wait(), timeout=min(settings.engine.poll_interval, remaining))
        except asyncio.TimeoutError:
            pass


async def collect(
        *,
        settings: configuration.OperatorSettings,
        database: connections.Database,
        record: records.OperationRecord,
        context: Optional[auth.APIContext] = None,
        logger: typedefs.Logger,
) -> None:
    """ Garbage-collect a terminal operation: its signal first, its record next. """
    await deleting.delete_obj(
        settings=settings,
        resource=references.OPERATIONS,
        namespace=settings.engine.namespace,
        name=signal_name(record.id),
        context=context,
        logger=logger,
    )
    await database.run(records.delete, id=record.id)
    logger.debug(f"Garbage-collected operation {record.id}.")


async def discard(
        *,
        settings: configuration.OperatorSettings,
        database: connections.Database,
        resource_type: str,
        entity_id: str,
        context: Optional[auth.APIContext] = None,
        logger: typedefs.Logger,
) -> None:
    """
    Delete the signals of all the entity's operations, no matter their states.

    The records themselves are deleted together with the entity.
    """
    for record in await database.run(records.list_for, resource_type=resource_type, resource_key=entity_id):
        await deleting.delete_obj(
            settings=settings,
            resource=references.OPERATIONS,
            namespace=settings.engine.namespace,
            name=signal_name(record.id),
            context=context,
            logger=logger,
        )
