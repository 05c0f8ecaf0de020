"""
The durable entities behind the API objects: one table per relation type.

Every entity keeps the last-applied essence of its API object's spec,
so that only the actual changes increase its generation. The version column
is the optimistic-concurrency counter: every write compares-and-swaps it.

The target key is what the entity claims in the outer world (e.g. a cluster,
a namespace in it, a repository). Two entities can never claim the same target.
"""
import dataclasses
import datetime
import uuid
from typing import Any, Dict, List, Mapping, Optional

import sqlalchemy as sa
from sqlalchemy import exc
from sqlalchemy.engine import Connection, RowMapping

from gitopsd._cogs.storage import errors, schema

APPLICATION = 'Application'
SYNC_OPERATION = 'SyncOperation'
MANAGED_ENVIRONMENT = 'ManagedEnvironment'
REPOSITORY_CREDENTIAL = 'RepositoryCredential'

TABLES: Mapping[str, sa.Table] = {
    APPLICATION: schema.applications,
    SYNC_OPERATION: schema.sync_operations,
    MANAGED_ENVIRONMENT: schema.managed_environments,
    REPOSITORY_CREDENTIAL: schema.repository_credentials,
}


@dataclasses.dataclass(frozen=True)
class Entity:
    relation_type: str
    id: str
    tenant_key: str
    target_key: Optional[str]
    spec: Mapping[str, Any]
    generation: int
    dispatched_generation: int
    version: int
    created_at: str
    updated_at: str

    @property
    def needs_dispatch(self) -> bool:
        return self.generation > self.dispatched_generation


def _now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def _table(relation_type: str) -> sa.Table:
    try:
        return TABLES[relation_type]
    except KeyError:
        raise errors.SchemaError(f"Unknown relation type: {relation_type!r}") from None


def _from_row(relation_type: str, row: RowMapping) -> Entity:
    return Entity(
        relation_type=relation_type,
        id=row['id'],
        tenant_key=row['tenant_key'],
        target_key=row['target_key'],
        spec=row['spec'],
        generation=row['generation'],
        dispatched_generation=row['dispatched_generation'],
        version=row['version'],
        created_at=row['created_at'],
        updated_at=row['updated_at'],
    )


def get(
        conn: Connection,
        *,
        relation_type: str,
        id: str,
) -> Optional[Entity]:
    table = _table(relation_type)
    row = conn.execute(sa.select(table).where(table.c.id == id)).mappings().first()
    return _from_row(relation_type, row) if row is not None else None


def list_all(
        conn: Connection,
        *,
        relation_type: str,
) -> List[Entity]:
    table = _table(relation_type)
    rows = conn.execute(sa.select(table).order_by(table.c.created_at)).mappings().all()
    return [_from_row(relation_type, row) for row in rows]


def insert(
        conn: Connection,
        *,
        relation_type: str,
        tenant_key: str,
        target_key: Optional[str],
        spec: Mapping[str, Any],
) -> Entity:
    """
    Insert a new entity of the 1st generation, never dispatched yet.

    Raises :class:`errors.UniquenessViolation` if the target is already claimed.
    """
    now = _now()
    entity = Entity(
        relation_type=relation_type,
        id=str(uuid.uuid4()),
        tenant_key=tenant_key,
        target_key=target_key,
        spec=dict(spec),
        generation=1,
        dispatched_generation=0,
        version=1,
        created_at=now,
        updated_at=now,
    )
    values = dataclasses.asdict(entity)
    del values['relation_type']
    try:
        conn.execute(sa.insert(_table(relation_type)).values(**values))
    except exc.IntegrityError as e:
        if errors.is_unique_violation(e, column='target_key'):
            raise errors.UniquenessViolation(
                f"The target {target_key!r} is already claimed by another {relation_type}.") from e
        raise
    return entity


def _compare_and_swap(
        conn: Connection,
        entity: Entity,
        changes: Dict[str, Any],
) -> Entity:
    table = _table(entity.relation_type)
    updated = dataclasses.replace(entity, version=entity.version + 1, updated_at=_now(), **changes)
    statement = (
        sa.update(table)
        .where(table.c.id == entity.id, table.c.version == entity.version)
        .values(**changes, version=updated.version, updated_at=updated.updated_at)
    )
    try:
        result = conn.execute(statement)
    except exc.IntegrityError as e:
        if errors.is_unique_violation(e, column='target_key'):
            raise errors.UniquenessViolation(
                f"The target {updated.target_key!r} is already claimed "
                f"by another {entity.relation_type}.") from e
        raise
    if result.rowcount == 0:
        raise errors.ConflictError(
            f"{entity.relation_type} {entity.id} was modified or deleted since version {entity.version}.")
    return updated


def update(
        conn: Connection,
        entity: Entity,
        *,
        target_key: Optional[str],
        spec: Mapping[str, Any],
) -> Entity:
    """
    Store the new essence and target of the entity if they differ.

    The generation is increased only on the actual changes. If nothing has
    changed, the entity is returned as is, with nothing written.

    Raises :class:`errors.ConflictError` if the entity was modified since loaded,
    and :class:`errors.UniquenessViolation` if the new target is already claimed.
    """
    if dict(entity.spec) == dict(spec) and entity.target_key == target_key:
        return entity
    return _compare_and_swap(conn, entity, dict(
        spec=dict(spec),
        target_key=target_key,
        generation=entity.generation + 1,
    ))


def mark_dispatched(
        conn: Connection,
        entity: Entity,
        *,
        generation: int,
) -> Entity:
    """ Remember that the generation is handed off to the external engine. """
    if entity.dispatched_generation >= generation:
        return entity
    return _compare_and_swap(conn, entity, dict(dispatched_generation=generation))


def delete(
        conn: Connection,
        *,
        relation_type: str,
        id: str,
) -> bool:
    """ Delete the entity. Deleting an absent entity is not an error. """
    table = _table(relation_type)
    result = conn.execute(sa.delete(table).where(table.c.id == id))
    return result.rowcount > 0
