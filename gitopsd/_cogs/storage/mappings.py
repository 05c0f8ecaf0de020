"""
The mappings of the API objects to the durable entities.

A mapping binds the API object's immutable identity (its UID), not its name:
a deleted-and-recreated object under the same name gets a new UID, and so
a new entity; the old mapping becomes stale and is garbage-collected.

The namespace & name are only remembered to find such stale mappings.
They do not identify anything.
"""
import dataclasses
import datetime
from typing import Any, List, Mapping, Optional, Tuple

import sqlalchemy as sa
from sqlalchemy.engine import Connection, RowMapping

from gitopsd._cogs.storage import entities, operations, schema

table = schema.entity_mappings


@dataclasses.dataclass(frozen=True)
class EntityMapping:
    api_resource_type: str
    api_resource_uid: str
    db_relation_type: str
    db_relation_key: str
    api_namespace: Optional[str] = None
    api_name: Optional[str] = None
    created_at: Optional[str] = None


def _from_row(row: RowMapping) -> EntityMapping:
    return EntityMapping(**row)


def get_by_uid(
        conn: Connection,
        *,
        api_resource_type: str,
        api_resource_uid: str,
) -> Optional[EntityMapping]:
    row = conn.execute(
        sa.select(table).where(
            table.c.api_resource_type == api_resource_type,
            table.c.api_resource_uid == api_resource_uid,
        )
    ).mappings().first()
    return _from_row(row) if row is not None else None


def get_by_relation(
        conn: Connection,
        *,
        db_relation_type: str,
        db_relation_key: str,
) -> Optional[EntityMapping]:
    row = conn.execute(
        sa.select(table).where(
            table.c.db_relation_type == db_relation_type,
            table.c.db_relation_key == db_relation_key,
        )
    ).mappings().first()
    return _from_row(row) if row is not None else None


def find_by_name(
        conn: Connection,
        *,
        api_resource_type: str,
        api_namespace: Optional[str],
        api_name: str,
) -> List[EntityMapping]:
    """ Find all mappings of the objects which had this name, maybe with different UIDs. """
    rows = conn.execute(
        sa.select(table)
        .where(
            table.c.api_resource_type == api_resource_type,
            table.c.api_namespace.is_(None) if api_namespace is None else table.c.api_namespace == api_namespace,
            table.c.api_name == api_name,
        )
        .order_by(table.c.created_at)
    ).mappings().all()
    return [_from_row(row) for row in rows]


def list_all(
        conn: Connection,
        *,
        api_resource_type: Optional[str] = None,
) -> List[EntityMapping]:
    statement = sa.select(table).order_by(table.c.created_at)
    if api_resource_type is not None:
        statement = statement.where(table.c.api_resource_type == api_resource_type)
    rows = conn.execute(statement).mappings().all()
    return [_from_row(row) for row in rows]


def insert(
        conn: Connection,
        mapping: EntityMapping,
) -> EntityMapping:
    """
    Insert a new mapping. Both directions must be unique.

    :class:`sqlalchemy.exc.IntegrityError` is escalated if either of them is taken.
    """
    created_at = mapping.created_at or datetime.datetime.now(datetime.timezone.utc).isoformat()
    mapping = dataclasses.replace(mapping, created_at=created_at)
    conn.execute(sa.insert(table).values(**dataclasses.asdict(mapping)))
    return mapping


def delete(
        conn: Connection,
        *,
        api_resource_type: str,
        api_resource_uid: str,
) -> bool:
    """ Delete the mapping. Deleting an absent mapping is not an error. """
    result = conn.execute(
        sa.delete(table).where(
            table.c.api_resource_type == api_resource_type,
            table.c.api_resource_uid == api_resource_uid,
        )
    )
    return result.rowcount > 0


def create_entity(
        conn: Connection,
        *,
        api_resource_type: str,
        api_resource_uid: str,
        api_namespace: Optional[str],
        api_name: str,
        relation_type: str,
        tenant_key: str,
        target_key: Optional[str],
        spec: Mapping[str, Any],
) -> Tuple[entities.Entity, bool]:
    """
    Create the entity and its mapping in one go, unless already mapped.

    Returns the entity and a flag whether it was created now. A repeated
    creation for the same UID is not an error: the existing entity is returned.
    """
    mapping = get_by_uid(conn, api_resource_type=api_resource_type, api_resource_uid=api_resource_uid)
    if mapping is not None:
        entity = entities.get(conn, relation_type=mapping.db_relation_type, id=mapping.db_relation_key)
        if entity is not None:
            return entity, False
        delete(conn, api_resource_type=api_resource_type, api_resource_uid=api_resource_uid)

    entity = entities.insert(
        conn,
        relation_type=relation_type,
        tenant_key=tenant_key,
        target_key=target_key,
        spec=spec,
    )
    insert(conn, EntityMapping(
        api_resource_type=api_resource_type,
        api_resource_uid=api_resource_uid,
        db_relation_type=relation_type,
        db_relation_key=entity.id,
        api_namespace=api_namespace,
        api_name=api_name,
    ))
    return entity, True


def delete_entity(
        conn: Connection,
        mapping: EntityMapping,
) -> Optional[entities.Entity]:
    """
    Delete the mapping, the entity it points to, and the entity's operation records.

    Returns the deleted entity, if it existed. Deleting twice is not an error.
    """
    entity = entities.get(conn, relation_type=mapping.db_relation_type, id=mapping.db_relation_key)
    for record in operations.list_for(conn, resource_type=mapping.db_relation_type,
                                      resource_key=mapping.db_relation_key):
        operations.delete(conn, id=record.id)
    entities.delete(conn, relation_type=mapping.db_relation_type, id=mapping.db_relation_key)
    delete(conn, api_resource_type=mapping.api_resource_type, api_resource_uid=mapping.api_resource_uid)
    return entity
