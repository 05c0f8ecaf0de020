"""
The records of the operations handed off to the external engine.

One operation per entity's generation at most: re-dispatching an unchanged
generation (e.g. after a crash or a redelivered event) returns the existing
record instead of creating a duplicate.
"""
import dataclasses
import datetime
import enum
import uuid
from typing import List, Optional, Tuple

import sqlalchemy as sa
from sqlalchemy.engine import Connection, RowMapping

from gitopsd._cogs.storage import schema

table = schema.operation_records


class OperationState(str, enum.Enum):
    PENDING = 'Pending'
    IN_PROGRESS = 'InProgress'
    COMPLETED = 'Completed'
    FAILED = 'Failed'

    @property
    def terminal(self) -> bool:
        return self in (OperationState.COMPLETED, OperationState.FAILED)


@dataclasses.dataclass(frozen=True)
class OperationRecord:
    id: str
    resource_type: str
    resource_key: str
    generation: int
    state: OperationState
    message: Optional[str]
    created_at: str
    updated_at: str


def _now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def _from_row(row: RowMapping) -> OperationRecord:
    return OperationRecord(
        id=row['id'],
        resource_type=row['resource_type'],
        resource_key=row['resource_key'],
        generation=row['generation'],
        state=OperationState(row['state']),
        message=row['message'],
        created_at=row['created_at'],
        updated_at=row['updated_at'],
    )


def get(
        conn: Connection,
        *,
        id: str,
) -> Optional[OperationRecord]:
    row = conn.execute(sa.select(table).where(table.c.id == id)).mappings().first()
    return _from_row(row) if row is not None else None


def insert_or_get(
        conn: Connection,
        *,
        resource_type: str,
        resource_key: str,
        generation: int,
) -> Tuple[OperationRecord, bool]:
    """
    Create a pending record for the generation, unless it already exists.

    Returns the record and a flag whether it was created now.
    """
    row = conn.execute(
        sa.select(table).where(
            table.c.resource_type == resource_type,
            table.c.resource_key == resource_key,
            table.c.generation == generation,
        )
    ).mappings().first()
    if row is not None:
        return _from_row(row), False

    now = _now()
    record = OperationRecord(
        id=str(uuid.uuid4()),
        resource_type=resource_type,
        resource_key=resource_key,
        generation=generation,
        state=OperationState.PENDING,
        message=None,
        created_at=now,
        updated_at=now,
    )
    conn.execute(sa.insert(table).values(**dict(dataclasses.asdict(record), state=record.state.value)))
    return record, True


def update_state(
        conn: Connection,
        record: OperationRecord,
        *,
        state: OperationState,
        message: Optional[str],
) -> OperationRecord:
    if record.state == state and record.message == message:
        return record
    updated = dataclasses.replace(record, state=state, message=message, updated_at=_now())
    conn.execute(
        sa.update(table)
        .where(table.c.id == updated.id)
        .values(state=updated.state.value, message=updated.message, updated_at=updated.updated_at)
    )
    return updated


def list_for(
        conn: Connection,
        *,
        resource_type: str,
        resource_key: str,
) -> List[OperationRecord]:
    rows = conn.execute(
        sa.select(table)
        .where(table.c.resource_type == resource_type, table.c.resource_key == resource_key)
        .order_by(table.c.generation)
    ).mappings().all()
    return [_from_row(row) for row in rows]


def delete(
        conn: Connection,
        *,
        id: str,
) -> bool:
    result = conn.execute(sa.delete(table).where(table.c.id == id))
    return result.rowcount > 0
