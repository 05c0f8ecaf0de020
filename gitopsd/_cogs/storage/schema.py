"""
The tables of the relational store, as SQLAlchemy metadata.

The schema is created on opening the database if absent (``create_all``);
existing tables are left as they are.
"""
import sqlalchemy as sa

metadata = sa.MetaData()

entity_mappings = sa.Table(
    'entity_mappings', metadata,
    sa.Column('api_resource_type', sa.String, primary_key=True),
    sa.Column('api_resource_uid', sa.String, primary_key=True),
    sa.Column('db_relation_type', sa.String, nullable=False),
    sa.Column('db_relation_key', sa.String, nullable=False),
    sa.Column('api_namespace', sa.String, nullable=True),
    sa.Column('api_name', sa.String, nullable=True),
    sa.Column('created_at', sa.String, nullable=False),
    sa.UniqueConstraint('db_relation_type', 'db_relation_key'),
    sa.Index('entity_mappings_by_name', 'api_resource_type', 'api_namespace', 'api_name'),
)

operation_records = sa.Table(
    'operation_records', metadata,
    sa.Column('id', sa.String, primary_key=True),
    sa.Column('resource_type', sa.String, nullable=False),
    sa.Column('resource_key', sa.String, nullable=False),
    sa.Column('generation', sa.Integer, nullable=False),
    sa.Column('state', sa.String, nullable=False),
    sa.Column('message', sa.String, nullable=True),
    sa.Column('created_at', sa.String, nullable=False),
    sa.Column('updated_at', sa.String, nullable=False),
    sa.UniqueConstraint('resource_type', 'resource_key', 'generation'),
)


def _entity_table(name: str) -> sa.Table:
    return sa.Table(
        name, metadata,
        sa.Column('id', sa.String, primary_key=True),
        sa.Column('tenant_key', sa.String, nullable=False),
        sa.Column('target_key', sa.String, nullable=True, unique=True),
        sa.Column('spec', sa.JSON, nullable=False),
        sa.Column('generation', sa.Integer, nullable=False),
        sa.Column('dispatched_generation', sa.Integer, nullable=False),
        sa.Column('version', sa.Integer, nullable=False),
        sa.Column('created_at', sa.String, nullable=False),
        sa.Column('updated_at', sa.String, nullable=False),
    )


applications = _entity_table('applications')
managed_environments = _entity_table('managed_environments')
repository_credentials = _entity_table('repository_credentials')
sync_operations = _entity_table('sync_operations')
