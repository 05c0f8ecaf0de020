"""
The durable relational store of the control plane.

It keeps the internal entities behind the API objects, the mappings between
the API objects' immutable identities and those entities, and the records
of the operations handed off to the external engine.

The storage functions are synchronous SQLAlchemy Core statements on one
connection per call; :class:`connections.Database` runs them in transactions
on the async engine's pooled connections.
"""
