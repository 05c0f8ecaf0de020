from typing import Optional, cast

from gitopsd._cogs.clients import api, auth
from gitopsd._cogs.configs import configuration
from gitopsd._cogs.helpers import typedefs
from gitopsd._cogs.structs import bodies, references


async def create_obj(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace = None,
        name: Optional[str] = None,
        body: Optional[bodies.RawBody] = None,
        context: Optional[auth.APIContext] = None,
        logger: typedefs.Logger,
) -> bodies.RawBody:
    """
    Create a resource.

    HTTP 409 (the object already exists) is escalated to the caller as
    :class:`errors.APIConflictError`: it is up to the caller to decide
    whether it is an idempotent re-creation or a collision.
    """
    body = body if body is not None else {}
    if namespace is not None:
        body.setdefault('metadata', {}).setdefault('namespace', namespace)
    if name is not None:
        body.setdefault('metadata', {}).setdefault('name', name)
    body.setdefault('apiVersion', resource.api_version)
    if resource.kind is not None:
        body.setdefault('kind', resource.kind)

    namespace = cast(references.Namespace, body.get('metadata', {}).get('namespace'))
    created_body: bodies.RawBody = await api.post(
        url=resource.get_url(namespace=namespace),
        payload=body,
        context=context,
        settings=settings,
        logger=logger,
    )
    return created_body
