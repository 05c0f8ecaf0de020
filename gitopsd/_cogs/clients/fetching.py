from typing import Collection, List, Optional, Tuple

from gitopsd._cogs.clients import api, auth, errors
from gitopsd._cogs.configs import configuration
from gitopsd._cogs.helpers import typedefs
from gitopsd._cogs.structs import bodies, references


async def read_obj(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        name: str,
        context: Optional[auth.APIContext] = None,
        logger: typedefs.Logger,
) -> Optional[bodies.RawBody]:
    """
    Read the object of specific resource type by its name.

    Returns ``None`` if the object is absent (HTTP 404), so that the absence
    could be interpreted as a deletion by the callers.
    """
    try:
        obj: bodies.RawBody = await api.get(
            url=resource.get_url(namespace=namespace, name=name),
            context=context,
            settings=settings,
            logger=logger,
        )
    except errors.APINotFoundError:
        return None
    return obj


async def list_objs(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        context: Optional[auth.APIContext] = None,
        logger: typedefs.Logger,
) -> Tuple[Collection[bodies.RawBody], str]:
    """
    List the objects of specific resource type.

    If the namespace is ``None``, the cluster-wide listing is performed.
    Otherwise, only the objects of that namespace are listed.
    """
    rsp = await api.get(
        url=resource.get_url(namespace=namespace),
        context=context,
        settings=settings,
        logger=logger,
    )

    items: List[bodies.RawBody] = []
    resource_version = rsp.get('metadata', {}).get('resourceVersion', None)
    for item in rsp.get('items', []):
        if 'kind' in rsp:
            item.setdefault('kind', rsp['kind'][:-4] if rsp['kind'][-4:] == 'List' else rsp['kind'])
        if 'apiVersion' in rsp:
            item.setdefault('apiVersion', rsp['apiVersion'])
        items.append(item)

    return items, resource_version
