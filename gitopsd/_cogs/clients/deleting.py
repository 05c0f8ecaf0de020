from typing import Optional

from gitopsd._cogs.clients import api, auth, errors
from gitopsd._cogs.configs import configuration
from gitopsd._cogs.helpers import typedefs
from gitopsd._cogs.structs import references


async def delete_obj(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        name: str,
        context: Optional[auth.APIContext] = None,
        logger: typedefs.Logger,
) -> bool:
    """
    Delete a resource by its name.

    Deleting an absent object (HTTP 404) is not an error: it is the same
    desired state. Returns whether the object existed and was deleted now.
    """
    try:
        await api.delete(
            url=resource.get_url(namespace=namespace, name=name),
            payload={'propagationPolicy': 'Background'},
            context=context,
            settings=settings,
            logger=logger,
        )
    except errors.APINotFoundError:
        return False
    return True
