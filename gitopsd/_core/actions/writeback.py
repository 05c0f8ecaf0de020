"""
The write-back of the reconciliation results onto the API objects' status.

The desired status is composed as a whole from the current one, but only
the difference is patched: an unchanged status causes no API calls at all.
"""
from typing import Any, Dict, Mapping, Optional

from gitopsd._cogs.clients import auth, fetching, patching
from gitopsd._cogs.configs import configuration
from gitopsd._cogs.helpers import typedefs
from gitopsd._cogs.structs import bodies, conditions, patches, references


def with_error(
        status: Mapping[str, Any],
        *,
        reason: str,
        message: str,
) -> Dict[str, Any]:
    result = dict(status)
    result['conditions'] = conditions.set_condition(
        status.get('conditions'),
        type=conditions.ERROR_OCCURRED,
        status='True',
        reason=reason,
        message=message,
    )
    return result


def without_error(
        status: Mapping[str, Any],
) -> Dict[str, Any]:
    result = dict(status)
    remaining = conditions.remove_condition(status.get('conditions'), type=conditions.ERROR_OCCURRED)
    if remaining:
        result['conditions'] = remaining
    else:
        result.pop('conditions', None)
    return result


async def write_status(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        body: bodies.RawBody,
        status: Mapping[str, Any],
        context: Optional[auth.APIContext] = None,
        logger: typedefs.Logger,
) -> bool:
    """
    Patch the object's status to the desired one, if it differs.

    Returns whether anything was patched. An object which is gone
    while patching is not an error: the following deletion handles it.
    """
    status_patch = patches.diff(bodies.get_status(body), status)
    if not status_patch:
        logger.debug("The status is up to date.")
        return False

    patch = patches.Patch()
    patch['status'] = status_patch
    patched = await patching.patch_obj(
        settings=settings,
        resource=resource,
        namespace=bodies.get_namespace(body),
        name=bodies.get_name(body) or '',
        patch=patch,
        context=context,
        logger=logger,
    )
    if patched is None:
        logger.debug("The object is gone while patching its status.")
        return False
    logger.debug(f"Patched the status with {status_patch!r}.")
    return True


async def surface_error(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: Optional[str],
        name: str,
        reason: str,
        message: str,
        context: Optional[auth.APIContext] = None,
        logger: typedefs.Logger,
) -> bool:
    """
    Set the ``ErrorOccurred`` condition on the freshly read object, if it still exists.
    """
    body = await fetching.read_obj(
        settings=settings,
        resource=resource,
        namespace=namespace,
        name=name,
        context=context,
        logger=logger,
    )
    if body is None:
        return False
    status = with_error(bodies.get_status(body), reason=reason, message=message)
    return await write_status(
        settings=settings,
        resource=resource,
        body=body,
        status=status,
        context=context,
        logger=logger,
    )
