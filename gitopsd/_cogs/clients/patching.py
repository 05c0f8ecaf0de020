from typing import Optional

from gitopsd._cogs.clients import api, auth, errors
from gitopsd._cogs.configs import configuration
from gitopsd._cogs.helpers import typedefs
from gitopsd._cogs.structs import bodies, patches, references


async def patch_obj(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        name: str,
        patch: patches.Patch,
        context: Optional[auth.APIContext] = None,
        logger: typedefs.Logger,
) -> Optional[bodies.RawBody]:
    """
    Patch a resource of specific kind.

    The status is patched via the status subresource if the resource has one;
    all other fields are patched via the main resource.

    Returns the patched body. The patched body can be partial (status-only,
    no-status, or empty) -- depending on whether there were fields in the body
    or in the status to patch.

    Returns ``None`` if the underlying object is absent, as detected by trying
    to patch it and failing with HTTP 404. This can happen if the object was
    deleted externally during the processing; the following ``Deleted`` event
    for the same key takes care of the rest.
    """
    as_subresource = 'status' in resource.subresources
    body_patch = dict(patch)  # shallow: for mutation of the top-level keys below.
    status_patch = body_patch.pop('status', None) if as_subresource else None

    try:
        patched_body = bodies.RawBody()

        if body_patch:
            patched_body = await api.patch(
                url=resource.get_url(namespace=namespace, name=name),
                headers={'Content-Type': 'application/merge-patch+json'},
                payload=body_patch,
                context=context,
                settings=settings,
                logger=logger,
            )

        if status_patch:
            response = await api.patch(
                url=resource.get_url(namespace=namespace, name=name,
                                     subresource='status' if as_subresource else None),
                headers={'Content-Type': 'application/merge-patch+json'},
                payload={'status': status_patch},
                context=context,
                settings=settings,
                logger=logger,
            )
            patched_body['status'] = response.get('status')

        return patched_body

    except errors.APINotFoundError:
        return None


async def replace_obj(
        *,
        settings: configuration.OperatorSettings,
        resource: references.Resource,
        namespace: references.Namespace,
        name: str,
        body: bodies.RawBody,
        context: Optional[auth.APIContext] = None,
        logger: typedefs.Logger,
) -> Optional[bodies.RawBody]:
    """
    Replace a resource fully (except the status, if it is a subresource).

    Returns ``None`` if the underlying object is absent (HTTP 404).
    """
    try:
        replaced_body: bodies.RawBody = await api.put(
            url=resource.get_url(namespace=namespace, name=name),
            payload=body,
            context=context,
            settings=settings,
            logger=logger,
        )
    except errors.APINotFoundError:
        return None
    return replaced_body
