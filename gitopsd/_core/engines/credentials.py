"""
The lifecycle of the credential artifacts of the managed environments.

A managed environment refers to a secret (in the same namespace) with
a kubeconfig, which is validated to carry the connection material
for the environment's declared API URL. The engine does not read
the users' secrets: it reads the credential artifact generated
from them, named deterministically from the environment's entity id.

The artifact is deleted synchronously in the same pass when the environment
is deleted, when its secret is deleted, or when the material becomes invalid.
"""
import base64
import binascii
import hashlib
import json
from typing import Any, Dict, Mapping, Optional

from gitopsd._cogs.clients import auth, creating, deleting, errors, fetching, patching
from gitopsd._cogs.configs import configuration
from gitopsd._cogs.helpers import typedefs
from gitopsd._cogs.structs import bodies, credentials, references
from gitopsd._core.actions import execution

MANAGED_ENVIRONMENT_SECRET_TYPE = 'managed-gitops.redhat.com/managed-environment'
REPOSITORY_CREDENTIAL_SECRET_TYPE = 'managed-gitops.redhat.com/repository-credential'
KUBECONFIG_KEY = 'kubeconfig'

ARTIFACT_PREFIX = 'managed-env-'
ARTIFACT_TYPE_LABEL = 'argocd.argoproj.io/secret-type'
ARTIFACT_TYPE = 'cluster'
ENVIRONMENT_ID_LABEL = 'managed-gitops.redhat.com/managed-environment-id'
DIGEST_ANNOTATION = 'managed-gitops.redhat.com/credentials-digest'


class CredentialsError(execution.PermanentError):
    """ The referenced secret is absent or has no usable connection material. """
    reason = 'InvalidCredentials'


def digest(data: Mapping[str, Any]) -> str:
    """ A stable fingerprint of the credentials, to detect their changes without storing them. """
    serialized = json.dumps(data, sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(serialized.encode('utf-8')).hexdigest()


def decode_data(secret: bodies.RawBody) -> Dict[str, str]:
    """ Decode the secret's base64-encoded data into text values. """
    decoded: Dict[str, str] = {}
    for key, value in (secret.get('data') or {}).items():
        try:
            decoded[key] = base64.b64decode(value).decode('utf-8')
        except (binascii.Error, UnicodeDecodeError, TypeError) as e:
            raise CredentialsError(f"The secret's key {key!r} is not a valid base64 text.") from e
    return decoded


class ClusterCredentials:
    """
    The connection material for one cluster, in the shape the engine expects.
    """

    def __init__(self, *, server: str, config: Mapping[str, Any]) -> None:
        super().__init__()
        self.server = server
        self.config = config

    def __repr__(self) -> str:
        # Never log the secrets.
        return f'<{self.__class__.__name__} server={self.server!r}>'

    @property
    def digest(self) -> str:
        return digest({'server': self.server, 'config': self.config})


def extract(
        secret: bodies.RawBody,
        *,
        api_url: str,
        insecure: bool = False,
) -> ClusterCredentials:
    """
    Extract the connection material for the API URL from the kubeconfig in the secret.

    Raises :class:`CredentialsError` if the secret is of a wrong type,
    has no kubeconfig, or the kubeconfig has no usable material for the URL.
    """
    secret_type = secret.get('type')
    if secret_type != MANAGED_ENVIRONMENT_SECRET_TYPE:
        raise CredentialsError(f"The secret must be of type {MANAGED_ENVIRONMENT_SECRET_TYPE!r}, "
                               f"got {secret_type!r}.")

    data = decode_data(secret)
    text = data.get(KUBECONFIG_KEY)
    if not text:
        raise CredentialsError(f"The secret has no {KUBECONFIG_KEY!r} key.")

    try:
        config = credentials.parse_kubeconfigs([text])
        info = credentials.select_connection(config, server=api_url)
    except credentials.LoginError as e:
        raise CredentialsError(f"The kubeconfig is not usable for {api_url!r}: {e}") from e

    if not info.has_material:
        raise CredentialsError(f"The kubeconfig has no credentials for {api_url!r}.")
    if info.ca_path or info.certificate_path or info.private_key_path:
        raise CredentialsError("The kubeconfig refers to local files; only the embedded data is supported.")

    tls: Dict[str, Any] = {'insecure': bool(insecure or info.insecure)}
    if info.ca_data:
        tls['caData'] = info.ca_data
    if info.certificate_data:
        tls['certData'] = info.certificate_data
    if info.private_key_data:
        tls['keyData'] = info.private_key_data

    engine_config: Dict[str, Any] = {'tlsClientConfig': tls}
    if info.token:
        engine_config['bearerToken'] = info.token
    if info.username:
        engine_config['username'] = info.username
    if info.password:
        engine_config['password'] = info.password

    return ClusterCredentials(server=api_url, config=engine_config)


async def read_credentials(
        *,
        settings: configuration.OperatorSettings,
        namespace: Optional[str],
        secret_name: str,
        api_url: str,
        insecure: bool = False,
        context: Optional[auth.APIContext] = None,
        logger: typedefs.Logger,
) -> ClusterCredentials:
    secret = await fetching.read_obj(
        settings=settings,
        resource=references.SECRETS,
        namespace=namespace,
        name=secret_name,
        context=context,
        logger=logger,
    )
    if secret is None:
        raise CredentialsError(f"The secret {secret_name!r} is not found.")
    return extract(secret, api_url=api_url, insecure=insecure)


def artifact_name(entity_id: str) -> str:
    return f'{ARTIFACT_PREFIX}{entity_id}'


def build_artifact(
        *,
        settings: configuration.OperatorSettings,
        entity_id: str,
        creds: ClusterCredentials,
) -> bodies.RawBody:
    return {
        'metadata': {
            'name': artifact_name(entity_id),
            'namespace': settings.engine.namespace,
            'labels': {
                ARTIFACT_TYPE_LABEL: ARTIFACT_TYPE,
                ENVIRONMENT_ID_LABEL: entity_id,
            },
            'annotations': {
                DIGEST_ANNOTATION: creds.digest,
            },
        },
        'type': 'Opaque',
        'stringData': {
            'name': artifact_name(entity_id),
            'server': creds.server,
            'config': json.dumps(creds.config, sort_keys=True),
        },
    }


async def ensure_artifact(
        *,
        settings: configuration.OperatorSettings,
        entity_id: str,
        creds: ClusterCredentials,
        context: Optional[auth.APIContext] = None,
        logger: typedefs.Logger,
) -> bool:
    """
    Create or re-issue the credential artifact. Returns whether it was changed.

    The artifact with the same credentials' digest is left as is.
    The artifact of the rotated credentials is deleted and created anew,
    so that the old credentials are revoked before the new ones are issued.
    """
    name = artifact_name(entity_id)
    existing = await fetching.read_obj(
        settings=settings,
        resource=references.SECRETS,
        namespace=settings.engine.namespace,
        name=name,
        context=context,
        logger=logger,
    )
    if existing is not None:
        annotations = existing.get('metadata', {}).get('annotations') or {}
        if annotations.get(DIGEST_ANNOTATION) == creds.digest:
            logger.debug(f"The credential artifact {name!r} is up to date.")
            return False
        logger.info(f"The credentials of {name!r} are rotated; revoking the old artifact.")
        await delete_artifact(settings=settings, entity_id=entity_id, context=context, logger=logger)

    try:
        await creating.create_obj(
            settings=settings,
            resource=references.SECRETS,
            body=build_artifact(settings=settings, entity_id=entity_id, creds=creds),
            context=context,
            logger=logger,
        )
    except errors.APIConflictError:
        logger.debug(f"The credential artifact {name!r} was created in parallel; replacing it.")
    else:
        logger.info(f"Created the credential artifact {name!r}.")
        return True

    replaced = await patching.replace_obj(
        settings=settings,
        resource=references.SECRETS,
        namespace=settings.engine.namespace,
        name=name,
        body=build_artifact(settings=settings, entity_id=entity_id, creds=creds),
        context=context,
        logger=logger,
    )
    if replaced is None:
        raise execution.TemporaryError(f"The credential artifact {name!r} disappeared while replacing.")
    logger.info(f"Replaced the credential artifact {name!r}.")
    return True


async def delete_artifact(
        *,
        settings: configuration.OperatorSettings,
        entity_id: str,
        context: Optional[auth.APIContext] = None,
        logger: typedefs.Logger,
) -> bool:
    name = artifact_name(entity_id)
    deleted = await deleting.delete_obj(
        settings=settings,
        resource=references.SECRETS,
        namespace=settings.engine.namespace,
        name=name,
        context=context,
        logger=logger,
    )
    if deleted:
        logger.info(f"Deleted the credential artifact {name!r}.")
    return deleted
