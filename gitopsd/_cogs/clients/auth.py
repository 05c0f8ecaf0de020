import base64
import contextlib
import functools
import os
import ssl
import tempfile
from contextvars import ContextVar
from typing import Any, Callable, Dict, Optional, TypeVar, Union, cast

import aiohttp

from gitopsd._cogs.helpers import typedefs, versions
from gitopsd._cogs.structs import credentials

# Per-process exchange point for the authenticated API context.
# Used by the client wrappers when no context is explicitly passed.
# Set by `run()`, so that every task of the control plane has the same context.
context_var: ContextVar["APIContext"] = ContextVar('context_var')

# A typevar to show that we return a function with the same signature as given.
_F = TypeVar('_F', bound=Callable[..., Any])


def authenticated(fn: _F) -> _F:
    """
    A decorator to inject a pre-authenticated session to a requesting routine.

    If a context is explicitly passed (e.g. from the canonical event's client
    handle), it is used as is. Otherwise, the process-wide one is used.
    """
    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        if kwargs.get('context') is None:
            kwargs['context'] = context_var.get()
        return await fn(*args, **kwargs)

    return cast(_F, wrapper)


class APIContext:
    """
    A container for an aiohttp session and the caches of the environment info.

    We assume that the whole control plane runs in the same event loop,
    so there is no need to split the sessions for multiple loops.
    """

    # The main contained object used by the API methods.
    session: aiohttp.ClientSession

    # Contextual information for URL building.
    server: str
    default_namespace: Optional[str]

    def __init__(
            self,
            info: credentials.ConnectionInfo,
    ) -> None:
        super().__init__()
        self.session = self.make_aiohttp_session(info)
        self.session.headers['User-Agent'] = f'gitopsd/{versions.version or "unknown"}'
        self.server = info.server
        self.default_namespace = info.default_namespace

    def make_aiohttp_session(self, info: credentials.ConnectionInfo) -> aiohttp.ClientSession:

        # Some SSL data are not accepted directly, so we have to use temp files.
        # Do not even create temporary files if there is no need. It can be a readonly filesystem.
        with contextlib.ExitStack() as stack:

            cert_path: Optional[str]
            if info.certificate_path:
                cert_path = info.certificate_path
            elif info.certificate_data:
                cert_file = stack.enter_context(tempfile.NamedTemporaryFile(buffering=0))
                cert_file.write(decode_to_pem(info.certificate_data).encode('ascii'))
                cert_path = cert_file.name
            else:
                cert_path = None

            pkey_path: Optional[str]
            if info.private_key_path:
                pkey_path = info.private_key_path
            elif info.private_key_data:
                pkey_file = stack.enter_context(tempfile.NamedTemporaryFile(buffering=0))
                pkey_file.write(decode_to_pem(info.private_key_data).encode('ascii'))
                pkey_path = pkey_file.name
            else:
                pkey_path = None

            # The SSL part (both client certificate auth and CA verification).
            context = ssl.create_default_context(
                purpose=ssl.Purpose.SERVER_AUTH,
                cafile=info.ca_path,
                cadata=decode_to_pem(info.ca_data) if info.ca_data is not None else None,
            )
            if cert_path and pkey_path:
                context.load_cert_chain(certfile=cert_path, keyfile=pkey_path)

        if info.insecure:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE

        # The token auth part.
        headers: Dict[str, str] = {}
        if info.scheme and info.token:
            headers['Authorization'] = f'{info.scheme} {info.token}'
        elif info.scheme:
            headers['Authorization'] = f'{info.scheme}'
        elif info.token:
            headers['Authorization'] = f'Bearer {info.token}'

        # The basic auth part.
        auth: Optional[aiohttp.BasicAuth]
        if info.username and info.password:
            auth = aiohttp.BasicAuth(info.username, info.password)
        else:
            auth = None

        return aiohttp.ClientSession(
            connector=aiohttp.TCPConnector(limit=0, ssl=context),
            headers=headers,
            auth=auth,
        )

    async def close(self) -> None:
        await self.session.close()


def decode_to_pem(data: Union[str, bytes]) -> str:
    if isinstance(data, str) and data.startswith('-----BEGIN '):
        return data
    elif isinstance(data, bytes) and data.startswith(b'-----BEGIN '):
        return data.decode('ascii')
    else:
        return base64.b64decode(data).decode('ascii')


def login_with_service_account(**_: Any) -> Optional[credentials.ConnectionInfo]:
    """
    A minimalistic login handler that can get raw data from a service account.

    Authentication capabilities can be limited to keep the code short & simple.
    No parsing or sophisticated multi-step token retrieval is performed.
    """

    # As per https://kubernetes.io/docs/tasks/run-application/access-api-from-pod/
    token_path = '/var/run/secrets/kubernetes.io/serviceaccount/token'
    ns_path = '/var/run/secrets/kubernetes.io/serviceaccount/namespace'
    ca_path = '/var/run/secrets/kubernetes.io/serviceaccount/ca.crt'

    if os.path.exists(token_path):
        with open(token_path, encoding='utf-8') as f:
            token = f.read().strip()

        namespace: Optional[str] = None
        if os.path.exists(ns_path):
            with open(ns_path, encoding='utf-8') as f:
                namespace = f.read().strip()

        return credentials.ConnectionInfo(
            server='https://kubernetes.default.svc',
            ca_path=ca_path if os.path.exists(ca_path) else None,
            token=token or None,
            default_namespace=namespace or None,
        )
    else:
        return None


def login_with_kubeconfig(**_: Any) -> Optional[credentials.ConnectionInfo]:
    """
    A minimalistic login handler that can get raw data from a kubeconfig file.

    Authentication capabilities can be limited to keep the code short & simple.
    No parsing or sophisticated multi-step token retrieval is performed.
    """

    # As per https://kubernetes.io/docs/concepts/configuration/organize-cluster-access-kubeconfig/
    kubeconfig = os.environ.get('KUBECONFIG')
    if not kubeconfig and os.path.exists(os.path.expanduser('~/.kube/config')):
        kubeconfig = '~/.kube/config'
    if not kubeconfig:
        return None

    paths = [path.strip() for path in kubeconfig.split(os.pathsep)]
    paths = [os.path.expanduser(path) for path in paths if path]

    texts = []
    for path in paths:
        with open(path, encoding='utf-8') as f:
            texts.append(f.read())

    config = credentials.parse_kubeconfigs(texts)
    return credentials.select_connection(config)


def login(
        *,
        logger: typedefs.Logger,
) -> credentials.ConnectionInfo:
    """
    Login to the cluster in which the control plane itself runs.

    The in-cluster service account is preferred over the developer's kubeconfig.
    """
    info = login_with_service_account()
    if info is not None:
        logger.debug("Client is configured in cluster with service account.")
        return info

    info = login_with_kubeconfig()
    if info is not None:
        logger.debug("Client is configured via kubeconfig file.")
        return info

    raise credentials.LoginError("Cannot authenticate neither in-cluster, nor via kubeconfig.")
