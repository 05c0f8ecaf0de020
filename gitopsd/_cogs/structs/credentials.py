"""
Authentication-related structures.

A minimally sufficient data structure is introduced to bring the connection
credentials together in a structured and type-annotated way -- both for
the control plane's own connection to its cluster, and for the connections
of the external engine to the registered target clusters.

The "rudimentary" is defined as the information passed to the HTTP protocol
and TCP/SSL connection only, i.e. everything usable in a generic HTTP client:

* TCP server host & port.
* SSL verification/ignorance flag.
* SSL certificate authority.
* SSL client certificate and its private key.
* HTTP ``Authorization: Basic username:password``.
* HTTP ``Authorization: Bearer token``.
* URL's default namespace for the cases when this is implied.
"""
import dataclasses
from typing import Any, Dict, Iterable, Mapping, Optional

import yaml


class LoginError(Exception):
    """ Raised when the connection credentials are absent or unusable. """


@dataclasses.dataclass(frozen=True)
class ConnectionInfo:
    """
    A single endpoint with specific credentials and connection flags to use.
    """
    server: str  # e.g. "https://localhost:443"
    ca_path: Optional[str] = None
    ca_data: Optional[str] = None
    insecure: Optional[bool] = None
    username: Optional[str] = None
    password: Optional[str] = None
    scheme: Optional[str] = None  # RFC-7235/5.1: e.g. Bearer, Basic, Digest, etc.
    token: Optional[str] = None
    certificate_path: Optional[str] = None
    certificate_data: Optional[str] = None
    private_key_path: Optional[str] = None
    private_key_data: Optional[str] = None
    default_namespace: Optional[str] = None

    @property
    def has_material(self) -> bool:
        """ Whether there is anything to authenticate with (besides the server itself). """
        return bool(self.token or
                    (self.username and self.password) or
                    ((self.certificate_data or self.certificate_path) and
                     (self.private_key_data or self.private_key_path)))


@dataclasses.dataclass
class KubeConfig:
    """ A merged content of one or few kubeconfig files, as per kubectl's rules. """
    current_context: Optional[str] = None
    contexts: Dict[str, Mapping[str, Any]] = dataclasses.field(default_factory=dict)
    clusters: Dict[str, Mapping[str, Any]] = dataclasses.field(default_factory=dict)
    users: Dict[str, Mapping[str, Any]] = dataclasses.field(default_factory=dict)


def parse_kubeconfigs(texts: Iterable[str]) -> KubeConfig:
    """
    Parse and merge the kubeconfigs. The first value wins, as kubectl does.

    Raises :class:`LoginError` if the content is not a YAML mapping.
    """
    merged = KubeConfig()
    for text in texts:
        try:
            config = yaml.safe_load(text) or {}
        except yaml.YAMLError as e:
            raise LoginError(f"The kubeconfig is not a valid YAML: {e}") from e
        if not isinstance(config, Mapping):
            raise LoginError("The kubeconfig is not a mapping.")

        if merged.current_context is None:
            merged.current_context = config.get('current-context')
        for item in config.get('contexts') or []:
            merged.contexts.setdefault(item['name'], item.get('context') or {})
        for item in config.get('clusters') or []:
            merged.clusters.setdefault(item['name'], item.get('cluster') or {})
        for item in config.get('users') or []:
            merged.users.setdefault(item['name'], item.get('user') or {})
    return merged


def select_connection(
        config: KubeConfig,
        *,
        server: Optional[str] = None,
) -> ConnectionInfo:
    """
    Select the connection credentials from the parsed kubeconfig.

    If the server is specified, the first context pointing to a cluster with
    that server URL is used (regardless of the trailing slashes). Otherwise,
    the current context is used. In both cases, the absence is an error.
    """
    context_name: Optional[str]
    if server is not None:
        wanted = server.rstrip('/')
        context_name = next((
            name for name, context in config.contexts.items()
            if (config.clusters.get(context.get('cluster')) or {}).get('server', '').rstrip('/') == wanted
        ), None)
        if context_name is None:
            raise LoginError(f"No context in the kubeconfig points to {server!r}.")
    else:
        context_name = config.current_context
        if context_name is None:
            raise LoginError("Current context is not set in the kubeconfig.")

    try:
        context = config.contexts[context_name]
        cluster = config.clusters[context['cluster']]
        user = config.users.get(context.get('user'), {})
    except KeyError as e:
        raise LoginError(f"The kubeconfig context {context_name!r} is incomplete: {e}") from e

    # Unlike the full-featured clients, we do not make fake API requests to refresh the tokens.
    provider_token = user.get('auth-provider', {}).get('config', {}).get('access-token')

    return ConnectionInfo(
        server=cluster.get('server'),
        ca_path=cluster.get('certificate-authority'),
        ca_data=cluster.get('certificate-authority-data'),
        insecure=cluster.get('insecure-skip-tls-verify'),
        certificate_path=user.get('client-certificate'),
        certificate_data=user.get('client-certificate-data'),
        private_key_path=user.get('client-key'),
        private_key_data=user.get('client-key-data'),
        username=user.get('username'),
        password=user.get('password'),
        token=user.get('token') or provider_token,
        default_namespace=context.get('namespace'),
    )
