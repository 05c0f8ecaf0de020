"""
References to the resource kinds served by the control plane.

Only the specific resources are supported, not the selectors or patterns:
the control plane serves a fixed set of kinds known in advance.
"""
import dataclasses
import urllib.parse
from typing import FrozenSet, List, Mapping, NewType, Optional

# A specific really existing addressable namespace (at least, the one assumed to be so).
NamespaceName = NewType('NamespaceName', str)

# A namespace reference usable in the API calls. `None` means cluster-wide API calls.
Namespace = Optional[NamespaceName]

# The API group & version of all the custom resources of the control plane.
GROUP = 'managed-gitops.redhat.com'
VERSION = 'v1alpha1'


@dataclasses.dataclass(frozen=True, eq=False, repr=False)
class Resource:
    """
    A reference to a very specific custom or built-in resource kind.

    It is used to form the K8s API URLs. Generally, K8s API only needs
    an API group, an API version, and a plural name of the resource.
    All other names are remembered for logging & informational purposes.
    """

    group: str
    """
    The resource's API group; e.g. ``"managed-gitops.redhat.com"``.
    For Core v1 API resources, an empty string: ``""``.
    """

    version: str
    """
    The resource's API version; e.g. ``"v1"``, ``"v1alpha1"``, etc.
    """

    plural: str
    """
    The resource's plural name; e.g. ``"secrets"``, ``"gitopsdeployments"``.
    It is used as an API endpoint, together with API group & version.
    """

    kind: Optional[str] = None
    """
    The resource's kind (as in YAML files); e.g. ``"Secret"``, ``"GitOpsDeployment"``.
    """

    subresources: FrozenSet[str] = frozenset()
    """
    The resource's subresources, if defined; e.g. ``{"status"}``.
    """

    namespaced: Optional[bool] = None
    """
    Whether the resource is namespaced (``True``) or cluster-scoped (``False``).
    """

    def __hash__(self) -> int:
        return hash((self.group, self.version, self.plural))

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Resource):
            self_tuple = (self.group, self.version, self.plural)
            other_tuple = (other.group, other.version, other.plural)
            return self_tuple == other_tuple
        else:
            return NotImplemented

    def __repr__(self) -> str:
        return f'{self.plural}.{self.version}.{self.group}'.strip('.')

    @property
    def api_version(self) -> str:
        return f'{self.group}/{self.version}' if self.group else self.version

    def get_url(
            self,
            *,
            server: Optional[str] = None,
            namespace: Namespace = None,
            name: Optional[str] = None,
            subresource: Optional[str] = None,
            params: Optional[Mapping[str, str]] = None,
    ) -> str:
        """
        Build a URL to be used with K8s API.

        If the namespace is not set, a cluster-wide URL is returned.
        For cluster-scoped resources, the namespace is ignored.

        If the name is not set, the URL for the resource list is returned.
        Otherwise (if set), the URL for the individual resource is returned.

        Params go to the query parameters (``?param1=value1&param2=value2...``).
        """
        if subresource is not None and name is None:
            raise ValueError("Subresources can be used only with specific resources by their name.")
        if not self.namespaced and namespace is not None:
            raise ValueError("Specific namespaces are not supported for cluster-scoped resources.")
        if self.namespaced and namespace is None and name is not None:
            raise ValueError("Specific namespaces are required for specific namespaced resources.")

        parts: List[Optional[str]] = [
            '/api' if self.group == '' and self.version == 'v1' else '/apis',
            self.group,
            self.version,
            'namespaces' if self.namespaced and namespace is not None else None,
            namespace if self.namespaced and namespace is not None else None,
            self.plural,
            name,
            subresource,
        ]

        query = urllib.parse.urlencode(params, encoding='utf-8') if params else ''
        path = '/'.join([part for part in parts if part])
        url = path + ('?' if query else '') + query
        return url if server is None else server.rstrip('/') + '/' + url.lstrip('/')


NAMESPACES = Resource('', 'v1', 'namespaces', kind='Namespace', namespaced=False)
SECRETS = Resource('', 'v1', 'secrets', kind='Secret', namespaced=True)

GITOPSDEPLOYMENTS = Resource(
    GROUP, VERSION, 'gitopsdeployments',
    kind='GitOpsDeployment', namespaced=True, subresources=frozenset({'status'}),
)
GITOPSDEPLOYMENTSYNCRUNS = Resource(
    GROUP, VERSION, 'gitopsdeploymentsyncruns',
    kind='GitOpsDeploymentSyncRun', namespaced=True, subresources=frozenset({'status'}),
)
MANAGED_ENVIRONMENTS = Resource(
    GROUP, VERSION, 'gitopsdeploymentmanagedenvironments',
    kind='GitOpsDeploymentManagedEnvironment', namespaced=True, subresources=frozenset({'status'}),
)
REPOSITORY_CREDENTIALS = Resource(
    GROUP, VERSION, 'gitopsdeploymentrepositorycredentials',
    kind='GitOpsDeploymentRepositoryCredential', namespaced=True, subresources=frozenset({'status'}),
)

# The completion-signal objects of the operations, consumed by the engine's agent.
OPERATIONS = Resource(
    GROUP, VERSION, 'operations',
    kind='Operation', namespaced=True, subresources=frozenset({'status'}),
)
