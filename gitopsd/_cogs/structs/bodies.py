"""
All the structures coming from/to the Kubernetes API.

Everything marked "raw" is a plain unwrapped unprocessed data as JSON-decoded
from Kubernetes API, usually as retrieved in watching or fetching API calls.
"Input" is a parsed JSON as is, while "event" is an "input" without "errors".
All non-used payload falls into `Any`, and is not type-checked.
"""
from typing import Any, Mapping, Optional, Union

from typing_extensions import Literal, TypedDict

Labels = Mapping[str, str]
Annotations = Mapping[str, str]

# ``None`` is used for the listing, when the pseudo-watch-stream is simulated.
RawInputType = Literal[None, 'ADDED', 'MODIFIED', 'DELETED', 'ERROR']
RawEventType = Literal[None, 'ADDED', 'MODIFIED', 'DELETED']


class RawMeta(TypedDict, total=False):
    uid: str
    name: str
    namespace: str
    labels: Labels
    annotations: Annotations
    resourceVersion: str
    generation: int
    deletionTimestamp: str
    creationTimestamp: str


class RawBody(TypedDict, total=False):
    apiVersion: str
    kind: str
    metadata: RawMeta
    spec: Mapping[str, Any]
    status: Mapping[str, Any]
    type: str  # secrets only
    data: Mapping[str, str]  # secrets only
    stringData: Mapping[str, str]  # secrets only


# A special payload for type==ERROR (this is not a connection or client error).
class RawError(TypedDict, total=False):
    apiVersion: str     # usually: Literal['v1']
    kind: str           # usually: Literal['Status']
    metadata: Mapping[Any, Any]
    code: int
    reason: str
    status: str
    message: str


# As received from the stream before processing the errors and special cases.
class RawInput(TypedDict, total=True):
    type: RawInputType
    object: Union[RawBody, RawError]


# As passed to the notifiers after processing the errors and special cases.
class RawEvent(TypedDict, total=True):
    type: RawEventType
    object: RawBody


def get_uid(body: RawBody) -> Optional[str]:
    return body.get('metadata', {}).get('uid')


def get_name(body: RawBody) -> Optional[str]:
    return body.get('metadata', {}).get('name')


def get_namespace(body: RawBody) -> Optional[str]:
    return body.get('metadata', {}).get('namespace')


def get_spec(body: RawBody) -> Mapping[str, Any]:
    return body.get('spec') or {}


def get_status(body: RawBody) -> Mapping[str, Any]:
    return body.get('status') or {}
