"""
All configuration flags, options, settings to fine-tune the control plane.

All settings are grouped semantically just for convenience
(instead of a flat mega-object with all the values in it).

Some of the settings are flags, some are scalars, some are optional,
some are not (but all of them have reasonable defaults).
"""
import dataclasses
import pathlib
from typing import Iterable, Optional, Union


@dataclasses.dataclass
class NetworkingSettings:

    request_timeout: Optional[float] = 5 * 60  # == aiohttp.client.DEFAULT_TIMEOUT
    """
    A timeout for the API requests (except watching; see `WatchingSettings`).
    """

    connect_timeout: Optional[float] = None
    """
    A timeout for the connection establishing of the API requests.
    """

    error_backoffs: Union[float, Iterable[float]] = (1, 1, 2, 3, 5, 8)
    """
    Backoff intervals in case of retryable API errors (5xx, connection errors).
    Once the sequence is exhausted, the error escalates to the caller.
    """


@dataclasses.dataclass
class WatchingSettings:

    server_timeout: Optional[float] = None
    """
    The maximum duration of one streaming request.
    If ``None``, then obey the server-side timeouts (they seem to be random).
    """

    client_timeout: Optional[float] = None
    """
    An HTTP/HTTPS session timeout to use in watch requests.
    """

    connect_timeout: Optional[float] = None
    """
    An HTTP/HTTPS connection timeout to use in watch requests.
    """

    reconnect_backoff: float = 0.1
    """
    How long should a pause be between watch requests (to prevent API flooding).
    """

    secret_types: Iterable[str] = (
        'managed-gitops.redhat.com/managed-environment',
        'managed-gitops.redhat.com/repository-credential',
    )
    """
    Only the secrets of these types are forwarded to the core by the notifiers.
    Other secrets cannot be referenced by the managed objects and are ignored.
    """


@dataclasses.dataclass
class QueueingSettings:
    """
    Settings for how canonical events are serialized per resource key.
    """

    worker_limit: Optional[int] = None
    """
    How many per-key workers can be running simultaneously.
    If ``None``, there is no limit to the number of workers (as many as needed).
    """

    idle_timeout: float = 5.0
    """
    How soon an idle worker is exited and garbage-collected if no new events arrive.
    """

    exit_timeout: float = 2.0
    """
    How long to wait for the backlogs to be depleted on the dispatcher's closing.
    """

    max_depth: int = 16
    """
    The backlog depth of one key, above which duplicate ``Modified`` events
    are coalesced. ``Created`` & ``Deleted`` events are never coalesced.
    """

    coalescing: bool = True
    """
    Should the duplicate ``Modified`` events be coalesced at all?
    Only the latest observed state matters, so it is safe; but it can be disabled.
    """

    dead_letters_limit: Optional[int] = 1000
    """
    How many dead-lettered events are remembered for inspection (the oldest are forgotten).
    ``None`` means no limit.
    """


@dataclasses.dataclass
class RetryingSettings:
    """
    Settings for the retries of the transiently failed events.
    """

    backoffs: Iterable[float] = (1, 2, 4, 8, 16, 32, 60)
    """
    The exponential backoffs between the retries of one event for one key.
    Once exhausted, the last value is used for all the following retries.
    """

    max_attempts: Optional[int] = 20
    """
    How many times one event is attempted before it is dead-lettered.
    ``None`` means to retry forever (and to block the key while doing so).
    The deletions are retried forever regardless, at the last backoff.
    """

    conflict_attempts: int = 3
    """
    How many times an entity update is re-attempted with freshly reloaded state
    when it loses an optimistic-concurrency race, before escalating as transient.
    """


@dataclasses.dataclass
class IntakeSettings:

    retry_delay: float = 1.0
    """
    How soon the notifiers re-deliver a notification whose tenant (namespace)
    could not be resolved yet (e.g. the namespace is not listed yet).
    """


@dataclasses.dataclass
class DatabaseSettings:

    path: Union[str, pathlib.Path] = 'gitopsd.sqlite'
    """
    The path to the database file. Parent directories are created if absent.
    """

    pool_size: int = 4
    """
    How many connections are shared by all the workers at most.
    """

    busy_timeout: float = 5.0
    """
    How long a connection waits for a lock held by another connection
    before failing with a (transient) "database is locked" error.
    """


@dataclasses.dataclass
class EngineSettings:
    """
    Settings for the communication with the external GitOps engine's agent.
    """

    namespace: str = 'gitops-service-argocd'
    """
    The well-known namespace where the operation signal objects
    and the credential artifacts are created.
    """

    poll_interval: float = 1.0
    """
    How often the operation signal objects are checked for completion.
    """

    operation_timeout: float = 30.0
    """
    How long a worker waits for an operation to complete in one pass.
    After that, the worker frees the key and re-queues a status refresh.
    """

    refresh_delay: float = 10.0
    """
    How soon a status refresh is re-queued for an operation still in flight.
    """


@dataclasses.dataclass
class OperatorSettings:
    networking: NetworkingSettings = dataclasses.field(default_factory=NetworkingSettings)
    watching: WatchingSettings = dataclasses.field(default_factory=WatchingSettings)
    queueing: QueueingSettings = dataclasses.field(default_factory=QueueingSettings)
    retrying: RetryingSettings = dataclasses.field(default_factory=RetryingSettings)
    intake: IntakeSettings = dataclasses.field(default_factory=IntakeSettings)
    database: DatabaseSettings = dataclasses.field(default_factory=DatabaseSettings)
    engine: EngineSettings = dataclasses.field(default_factory=EngineSettings)
