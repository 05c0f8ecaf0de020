"""
The main gitopsd module for all the exported functions & classes.
"""
# isort: skip_file

# Unlike all other places, where we import other modules and refer
# the functions via the modules, this is the control plane's top-level interface,
# as it is seen by the embedding applications and tests.

from gitopsd._cogs.configs.configuration import (
    OperatorSettings,
    NetworkingSettings,
    WatchingSettings,
    QueueingSettings,
    RetryingSettings,
    IntakeSettings,
    DatabaseSettings,
    EngineSettings,
)
from gitopsd._cogs.helpers.typedefs import (
    Logger,
)
from gitopsd._cogs.helpers.versions import (
    version as __version__,
)
from gitopsd._cogs.clients.auth import (
    APIContext,
    login,
)
from gitopsd._cogs.structs.credentials import (
    LoginError,
    ConnectionInfo,
)
from gitopsd._cogs.storage.connections import (
    Database,
)
from gitopsd._cogs.storage.errors import (
    StorageError,
    ConflictError,
    UniquenessViolation,
    SchemaError,
)
from gitopsd._core.actions.execution import (
    PermanentError,
    TemporaryError,
    FatalError,
    ErrorKind,
    Outcome,
    classify,
)
from gitopsd._core.actions.loggers import (
    LogFormat,
    ObjectLogger,
    configure,
)
from gitopsd._core.intents.events import (
    CanonicalEvent,
    ChangeKind,
    ResourceKey,
    ResourceKind,
)
from gitopsd._core.reactor.queueing import (
    Dispatcher,
    DispatcherClosedError,
    DeadLetter,
)
from gitopsd._core.reactor.receiving import (
    NamespaceIndex,
    Normalizer,
    Request,
    TenantResolutionError,
)
from gitopsd._core.reactor.processing import (
    process_event,
)
from gitopsd._core.reactor.running import (
    run,
    operator,
)

__all__ = [
    'OperatorSettings',
    'NetworkingSettings',
    'WatchingSettings',
    'QueueingSettings',
    'RetryingSettings',
    'IntakeSettings',
    'DatabaseSettings',
    'EngineSettings',
    'Logger',
    'APIContext',
    'login',
    'LoginError',
    'ConnectionInfo',
    'Database',
    'StorageError',
    'ConflictError',
    'UniquenessViolation',
    'SchemaError',
    'PermanentError',
    'TemporaryError',
    'FatalError',
    'ErrorKind',
    'Outcome',
    'classify',
    'LogFormat',
    'ObjectLogger',
    'configure',
    'CanonicalEvent',
    'ChangeKind',
    'ResourceKey',
    'ResourceKind',
    'Dispatcher',
    'DispatcherClosedError',
    'DeadLetter',
    'NamespaceIndex',
    'Normalizer',
    'Request',
    'TenantResolutionError',
    'process_event',
    'run',
    'operator',
]
