"""
Classification of the failures of the reconciliation steps.

Every failure of a worker is classified into one of three kinds:

* Transient: retried in place with backoff, the key's ordering is preserved.
* Permanent: surfaced as a status condition; the event is done.
* Fatal: logged and dead-lettered; the event is skipped.

The classification is performed at the worker's boundary only.
The steps themselves raise whatever they raise.
"""
import asyncio
import dataclasses
import enum
import itertools
from typing import Iterable, Iterator, Optional

import aiohttp
from sqlalchemy import exc as sa_exc

from gitopsd._cogs.clients import errors
from gitopsd._cogs.storage import errors as storage_errors


class PermanentError(Exception):
    """ A non-recoverable failure, the retries are useless (e.g. an invalid spec). """


class TemporaryError(Exception):
    """ A potentially recoverable error, should be retried. """
    def __init__(
            self,
            __msg: Optional[str] = None,
            delay: Optional[float] = None,
    ) -> None:
        super().__init__(__msg)
        self.delay = delay


class FatalError(Exception):
    """ A programming error or an impossible state: neither retried nor surfaced. """


class ErrorKind(enum.Enum):
    TRANSIENT = enum.auto()
    PERMANENT = enum.auto()
    FATAL = enum.auto()


def classify(exc: BaseException) -> ErrorKind:
    if isinstance(exc, TemporaryError):
        return ErrorKind.TRANSIENT
    elif isinstance(exc, PermanentError):
        return ErrorKind.PERMANENT
    elif isinstance(exc, FatalError):
        return ErrorKind.FATAL

    # K8s API: only the server-side errors & races are worth retrying.
    elif isinstance(exc, (errors.APIServerError, errors.APIConflictError, errors.APITooManyRequestsError)):
        return ErrorKind.TRANSIENT
    elif isinstance(exc, errors.APIClientError):
        return ErrorKind.PERMANENT
    elif isinstance(exc, (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, asyncio.TimeoutError)):
        return ErrorKind.TRANSIENT

    # The relational store: lost races, locks & exhausted pools are transient, claims are permanent.
    elif isinstance(exc, storage_errors.ConflictError):
        return ErrorKind.TRANSIENT
    elif isinstance(exc, storage_errors.UniquenessViolation):
        return ErrorKind.PERMANENT
    elif isinstance(exc, (sa_exc.OperationalError, sa_exc.TimeoutError)):
        return ErrorKind.TRANSIENT

    else:
        return ErrorKind.FATAL


@dataclasses.dataclass(frozen=True)
class Outcome:
    """
    An in-memory outcome of one single processing of one single event.

    A non-final outcome means that the same event must be retried after
    the delay (or after the next backoff if not specified), before any other
    events of the same key. A final outcome can request a status refresh
    after some time (a new event, not a retry of this one).
    """
    final: bool
    delay: Optional[float] = None
    exception: Optional[BaseException] = None
    refresh: Optional[float] = None


def iter_backoffs(backoffs: Iterable[float]) -> Iterator[float]:
    """
    Iterate over the backoffs, and then repeat the last one infinitely.

    An empty sequence of backoffs means no delays at all.
    """
    last_used_delay: float = 0
    for delay in backoffs:
        last_used_delay = delay
        yield delay
    yield from itertools.repeat(last_used_delay)
