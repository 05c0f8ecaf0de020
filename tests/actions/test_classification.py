import asyncio
import itertools

import aiohttp
import pytest
from sqlalchemy import exc as sa_exc

from gitopsd._cogs.clients import errors
from gitopsd._cogs.storage.errors import ConflictError, SchemaError, UniquenessViolation
from gitopsd._core.actions.execution import ErrorKind, FatalError, PermanentError, \
                                            TemporaryError, classify, iter_backoffs
from gitopsd._core.reactor.receiving import TenantResolutionError


@pytest.mark.parametrize('exc, kind', [
    (TemporaryError("boo"), ErrorKind.TRANSIENT),
    (TenantResolutionError("boo"), ErrorKind.TRANSIENT),
    (errors.APIServerError(None, status=503), ErrorKind.TRANSIENT),
    (errors.APIConflictError(None, status=409), ErrorKind.TRANSIENT),
    (errors.APITooManyRequestsError(None, status=429), ErrorKind.TRANSIENT),
    (aiohttp.ServerDisconnectedError(), ErrorKind.TRANSIENT),
    (asyncio.TimeoutError(), ErrorKind.TRANSIENT),
    (ConflictError("boo"), ErrorKind.TRANSIENT),
    (sa_exc.OperationalError("BEGIN IMMEDIATE", {}, Exception("database is locked")), ErrorKind.TRANSIENT),
    (sa_exc.TimeoutError("QueuePool limit reached"), ErrorKind.TRANSIENT),
    (PermanentError("boo"), ErrorKind.PERMANENT),
    (UniquenessViolation("boo"), ErrorKind.PERMANENT),
    (errors.APIForbiddenError(None, status=403), ErrorKind.PERMANENT),
    (errors.APIClientError(None, status=422), ErrorKind.PERMANENT),
    (FatalError("boo"), ErrorKind.FATAL),
    (SchemaError("boo"), ErrorKind.FATAL),
    (sa_exc.IntegrityError("INSERT", {}, Exception("NOT NULL constraint failed")), ErrorKind.FATAL),
    (ValueError("boo"), ErrorKind.FATAL),
    (KeyError("boo"), ErrorKind.FATAL),
])
def test_classification(exc, kind):
    assert classify(exc) is kind


def test_temporary_error_delays():
    assert TemporaryError("boo").delay is None
    assert TemporaryError("boo", delay=12.3).delay == 12.3


def test_backoffs_repeat_the_last_value():
    backoffs = list(itertools.islice(iter_backoffs([1, 2, 4]), 6))
    assert backoffs == [1, 2, 4, 4, 4, 4]


def test_backoffs_default_to_no_delays():
    backoffs = list(itertools.islice(iter_backoffs([]), 3))
    assert backoffs == [0, 0, 0]
