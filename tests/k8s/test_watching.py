import json

import aiohttp.web
import pytest

from gitopsd._cogs.clients.watching import Bookmark, WatchingError, infinite_watch
from gitopsd._cogs.structs.references import SECRETS

LIST_URL = '/api/v1/namespaces/ns1/secrets'
WATCH_URL = '/api/v1/namespaces/ns1/secrets?watch=true&resourceVersion=100'

STREAM_END = {'type': 'ERROR', 'object': {'code': 410}}


@pytest.fixture()
def stream(aresponses, hostname):
    """ A simulated list+watch of the API: one listing and one pre-rendered watch-stream. """
    def feed(items, events):
        list_resp = aiohttp.web.json_response({'items': items, 'metadata': {'resourceVersion': '100'}})
        stream_resp = aresponses.Response(text='\n'.join(json.dumps(event) for event in events))
        aresponses.add(hostname, LIST_URL, 'get', list_resp, match_querystring=True)
        aresponses.add(hostname, WATCH_URL, 'get', stream_resp, match_querystring=True)
    return feed


async def _collect(settings):
    return [event async for event in infinite_watch(
        settings=settings, resource=SECRETS, namespace='ns1', _iterations=1)]


async def test_listing_goes_before_the_watching(settings, stream):
    stream([{'metadata': {'name': 's1'}}], [
        {'type': 'ADDED', 'object': {'metadata': {'name': 's2', 'resourceVersion': '101'}}},
        {'type': 'DELETED', 'object': {'metadata': {'name': 's1', 'resourceVersion': '102'}}},
        STREAM_END,
    ])

    events = await _collect(settings)

    assert events == [
        {'type': None, 'object': {'metadata': {'name': 's1'}}},
        Bookmark.LISTED,
        {'type': 'ADDED', 'object': {'metadata': {'name': 's2', 'resourceVersion': '101'}}},
        {'type': 'DELETED', 'object': {'metadata': {'name': 's1', 'resourceVersion': '102'}}},
    ]


async def test_unsupported_event_types_are_ignored(settings, stream, assert_logs):
    stream([], [
        {'type': 'UNKNOWN', 'object': {'metadata': {'name': 's1'}}},
        STREAM_END,
    ])

    events = await _collect(settings)

    assert events == [Bookmark.LISTED]
    assert_logs([r"Ignoring an unsupported event type"])


async def test_errors_in_the_stream_are_escalated(settings, stream):
    stream([], [
        {'type': 'ERROR', 'object': {'code': 500, 'message': 'boo'}},
    ])

    with pytest.raises(WatchingError, match=r"Error in the watch-stream"):
        await _collect(settings)
