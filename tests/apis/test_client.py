import asyncio
import socket

import aiohttp
import aiohttp.web
import pytest

from kubewire import APIConflictError, APIError, APIForbiddenError, APINotFoundError, \
                     APIUnauthorizedError, Client, ClientConfiguration, ConfigurationError, \
                     Handler, TransientTransportError, TrustRejectedError, WatchEventType, \
                     WatchStream, WatchTruncatedError


async def echo(request: aiohttp.web.Request) -> aiohttp.web.Response:
    return aiohttp.web.json_response({
        'method': request.method,
        'path': request.path,
        'query': dict(request.query),
        'headers': dict(request.headers),
        'body': await request.json() if request.can_read_body else None,
    })


async def consume(stream: WatchStream) -> list[object]:
    return [event async for event in stream]


def status(code: int, *, kind: str = 'Status'):
    async def handler(request: aiohttp.web.Request) -> aiohttp.web.Response:
        return aiohttp.web.json_response({'kind': kind, 'code': code, 'message': 'msg'}, status=code)
    return handler


@pytest.fixture()
async def echo_server(make_server):
    return await make_server(aiohttp.web.route('*', '/{tail:.*}', echo))


@pytest.fixture()
async def echo_url(echo_server):
    return str(echo_server.make_url('')).rstrip('/')


@pytest.fixture()
async def client(echo_url):
    async with Client(ClientConfiguration(host=echo_url)) as client:
        yield client


async def test_simple_request(client):
    result = await client.get('/api/v1/pods', params={'limit': '1'})
    assert result['method'] == 'GET'
    assert result['path'] == '/api/v1/pods'
    assert result['query'] == {'limit': '1'}


@pytest.mark.parametrize('method', ['post', 'patch', 'delete'])
async def test_payloads_are_sent(client, method):
    result = await getattr(client, method)('/api/v1/pods', payload={'spec': 'x'})
    assert result['method'] == method.upper()
    assert result['body'] == {'spec': 'x'}


async def test_user_agent_is_sent(client):
    result = await client.get('/')
    assert result['headers']['User-Agent'].startswith('kubewire/')


async def test_default_namespace(echo_url):
    config = ClientConfiguration(host=echo_url, default_namespace='ns1')
    async with Client(config) as client:
        assert client.default_namespace == 'ns1'


@pytest.mark.parametrize('kwargs, expected', [
    (dict(access_token='tkn'), 'Bearer tkn'),
    (dict(username='usr', password='pwd'), 'Basic dXNyOnB3ZA=='),
    (dict(access_token='tkn', username='usr', password='pwd'), 'Bearer tkn'),
])
async def test_credentials_are_sent(echo_url, kwargs, expected):
    async with Client(ClientConfiguration(host=echo_url, **kwargs)) as client:
        result = await client.get('/')
    assert result['headers']['Authorization'] == expected


async def test_no_credentials_are_sent(client):
    result = await client.get('/')
    assert 'Authorization' not in result['headers']


async def test_credentials_cannot_be_overridden(echo_url):
    async with Client(ClientConfiguration(host=echo_url, access_token='tkn')) as client:
        result = await client.get('/', headers={'Authorization': 'Bearer fake', 'X-Extra': 'yes'})
    assert result['headers']['Authorization'] == 'Bearer tkn'
    assert result['headers']['X-Extra'] == 'yes'


@pytest.mark.parametrize('code, cls', [
    (400, APIError),
    (401, APIUnauthorizedError),
    (403, APIForbiddenError),
    (404, APINotFoundError),
    (409, APIConflictError),
    (500, APIError),
])
async def test_api_errors(make_server, code, cls):
    server = await make_server(aiohttp.web.get('/', status(code)))
    async with Client(ClientConfiguration(host=str(server.make_url('')))) as client:
        with pytest.raises(cls) as err:
            await client.get('/')
    assert type(err.value) is cls
    assert err.value.status == code
    assert err.value.code == code
    assert err.value.message == 'msg'


async def test_api_errors_hide_non_status_payloads(make_server):
    server = await make_server(aiohttp.web.get('/', status(404, kind='Secret')))
    async with Client(ClientConfiguration(host=str(server.make_url('')))) as client:
        with pytest.raises(APINotFoundError) as err:
            await client.get('/')
    assert err.value.status == 404
    assert err.value.code is None
    assert err.value.message is None


async def test_api_errors_with_undecodable_payloads(make_server):
    async def handler(request: aiohttp.web.Request) -> aiohttp.web.Response:
        return aiohttp.web.Response(body=b'\xff\xfe{"kind": "Status"}', status=500,
                                    content_type='application/json', charset='utf-8')

    server = await make_server(aiohttp.web.get('/', handler))
    async with Client(ClientConfiguration(host=str(server.make_url('')))) as client:
        with pytest.raises(APIError) as err:
            await client.get('/')
    assert err.value.status == 500
    assert err.value.payload is None


@pytest.fixture()
def closed_port():
    with socket.socket() as sock:
        sock.bind(('127.0.0.1', 0))
        return sock.getsockname()[1]


async def test_network_errors_are_escalated_as_transient(closed_port):
    async with Client(ClientConfiguration(host=f'http://127.0.0.1:{closed_port}')) as client:
        with pytest.raises(TransientTransportError) as err:
            await client.get('/')
    assert isinstance(err.value.__cause__, aiohttp.ClientConnectionError)


async def test_timeouts_are_escalated_as_transient(make_server, settings):

    async def slow(request):
        await asyncio.sleep(1)
        return aiohttp.web.json_response({})

    settings.networking.request_timeout = 0.1
    server = await make_server(aiohttp.web.get('/', slow))
    config = ClientConfiguration(host=str(server.make_url('')))
    async with Client(config, settings=settings) as client:
        with pytest.raises(TransientTransportError) as err:
            await client.get('/')
    assert isinstance(err.value.__cause__, asyncio.TimeoutError)


#
# Construction order & failures.
#

@pytest.mark.parametrize('config', [
    None,
    ClientConfiguration(host=''),
    ClientConfiguration(host='localhost'),
    ClientConfiguration(host='https://localhost'),
    ClientConfiguration(host='https://localhost', skip_tls_verify=True, ca_certs=[b'...']),
    ClientConfiguration(host='http://localhost', username='us:er'),
])
async def test_bad_configuration_creates_nothing(mocker, config):
    make_connector = mocker.patch('kubewire._cogs.clients.connecting.make_connector')
    make_session = mocker.patch('kubewire._cogs.clients.connecting.make_session')
    with pytest.raises(ConfigurationError):
        Client(config)
    assert not make_connector.called
    assert not make_session.called


async def test_bad_ca_bundle_creates_no_session(mocker):
    make_session = mocker.patch('kubewire._cogs.clients.connecting.make_session')
    with pytest.raises(ConfigurationError):
        Client(ClientConfiguration(host='https://localhost', ca_certs=[b'garbage!']))
    assert not make_session.called


async def test_chain_is_sealed_with_the_watch_stage_last(echo_url):
    extra1, extra2 = Handler(), Handler()
    async with Client(ClientConfiguration(host=echo_url), extra1, extra2) as client:
        stages = list(client.chain)
        assert client.chain.sealed
        assert stages[:2] == [extra1, extra2]
        assert type(stages[2]).__name__ == 'WatchHandler'
        assert stages[3] is client.chain.transport
        with pytest.raises(RuntimeError):
            client.chain.insert(Handler())


async def test_external_session_is_not_closed(echo_url):
    async with aiohttp.ClientSession() as session:
        async with Client(ClientConfiguration(host=echo_url), session=session) as client:
            result = await client.get('/')
        assert result['headers']['User-Agent'].startswith('kubewire/')
        assert not session.closed


async def test_own_session_is_closed(echo_url):
    client = Client(ClientConfiguration(host=echo_url))
    await client.close()
    assert client.session.closed


#
# Secure connections end-to-end.
#

async def test_trusted_https_server(make_server, make_server_ssl_context, root_ca, server_cert):
    context = make_server_ssl_context(server_cert)
    server = await make_server(aiohttp.web.get('/', echo), ssl_context=context)
    config = ClientConfiguration(host=str(server.make_url('')), ca_certs=[root_ca.pem], access_token='tkn')
    async with Client(config) as client:
        result = await client.get('/')
    assert result['headers']['Authorization'] == 'Bearer tkn'


async def test_untrusted_https_server(make_server, make_server_ssl_context, other_ca, server_cert):
    requests = []

    async def recording(request):
        requests.append(request)
        return await echo(request)

    context = make_server_ssl_context(server_cert)
    server = await make_server(aiohttp.web.get('/', recording), ssl_context=context)
    config = ClientConfiguration(host=str(server.make_url('')), ca_certs=[other_ca.pem], access_token='tkn')
    async with Client(config) as client:
        with pytest.raises(TrustRejectedError):
            await client.get('/')
    assert requests == []  # not a single byte of the request has reached the server


#
# Watching end-to-end.
#

async def test_watching_in_order(make_server, streaming_route):
    queries = []
    server = await make_server(streaming_route('/api/v1/pods', queries=queries, chunks=[
        b'{"type": "ADDED", "object": {"metadata": {"name": "a"}}}\n',
        b'{"type": "MODIFIED", "object": {"metadata": {"name": "b"}}}\n',
    ]))
    async with Client(ClientConfiguration(host=str(server.make_url('')))) as client:
        async with await client.watch('/api/v1/pods', since='123', bookmarks=True) as stream:
            events = [event async for event in stream]
    assert [event.type for event in events] == [WatchEventType.ADDED, WatchEventType.MODIFIED]
    assert [event.object['metadata']['name'] for event in events] == ['a', 'b']
    assert queries == [{'watch': 'true', 'resourceVersion': '123', 'allowWatchBookmarks': 'true'}]


async def test_watching_truncated(make_server, streaming_route):
    server = await make_server(streaming_route('/api/v1/pods', [
        b'{"type": "ADDED", "object": {}}\n',
        b'{"type":"ADDED"',
    ]))
    async with Client(ClientConfiguration(host=str(server.make_url('')))) as client:
        stream = await client.watch('/api/v1/pods')
        events = [event async for event in stream]
    assert [event.type for event in events] == [WatchEventType.ADDED, WatchEventType.ERROR]
    assert isinstance(events[-1].error, WatchTruncatedError)
    assert stream.released


async def test_watching_cancelled(make_server, streaming_route):
    server = await make_server(streaming_route('/api/v1/pods', [
        b'{"type": "ADDED", "object": {}}\n',
    ], hang=True))
    async with Client(ClientConfiguration(host=str(server.make_url('')))) as client:
        stream = await client.watch('/api/v1/pods')
        task = asyncio.create_task(consume(stream))
        await asyncio.sleep(0.2)
        assert not task.done()
        stream.cancel()
        events = await asyncio.wait_for(task, timeout=1.0)

    assert [event.type for event in events] == [WatchEventType.ADDED]
    assert stream.released


async def test_closing_the_client_cancels_the_streams(make_server, streaming_route):
    server = await make_server(streaming_route('/api/v1/pods', [
        b'{"type": "ADDED", "object": {}}\n',
    ], hang=True))
    client = Client(ClientConfiguration(host=str(server.make_url(''))))
    stream = await client.watch('/api/v1/pods')
    task = asyncio.create_task(asyncio.wait_for(consume(stream), timeout=1.0))
    await asyncio.sleep(0.2)
    await client.close()
    events = await task
    assert len(events) == 1
    assert stream.cancelled
    assert stream.released


async def test_extra_stages_see_the_streams(make_server, streaming_route):
    seen = []

    class Spying(Handler):
        async def handle(self, request, inner):
            response = await inner(request)
            seen.append(response)
            return response

    server = await make_server(streaming_route('/api/v1/pods', []))
    async with Client(ClientConfiguration(host=str(server.make_url(''))), Spying()) as client:
        stream = await client.watch('/api/v1/pods')
        await stream.aclose()
    assert len(seen) == 1
    assert isinstance(seen[0], WatchStream)
