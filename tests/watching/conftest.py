import asyncio

import aiohttp
import pytest


class FakeContent:

    def __init__(self, chunks, *, hang):
        self.chunks = list(chunks)
        self.hang = hang
        self.closed = asyncio.Event()
        self.chunk_sizes = []

    async def iter_chunked(self, n):
        self.chunk_sizes.append(n)
        for chunk in self.chunks:
            if self.closed.is_set():
                raise aiohttp.ClientConnectionError("Connection closed")
            await asyncio.sleep(0)
            yield chunk
        if self.hang:
            await self.closed.wait()
            raise aiohttp.ClientConnectionError("Connection closed")


class FakeResponse:
    """ Mimics the parts of :class:`aiohttp.ClientResponse` used by the watch-streams. """

    method = 'GET'
    url = 'https://localhost/api/v1/pods?watch=true'

    def __init__(self, chunks=(), *, hang=False):
        self.content = FakeContent(chunks, hang=hang)
        self.close_count = 0

    def close(self):
        self.close_count += 1
        self.content.closed.set()


@pytest.fixture()
def make_response():
    return FakeResponse
