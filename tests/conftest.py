"""Shared helpers for running a server on an ephemeral port inside asyncio.run."""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Tuple

from balance_server import ACCEPT_FATAL, Listener, serve


@asynccontextmanager
async def running_server(accept_errors: str = ACCEPT_FATAL) -> AsyncIterator[Tuple[str, int]]:
    """Bind 127.0.0.1:0, serve in a background task, yield the bound address."""
    listener = Listener("127.0.0.1", 0)
    listener.bind()
    server = asyncio.create_task(serve(listener, accept_errors))
    try:
        yield listener.address
    finally:
        server.cancel()
        try:
            await server
        except asyncio.CancelledError:
            pass
        listener.close()


@asynccontextmanager
async def fixed_reply_server(reply: bytes) -> AsyncIterator[Tuple[str, int]]:
    """Plain asyncio server that answers every connection with ``reply``."""

    async def handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        writer.write(reply)
        await writer.drain()
        writer.close()

    server = await asyncio.start_server(handler, "127.0.0.1", 0)
    async with server:
        yield server.sockets[0].getsockname()[:2]
