import argparse
import asyncio
import logging
import socket
import sys
from typing import NamedTuple, Optional, Set, Tuple

logger = logging.getLogger(__name__)

HOST = "127.0.0.1"
PORT = 8181
BACKLOG = 100
# Unread input at close time makes the kernel send RST instead of FIN, so the
# handler drains the client for at most this long before closing.
LINGER_TIMEOUT = 2.0
ACCEPT_RETRY_DELAY = 0.1

BODY = b'{"balance": 0.00}'
CONTENT_TYPE = "application/json"

ACCEPT_FATAL = "fatal"
ACCEPT_LOG = "log"


# ---------- errors ----------

class ServerError(RuntimeError):
    pass


class BindError(ServerError):
    pass


class AcceptError(ServerError):
    pass


class ConnectionIOError(ServerError):
    pass


class WriteError(ConnectionIOError):
    pass


class FlushError(ConnectionIOError):
    pass


# ---------- response ----------

def build_response(body: bytes = BODY, content_type: str = CONTENT_TYPE) -> bytes:
    head = (
        f"HTTP/1.1 200 OK\r\n"
        f"Content-Type: {content_type}\r\n"
        f"Content-Length: {len(body)}\r\n"
        f"\r\n"
    ).encode("ascii")
    return head + body


HTTP_RESPONSE = build_response()


# ---------- listener ----------

class Connection(NamedTuple):
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    peer: Tuple[str, int]


class Listener:
    """Bound TCP socket yielding accepted connections, forever.

    Usable as ``async for conn in listener`` once bound, or as an async
    context manager that binds on enter and closes on exit.
    """

    def __init__(self, host: str = HOST, port: int = PORT, backlog: int = BACKLOG):
        self.host = host
        self.port = port
        self.backlog = backlog
        self._sock: Optional[socket.socket] = None

    @property
    def bound(self) -> bool:
        return self._sock is not None

    @property
    def address(self) -> Tuple[str, int]:
        if self._sock is None:
            raise ServerError("listener is not bound")
        return self._sock.getsockname()[:2]

    def bind(self) -> None:
        if self._sock is not None:
            raise BindError(f"already bound to {self.host}:{self.port}")
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self.port))
            sock.listen(self.backlog)
            sock.setblocking(False)
        except (OSError, OverflowError, TypeError) as exc:
            sock.close()
            raise BindError(f"cannot bind {self.host}:{self.port}: {exc}") from exc
        self._sock = sock

    async def accept(self) -> Connection:
        if self._sock is None:
            raise AcceptError("listener is not bound")
        loop = asyncio.get_running_loop()
        try:
            conn, peer = await loop.sock_accept(self._sock)
        except OSError as exc:
            raise AcceptError(f"accept failed: {exc}") from exc
        try:
            reader, writer = await asyncio.open_connection(sock=conn)
        except OSError as exc:
            conn.close()
            raise AcceptError(f"cannot set up stream for {peer}: {exc}") from exc
        return Connection(reader, writer, peer[:2])

    def close(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def __aiter__(self) -> "Listener":
        return self

    async def __anext__(self) -> Connection:
        return await self.accept()

    async def __aenter__(self) -> "Listener":
        self.bind()
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()


# ---------- handler ----------

def write_response(writer: asyncio.StreamWriter, response: bytes = HTTP_RESPONSE) -> None:
    """Buffer the response; raises WriteError if the transport is already closing.

    Send failures on a live transport surface later, from flush().
    """
    if writer.is_closing():
        raise WriteError("transport is closing")
    writer.write(response)


async def flush(writer: asyncio.StreamWriter) -> None:
    try:
        await writer.drain()
        if writer.can_write_eof():
            writer.write_eof()
    except (OSError, RuntimeError) as exc:
        raise FlushError(f"flush failed: {exc}") from exc


async def _discard_input(reader: asyncio.StreamReader) -> None:
    while await reader.read(65536):
        pass


async def handle_connection(reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                            response: bytes = HTTP_RESPONSE) -> None:
    """Send the fixed response, ignore whatever the client sent, then close."""
    try:
        write_response(writer, response)
        await flush(writer)
        try:
            await asyncio.wait_for(_discard_input(reader), timeout=LINGER_TIMEOUT)
        except (OSError, asyncio.TimeoutError):
            pass
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except OSError as exc:
            logger.debug("close after failure: %s", exc)


# ---------- accept loop ----------

def _on_handler_done(task: "asyncio.Task[None]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("%s failed: %s", task.get_name(), exc)


async def serve(listener: Listener, accept_errors: str = ACCEPT_FATAL) -> None:
    """Accept forever, one fire-and-forget task per connection."""
    if accept_errors not in (ACCEPT_FATAL, ACCEPT_LOG):
        raise ValueError(f"unknown accept error policy: {accept_errors!r}")
    handlers: Set[asyncio.Task] = set()
    while True:
        try:
            conn = await listener.accept()
        except AcceptError as exc:
            if accept_errors == ACCEPT_FATAL or not listener.bound:
                raise
            logger.warning("%s; still accepting", exc)
            # a failed sock_accept completes without suspending
            await asyncio.sleep(ACCEPT_RETRY_DELAY)
            continue
        logger.debug("accepted %s:%s", *conn.peer)
        task = asyncio.create_task(handle_connection(conn.reader, conn.writer),
                                   name=f"handler-{conn.peer[0]}:{conn.peer[1]}")
        handlers.add(task)
        task.add_done_callback(handlers.discard)
        task.add_done_callback(_on_handler_done)


async def run_server(host: str = HOST, port: int = PORT, accept_errors: str = ACCEPT_FATAL) -> None:
    async with Listener(host, port) as listener:
        bound_host, bound_port = listener.address
        logger.info("listening on http://%s:%s", bound_host, bound_port)
        await serve(listener, accept_errors)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Serve a fixed JSON balance over HTTP.")
    parser.add_argument("--host", default=HOST)
    parser.add_argument("--port", type=int, default=PORT)
    parser.add_argument("--accept-errors", choices=[ACCEPT_FATAL, ACCEPT_LOG], default=ACCEPT_FATAL,
                        help="stop on accept failures, or log them and keep accepting")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=args.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    try:
        asyncio.run(run_server(args.host, args.port, args.accept_errors))
    except KeyboardInterrupt:
        pass
    except (BindError, AcceptError) as exc:
        logger.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
