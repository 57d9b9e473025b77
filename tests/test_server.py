import asyncio
import contextlib
import errno
import socket
import unittest
from unittest import mock

from tcpgate.bind import create_listener
from tcpgate.config import TcpGateConfig
from tcpgate.connection import Connection, ConnectionState
from tcpgate.models import BindAddress, OutboundEvent
from tcpgate.server import TcpGateServer


async def wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class ServerTestCase(unittest.IsolatedAsyncioTestCase):
    config = TcpGateConfig(read_chunk_size=1024, output_queue_size=1024, write_timeout_seconds=1.0)

    async def asyncSetUp(self) -> None:
        self.connected: list[str] = []
        self.disconnected: list[str] = []
        self.server = TcpGateServer(
            self.config,
            on_connect=self.record_connect,
            on_disconnect=self.record_disconnect,
        )
        self.listener = create_listener(BindAddress(host="127.0.0.1", port=0))
        self.port = self.listener.getsockname()[1]
        self.serve_task = asyncio.create_task(self.server.serve(self.listener))
        self.clients: list[asyncio.StreamWriter] = []

    async def asyncTearDown(self) -> None:
        for writer in self.clients:
            writer.close()
        await self.server.shutdown()
        await asyncio.wait_for(self.serve_task, timeout=2)

    async def record_connect(self, connection_id: str) -> None:
        self.connected.append(connection_id)

    async def record_disconnect(self, connection_id: str) -> None:
        self.disconnected.append(connection_id)

    async def connect(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        reader, writer = await asyncio.open_connection("127.0.0.1", self.port)
        self.clients.append(writer)
        return reader, writer

    async def next_event(self) -> OutboundEvent:
        return await asyncio.wait_for(self.server.output.get(), timeout=2)

    async def collect(self, connection_id: str, size: int) -> bytes:
        """Concatenate events for one connection until size bytes arrived."""
        data = b""
        while len(data) < size:
            event = await self.next_event()
            self.assertEqual(event.connection_id, connection_id)
            data += event.payload
        return data


class TestEvents(ServerTestCase):
    async def test_two_clients_get_distinct_ids(self) -> None:
        _, writer_a = await self.connect()
        writer_a.write(b"hello")
        await writer_a.drain()
        event_a = await self.next_event()

        _, writer_b = await self.connect()
        writer_b.write(b"world")
        await writer_b.drain()
        event_b = await self.next_event()

        self.assertEqual(event_a.payload, b"hello")
        self.assertEqual(event_b.payload, b"world")
        self.assertNotEqual(event_a.connection_id, event_b.connection_id)
        self.assertEqual(self.server.active_connections, 2)
        self.assertEqual(self.connected, [event_a.connection_id, event_b.connection_id])

    async def test_per_connection_order_is_preserved(self) -> None:
        _, writer_a = await self.connect()
        _, writer_b = await self.connect()
        data_a = b"".join(b"a%05d;" % i for i in range(2000))
        data_b = b"".join(b"b%05d;" % i for i in range(2000))

        for i in range(0, len(data_a), 700):
            writer_a.write(data_a[i:i + 700])
            writer_b.write(data_b[i:i + 700])
        await writer_a.drain()
        await writer_b.drain()

        received: dict[bytes, bytes] = {b"a": b"", b"b": b""}
        ids: dict[bytes, str] = {}
        while len(received[b"a"]) < len(data_a) or len(received[b"b"]) < len(data_b):
            event = await self.next_event()
            # The first byte of a connection's stream tells which client it is.
            key = next((k for k, cid in ids.items() if cid == event.connection_id), None)
            if key is None:
                key = event.payload[:1]
                ids[key] = event.connection_id
            received[key] += event.payload

        self.assertEqual(received[b"a"], data_a)
        self.assertEqual(received[b"b"], data_b)
        self.assertNotEqual(ids[b"a"], ids[b"b"])

    async def test_hundred_connections_unique_and_cleaned_up(self) -> None:
        writers = []
        for _ in range(100):
            _, writer = await self.connect()
            writer.write(b"x")
            writers.append(writer)
        await asyncio.gather(*(writer.drain() for writer in writers))

        ids = set()
        for _ in range(100):
            ids.add((await self.next_event()).connection_id)
        self.assertEqual(len(ids), 100)

        for writer in writers:
            writer.close()
        await wait_until(lambda: self.server.active_connections == 0)
        await wait_until(lambda: len(self.disconnected) == 100)
        self.assertEqual(set(self.disconnected), ids)


class TestDispatch(ServerTestCase):
    async def test_dispatch_reaches_peer(self) -> None:
        reader, writer = await self.connect()
        writer.write(b"hello")
        await writer.drain()
        event = await self.next_event()

        delivered = await self.server.dispatch(event.connection_id, b"reply")

        self.assertTrue(delivered)
        self.assertEqual(await asyncio.wait_for(reader.readexactly(5), timeout=2), b"reply")

    async def test_dispatch_unknown_id_is_noop(self) -> None:
        self.assertFalse(await self.server.dispatch("10.0.0.1:1#999", b"lost"))
        self.assertEqual(self.server.active_connections, 0)
        self.assertTrue(self.server.output.empty())

    async def test_dispatch_after_peer_disconnect_is_noop(self) -> None:
        _, writer = await self.connect()
        writer.write(b"bye")
        await writer.drain()
        event = await self.next_event()

        writer.close()
        await writer.wait_closed()
        await wait_until(lambda: self.disconnected == [event.connection_id])

        self.assertNotIn(event.connection_id, self.server.registry)
        self.assertFalse(await self.server.dispatch(event.connection_id, b"too late"))
        self.assertTrue(self.server.output.empty())

    async def test_write_error_closes_connection(self) -> None:
        writer = mock.MagicMock()
        writer.drain = mock.AsyncMock(side_effect=ConnectionResetError("reset by peer"))
        writer.wait_closed = mock.AsyncMock()
        connection = Connection("broken#1", mock.MagicMock(), writer, "broken")
        self.server.registry.insert("broken#1", connection)

        delivered = await self.server.dispatch("broken#1", b"data")

        self.assertFalse(delivered)
        self.assertNotIn("broken#1", self.server.registry)
        self.assertIs(connection.state, ConnectionState.CLOSED)
        self.assertFalse(await self.server.dispatch("broken#1", b"again"))
        writer.write.assert_called_once_with(b"data")

    async def test_write_timeout_closes_connection(self) -> None:
        self.server.config = TcpGateConfig(write_timeout_seconds=0.01)

        async def stalled() -> None:
            await asyncio.sleep(10)

        writer = mock.MagicMock()
        writer.drain = mock.AsyncMock(side_effect=stalled)
        writer.wait_closed = mock.AsyncMock()
        connection = Connection("slow#1", mock.MagicMock(), writer, "slow")
        self.server.registry.insert("slow#1", connection)

        self.assertFalse(await self.server.dispatch("slow#1", b"data"))
        self.assertNotIn("slow#1", self.server.registry)

    async def test_failed_connection_does_not_affect_others(self) -> None:
        reader, writer = await self.connect()
        writer.write(b"ping")
        await writer.drain()
        healthy = await self.next_event()

        broken = mock.MagicMock()
        broken.drain = mock.AsyncMock(side_effect=BrokenPipeError())
        broken.wait_closed = mock.AsyncMock()
        self.server.registry.insert("broken#1", Connection("broken#1", mock.MagicMock(), broken))
        await self.server.dispatch("broken#1", b"data")

        self.assertTrue(await self.server.dispatch(healthy.connection_id, b"pong"))
        self.assertEqual(await asyncio.wait_for(reader.readexactly(4), timeout=2), b"pong")
        self.assertFalse(self.serve_task.done())


class TestBackpressure(ServerTestCase):
    config = TcpGateConfig(read_chunk_size=16, output_queue_size=2)

    async def test_full_queue_blocks_producer_without_dropping(self) -> None:
        _, writer_a = await self.connect()
        data_a = bytes(range(256)) * 4
        writer_a.write(data_a)
        await writer_a.drain()
        await wait_until(self.server.output.full)

        # Accepting and dispatching keep working while a producer is blocked.
        reader_b, writer_b = await self.connect()
        await wait_until(lambda: len(self.connected) == 2)
        id_a, id_b = self.connected
        self.assertTrue(await self.server.dispatch(id_b, b"still here"))
        self.assertEqual(await asyncio.wait_for(reader_b.readexactly(10), timeout=2), b"still here")

        self.assertEqual(await self.collect(id_a, len(data_a)), data_a)
        self.assertEqual(self.server.active_connections, 2)


class TestShutdown(ServerTestCase):
    async def test_shutdown_closes_listener_and_connections(self) -> None:
        reader, writer = await self.connect()
        writer.write(b"hi")
        await writer.drain()
        event = await self.next_event()

        await self.server.shutdown()
        await asyncio.wait_for(self.serve_task, timeout=2)

        self.assertEqual(self.server.active_connections, 0)
        self.assertEqual(self.listener.fileno(), -1)
        with contextlib.suppress(ConnectionResetError):
            self.assertEqual(await asyncio.wait_for(reader.read(), timeout=2), b"")
        self.assertFalse(await self.server.dispatch(event.connection_id, b"gone"))

    async def test_cancelling_serve_propagates(self) -> None:
        self.serve_task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await self.serve_task
        self.serve_task = asyncio.create_task(asyncio.sleep(0))


class TestListenerErrors(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.server = TcpGateServer(TcpGateConfig(accept_retry_seconds=0.01, shutdown_timeout_seconds=1.0))
        self.listener = create_listener(BindAddress(host="127.0.0.1", port=0))
        self.port = self.listener.getsockname()[1]

    async def asyncTearDown(self) -> None:
        await self.server.shutdown()

    async def test_broken_listener_ends_serve(self) -> None:
        serve_task = asyncio.create_task(self.server.serve(self.listener))
        reader, writer = await asyncio.open_connection("127.0.0.1", self.port)
        writer.write(b"hi")
        await writer.drain()
        event = await asyncio.wait_for(self.server.output.get(), timeout=2)

        self.listener.shutdown(socket.SHUT_RDWR)

        with self.assertRaises(OSError) as ctx:
            await asyncio.wait_for(serve_task, timeout=2)
        self.assertNotIsInstance(ctx.exception, TimeoutError)

        self.assertEqual(self.listener.fileno(), -1)
        self.assertEqual(self.server.active_connections, 0)
        self.assertFalse(await self.server.dispatch(event.connection_id, b"gone"))
        with contextlib.suppress(ConnectionResetError):
            self.assertEqual(await asyncio.wait_for(reader.read(), timeout=2), b"")
        writer.close()

    async def test_transient_accept_errors_are_retried(self) -> None:
        loop = asyncio.get_running_loop()
        real_accept = loop.sock_accept
        failures = [
            OSError(errno.EMFILE, "Too many open files"),
            ConnectionAbortedError(errno.ECONNABORTED, "Software caused connection abort"),
        ]

        async def flaky_accept(sock: socket.socket):
            if failures:
                raise failures.pop(0)
            return await real_accept(sock)

        with mock.patch.object(loop, "sock_accept", flaky_accept):
            serve_task = asyncio.create_task(self.server.serve(self.listener))
            _, writer = await asyncio.open_connection("127.0.0.1", self.port)
            writer.write(b"after retry")
            await writer.drain()
            event = await asyncio.wait_for(self.server.output.get(), timeout=2)

        self.assertEqual(event.payload, b"after retry")
        self.assertEqual(failures, [])
        self.assertFalse(serve_task.done())

        await self.server.shutdown()
        await asyncio.wait_for(serve_task, timeout=2)
        writer.close()


class TestHooks(unittest.IsolatedAsyncioTestCase):
    async def test_failing_disconnect_hook_is_logged(self) -> None:
        async def explode(connection_id: str) -> None:
            raise RuntimeError(f"hook failed for {connection_id}")

        server = TcpGateServer(TcpGateConfig(shutdown_timeout_seconds=1.0), on_disconnect=explode)
        listener = create_listener(BindAddress(host="127.0.0.1", port=0))
        port = listener.getsockname()[1]
        serve_task = asyncio.create_task(server.serve(listener))

        with self.assertLogs("tcpgate.server", level="ERROR") as logs:
            _, writer = await asyncio.open_connection("127.0.0.1", port)
            writer.write(b"x")
            await writer.drain()
            await asyncio.wait_for(server.output.get(), timeout=2)
            writer.close()
            await wait_until(lambda: not server.handler_tasks)

        self.assertTrue(any("Error in disconnect hook" in line for line in logs.output))

        # The server keeps accepting after a hook failure.
        _, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.write(b"y")
        await writer.drain()
        event = await asyncio.wait_for(server.output.get(), timeout=2)
        self.assertEqual(event.payload, b"y")
        writer.close()

        await server.shutdown()
        await asyncio.wait_for(serve_task, timeout=2)


if __name__ == "__main__":
    unittest.main()
