"""Tests for local bind checks and the relaying listener."""

import asyncio
import errno
import socket

import pytest
import pytest_asyncio

from hostpilot.errors import ForwardChannelError, LocalBindError
from hostpilot.relay import LocalForward, bind_error, check_local_bind
from tests.conftest import FakeSession, free_port


async def _echo(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    while True:
        data = await reader.read(1024)
        if not data:
            break
        writer.write(data)
        await writer.drain()
    writer.close()


@pytest_asyncio.fixture
async def echo_server():
    server = await asyncio.start_server(_echo, "127.0.0.1", 0)
    yield server.sockets[0].getsockname()[1]
    server.close()


class TestBindErrors:
    """Tests for classifying local bind failures."""

    def test_in_use(self) -> None:
        """Test EADDRINUSE maps to the 'already in use' message."""
        err = bind_error("127.0.0.1", 5432, OSError(errno.EADDRINUSE, "Address already in use"))

        assert err.reason == LocalBindError.IN_USE
        assert str(err) == "Local port 5432 on 127.0.0.1 is already in use."

    @pytest.mark.parametrize("code", [errno.EACCES, errno.EPERM])
    def test_permission(self, code: int) -> None:
        """Test EACCES/EPERM map to a permission error."""
        err = bind_error("0.0.0.0", 80, OSError(code, "Permission denied"))

        assert err.reason == LocalBindError.PERMISSION
        assert str(err) == "Permission denied when binding 0.0.0.0:80."

    def test_other(self) -> None:
        """Test anything else keeps the OS reason."""
        err = bind_error("10.9.9.9", 8080, OSError(errno.EADDRNOTAVAIL, "Cannot assign requested address"))

        assert err.reason == LocalBindError.OTHER
        assert str(err) == "Failed to bind local listener on 10.9.9.9:8080: Cannot assign requested address"


class TestCheckLocalBind:
    """Tests for the bind pre-check."""

    def test_free_port_passes(self) -> None:
        """Test a free port is bound and released again."""
        port = free_port()

        check_local_bind("127.0.0.1", port)
        # Still free afterwards
        check_local_bind("127.0.0.1", port)

    def test_occupied_port_fails(self) -> None:
        """Test a listening port is reported as in use."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("127.0.0.1", 0))
            s.listen(1)
            port = s.getsockname()[1]

            with pytest.raises(LocalBindError) as exc_info:
                check_local_bind("127.0.0.1", port)

        assert exc_info.value.reason == LocalBindError.IN_USE


class TestLocalForward:
    """Tests for relaying client connections through a session."""

    @pytest.mark.asyncio
    async def test_relays_concurrent_clients(self, echo_server: int) -> None:
        """Test each client gets its own channel and sees its own bytes."""
        session = FakeSession()
        port = free_port()
        forward = LocalForward(session, "127.0.0.1", port, "127.0.0.1", echo_server)
        await forward.start()

        async def roundtrip(payload: bytes) -> bytes:
            reader, writer = await asyncio.open_connection("127.0.0.1", port)
            writer.write(payload)
            await writer.drain()
            data = await reader.readexactly(len(payload))
            writer.close()
            return data

        results = await asyncio.gather(roundtrip(b"ping-1"), roundtrip(b"ping-22"))
        forward.close()

        assert results == [b"ping-1", b"ping-22"]
        assert session.opened == [("127.0.0.1", echo_server)] * 2

    @pytest.mark.asyncio
    async def test_start_on_taken_port(self) -> None:
        """Test binding a taken port raises a classified bind error."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("127.0.0.1", 0))
            s.listen(1)
            port = s.getsockname()[1]
            forward = LocalForward(FakeSession(), "127.0.0.1", port, "127.0.0.1", 5432)

            with pytest.raises(LocalBindError) as exc_info:
                await forward.start()

        assert exc_info.value.reason == LocalBindError.IN_USE

    @pytest.mark.asyncio
    async def test_channel_failure_only_drops_that_client(self, echo_server: int) -> None:
        """Test a refused channel closes one client while the listener stays up."""
        session = FakeSession()
        session.channel_error = ForwardChannelError("Remote refused forward")
        port = free_port()
        forward = LocalForward(session, "127.0.0.1", port, "127.0.0.1", echo_server)
        await forward.start()

        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        assert await reader.read(10) == b""
        writer.close()

        session.channel_error = None
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.write(b"again")
        await writer.drain()
        assert await reader.readexactly(5) == b"again"
        writer.close()
        forward.close()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self) -> None:
        """Test closing twice is harmless and frees the port."""
        port = free_port()
        forward = LocalForward(FakeSession(), "127.0.0.1", port, "127.0.0.1", 5432)
        await forward.start()

        forward.close()
        forward.close()

        check_local_bind("127.0.0.1", port)
