"""Tests for the dqlite probe session."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from dqlitewire.messages import FailureResponse
from hacontroller.exceptions import ProtocolError
from hacontroller.protocol import DqliteSession


class TestDqliteSession:
    @pytest.fixture
    def session(self, mock_reader: AsyncMock, mock_writer: MagicMock) -> DqliteSession:
        return DqliteSession(mock_reader, mock_writer)

    async def test_handshake_success(
        self,
        session: DqliteSession,
        mock_reader: AsyncMock,
        mock_writer: MagicMock,
        welcome_response: bytes,
    ) -> None:
        mock_reader.read.return_value = welcome_response

        timeout = await session.handshake(client_id=42)

        assert timeout == 15000
        # Protocol version, then the client registration
        assert mock_writer.write.call_count == 2

    async def test_handshake_failure(
        self,
        session: DqliteSession,
        mock_reader: AsyncMock,
    ) -> None:
        mock_reader.read.return_value = FailureResponse(code=1, message="auth failed").encode()

        with pytest.raises(ProtocolError, match="Handshake failed"):
            await session.handshake()

    async def test_handshake_unexpected_response(
        self,
        session: DqliteSession,
        mock_reader: AsyncMock,
        leader_response: bytes,
    ) -> None:
        mock_reader.read.return_value = leader_response

        with pytest.raises(ProtocolError, match="Expected WelcomeResponse"):
            await session.handshake()

    async def test_get_leader(
        self,
        session: DqliteSession,
        mock_reader: AsyncMock,
        leader_response: bytes,
    ) -> None:
        mock_reader.read.return_value = leader_response

        node_id, address = await session.get_leader()

        assert node_id == 1
        assert address == "localhost:9001"

    async def test_get_leader_failure(
        self,
        session: DqliteSession,
        mock_reader: AsyncMock,
    ) -> None:
        mock_reader.read.return_value = FailureResponse(code=5, message="not ready").encode()

        with pytest.raises(ProtocolError, match=r"\[5\] not ready"):
            await session.get_leader()

    async def test_connection_closed(
        self,
        session: DqliteSession,
        mock_reader: AsyncMock,
    ) -> None:
        mock_reader.read.return_value = b""

        with pytest.raises(ProtocolError, match="Connection closed"):
            await session.get_leader()

    async def test_close(
        self,
        session: DqliteSession,
        mock_writer: MagicMock,
    ) -> None:
        await session.close()

        mock_writer.close.assert_called_once()
        mock_writer.wait_closed.assert_called_once()

    async def test_open_parses_address(
        self,
        mock_reader: AsyncMock,
        mock_writer: MagicMock,
    ) -> None:
        with patch(
            "asyncio.open_connection", return_value=(mock_reader, mock_writer)
        ) as open_connection:
            await DqliteSession.open("db.example:9001")

        open_connection.assert_called_once_with("db.example", 9001)
