"""Minimal dqlite wire session used to probe nodes."""

import asyncio

from dqlitewire import MessageDecoder, MessageEncoder
from dqlitewire.messages import (
    ClientRequest,
    FailureResponse,
    LeaderRequest,
    LeaderResponse,
    WelcomeResponse,
)
from dqlitewire.messages.base import Message

from hacontroller.exceptions import ProtocolError


class DqliteSession:
    """Short-lived session that registers as a client and asks who leads."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._encoder = MessageEncoder()
        self._decoder = MessageDecoder(is_request=False)

    @classmethod
    async def open(cls, address: str) -> "DqliteSession":
        """Connect to ``address`` ("host:port"). Callers bound this with a timeout."""
        host, port_str = address.rsplit(":", 1)
        reader, writer = await asyncio.open_connection(host, int(port_str))
        return cls(reader, writer)

    async def _send(self, payload: bytes) -> None:
        self._writer.write(payload)
        await self._writer.drain()

    async def handshake(self, client_id: int = 0) -> int:
        """Send the protocol version and register as a client.

        Returns the server heartbeat timeout in milliseconds.
        """
        await self._send(self._encoder.encode_handshake())
        await self._send(self._encoder.encode(ClientRequest(client_id=client_id)))

        response = await self._read_response()
        if isinstance(response, FailureResponse):
            raise ProtocolError(f"Handshake failed: {response.message}")
        if not isinstance(response, WelcomeResponse):
            raise ProtocolError(f"Expected WelcomeResponse, got {type(response).__name__}")
        return response.heartbeat_timeout

    async def get_leader(self) -> tuple[int, str]:
        """Ask the node for the current leader.

        Returns (node_id, address). An empty address means the node itself leads.
        """
        await self._send(self._encoder.encode(LeaderRequest()))

        response = await self._read_response()
        if isinstance(response, FailureResponse):
            raise ProtocolError(f"[{response.code}] {response.message}")
        if not isinstance(response, LeaderResponse):
            raise ProtocolError(f"Expected LeaderResponse, got {type(response).__name__}")
        return response.node_id, response.address

    async def _read_response(self) -> Message:
        while not self._decoder.has_message():
            data = await self._reader.read(4096)
            if not data:
                raise ProtocolError("Connection closed by server")
            self._decoder.feed(data)

        message = self._decoder.decode()
        if message is None:
            raise ProtocolError("Failed to decode message")
        return message

    async def close(self) -> None:
        self._writer.close()
        await self._writer.wait_closed()
