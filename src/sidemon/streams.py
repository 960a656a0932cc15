"""Websocket push streams from the sidekick server."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any, Protocol

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, InvalidHandshake, InvalidURI

log = logging.getLogger(__name__)


class StreamError(Exception):
    """The push stream could not be opened or broke abnormally."""


class MessageStream(Protocol):
    """An open subscription yielding raw text messages until the server ends it."""

    async def __aenter__(self) -> AsyncIterator[str]: ...

    async def __aexit__(self, *exc: object) -> None: ...


StreamFactory = Callable[[str, str | None], MessageStream]


class PushStream:
    """A websocket subscription.

    When ``parent_id`` is given, a ``{"parentId": ...}`` subscription message is
    sent right after connecting. Iterating the stream yields raw messages and
    stops on a normal close; any other failure raises :class:`StreamError`.
    """

    def __init__(
        self,
        url: str,
        parent_id: str | None = None,
        *,
        connect: Callable[[str], Any] = websockets.connect,
    ) -> None:
        self.url = url
        self.parent_id = parent_id
        self._connect = connect
        self._ws: Any = None

    async def __aenter__(self) -> AsyncIterator[str]:
        try:
            self._ws = await self._connect(self.url)
        except (OSError, TimeoutError, InvalidHandshake, InvalidURI) as exc:
            raise StreamError(f"websocket connection failed: {exc}") from exc
        log.debug("Connected to %s", self.url)

        if self.parent_id is not None:
            try:
                await self._ws.send(json.dumps({"parentId": self.parent_id}))
            except ConnectionClosed as exc:
                await self._close()
                raise StreamError(f"failed to send subscription: {exc}") from exc
        return self._messages()

    async def __aexit__(self, *exc: object) -> None:
        await self._close()

    async def _messages(self) -> AsyncIterator[str]:
        while True:
            try:
                message = await self._ws.recv()
            except ConnectionClosedOK:
                log.debug("Stream %s closed normally", self.url)
                return
            except ConnectionClosed as exc:
                raise StreamError(f"websocket read error: {exc}") from exc
            if isinstance(message, bytes):
                message = message.decode("utf-8", errors="replace")
            yield message

    async def _close(self) -> None:
        if self._ws is not None:
            ws, self._ws = self._ws, None
            await ws.close()
