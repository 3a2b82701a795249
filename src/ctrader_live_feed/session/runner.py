from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from ctrader_live_feed.auth.refresh import CredentialRefreshPolicy
from ctrader_live_feed.core.events import CredentialsRefreshed, EventBus, StageChanged
from ctrader_live_feed.protocol.framing import Envelope, FrameCodec, ReceiveBuffer
from ctrader_live_feed.protocol.registry import MessageKind, MessageRegistry, Unrecognized
from ctrader_live_feed.session.handshake import (
    Abort,
    Action,
    Finish,
    HandshakeStage,
    HandshakeStateMachine,
    PublishEvent,
    Reconnect,
    RefreshCredentials,
    SendRequest,
)
from ctrader_live_feed.transport.connection import SessionOutcome, Stream

logger = logging.getLogger(__name__)


class ProtocolSession:
    """Drives one handshake state machine over one connection.

    Owns the receive buffer; it is emptied on every exit path so partial
    frames never survive into the next connection, and the machine is moved
    back to disconnected whichever way the session ends.
    """

    def __init__(
        self,
        connection: Stream,
        machine: HandshakeStateMachine,
        *,
        registry: MessageRegistry,
        codec: FrameCodec,
        refresh_policy: CredentialRefreshPolicy,
        bus: EventBus,
        heartbeat_interval_seconds: float = 10.0,
        on_streaming: Callable[[], None] | None = None,
    ) -> None:
        self._connection = connection
        self._machine = machine
        self._registry = registry
        self._codec = codec
        self._refresh_policy = refresh_policy
        self._bus = bus
        self._heartbeat_interval_seconds = heartbeat_interval_seconds
        self._on_streaming = on_streaming
        self._buffer = ReceiveBuffer(codec)

    @property
    def machine(self) -> HandshakeStateMachine:
        return self._machine

    async def run(self) -> SessionOutcome:
        heartbeat = asyncio.create_task(self._heartbeat_loop(), name="ctrader-heartbeat")
        try:
            outcome = await self._execute(self._machine.start())
            if outcome is not None:
                return outcome

            while True:
                chunk = await self._connection.read()
                if not chunk:
                    logger.info("Connection closed", extra={"stage": self._machine.stage.value})
                    return SessionOutcome.DISCONNECTED

                for frame in self._buffer.feed(chunk):
                    envelope = self._codec.decode_envelope(frame)
                    message = self._registry.decode(envelope.payload_type, envelope.payload)
                    if isinstance(message, Unrecognized):
                        logger.debug(
                            "Unrecognized payload type",
                            extra={"wire_code": message.wire_code, "name": message.name},
                        )
                    outcome = await self._execute(self._machine.handle(message))
                    if outcome is not None:
                        return outcome
        except asyncio.CancelledError:
            await self.shutdown()
            raise
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat
            self._buffer.reset()
            for action in self._machine.connection_lost():
                if isinstance(action, PublishEvent):
                    self._bus.publish(action.event)

    async def shutdown(self) -> None:
        """Cancel the spot subscription before the connection is closed."""
        try:
            await self._execute(self._machine.unsubscribe())
        except OSError as exc:
            logger.debug("Unsubscribe skipped", extra={"error": repr(exc)})

    async def send(self, kind: MessageKind, fields: Mapping[str, Any] | None = None) -> None:
        envelope = Envelope(
            payload_type=self._registry.wire_code(kind),
            payload=self._registry.encode(kind, fields),
        )
        await self._connection.send(self._codec.serialize(envelope))
        logger.debug("Sent", extra={"kind": kind.value, "stage": self._machine.stage.value})

    async def _execute(self, actions: Iterable[Action]) -> SessionOutcome | None:
        for action in actions:
            match action:
                case SendRequest(kind=kind, fields=fields):
                    await self.send(kind, fields)
                case PublishEvent(event=event):
                    self._bus.publish(event)
                    if (
                        isinstance(event, StageChanged)
                        and event.current == HandshakeStage.STREAMING
                        and self._on_streaming is not None
                    ):
                        self._on_streaming()
                case RefreshCredentials(reason=reason):
                    credentials = await self._refresh_policy.refresh(self._machine.session.credentials, reason=reason)
                    self._bus.publish(CredentialsRefreshed(expires_at=credentials.expires_at))
                    outcome = await self._execute(self._machine.credentials_refreshed(credentials))
                    if outcome is not None:
                        return outcome
                case Reconnect(reason=reason):
                    logger.warning("Session requested reconnect", extra={"reason": reason})
                    return SessionOutcome.RECONNECT
                case Finish(reason=reason):
                    logger.info("Session complete", extra={"reason": reason})
                    return SessionOutcome.FINISHED
                case Abort(error=error):
                    raise error
        return None

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval_seconds)
            try:
                await self.send(MessageKind.HEARTBEAT_EVENT)
            except OSError as exc:
                logger.warning("Heartbeat send failed", extra={"error": repr(exc)})
                return
