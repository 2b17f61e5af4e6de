#!/usr/bin/env python3

from __future__ import annotations
import asyncio
from contextlib import suppress
import time
from typing import Any, Dict, Optional, Set, Tuple

import websockets

from server.config import RelayConfig, load_config
from server.core.CallSignaling import CallSignalingRelay
from server.core.ConnectionLink import ConnectionLink
from server.core.EventTypes import ConnectionState, OutboundEvent
from server.core.MessageHandlers import handler_for
from server.core.MessagingRelay import MessagingRelay
from server.core.PresenceDirectory import PresenceDirectory
from server.core.errors import AuthenticationError
from server.identity.verifier import PrincipalVerifier
from server.storage import MessageLedger, build_ledger
from server.transport.handshake import RawFrame, collect_credentials
from server.transport.http_routes import HttpRoutes
from shared.frame import BadFrameError, Frame, UnknownEventError
from shared.log import configure_root_logging, get_logger, log_relay_event

# Configure Logging
logger = get_logger(__name__)

# Close codes
POLICY_VIOLATION = 1008
SESSION_REPLACED = 4000


class RelayServer:
    """
    Real-time messaging and call-signaling relay.

    Owns every ConnectionLink from accept to close and drives it through
    Connecting -> Authenticating -> Registered -> Closed. Components are
    injected so tests can share or replace the presence directory, the
    ledger and the verifier.
    """

    def __init__(
        self,
        config: Optional[RelayConfig] = None,
        *,
        presence: Optional[PresenceDirectory] = None,
        ledger: Optional[MessageLedger] = None,
        verifier: Optional[PrincipalVerifier] = None,
    ):
        self.config = config or RelayConfig()
        self.presence = presence if presence is not None else PresenceDirectory()
        self.ledger = ledger if ledger is not None else build_ledger(self.config)
        self.verifier = verifier or PrincipalVerifier.from_config(self.config)

        self.messaging = MessagingRelay(self.presence, self.ledger)
        self.signaling = CallSignalingRelay(self.presence)
        self.http = HttpRoutes(self)

        # Every open link, registered or not
        self.connections: Set[ConnectionLink] = set()
        self._background_tasks: Set[asyncio.Task] = set()
        self._server: Optional[websockets.Server] = None
        self.started_at = time.monotonic()

        logger.info(f"Initialized relay ({type(self.ledger).__name__})")

    def _track_background_task(self, task: asyncio.Task) -> None:
        """Keep a strong reference to background tasks until completion."""
        self._background_tasks.add(task)

        def _discard(_task: asyncio.Task) -> None:
            self._background_tasks.discard(_task)

        task.add_done_callback(_discard)

    # ========================================
    #           SERVER LIFECYCLE
    # ========================================

    async def start(self) -> websockets.Server:
        """Bind the listening socket and return once the relay accepts connections."""
        self._server = await websockets.serve(
            self.handle_connection,
            self.config.host,
            self.config.port,
            process_request=self.http.process_request,
            ping_interval=self.config.ping_interval,
            ping_timeout=self.config.ping_timeout,
        )
        logger.info(f"Relay listening on ws://{self.config.host}:{self.port}")
        return self._server

    @property
    def port(self) -> int:
        """Bound port (differs from config.port when it was 0)."""
        if self._server is None:
            return self.config.port
        return self._server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        for task in list(self._background_tasks):
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        logger.info(f"Relay stopping: {self.get_status()}")
        await self.ledger.close()
        logger.info("Relay stopped")

    async def start_server(self) -> None:
        """Run until cancelled."""
        await self.start()
        try:
            await asyncio.Future()  # Run forever
        except asyncio.CancelledError:
            logger.info("Server task cancelled")
            raise
        finally:
            await self.stop()

    # ========================================
    #           CONNECTION LIFECYCLE
    # ========================================

    async def handle_connection(self, websocket: websockets.ServerConnection) -> None:
        """
        Handle one WebSocket connection from upgrade to close.

        The client's first frame is normally the handshake. Nothing is
        dispatched until the connection is Registered; a first frame that
        was not a handshake is dispatched right after registration.
        """
        link = ConnectionLink(websocket)
        self.connections.add(link)
        logger.info(f"New connection from {websocket.remote_address}", extra=link.log_context)

        try:
            try:
                user_id, pending = await self.authenticate(link)
            except AuthenticationError as e:
                await self.reject(link, e)
                return

            self.register(link, user_id)
            await link.send_event(OutboundEvent.CONNECTED, {"userId": user_id, "connectionId": link.connection_id})
            if pending is not None:
                await self.process_message(link, pending)

            async for message in websocket:
                link.last_seen = time.monotonic()
                await self.process_message(link, message)

        except websockets.exceptions.ConnectionClosed:
            logger.info("Connection closed", extra=link.log_context)
        finally:
            self.cleanup_connection(link)

    async def authenticate(self, link: ConnectionLink) -> Tuple[str, Optional[RawFrame]]:
        """
        Connecting -> Authenticating, then verify the presented credentials.

        Returns the user id and the first frame when it was not a handshake.

        Raises:
            AuthenticationError: no token, or the token failed verification
        """
        link.transition(ConnectionState.AUTHENTICATING)
        result = await collect_credentials(link.websocket, self.config.handshake_timeout)
        user_id = self.verifier.verify(result.credentials)
        logger.info(f"Authenticated via {result.credentials.channel}", extra={**link.log_context, "user_id": user_id})
        return user_id, result.pending

    async def reject(self, link: ConnectionLink, error: AuthenticationError) -> None:
        logger.warning(f"Authentication failed: {error.detail or error.reason}", extra=link.log_context)
        await link.send_event(OutboundEvent.CONNECT_ERROR, {"message": error.reason})
        await link.close(code=POLICY_VIOLATION, reason=error.reason)

    def register(self, link: ConnectionLink, user_id: str) -> None:
        """Authenticating -> Registered and publish the link in the presence directory."""
        link.authenticate(user_id)
        displaced = self.presence.register(user_id, link)
        logger.info("User registered", extra=link.log_context)
        if displaced is not None and self.config.close_displaced:
            task = asyncio.create_task(self._close_displaced(displaced, link))
            self._track_background_task(task)

    async def _close_displaced(self, displaced: ConnectionLink, replacement: ConnectionLink) -> None:
        await displaced.send_event(OutboundEvent.SESSION_REPLACED, {"connectionId": replacement.connection_id})
        await displaced.close(code=SESSION_REPLACED, reason="Replaced by newer connection")
        logger.info("Closed displaced connection", extra=displaced.log_context)

    def cleanup_connection(self, link: ConnectionLink) -> None:
        """Registered/Authenticating -> Closed; deregister only if the directory still maps to this link."""
        if link.user_id is not None:
            if self.presence.unregister(link.user_id, link):
                logger.info("User deregistered", extra=link.log_context)
        link.transition(ConnectionState.CLOSED)
        self.connections.discard(link)

    # ========================================
    #           DISPATCH
    # ========================================

    async def process_message(self, connection: ConnectionLink, message: str | bytes) -> None:
        """Decode one inbound frame and run its handler; failures become an ``error`` event."""
        try:
            frame = Frame.from_json(message)
            handler = handler_for(frame.event)
        except BadFrameError as e:
            logger.warning(f"Bad frame: {e}", extra=connection.log_context)
            await connection.send_error("Invalid frame", str(e))
            return
        except UnknownEventError as e:
            logger.warning(f"Unknown event: {e}", extra=connection.log_context)
            await connection.send_error("Unknown event", f"Unknown event: {e}")
            return

        log_relay_event(logger, "debug", "Dispatching frame", frame=frame.to_dict(), **connection.log_context)
        try:
            await handler(self, connection, frame)
        except websockets.exceptions.ConnectionClosed:
            raise
        except Exception as e:
            logger.error(f"Error processing {frame.event}: {e}", exc_info=True, extra=connection.log_context)
            await connection.send_error("Internal error", f"Failed to process {frame.event}")

    # ========================================
    #           STATUS
    # ========================================

    def get_health(self) -> Dict[str, Any]:
        return {"status": "ok", "connections": len(self.presence)}

    def get_status(self) -> Dict[str, Any]:
        """Expose internal status for diagnostics."""
        return {
            **self.get_health(),
            "open_links": len(self.connections),
            "online_users": self.presence.online_users(),
            "uptime_seconds": round(time.monotonic() - self.started_at, 1),
            "ledger": {"backend": type(self.ledger).__name__, **self.ledger.get_storage_stats()},
        }


def main() -> None:
    """Console entry point"""
    config = load_config()
    configure_root_logging(config.log_level)
    server = RelayServer(config)
    with suppress(KeyboardInterrupt):
        asyncio.run(server.start_server())


if __name__ == "__main__":
    main()
