"""Session gateway: authenticates realtime connections.

Every WebSocket passes through SessionGateway.open() before any application
event is read. A connection without a valid token is closed with 1008
(policy violation) before it is accepted, so it never creates presence or
room state.
"""
import logging
from typing import Optional

from fastapi import WebSocket, status

from chatline.auth.dependencies import token_from_headers
from chatline.auth.service import TokenVerifier
from chatline.config import AuthSettings
from chatline.errors import AuthError

from .broadcast import Broadcaster
from .manager import ConnectionManager, Session
from .presence import PresenceTable

logger = logging.getLogger(__name__)


class SessionGateway:
    """Binds each connection to a verified principal for its lifetime."""

    def __init__(
        self,
        verifier: TokenVerifier,
        manager: ConnectionManager,
        presence: PresenceTable,
        broadcaster: Broadcaster,
        auth_settings: Optional[AuthSettings] = None,
    ) -> None:
        self.verifier = verifier
        self.manager = manager
        self.presence = presence
        self.broadcaster = broadcaster
        self.auth_settings = auth_settings or AuthSettings()

    def extract_token(self, websocket: WebSocket) -> Optional[str]:
        """Token from the query string, else from the auth headers."""
        token = websocket.query_params.get(self.auth_settings.query_param)
        if token:
            return token
        return token_from_headers(websocket.headers, self.auth_settings.header_name)

    async def open(self, websocket: WebSocket) -> Optional[Session]:
        """Authenticate and accept a connection.

        On success the session is registered, subscribed to its principal
        channel, told who it is (``connected``), added to the presence table,
        and the presence snapshot is announced to everyone.

        Returns:
            The new Session, or None if the connection was refused.
        """
        try:
            principal = self.verifier.verify(self.extract_token(websocket))
        except AuthError as e:
            logger.warning(f"[Gateway] Refused connection: {e}")
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return None

        await websocket.accept()
        session = Session(websocket, principal)
        self.manager.register(session)

        await self.manager.deliver([session], {
            "type": "connected",
            "user": principal.public(),
        })

        self.presence.upsert(principal, session.id)
        logger.info(f"[Gateway] {principal.email or principal.id} connected as session {session.id}")
        await self.broadcaster.announce_presence()
        return session

    async def close(self, session: Session) -> None:
        """Tear down a session after its connection is gone.

        No grace period: subscriptions are dropped immediately and a
        reconnecting client starts over with a fresh session.
        """
        rooms = self.manager.unregister(session)
        principal = session.principal
        logger.info(f"[Gateway] {principal.email or principal.id} disconnected (left {len(rooms)} rooms)")

        if not self.presence.remove(principal.id, session.id):
            # Entry belongs to a newer connection of the same principal
            return

        remaining = self.manager.sessions_of(principal.id)
        if remaining:
            self.presence.upsert(principal, remaining[0].id)
            return

        await self.broadcaster.announce_presence()
