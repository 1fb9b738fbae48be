"""Re-binds a resumed connection to its seat and replays the match to it.

A seat is identified by (match id, player name). Connection ids change on
every reconnect, so everything here looks players up by name and then points
the match's id fields at the new connection.
"""
import logging
from typing import Optional, Tuple

from errors import SessionNotFound
from game_logic import disconnect_patch, rebind_patch
from match_registry import MatchRegistry
from models import Match, FINISHED, PAUSED, PLAYING, HOST
from session_store import Session, SessionStore

logger = logging.getLogger(__name__)


class ReconnectionCoordinator:
    def __init__(self, registry: MatchRegistry, sessions: SessionStore, hub):
        self.registry = registry
        self.sessions = sessions
        self.hub = hub

    async def resume(self, connection_id: str, token: str) -> Tuple[Match, Session]:
        """Resume a seat from a reconnect token.

        Raises SessionNotFound when the token is unknown, its match is gone or
        finished, or the seat no longer exists; the client must then drop the
        token and rejoin.
        """
        session = self.sessions.find_by_reconnect_token(token)
        if session is None:
            logger.info("Reconnect attempt with unknown token")
            raise SessionNotFound()
        match = self.registry.get_match(session.match_id)
        if match is None or match.state == FINISHED or match.find_player(session.player_name) is None:
            logger.info("Session %s points at a dead match %s, discarding",
                        session.short_id, session.match_id)
            self.sessions.delete(session.id)
            raise SessionNotFound()

        async with match.lock:
            await self._rebind(connection_id, match, session)
        await self.hub.emit(connection_id, "reconnect-success", self._seat_info(match, session))
        return match, session

    async def rejoin_by_name(self, connection_id: str, match: Match, name: str) -> Session:
        """Fallback for a join whose name matches an existing player.

        The caller must already hold ``match.lock``.
        """
        session = self.sessions.find_by_player(match.id, name)
        if session is None:
            player = match.find_player(name)
            session = self.sessions.create_session(connection_id, match.id, name,
                                                   player["role"], player["role"] == HOST)
        else:
            # The previous holder's token stops working.
            self.sessions.rotate_token(session.id)
        await self._rebind(connection_id, match, session)
        info = self._seat_info(match, session)
        info["reconnectToken"] = session.reconnect_token
        info["sessionId"] = session.id
        await self.hub.emit(connection_id, "joined-match", info)
        logger.info("Player '%s' rejoined match %s by name", name, match.id)
        return session

    async def _rebind(self, connection_id: str, match: Match, session: Session):
        old_connection = session.connection_id
        if old_connection and old_connection != connection_id:
            # Another live connection held this seat; it loses it.
            self.registry.unbind_connection(old_connection)
            self.hub.leave(old_connection, match.id)
            await self.hub.emit(old_connection, "session-replaced",
                                {"message": "You joined from another device"})

        self.sessions.reconnect(session.id, connection_id)
        was_paused = match.state == PAUSED
        patch = rebind_patch(match, session.player_name, connection_id)
        match = self.registry.update(match.id, patch)
        self.registry.bind_connection(connection_id, match.id)
        self.hub.join(connection_id, match.id)
        logger.info("Player '%s' reconnected to match %s (state: %s)",
                    session.player_name, match.id, match.state)

        await self.hub.emit_to_room(match.id, "player-reconnected",
                                    {"playerName": session.player_name}, exclude=connection_id)
        if was_paused and match.state == PLAYING:
            await self.hub.emit_to_room(match.id, "match-resumed", {"match": match.to_dict()})
        await self.hub.emit_to_room(match.id, "match-updated", {"match": match.to_dict()})

    @staticmethod
    def _seat_info(match: Match, session: Session) -> dict:
        player = match.find_player(session.player_name) or {}
        return {
            "matchId": match.id,
            "playerName": session.player_name,
            "role": player.get("role", session.role),
            "isHost": player.get("isHost", session.is_host),
            "gameRole": player.get("gameRole"),
            "match": match.to_dict(),
        }

    async def handle_disconnect(self, connection_id: str) -> Optional[Match]:
        """Mark the seat held by this connection as disconnected; pause a running match."""
        session = self.sessions.find_by_connection(connection_id)
        if session is not None:
            self.sessions.disconnect(session.id)
        match = self.registry.match_for_connection(connection_id)
        self.registry.unbind_connection(connection_id)
        if match is None:
            return None

        async with match.lock:
            patch = disconnect_patch(match, connection_id)
            if patch is None:
                return match
            player_name = match.player_by_connection(connection_id)["name"]
            paused = patch.get("state") == PAUSED
            match = self.registry.update(match.id, patch)
            logger.info("Player '%s' disconnected from match %s (state: %s)",
                        player_name, match.id, match.state)
            if paused:
                await self.hub.emit_to_room(match.id, "player-disconnected",
                                            {"playerName": player_name}, exclude=connection_id)
                await self.hub.emit_to_room(match.id, "match-paused", {"match": match.to_dict()},
                                            exclude=connection_id)
            else:
                await self.hub.emit_to_room(match.id, "match-updated", {"match": match.to_dict()},
                                            exclude=connection_id)
        return match
