from typing import Callable, Dict, List, Optional
import hmac
import secrets
import time
import logging

import config

logger = logging.getLogger(__name__)


class Session:
    """Binds a match seat to whichever connection currently holds it.

    ``reconnect_token`` is a bearer credential for the seat: it is only ever
    sent to the connection that owns the seat and never written to the logs.
    """

    def __init__(self, connection_id: str, match_id: str, player_name: str,
                 role: str, is_host: bool):
        self.id = secrets.token_urlsafe(16)
        self.reconnect_token = secrets.token_urlsafe(32)
        self.connection_id: Optional[str] = connection_id
        self.match_id = match_id
        self.player_name = player_name
        self.role = role
        self.is_host = is_host
        self.created_at = time.time()
        self.last_activity = self.created_at
        self.connected = True
        self.disconnected_at: Optional[float] = None

    @property
    def short_id(self) -> str:
        return self.id[:8]

    def touch(self):
        self.last_activity = time.time()


class SessionStore:
    def __init__(self):
        self.sessions: Dict[str, Session] = {}  # session_id -> Session

    def create_session(self, connection_id: str, match_id: str, player_name: str,
                       role: str, is_host: bool) -> Session:
        session = Session(connection_id, match_id, player_name, role, is_host)
        self.sessions[session.id] = session
        logger.info("Session %s created for '%s' in match %s",
                    session.short_id, player_name, match_id)
        return session

    def get(self, session_id: str) -> Optional[Session]:
        return self.sessions.get(session_id)

    def find_by_reconnect_token(self, token: str) -> Optional[Session]:
        if not token or not isinstance(token, str):
            return None
        for session in self.sessions.values():
            if hmac.compare_digest(token, session.reconnect_token):
                return session
        return None

    def rotate_token(self, session_id: str) -> Optional[Session]:
        """Issue a fresh reconnect token; the old one stops resolving."""
        session = self.sessions.get(session_id)
        if session is None:
            return None
        session.reconnect_token = secrets.token_urlsafe(32)
        logger.info("Session %s reconnect token rotated", session.short_id)
        return session

    def find_by_connection(self, connection_id: str) -> Optional[Session]:
        return next((s for s in self.sessions.values() if s.connection_id == connection_id), None)

    def find_by_player(self, match_id: str, player_name: str) -> Optional[Session]:
        return next((s for s in self.sessions.values()
                     if s.match_id == match_id and s.player_name == player_name), None)

    def reconnect(self, session_id: str, connection_id: str) -> Optional[Session]:
        session = self.sessions.get(session_id)
        if session is None:
            return None
        session.connection_id = connection_id
        session.connected = True
        session.disconnected_at = None
        session.touch()
        logger.info("Session %s rebound to a new connection", session.short_id)
        return session

    def disconnect(self, session_id: str) -> Optional[Session]:
        session = self.sessions.get(session_id)
        if session is None:
            return None
        session.connection_id = None
        session.connected = False
        session.disconnected_at = time.time()
        session.touch()
        logger.info("Session %s disconnected", session.short_id)
        return session

    def delete(self, session_id: str) -> Optional[Session]:
        return self.sessions.pop(session_id, None)

    def delete_for_match(self, match_id: str) -> int:
        stale = [sid for sid, s in self.sessions.items() if s.match_id == match_id]
        for sid in stale:
            del self.sessions[sid]
        if stale:
            logger.info("Removed %d sessions of match %s", len(stale), match_id)
        return len(stale)

    def sweep(self, match_is_live: Callable[[str], bool], now: Optional[float] = None) -> List[str]:
        """Remove orphaned, too old, or too long disconnected sessions.

        ``match_is_live(match_id)`` tells whether the match still exists and is
        not finished.
        """
        now = now if now is not None else time.time()
        expired = []
        for sid, session in self.sessions.items():
            if not match_is_live(session.match_id):
                expired.append(sid)
            elif now - session.created_at > config.SESSION_MAX_AGE_SECONDS:
                expired.append(sid)
            elif (not session.connected and session.disconnected_at is not None
                  and now - session.disconnected_at > config.SESSION_DISCONNECT_GRACE_SECONDS):
                expired.append(sid)
        for sid in expired:
            session = self.sessions.pop(sid)
            logger.info("Cleaned up session %s of match %s", session.short_id, session.match_id)
        return expired
