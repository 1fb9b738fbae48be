from typing import Dict, List, Optional
import random
import string
import time
import logging

import config
from errors import MatchNotFound, RegistryFull, ValidationFailed
from game_logic import role_patch
from models import Match, MUTABLE_FIELDS, HOST, PLAYER2, CHALLENGER, MODERATOR, ROLE_SELECTION, make_player

logger = logging.getLogger(__name__)

ROLE_CHOICES = (CHALLENGER, MODERATOR, "random")


def random_initial_coins() -> int:
    return random.randint(config.INITIAL_COINS_MIN, config.INITIAL_COINS_MAX)


class MatchRegistry:
    """Sole owner of live matches, keyed by their short code."""

    def __init__(self):
        self.matches: Dict[str, Match] = {}
        self.connection_index: Dict[str, str] = {}  # connection_id -> match_id

    def generate_match_id(self) -> str:
        """Generate a unique match code, checking for collisions."""
        alphabet = string.ascii_uppercase + string.digits
        for _ in range(config.MAX_MATCH_CODE_ATTEMPTS):
            code = ''.join(random.choices(alphabet, k=config.MATCH_CODE_LENGTH))
            if code not in self.matches:
                return code
        raise RuntimeError("Failed to generate unique match code")

    def create_match(self, host_connection: str, host_name: str,
                     settings: Optional[dict] = None,
                     questions: Optional[List[dict]] = None) -> Match:
        if len(self.matches) >= config.MAX_MATCHES:
            raise RegistryFull()
        match = Match(
            self.generate_match_id(), host_connection, host_name,
            settings=settings, initial_coins=random_initial_coins(),
            questions=questions,
        )
        self.matches[match.id] = match
        self.bind_connection(host_connection, match.id)
        logger.info("Match %s created by '%s' with %d coins and %d questions",
                    match.id, host_name, match.initial_coins, len(match.questions))
        return match

    def get_match(self, match_id: Optional[str]) -> Optional[Match]:
        if not match_id or not isinstance(match_id, str):
            return None
        return self.matches.get(match_id.strip().upper())

    def require_match(self, match_id: Optional[str]) -> Match:
        match = self.get_match(match_id)
        if match is None:
            raise MatchNotFound(match_id or "")
        return match

    def match_for_connection(self, connection_id: str) -> Optional[Match]:
        match_id = self.connection_index.get(connection_id)
        return self.matches.get(match_id) if match_id else None

    def bind_connection(self, connection_id: str, match_id: str):
        self.connection_index[connection_id] = match_id

    def unbind_connection(self, connection_id: str):
        self.connection_index.pop(connection_id, None)

    def add_player(self, match_id: str, connection_id: str, name: str) -> Optional[Match]:
        """Seat a second player. Returns None if the match is missing or full."""
        match = self.get_match(match_id)
        if match is None or match.is_full:
            return None
        players = [dict(p) for p in match.players]
        players.append(make_player(connection_id, name, PLAYER2 if players else HOST))
        patch: dict = {"players": players}
        if len(players) == config.MAX_PLAYERS_PER_MATCH:
            if config.AUTO_ASSIGN_ROLES:
                patch.update(role_patch(players, random.randint(0, 1)))
            else:
                patch["state"] = ROLE_SELECTION
        self.bind_connection(connection_id, match.id)
        logger.info("Player '%s' joined match %s", name, match.id)
        return self.update(match.id, patch)

    def assign_roles(self, match: Match, host_choice: str) -> Match:
        """Assign game roles from the host's choice: challenger, moderator or random."""
        if len(match.players) != config.MAX_PLAYERS_PER_MATCH:
            raise ValidationFailed("Waiting for a second player")
        if host_choice not in ROLE_CHOICES:
            raise ValidationFailed(f"Role must be one of: {', '.join(ROLE_CHOICES)}")
        host_index = next(i for i, p in enumerate(match.players) if p["role"] == HOST)
        if host_choice == CHALLENGER:
            challenger_index = host_index
        elif host_choice == MODERATOR:
            challenger_index = 1 - host_index
        else:
            challenger_index = 0 if random.random() < 0.5 else 1
        match = self.update(match.id, role_patch(match.players, challenger_index))
        logger.info("Match %s roles assigned (%s) - challenger: '%s', moderator: '%s'",
                    match.id, host_choice, match.challenger_name, match.moderator_name)
        return match

    def update(self, match_id: str, patch: dict) -> Match:
        """Merge ``patch`` into the match and bump its version.

        This is the only write path for match state; every rule produces one
        patch per client action so no half-applied state is ever broadcast.
        """
        match = self.get_match(match_id)
        if match is None:
            raise MatchNotFound(match_id)
        unknown = set(patch) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown match fields: {sorted(unknown)}")
        for key, value in patch.items():
            setattr(match, key, value)
        match.version += 1
        match.touch()
        return match

    def mark_seen(self, connection_id: str) -> Optional[Match]:
        """Stamp lastSeen for a heartbeat without bumping the version."""
        match = self.match_for_connection(connection_id)
        player = match.player_by_connection(connection_id) if match else None
        if player is None:
            return None
        player["lastSeen"] = time.time()
        match.touch()
        return match

    def delete_match(self, match_id: str) -> Optional[Match]:
        match = self.matches.pop(match_id, None)
        if match is None:
            return None
        stale = [cid for cid, mid in self.connection_index.items() if mid == match_id]
        for cid in stale:
            del self.connection_index[cid]
        logger.info("Match %s deleted", match_id)
        return match

    def sweep_idle(self, now: Optional[float] = None) -> List[str]:
        """Delete matches whose players are all gone and that saw no activity for the idle timeout."""
        now = now if now is not None else time.time()
        expired = [mid for mid, match in self.matches.items() if match.is_idle(now)]
        for mid in expired:
            self.delete_match(mid)
            logger.info("Cleaned up idle match %s", mid)
        return expired
