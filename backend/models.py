import asyncio
import time
from typing import Dict, List, Optional

import config

# Match.state
LOBBY = "lobby"
ROLE_SELECTION = "role-selection"
SETUP = "setup"
PLAYING = "playing"
PAUSED = "paused"
FINISHED = "finished"

# Match.phase
ANSWERING = "answering"
DECISION = "decision"
RESULT = "result"

# Player.role (seat) and Player.gameRole
HOST = "host"
PLAYER2 = "player2"
CHALLENGER = "challenger"
MODERATOR = "moderator"

TRUST = "trust"
DOUBT = "doubt"

# Match.outcome
TRUST_AWARDED = "trust-awarded"
DOUBT_COIN_LOST = "doubt-coin-lost"
DOUBT_COIN_SAVED = "doubt-coin-saved"

# Fields cleared together at the start of every answering phase.
ROUND_RESET = {
    "challenger_answer": "",
    "moderator_answer": "",
    "challenger_answered": False,
    "moderator_answered": False,
    "challenger_correct": False,
    "decision": "",
    "round_result": "",
    "outcome": "",
    "show_moderator_answer": False,
    "skip_requests": [],
    "report_requests": [],
}

# Attributes that MatchRegistry.update() is allowed to write.
MUTABLE_FIELDS = frozenset({
    "host_id", "state", "phase", "players",
    "challenger_id", "moderator_id", "challenger_name", "moderator_name",
    "challenger_score", "moderator_score", "challenger_coins",
    "current_question", "questions", "winner",
    *ROUND_RESET.keys(),
})


def make_player(connection_id: str, name: str, role: str) -> dict:
    return {
        "id": connection_id,
        "name": name,
        "role": role,
        "isHost": role == HOST,
        "gameRole": None,
        "connected": True,
        "lastSeen": time.time(),
    }


class Match:
    """Authoritative state of one two-player match.

    Owned by MatchRegistry. Rule code never assigns attributes directly; it
    builds a patch dict keyed by attribute name and hands it to
    ``MatchRegistry.update`` so a broadcast always sees a coherent snapshot.
    """

    def __init__(self, match_id: str, host_id: str, host_name: str,
                 settings: Optional[dict] = None, initial_coins: int = 1,
                 questions: Optional[List[dict]] = None):
        self.id = match_id
        self.host_id = host_id
        self.host_name = host_name
        self.settings: Dict[str, Optional[str]] = dict(settings or {})
        self.state = LOBBY
        self.phase = ANSWERING
        self.players: List[dict] = [make_player(host_id, host_name, HOST)]
        self.challenger_id: Optional[str] = None
        self.moderator_id: Optional[str] = None
        self.challenger_name = ""
        self.moderator_name = ""
        self.challenger_score = 0
        self.moderator_score = 0
        self.initial_coins = initial_coins
        self.challenger_coins = initial_coins
        self.current_question = 0
        self.questions: List[dict] = list(questions or [])
        self.winner = ""
        self.version = 0
        self.created_at = time.time()
        self.last_activity = self.created_at
        # per-round scratch
        self.challenger_answer = ""
        self.moderator_answer = ""
        self.challenger_answered = False
        self.moderator_answered = False
        self.challenger_correct = False
        self.decision = ""
        self.round_result = ""
        self.outcome = ""
        self.show_moderator_answer = False
        self.skip_requests: List[str] = []
        self.report_requests: List[str] = []
        # runtime-only
        self.lock = asyncio.Lock()

    def touch(self):
        self.last_activity = time.time()

    def is_idle(self, now: Optional[float] = None) -> bool:
        """True when nobody is connected and nothing happened for the idle timeout."""
        now = now if now is not None else time.time()
        all_disconnected = all(not p["connected"] for p in self.players)
        return all_disconnected and now - self.last_activity > config.MATCH_IDLE_TIMEOUT_SECONDS

    @property
    def is_full(self) -> bool:
        return len(self.players) >= config.MAX_PLAYERS_PER_MATCH

    @property
    def question(self) -> Optional[dict]:
        if 0 <= self.current_question < len(self.questions):
            return self.questions[self.current_question]
        return None

    @property
    def remaining_questions(self) -> int:
        """Questions available after the current one."""
        return max(0, len(self.questions) - self.current_question - 1)

    def find_player(self, name: str) -> Optional[dict]:
        return next((p for p in self.players if p["name"] == name), None)

    def player_by_connection(self, connection_id: str) -> Optional[dict]:
        return next((p for p in self.players if p["id"] == connection_id), None)

    def game_role_of(self, connection_id: str) -> Optional[str]:
        """Resolve a live connection to its game role, or None for stale senders."""
        if connection_id and connection_id == self.challenger_id:
            return CHALLENGER
        if connection_id and connection_id == self.moderator_id:
            return MODERATOR
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "hostId": self.host_id,
            "hostName": self.host_name,
            "settings": dict(self.settings),
            "state": self.state,
            "phase": self.phase,
            "players": [dict(p) for p in self.players],
            "challengerId": self.challenger_id,
            "moderatorId": self.moderator_id,
            "challengerName": self.challenger_name,
            "moderatorName": self.moderator_name,
            "challengerScore": self.challenger_score,
            "moderatorScore": self.moderator_score,
            "challengerCoins": self.challenger_coins,
            "initialCoins": self.initial_coins,
            "currentQuestion": self.current_question,
            "questions": [dict(q) for q in self.questions],
            "challengerAnswer": self.challenger_answer,
            "moderatorAnswer": self.moderator_answer,
            "challengerAnswered": self.challenger_answered,
            "moderatorAnswered": self.moderator_answered,
            "challengerCorrect": self.challenger_correct,
            "decision": self.decision,
            "roundResult": self.round_result,
            "outcome": self.outcome,
            "showModeratorAnswer": self.show_moderator_answer,
            "skipRequests": list(self.skip_requests),
            "reportRequests": list(self.report_requests),
            "winner": self.winner,
            "version": self.version,
            "createdAt": self.created_at,
            "lastActivity": self.last_activity,
        }

    def summary(self) -> dict:
        """Debug view without answers, questions or connection ids."""
        return {
            "id": self.id,
            "state": self.state,
            "phase": self.phase,
            "players": [
                {"name": p["name"], "role": p["role"], "gameRole": p["gameRole"],
                 "connected": p["connected"]}
                for p in self.players
            ],
            "challengerScore": self.challenger_score,
            "moderatorScore": self.moderator_score,
            "challengerCoins": self.challenger_coins,
            "currentQuestion": self.current_question,
            "version": self.version,
            "createdAt": self.created_at,
            "lastActivity": self.last_activity,
        }
