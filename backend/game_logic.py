"""Trust-or-doubt rules.

Every function here is pure: it reads a Match and returns a patch dict for
``MatchRegistry.update`` (or None when the event should be ignored). Rule
violations raise ValidationFailed. Nothing here touches the network.
"""
import time
from typing import List, Optional, Tuple

import config
from errors import ValidationFailed
from models import (
    Match, ROUND_RESET, HOST, CHALLENGER, MODERATOR, TRUST, DOUBT,
    ROLE_SELECTION, SETUP, PLAYING, PAUSED, FINISHED,
    ANSWERING, DECISION, RESULT,
    TRUST_AWARDED, DOUBT_COIN_LOST, DOUBT_COIN_SAVED,
)

SKIP_REQUESTS = "skip_requests"
REPORT_REQUESTS = "report_requests"


def role_patch(players: List[dict], challenger_index: int) -> dict:
    """Seat ``players[challenger_index]`` as challenger and the other player as moderator."""
    players = [dict(p) for p in players]
    challenger = players[challenger_index]
    moderator = players[1 - challenger_index]
    challenger["gameRole"] = CHALLENGER
    moderator["gameRole"] = MODERATOR
    return {
        "players": players,
        "challenger_id": challenger["id"],
        "moderator_id": moderator["id"],
        "challenger_name": challenger["name"],
        "moderator_name": moderator["name"],
        "state": SETUP,
    }


def is_correct(answer: str, question: Optional[dict]) -> bool:
    if question is None:
        return False
    try:
        return int(answer) == question["correctIndex"]
    except (TypeError, ValueError):
        return False


def _require_playing(match: Match, *phases: str):
    if match.state != PLAYING:
        raise ValidationFailed("The match is not running")
    if match.phase not in phases:
        raise ValidationFailed("That action is not allowed right now")


def _players_with(match: Match, name: str, **changes) -> List[dict]:
    players = [dict(p) for p in match.players]
    for p in players:
        if p["name"] == name:
            p.update(changes)
    return players


# ---------------------------------------------------------------------------
# Start
# ---------------------------------------------------------------------------

def start_patch(match: Match, connection_id: str, challenger_index: int = 0) -> dict:
    """Start the match. From role-selection, roles are assigned using ``challenger_index``."""
    if connection_id != match.host_id:
        raise ValidationFailed("Only the host can start the match")
    if match.state not in (ROLE_SELECTION, SETUP):
        raise ValidationFailed("The match cannot be started now")
    if len(match.players) != config.MAX_PLAYERS_PER_MATCH:
        raise ValidationFailed("Waiting for a second player")
    if not match.questions:
        raise ValidationFailed("No questions available")
    patch: dict = {}
    if match.state == ROLE_SELECTION:
        patch.update(role_patch(match.players, challenger_index))
    patch.update(ROUND_RESET)
    patch.update({"state": PLAYING, "phase": ANSWERING, "current_question": 0})
    return patch


# ---------------------------------------------------------------------------
# Answers
# ---------------------------------------------------------------------------

def parse_answer(answer, question: Optional[dict]) -> str:
    if question is None:
        raise ValidationFailed("No active question")
    try:
        index = int(str(answer).strip())
    except (TypeError, ValueError):
        raise ValidationFailed("Answer must be an option index")
    if not (0 <= index < len(question["options"])):
        raise ValidationFailed("Answer must be an option index")
    return str(index)


def answer_patch(match: Match, connection_id: str, answer) -> Optional[dict]:
    """Record an answer. When it is the second one, score and advance in the same patch."""
    role = match.game_role_of(connection_id)
    if role is None:
        return None
    # A resend after the round moved on is dropped like any duplicate.
    if (role == CHALLENGER and match.challenger_answered) or \
            (role == MODERATOR and match.moderator_answered):
        return None
    _require_playing(match, ANSWERING)
    answer = parse_answer(answer, match.question)

    if role == CHALLENGER:
        patch = {"challenger_answer": answer, "challenger_answered": True}
        challenger_answer = answer
        both = match.moderator_answered
    else:
        patch = {"moderator_answer": answer, "moderator_answered": True}
        challenger_answer = match.challenger_answer
        both = match.challenger_answered

    if both:
        correct = is_correct(challenger_answer, match.question)
        patch["challenger_correct"] = correct
        if correct:
            patch["challenger_score"] = match.challenger_score + 1
        patch["phase"] = DECISION
    return patch


# ---------------------------------------------------------------------------
# Decision
# ---------------------------------------------------------------------------

def decision_patch(match: Match, connection_id: str, decision: str) -> Optional[dict]:
    role = match.game_role_of(connection_id)
    if role is None:
        return None
    _require_playing(match, DECISION)
    if role != CHALLENGER:
        raise ValidationFailed("Only the challenger can decide")
    if decision not in (TRUST, DOUBT):
        raise ValidationFailed("Decision must be 'trust' or 'doubt'")

    challenger, moderator = match.challenger_name, match.moderator_name
    moderator_correct = is_correct(match.moderator_answer, match.question)
    patch: dict = {"decision": decision, "phase": RESULT}

    if decision == TRUST:
        patch["moderator_score"] = match.moderator_score + 1
        patch["show_moderator_answer"] = False
        patch["outcome"] = TRUST_AWARDED
        patch["round_result"] = f"{challenger} trusts {moderator}. {moderator} gets 1 point."
        return patch

    # Doubt always costs a coin up front; it comes back if the moderator was wrong.
    coins = match.challenger_coins - 1
    patch["show_moderator_answer"] = True
    if moderator_correct:
        patch["moderator_score"] = match.moderator_score + 1
        patch["outcome"] = DOUBT_COIN_LOST
        patch["round_result"] = (f"{challenger} doubts. {moderator} was right and gets 1 point. "
                                 f"Coin lost!")
    else:
        coins += 1
        patch["outcome"] = DOUBT_COIN_SAVED
        patch["round_result"] = f"{challenger} doubts. {moderator} was wrong. Coin retained."
    patch["challenger_coins"] = coins
    return patch


# ---------------------------------------------------------------------------
# Next round / win conditions
# ---------------------------------------------------------------------------

def evaluate_winner(match: Match) -> Optional[str]:
    """Winner name, config.DRAW, or None if the match goes on.

    Running out of coins eliminates the challenger before scores are looked at.
    """
    if match.challenger_coins <= 0:
        return match.moderator_name
    challenger_done = match.challenger_score >= config.WINNING_SCORE
    moderator_done = match.moderator_score >= config.WINNING_SCORE
    if challenger_done and moderator_done:
        return _by_score(match)
    if challenger_done:
        return match.challenger_name
    if moderator_done:
        return match.moderator_name
    return None


def _by_score(match: Match, challenger_score: Optional[int] = None,
              moderator_score: Optional[int] = None) -> str:
    challenger_score = match.challenger_score if challenger_score is None else challenger_score
    moderator_score = match.moderator_score if moderator_score is None else moderator_score
    if challenger_score > moderator_score:
        return match.challenger_name
    if moderator_score > challenger_score:
        return match.moderator_name
    return config.DRAW


def needs_refill(match: Match) -> bool:
    """True if, after advancing one question, the buffer ahead is running low."""
    return match.remaining_questions < config.QUESTION_REFILL_THRESHOLD


def advance_patch(match: Match, new_questions: Optional[List[dict]] = None,
                  questions: Optional[List[dict]] = None) -> dict:
    """Move to the next question with a clean round, or finish if none is left."""
    questions = list(match.questions if questions is None else questions)
    questions.extend(new_questions or [])
    next_index = match.current_question + 1
    if next_index >= len(questions):
        return {"questions": questions, "state": FINISHED, "winner": _by_score(match)}
    patch = dict(ROUND_RESET)
    patch.update({
        "questions": questions,
        "current_question": next_index,
        "phase": ANSWERING,
    })
    return patch


def next_round_patch(match: Match, connection_id: str,
                     new_questions: Optional[List[dict]] = None) -> Optional[dict]:
    if match.game_role_of(connection_id) is None:
        return None
    _require_playing(match, RESULT)
    winner = evaluate_winner(match)
    if winner is not None:
        return {"state": FINISHED, "winner": winner}
    return advance_patch(match, new_questions)


# ---------------------------------------------------------------------------
# Connection status
# ---------------------------------------------------------------------------

def disconnect_patch(match: Match, connection_id: str) -> Optional[dict]:
    player = match.player_by_connection(connection_id)
    if player is None:
        return None
    patch: dict = {"players": _players_with(match, player["name"], connected=False,
                                            lastSeen=time.time())}
    if match.state == PLAYING:
        patch["state"] = PAUSED
    return patch


def rebind_patch(match: Match, name: str, connection_id: str) -> Optional[dict]:
    """Point the seat held by ``name`` at a new connection and resume if both are back."""
    player = match.find_player(name)
    if player is None:
        return None
    players = _players_with(match, name, id=connection_id, connected=True, lastSeen=time.time())
    patch: dict = {"players": players}
    if player["role"] == HOST:
        patch["host_id"] = connection_id
    if match.challenger_name == name:
        patch["challenger_id"] = connection_id
    if match.moderator_name == name:
        patch["moderator_id"] = connection_id
    if match.state == PAUSED and all(p["connected"] for p in players) \
            and len(players) == config.MAX_PLAYERS_PER_MATCH:
        patch["state"] = PLAYING
    return patch


# ---------------------------------------------------------------------------
# Skip / post-answer report
# ---------------------------------------------------------------------------

def _requests_field_for(match: Match, post_answer: bool) -> str:
    if post_answer:
        _require_playing(match, DECISION, RESULT)
        return REPORT_REQUESTS
    _require_playing(match, ANSWERING)
    return SKIP_REQUESTS


def completes_request(match: Match, connection_id: str, post_answer: bool) -> bool:
    """True if a request from this connection would make both players concur."""
    if match.state != PLAYING or match.game_role_of(connection_id) is None:
        return False
    if post_answer and match.phase not in (DECISION, RESULT):
        return False
    if not post_answer and match.phase != ANSWERING:
        return False
    name = match.player_by_connection(connection_id)["name"]
    current = getattr(match, REPORT_REQUESTS if post_answer else SKIP_REQUESTS)
    return len(set(current) | {name}) == config.MAX_PLAYERS_PER_MATCH


def rollback_patch(match: Match) -> dict:
    """Undo exactly what the answer and decision steps awarded for the current question."""
    challenger_score = match.challenger_score
    moderator_score = match.moderator_score
    coins = match.challenger_coins
    if match.challenger_correct:
        challenger_score -= 1
    if match.phase == RESULT:
        if match.decision == TRUST:
            moderator_score -= 1
        elif match.decision == DOUBT and is_correct(match.moderator_answer, match.question):
            moderator_score -= 1
            coins += 1
    return {
        "challenger_score": max(0, challenger_score),
        "moderator_score": max(0, moderator_score),
        "challenger_coins": coins,
    }


def request_patch(match: Match, connection_id: str, post_answer: bool = False,
                  cancel: bool = False,
                  new_questions: Optional[List[dict]] = None) -> Tuple[Optional[dict], bool]:
    """Add or cancel a skip/report request.

    Returns ``(patch, invalidated)``. When both players concur the patch marks
    the current question as reported, rolls back any points it produced and
    moves on to the next question.
    """
    if match.game_role_of(connection_id) is None:
        return None, False
    field = _requests_field_for(match, post_answer)
    name = match.player_by_connection(connection_id)["name"]
    current = list(getattr(match, field))

    if cancel:
        if name not in current:
            return {}, False
        current.remove(name)
        return {field: current}, False

    if name not in current:
        current.append(name)
    if len(set(current)) < config.MAX_PLAYERS_PER_MATCH:
        return {field: current}, False

    questions = [dict(q) for q in match.questions]
    questions[match.current_question]["reported"] = True
    patch = rollback_patch(match) if post_answer else {}
    patch.update(advance_patch(match, new_questions, questions=questions))
    if patch.get("state") == FINISHED:
        patch["winner"] = _by_score(match, patch.get("challenger_score"),
                                    patch.get("moderator_score"))
    return patch, True
