from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from typing import Dict, List, Optional, Set
import asyncio
import json
import logging
import random
import time
import uuid

import config
import game_logic
from blocklist import Blocklist, blocklist as default_blocklist
from errors import (
    GameError, InsufficientQuestions, MatchFull, SessionNotFound, ValidationFailed,
)
from match_registry import MatchRegistry
from models import Match, FINISHED, HOST, PLAYER2, RESULT, ROLE_SELECTION
from question_source import QuestionSource, question_source as default_question_source
from reconnection import ReconnectionCoordinator
from schemas import (
    AnswerPayload, ChooseRolePayload, CreateMatchPayload, DecisionPayload,
    JoinMatchPayload, MatchPayload, ReconnectPayload, ReportPayload,
)
from session_store import SessionStore

logger = logging.getLogger(__name__)


class ConnectionHub:
    """Live sockets and the match rooms they belong to."""

    def __init__(self):
        self.connections: Dict[str, WebSocket] = {}
        self.rooms: Dict[str, Set[str]] = {}  # match_id -> connection ids

    def add(self, connection_id: str, websocket: WebSocket):
        self.connections[connection_id] = websocket

    def remove(self, connection_id: str):
        self.connections.pop(connection_id, None)
        for members in self.rooms.values():
            members.discard(connection_id)

    def join(self, connection_id: str, room: str):
        self.rooms.setdefault(room, set()).add(connection_id)

    def leave(self, connection_id: str, room: str):
        self.rooms.get(room, set()).discard(connection_id)

    def close_room(self, room: str):
        self.rooms.pop(room, None)

    async def emit(self, connection_id: str, event: str, payload: Optional[dict] = None):
        ws = self.connections.get(connection_id)
        if ws is None:
            return
        try:
            await ws.send_json({"type": event, **(payload or {})})
        except Exception:
            # The receive loop of that socket notices the drop and cleans up.
            logger.debug("Could not send '%s' to %s", event, connection_id)

    async def emit_to_room(self, room: str, event: str, payload: Optional[dict] = None,
                           exclude: Optional[str] = None):
        for connection_id in sorted(self.rooms.get(room, ())):
            if connection_id != exclude:
                await self.emit(connection_id, event, payload)


class SocketManager:
    def __init__(self, registry: Optional[MatchRegistry] = None,
                 sessions: Optional[SessionStore] = None,
                 questions: Optional[QuestionSource] = None,
                 blocklist: Optional[Blocklist] = None,
                 hub: Optional[ConnectionHub] = None):
        self.registry = registry or MatchRegistry()
        self.sessions = sessions or SessionStore()
        self.questions = questions or default_question_source
        self.blocklist = blocklist or default_blocklist
        self.hub = hub or ConnectionHub()
        self.coordinator = ReconnectionCoordinator(self.registry, self.sessions, self.hub)
        self.allowed_origins: List[str] = []
        self.msg_timestamps: Dict[str, list] = {}  # connection_id -> recent message times
        self._cleanup_task: Optional[asyncio.Task] = None
        self._finish_tasks: Dict[str, asyncio.Task] = {}
        self._pending_creates: Set[str] = set()  # connections waiting on questions for a new match
        self.handlers = {
            "create-match": self.on_create_match,
            "join-match": self.on_join_match,
            "choose-role": self.on_choose_role,
            "start-match": self.on_start_match,
            "submit-answer": self.on_submit_answer,
            "make-decision": self.on_make_decision,
            "next-round": self.on_next_round,
            "reconnect-attempt": self.on_reconnect_attempt,
            "request-skip": self.on_request_skip,
            "cancel-skip": self.on_cancel_skip,
            "request-post-answer-report": self.on_request_report,
            "cancel-post-answer-report": self.on_cancel_report,
            "focus-lost": self.on_focus_lost,
            "focus-regained": self.on_focus_regained,
            "ping": self.on_ping,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_cleanup_loop(self):
        """Start the background cleanup task."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def shutdown(self):
        tasks = list(self._finish_tasks.values())
        if self._cleanup_task:
            tasks.append(self._cleanup_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._cleanup_task = None
        self._finish_tasks.clear()

    async def _cleanup_loop(self):
        """Periodically remove idle matches and stale sessions."""
        while True:
            try:
                await asyncio.sleep(config.CLEANUP_INTERVAL_SECONDS)
                self.sweep()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in cleanup loop")

    def sweep(self, now: Optional[float] = None):
        for match_id in self.registry.sweep_idle(now):
            self._forget_match(match_id)
        self.sessions.sweep(self._match_is_live, now)

    def _match_is_live(self, match_id: str) -> bool:
        match = self.registry.get_match(match_id)
        return match is not None and match.state != FINISHED

    def _forget_match(self, match_id: str):
        self.sessions.delete_for_match(match_id)
        self.questions.forget_match(match_id)
        self.hub.close_room(match_id)

    def _schedule_finish_cleanup(self, match_id: str):
        if match_id in self._finish_tasks:
            return
        self._finish_tasks[match_id] = asyncio.create_task(
            self._delayed_match_cleanup(match_id, config.FINISHED_MATCH_GRACE_SECONDS)
        )

    async def _delayed_match_cleanup(self, match_id: str, delay: int):
        """Delete a finished match once clients had time to show the result."""
        try:
            await asyncio.sleep(delay)
            await self.hub.emit_to_room(match_id, "match-closed", {"matchId": match_id})
            self.registry.delete_match(match_id)
            self._forget_match(match_id)
            logger.info("Finished match %s cleaned up after %ds", match_id, delay)
        except asyncio.CancelledError:
            pass
        finally:
            self._finish_tasks.pop(match_id, None)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def connect(self, websocket: WebSocket, reconnect_token: str = ""):
        # Validate WebSocket origin
        origin = websocket.headers.get("origin", "")
        if self.allowed_origins and origin not in self.allowed_origins:
            logger.warning("Rejected WebSocket from unauthorized origin: %s", origin)
            await websocket.close(code=1008)
            return

        await websocket.accept()
        connection_id = uuid.uuid4().hex
        self.hub.add(connection_id, websocket)
        await self.hub.emit(connection_id, "connected", {"connectionId": connection_id})

        try:
            if reconnect_token:
                await self.dispatch(connection_id, {"type": "reconnect-attempt",
                                                    "reconnectToken": reconnect_token})
            while True:
                data = await websocket.receive_text()

                # Enforce message size limit
                if len(data) > config.MAX_WS_MESSAGE_SIZE:
                    await self.hub.emit(connection_id, "error", {"message": "Message too large"})
                    continue

                # Per-connection rate limiting
                now = time.time()
                timestamps = self.msg_timestamps.setdefault(connection_id, [])
                timestamps[:] = [t for t in timestamps if now - t < 1.0]
                if len(timestamps) >= config.WS_RATE_LIMIT_PER_SEC:
                    await self.hub.emit(connection_id, "error", {"message": "Too many messages"})
                    continue
                timestamps.append(now)

                try:
                    message = json.loads(data)
                except json.JSONDecodeError:
                    logger.warning("Malformed JSON from connection %s: %s", connection_id, data[:100])
                    await self.hub.emit(connection_id, "error", {"message": "Invalid message format"})
                    continue
                if not isinstance(message, dict):
                    await self.hub.emit(connection_id, "error", {"message": "Invalid message format"})
                    continue

                await self.dispatch(connection_id, message)
        except WebSocketDisconnect:
            logger.info("Connection %s closed", connection_id)
        except Exception:
            logger.exception("WebSocket error for connection %s", connection_id)
        finally:
            self.msg_timestamps.pop(connection_id, None)
            try:
                await self.coordinator.handle_disconnect(connection_id)
            except Exception:
                logger.exception("Error while handling disconnect of %s", connection_id)
            self.hub.remove(connection_id)

    async def dispatch(self, connection_id: str, message: dict):
        """Run one client event. Errors go back to the sender only."""
        event = message.get("type")
        handler = self.handlers.get(event)
        if handler is None:
            await self.hub.emit(connection_id, "error", {"message": "Unknown event"})
            return
        try:
            await handler(connection_id, message)
        except SessionNotFound as e:
            await self.hub.emit(connection_id, "reconnect-failed",
                                {"message": e.message, "discardToken": True})
        except GameError as e:
            logger.info("Rejected '%s' for match %s: %s", event, message.get("matchId"), e.message)
            await self.hub.emit(connection_id, "error", {"message": e.message, "event": event})
        except ValidationError as e:
            errors = e.errors()
            detail = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
            await self.hub.emit(connection_id, "error", {"message": detail, "event": event})
        except Exception:
            logger.exception("Error handling '%s' for match %s", event, message.get("matchId"))
            await self.hub.emit(connection_id, "error",
                                {"message": "Something went wrong", "event": event})

    async def broadcast(self, match: Match, event: str = "match-updated"):
        await self.hub.emit_to_room(match.id, event, {"match": match.to_dict()})

    async def _fetch_questions(self, match: Match, count: int) -> List[dict]:
        return await self.questions.get_questions(
            count, match.id,
            difficulty=match.settings.get("difficulty"),
            category=match.settings.get("category"),
        )

    async def _finish(self, match: Match):
        logger.info("Match %s finished, winner: %s", match.id, match.winner)
        await self.broadcast(match)
        await self.hub.emit_to_room(match.id, "match-finished",
                                    {"winner": match.winner, "match": match.to_dict()})
        self._schedule_finish_cleanup(match.id)

    # ------------------------------------------------------------------
    # Lobby
    # ------------------------------------------------------------------

    def _require_unseated(self, connection_id: str, match_id: Optional[str] = None):
        """A connection holds a seat in at most one unfinished match."""
        if connection_id in self._pending_creates:
            raise ValidationFailed("You are already in a match")
        current = self.registry.match_for_connection(connection_id)
        if current is not None and current.id != match_id and current.state != FINISHED:
            raise ValidationFailed("You are already in a match")

    async def on_create_match(self, connection_id: str, message: dict):
        payload = CreateMatchPayload.model_validate(message)
        self._require_unseated(connection_id)

        settings = payload.settings.model_dump()
        self._pending_creates.add(connection_id)
        try:
            questions = await self.questions.get_questions(
                config.INITIAL_QUESTION_COUNT, None,
                difficulty=settings["difficulty"], category=settings["category"],
            )
        finally:
            self._pending_creates.discard(connection_id)
        if len(questions) < config.MIN_PLAYABLE_QUESTIONS:
            logger.warning("Match creation refused: only %d questions for %s",
                           len(questions), settings)
            raise InsufficientQuestions(len(questions), config.MIN_PLAYABLE_QUESTIONS)

        match = self.registry.create_match(connection_id, payload.playerName, settings, questions)
        self.questions.remember(match.id, questions)
        session = self.sessions.create_session(connection_id, match.id, payload.playerName,
                                               HOST, True)
        self.hub.join(connection_id, match.id)
        await self.hub.emit(connection_id, "match-created", {
            "matchId": match.id,
            "match": match.to_dict(),
            "sessionId": session.id,
            "reconnectToken": session.reconnect_token,
        })

    async def on_join_match(self, connection_id: str, message: dict):
        payload = JoinMatchPayload.model_validate(message)
        match = self.registry.require_match(payload.matchId)

        async with match.lock:
            self._require_unseated(connection_id, match.id)
            if match.find_player(payload.playerName) is not None:
                if match.state == FINISHED:
                    raise ValidationFailed("This match has already finished")
                await self.coordinator.rejoin_by_name(connection_id, match, payload.playerName)
                return

            if match.is_full:
                raise MatchFull()
            match = self.registry.add_player(match.id, connection_id, payload.playerName)
            if match is None:
                raise MatchFull()

            session = self.sessions.create_session(connection_id, match.id, payload.playerName,
                                                   PLAYER2, False)
            self.hub.join(connection_id, match.id)
            player = match.find_player(payload.playerName)
            await self.hub.emit(connection_id, "joined-match", {
                "matchId": match.id,
                "playerName": player["name"],
                "role": player["role"],
                "isHost": player["isHost"],
                "gameRole": player["gameRole"],
                "sessionId": session.id,
                "reconnectToken": session.reconnect_token,
                "match": match.to_dict(),
            })
            await self.broadcast(match)

    async def on_choose_role(self, connection_id: str, message: dict):
        payload = ChooseRolePayload.model_validate(message)
        match = self.registry.require_match(payload.matchId)
        async with match.lock:
            if connection_id != match.host_id:
                raise ValidationFailed("Only the host can choose roles")
            if match.state != ROLE_SELECTION:
                raise ValidationFailed("Roles cannot be chosen now")
            match = self.registry.assign_roles(match, payload.choice)
            await self.broadcast(match)

    async def on_start_match(self, connection_id: str, message: dict):
        payload = MatchPayload.model_validate(message)
        match = self.registry.require_match(payload.matchId)
        async with match.lock:
            challenger_index = random.randint(0, 1)
            # Validate before spending a question fetch.
            game_logic.start_patch(match, connection_id, challenger_index)

            new_questions: List[dict] = []
            if len(match.questions) < config.MIN_PLAYABLE_QUESTIONS:
                new_questions = await self._fetch_questions(
                    match, config.MIN_PLAYABLE_QUESTIONS - len(match.questions))

            patch = game_logic.start_patch(match, connection_id, challenger_index)
            if new_questions:
                patch["questions"] = match.questions + new_questions
            match = self.registry.update(match.id, patch)
            logger.info("Match %s started - challenger: '%s', moderator: '%s'",
                        match.id, match.challenger_name, match.moderator_name)
            await self.broadcast(match, "match-started")

    # ------------------------------------------------------------------
    # Rounds
    # ------------------------------------------------------------------

    async def on_submit_answer(self, connection_id: str, message: dict):
        payload = AnswerPayload.model_validate(message)
        match = self.registry.require_match(payload.matchId)
        async with match.lock:
            patch = game_logic.answer_patch(match, connection_id, payload.answer)
            if patch is None:
                logger.debug("Ignored answer from %s in match %s", connection_id, match.id)
                return
            match = self.registry.update(match.id, patch)
            await self.broadcast(match)

    async def on_make_decision(self, connection_id: str, message: dict):
        payload = DecisionPayload.model_validate(message)
        match = self.registry.require_match(payload.matchId)
        async with match.lock:
            patch = game_logic.decision_patch(match, connection_id, payload.decision)
            if patch is None:
                logger.debug("Ignored decision from %s in match %s", connection_id, match.id)
                return
            match = self.registry.update(match.id, patch)
            logger.info("Match %s decision '%s': %s", match.id, match.decision, match.outcome)
            await self.broadcast(match)

    async def on_next_round(self, connection_id: str, message: dict):
        payload = MatchPayload.model_validate(message)
        match = self.registry.require_match(payload.matchId)
        async with match.lock:
            new_questions: List[dict] = []
            if (match.game_role_of(connection_id) is not None
                    and match.phase == RESULT
                    and game_logic.evaluate_winner(match) is None
                    and game_logic.needs_refill(match)):
                new_questions = await self._fetch_questions(match, config.QUESTION_REFILL_BATCH)

            patch = game_logic.next_round_patch(match, connection_id, new_questions)
            if patch is None:
                return
            match = self.registry.update(match.id, patch)
            if match.state == FINISHED:
                await self._finish(match)
            else:
                await self.broadcast(match)

    # ------------------------------------------------------------------
    # Skip / report
    # ------------------------------------------------------------------

    async def on_request_skip(self, connection_id: str, message: dict):
        await self._handle_request(connection_id, message, post_answer=False, cancel=False)

    async def on_cancel_skip(self, connection_id: str, message: dict):
        await self._handle_request(connection_id, message, post_answer=False, cancel=True)

    async def on_request_report(self, connection_id: str, message: dict):
        await self._handle_request(connection_id, message, post_answer=True, cancel=False)

    async def on_cancel_report(self, connection_id: str, message: dict):
        await self._handle_request(connection_id, message, post_answer=True, cancel=True)

    async def _handle_request(self, connection_id: str, message: dict, post_answer: bool, cancel: bool):
        payload = ReportPayload.model_validate(message)
        match = self.registry.require_match(payload.matchId)
        async with match.lock:
            new_questions: List[dict] = []
            if (not cancel and game_logic.completes_request(match, connection_id, post_answer)
                    and game_logic.needs_refill(match)):
                new_questions = await self._fetch_questions(match, config.QUESTION_REFILL_BATCH)

            question = match.question
            patch, invalidated = game_logic.request_patch(
                match, connection_id, post_answer=post_answer, cancel=cancel,
                new_questions=new_questions)
            if patch is None:
                return
            match = self.registry.update(match.id, patch)

            if not invalidated:
                await self.broadcast(match)
                return

            self.blocklist.report(question.get("id"))
            logger.info("Question %s %s in match %s (reason: %s)", question.get("id"),
                        "invalidated" if post_answer else "skipped", match.id, payload.reason)
            event = "question-invalidated" if post_answer else "question-skipped"
            await self.hub.emit_to_room(match.id, event, {
                "questionId": question.get("id"),
                "reason": payload.reason,
                "match": match.to_dict(),
            })
            if match.state == FINISHED:
                await self._finish(match)
            else:
                await self.broadcast(match)

    # ------------------------------------------------------------------
    # Connection status
    # ------------------------------------------------------------------

    async def on_reconnect_attempt(self, connection_id: str, message: dict):
        try:
            payload = ReconnectPayload.model_validate(message)
        except ValidationError:
            raise SessionNotFound()
        await self.coordinator.resume(connection_id, payload.reconnectToken)

    async def on_ping(self, connection_id: str, message: dict):
        self.registry.mark_seen(connection_id)
        session = self.sessions.find_by_connection(connection_id)
        if session is not None:
            session.touch()
        await self.hub.emit(connection_id, "pong", {"timestamp": time.time()})

    async def on_focus_lost(self, connection_id: str, message: dict):
        await self._relay_focus(connection_id, message, focused=False)

    async def on_focus_regained(self, connection_id: str, message: dict):
        await self._relay_focus(connection_id, message, focused=True)

    async def _relay_focus(self, connection_id: str, message: dict, focused: bool):
        """Informational only: tell the opponent, leave the match untouched."""
        payload = MatchPayload.model_validate(message)
        match = self.registry.require_match(payload.matchId)
        player = match.player_by_connection(connection_id)
        if player is None:
            return
        logger.info("Player '%s' in match %s %s focus", player["name"], match.id,
                    "regained" if focused else "lost")
        await self.hub.emit_to_room(match.id, "player-focus",
                                    {"playerName": player["name"], "focused": focused},
                                    exclude=connection_id)


socket_manager = SocketManager()
