"""Errors surfaced to the acting client as an ``error`` event."""


class GameError(Exception):
    """Base class for rejected client actions. ``message`` is user-facing."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(GameError):
    """Bad payload, wrong role, or wrong state/phase."""
    pass


class MatchNotFound(GameError):
    def __init__(self, match_id: str = ""):
        super().__init__("Match not found")
        self.match_id = match_id


class MatchFull(GameError):
    def __init__(self):
        super().__init__("Match is full")


class RegistryFull(GameError):
    def __init__(self):
        super().__init__("Too many active matches. Please try again later.")


class SessionNotFound(GameError):
    """Reconnect token is unknown or expired. The client must discard it."""

    def __init__(self):
        super().__init__("Session expired. Please rejoin the match.")


class InsufficientQuestions(GameError):
    def __init__(self, available: int, required: int):
        super().__init__(
            "Not enough questions available for these settings. "
            "Try a broader category or another difficulty."
        )
        self.available = available
        self.required = required
