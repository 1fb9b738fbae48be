"""Payload models for client events."""
import re
from typing import Optional, Union

from pydantic import BaseModel, field_validator

import config

MAX_CATEGORY_LENGTH = 40
MAX_REASON_LENGTH = 200


def _strip_markup(v: str) -> str:
    # Strip HTML tags and control characters
    v = re.sub(r'<[^>]+>', '', v)
    v = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', v)
    return v.strip()


class MatchSettings(BaseModel):
    difficulty: Optional[str] = None
    category: Optional[str] = None

    @field_validator('difficulty')
    @classmethod
    def validate_difficulty(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.lower().strip()
        if v in ("", "any", "mixed"):
            return None
        if v not in config.VALID_DIFFICULTIES:
            raise ValueError(f'Difficulty must be one of: {", ".join(config.VALID_DIFFICULTIES)}')
        return v

    @field_validator('category')
    @classmethod
    def validate_category(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = _strip_markup(v).lower()
        if len(v) > MAX_CATEGORY_LENGTH:
            raise ValueError(f'Category must be at most {MAX_CATEGORY_LENGTH} characters')
        return v or None


class PlayerNameMixin(BaseModel):
    playerName: str

    @field_validator('playerName')
    @classmethod
    def validate_player_name(cls, v: str) -> str:
        v = _strip_markup(v)
        if not v or len(v) > config.MAX_NAME_LENGTH:
            raise ValueError(f'Name must be 1-{config.MAX_NAME_LENGTH} characters')
        return v


class CreateMatchPayload(PlayerNameMixin):
    settings: MatchSettings = MatchSettings()


class MatchPayload(BaseModel):
    matchId: str

    @field_validator('matchId')
    @classmethod
    def validate_match_id(cls, v: str) -> str:
        v = v.strip().upper()
        if not v or len(v) > config.MATCH_CODE_LENGTH or not v.isalnum():
            raise ValueError('Invalid match code')
        return v


class JoinMatchPayload(MatchPayload, PlayerNameMixin):
    pass


class ChooseRolePayload(MatchPayload):
    choice: str

    @field_validator('choice')
    @classmethod
    def validate_choice(cls, v: str) -> str:
        return v.strip().lower()


class AnswerPayload(MatchPayload):
    answer: Union[int, str]


class DecisionPayload(MatchPayload):
    decision: str

    @field_validator('decision')
    @classmethod
    def validate_decision(cls, v: str) -> str:
        return v.strip().lower()


class ReportPayload(MatchPayload):
    reason: Optional[str] = None

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return _strip_markup(v)[:MAX_REASON_LENGTH] or None


class ReconnectPayload(BaseModel):
    reconnectToken: str

    @field_validator('reconnectToken')
    @classmethod
    def validate_token(cls, v: str) -> str:
        v = v.strip()
        if not v or len(v) > 128:
            raise ValueError('Invalid reconnect token')
        return v
