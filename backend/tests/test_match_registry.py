"""Tests for match_registry.py: match lifecycle and the single write path."""
import sys
import os
import time

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import config
from errors import MatchNotFound, RegistryFull, ValidationFailed
from match_registry import MatchRegistry
from models import LOBBY, ROLE_SELECTION, SETUP


@pytest.fixture(autouse=True)
def manual_roles(monkeypatch):
    monkeypatch.setattr(config, "AUTO_ASSIGN_ROLES", False)


def two_player_match():
    registry = MatchRegistry()
    match = registry.create_match("c-alice", "Alice", {"difficulty": "easy"}, [])
    registry.add_player(match.id, "c-bob", "Bob")
    return registry, match


class TestCreate:
    def test_new_match_defaults(self):
        registry = MatchRegistry()
        match = registry.create_match("c-alice", "Alice")
        assert len(match.id) == config.MATCH_CODE_LENGTH
        assert match.id.isalnum() and match.id == match.id.upper()
        assert match.state == LOBBY
        assert match.host_id == "c-alice"
        assert config.INITIAL_COINS_MIN <= match.challenger_coins <= config.INITIAL_COINS_MAX
        assert match.challenger_coins == match.initial_coins
        assert match.version == 0
        assert registry.match_for_connection("c-alice") is match

    def test_codes_are_unique(self):
        registry = MatchRegistry()
        ids = {registry.create_match(f"c-{i}", f"P{i}").id for i in range(50)}
        assert len(ids) == 50

    def test_registry_full(self, monkeypatch):
        monkeypatch.setattr(config, "MAX_MATCHES", 1)
        registry = MatchRegistry()
        registry.create_match("c-1", "One")
        with pytest.raises(RegistryFull):
            registry.create_match("c-2", "Two")

    def test_lookup_is_case_insensitive(self):
        registry = MatchRegistry()
        match = registry.create_match("c-alice", "Alice")
        assert registry.get_match(match.id.lower()) is match
        assert registry.get_match(f"  {match.id} ") is match
        assert registry.get_match("") is None
        assert registry.get_match(None) is None

    def test_require_match_raises(self):
        with pytest.raises(MatchNotFound):
            MatchRegistry().require_match("NOPE00")


class TestPlayers:
    def test_second_player_triggers_role_selection(self):
        registry, match = two_player_match()
        assert match.state == ROLE_SELECTION
        assert [p["name"] for p in match.players] == ["Alice", "Bob"]
        assert match.players[1]["isHost"] is False
        assert registry.match_for_connection("c-bob") is match

    def test_third_player_returns_none_without_mutation(self):
        registry, match = two_player_match()
        version = match.version
        assert registry.add_player(match.id, "c-carol", "Carol") is None
        assert len(match.players) == 2
        assert match.version == version
        assert registry.match_for_connection("c-carol") is None

    def test_add_to_missing_match(self):
        assert MatchRegistry().add_player("XXXXXX", "c-bob", "Bob") is None

    def test_auto_assign_roles(self, monkeypatch):
        monkeypatch.setattr(config, "AUTO_ASSIGN_ROLES", True)
        registry, match = two_player_match()
        assert match.state == SETUP
        assert {match.challenger_name, match.moderator_name} == {"Alice", "Bob"}

    @pytest.mark.parametrize("choice,challenger", [("challenger", "Alice"), ("moderator", "Bob")])
    def test_assign_roles(self, choice, challenger):
        registry, match = two_player_match()
        registry.assign_roles(match, choice)
        assert match.state == SETUP
        assert match.challenger_name == challenger
        roles = {p["name"]: p["gameRole"] for p in match.players}
        assert roles[challenger] == "challenger"
        assert sorted(roles.values()) == ["challenger", "moderator"]

    def test_assign_random_roles(self):
        registry, match = two_player_match()
        registry.assign_roles(match, "random")
        assert {match.challenger_id, match.moderator_id} == {"c-alice", "c-bob"}

    def test_assign_roles_rejects_bad_choice(self):
        registry, match = two_player_match()
        with pytest.raises(ValidationFailed):
            registry.assign_roles(match, "referee")


class TestUpdate:
    def test_update_bumps_version_and_activity(self):
        registry, match = two_player_match()
        version, before = match.version, match.last_activity
        time.sleep(0.01)
        registry.update(match.id, {"challenger_score": 3})
        assert match.challenger_score == 3
        assert match.version == version + 1
        assert match.last_activity > before

    def test_empty_patch_still_bumps_version(self):
        registry, match = two_player_match()
        version = match.version
        registry.update(match.id, {})
        assert match.version == version + 1

    def test_unknown_field_rejected(self):
        registry, match = two_player_match()
        with pytest.raises(ValueError):
            registry.update(match.id, {"lock": None})

    def test_update_missing_match(self):
        with pytest.raises(MatchNotFound):
            MatchRegistry().update("XXXXXX", {"state": LOBBY})

    def test_mark_seen_keeps_version(self):
        registry, match = two_player_match()
        match.find_player("Bob")["lastSeen"] = 0
        version = match.version
        assert registry.mark_seen("c-bob") is match
        assert match.find_player("Bob")["lastSeen"] > 0
        assert match.version == version
        assert registry.mark_seen("c-nobody") is None


class TestDeleteAndSweep:
    def test_delete_clears_connection_index(self):
        registry, match = two_player_match()
        registry.delete_match(match.id)
        assert registry.get_match(match.id) is None
        assert registry.connection_index == {}
        assert registry.delete_match(match.id) is None

    def test_sweep_only_removes_abandoned_idle_matches(self):
        registry, match = two_player_match()
        other = registry.create_match("c-carol", "Carol")
        for p in match.players:
            p["connected"] = False
        later = time.time() + config.MATCH_IDLE_TIMEOUT_SECONDS + 1

        assert registry.sweep_idle(later) == [match.id]
        assert registry.get_match(match.id) is None
        assert registry.get_match(other.id) is other

    def test_recent_abandoned_match_is_kept(self):
        registry, match = two_player_match()
        for p in match.players:
            p["connected"] = False
        assert registry.sweep_idle(time.time()) == []
