"""Tests for question_source.py: validation, budgets, dedup and the fallback chain."""
import sys
import os

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import config
import question_source
from blocklist import Blocklist
from question_source import (
    QuestionSource, RequestBudget, fingerprint, infer_category, infer_difficulty,
    normalize_category, validate_questions,
)


def raw_question(i, **overrides):
    q = {
        "question": f"Which option is number {i} in this list?",
        "options": [f"{i}-a", f"{i}-b", f"{i}-c", f"{i}-d"],
        "correctIndex": 2,
        "category": "general",
        "difficulty": "easy",
    }
    q.update(overrides)
    return q


def make_source(tmp_path, **kwargs):
    kwargs.setdefault("use_generator", False)
    kwargs.setdefault("use_fallback_api", False)
    return QuestionSource(blocklist=Blocklist(str(tmp_path / "reported.json")), **kwargs)


# ---------------------------------------------------------------------------
# Validation and inference
# ---------------------------------------------------------------------------

class TestValidation:
    def test_valid_question_gets_id(self):
        [q] = validate_questions([raw_question(1)])
        assert q["id"]
        assert q["correctIndex"] == 2
        assert q["reported"] is False

    def test_aliases_accepted(self):
        raw = {"text": "What is the capital of Iceland?",
               "options": ["Oslo", "Reykjavik", "Helsinki", "Stockholm"],
               "answer_index": 1, "id": 42}
        [q] = validate_questions([raw])
        assert q["question"] == "What is the capital of Iceland?"
        assert q["correctIndex"] == 1
        assert q["id"] == "42"
        assert q["category"] == "geography"

    @pytest.mark.parametrize("overrides", [
        {"options": ["a", "b", "c"]},
        {"options": ["a", "b", "c", "d", "e"]},
        {"options": ["a", "A", "c", "d"]},
        {"options": ["a", "", "c", "d"]},
        {"correctIndex": 4},
        {"correctIndex": -1},
        {"question": "Short?"},
    ])
    def test_invalid_questions_dropped(self, overrides):
        assert validate_questions([raw_question(1, **overrides)]) == []

    def test_markup_stripped(self):
        [q] = validate_questions([raw_question(1, question="<b>Which planet is the largest?</b>")])
        assert q["question"] == "Which planet is the largest?"

    def test_missing_metadata_inferred(self):
        [q] = validate_questions([raw_question(1, question="In which year did the war end in Europe?",
                                               options=["1943", "1944", "1945", "1946"],
                                               category="", difficulty="")])
        assert q["category"] == "history"
        assert q["difficulty"] in config.VALID_DIFFICULTIES

    def test_infer_helpers(self):
        assert infer_category("Who painted the Mona Lisa?") in question_source.CATEGORIES
        assert infer_category("zzz qqq") == "general"
        assert infer_difficulty("Short?", ["a", "b", "c", "d"]) == "easy"
        assert normalize_category("  Any ") is None
        assert normalize_category("Science") == "science"

    def test_fingerprint_ignores_case_and_punctuation(self):
        assert fingerprint("What is 2+2?") == fingerprint("what is 2 + 2")


class TestRequestBudget:
    def test_rolling_window(self):
        now = [1000.0]
        budget = RequestBudget(2, 60, clock=lambda: now[0])
        assert budget.try_acquire()
        assert budget.try_acquire()
        assert not budget.try_acquire()
        assert budget.remaining() == 0
        now[0] += 61
        assert budget.remaining() == 2
        assert budget.try_acquire()


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class TestStaticPool:
    @pytest.mark.asyncio
    async def test_returns_requested_count(self, tmp_path):
        source = make_source(tmp_path)
        questions = await source.get_questions(5)
        assert len(questions) == 5
        assert len({q["id"] for q in questions}) == 5

    @pytest.mark.asyncio
    async def test_category_filter(self, tmp_path):
        source = make_source(tmp_path)
        questions = await source.get_questions(10, category="Science")
        assert questions
        assert all(q["category"] == "science" for q in questions)

    @pytest.mark.asyncio
    async def test_difficulty_preferred(self, tmp_path):
        source = make_source(tmp_path)
        questions = await source.get_questions(3, difficulty="hard")
        assert all(q["difficulty"] == "hard" for q in questions)

    @pytest.mark.asyncio
    async def test_no_repeats_within_a_match(self, tmp_path):
        source = make_source(tmp_path)
        first = await source.get_questions(10, "MATCH1")
        second = await source.get_questions(10, "MATCH1")
        assert not {fingerprint(q["question"]) for q in first} & \
            {fingerprint(q["question"]) for q in second}

    @pytest.mark.asyncio
    async def test_remembered_questions_are_not_served_again(self, tmp_path):
        source = make_source(tmp_path, static_pool=[raw_question(i) for i in range(6)])
        initial = await source.get_questions(4)
        source.remember("MATCH1", initial)
        more = await source.get_questions(10, "MATCH1")
        assert len(more) == 2
        source.forget_match("MATCH1")
        assert len(await source.get_questions(10, "MATCH1")) == 6

    @pytest.mark.asyncio
    async def test_blocked_questions_excluded(self, tmp_path):
        pool = [raw_question(i, id=f"p-{i}") for i in range(3)]
        source = make_source(tmp_path, static_pool=pool)
        source.blocklist.report("p-1")
        questions = await source.get_questions(10)
        assert sorted(q["id"] for q in questions) == ["p-0", "p-2"]

    @pytest.mark.asyncio
    async def test_short_result_when_nothing_left(self, tmp_path):
        source = make_source(tmp_path, static_pool=[])
        assert await source.get_questions(5) == []


class TestRemoteStages:
    @pytest.mark.asyncio
    async def test_generator_used_first_and_surplus_cached(self, tmp_path, monkeypatch):
        calls = []

        def fake_generate(count, difficulty, category):
            calls.append(count)
            return [raw_question(100 + i) for i in range(count)]

        monkeypatch.setitem(question_source.GENERATORS, "gemini", fake_generate)
        monkeypatch.setattr(config, "GENERATOR_PROVIDER", "gemini")
        source = make_source(tmp_path, use_generator=True)

        first = await source.get_questions(3, "MATCH1")
        assert len(first) == 3
        assert all(q["question"].startswith("Which option is number 10") for q in first)
        assert calls == [8]

        # Surplus from the first batch serves another match without a new call.
        source.generator_budget.max_requests = 1
        second = await source.get_questions(5, "MATCH2")
        assert len(second) == 5
        assert calls == [8]
        assert {q["question"] for q in second}.isdisjoint({q["question"] for q in first})

    @pytest.mark.asyncio
    async def test_generator_failure_falls_back_to_static(self, tmp_path, monkeypatch):
        def broken_generate(count, difficulty, category):
            raise RuntimeError("model offline")

        monkeypatch.setitem(question_source.GENERATORS, "gemini", broken_generate)
        monkeypatch.setattr(config, "GENERATOR_PROVIDER", "gemini")
        source = make_source(tmp_path, use_generator=True)
        questions = await source.get_questions(4)
        assert len(questions) == 4
        assert all(q["id"].startswith("static-") for q in questions)

    @pytest.mark.asyncio
    async def test_exhausted_generator_budget_skips_stage(self, tmp_path, monkeypatch):
        def fake_generate(count, difficulty, category):
            raise AssertionError("generator must not be called")

        monkeypatch.setitem(question_source.GENERATORS, "gemini", fake_generate)
        monkeypatch.setattr(config, "GENERATOR_PROVIDER", "gemini")
        source = make_source(tmp_path, use_generator=True)
        source.generator_budget.max_requests = 0
        assert len(await source.get_questions(3)) == 3

    @pytest.mark.asyncio
    async def test_fallback_api(self, tmp_path, monkeypatch):
        class FakeResponse:
            def raise_for_status(self):
                pass

            def json(self):
                return {
                    "response_code": 0,
                    "results": [{
                        "question": "Which element has the symbol &quot;Fe&quot;?",
                        "correct_answer": "Iron",
                        "incorrect_answers": ["Fluorine", "Francium", "Fermium"],
                        "difficulty": "easy",
                    }],
                }

        seen_params = {}

        def fake_get(url, params=None, timeout=None):
            seen_params.update(params)
            return FakeResponse()

        monkeypatch.setattr(question_source.requests, "get", fake_get)
        source = make_source(tmp_path, use_fallback_api=True, static_pool=[])
        [q] = await source.get_questions(1, category="science")

        assert q["question"] == 'Which element has the symbol "Fe"?'
        assert q["options"][q["correctIndex"]] == "Iron"
        assert q["id"].startswith("otdb-")
        assert q["category"] == "science"
        assert seen_params["category"] == question_source.FALLBACK_API_CATEGORIES["science"]

    @pytest.mark.asyncio
    async def test_fallback_api_error_code(self, tmp_path, monkeypatch):
        class FakeResponse:
            def raise_for_status(self):
                pass

            def json(self):
                return {"response_code": 1, "results": []}

        monkeypatch.setattr(question_source.requests, "get", lambda *a, **kw: FakeResponse())
        source = make_source(tmp_path, use_fallback_api=True)
        questions = await source.get_questions(2)
        assert len(questions) == 2
        assert all(q["id"].startswith("static-") for q in questions)
