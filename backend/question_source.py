import asyncio
import hashlib
import html
import json
import logging
import random
import re
import time
import uuid
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

import requests
from pydantic import BaseModel, ValidationError, field_validator, model_validator

import config
from blocklist import Blocklist, blocklist as default_blocklist

logger = logging.getLogger(__name__)

SYSTEM_PROMPT_TEMPLATE = """
You are an expert trivia writer. Generate {count} multiple-choice trivia questions as JSON.
Difficulty: {difficulty} - {difficulty_text}
Category: {category}
Every question has exactly 4 distinct options and exactly one correct answer.
You MUST return a JSON object ONLY, with the following structure:
{{
  "questions": [
    {{
      "question": "The question text",
      "options": ["A", "B", "C", "D"],
      "correctIndex": 0,
      "category": "{category}",
      "difficulty": "{difficulty_lower}"
    }}
  ]
}}
Do not include any other text before or after the JSON.
"""

DIFFICULTY_INSTRUCTIONS = {
    "easy": "Simple, well-known facts. Keep language clear.",
    "medium": "Moderately challenging questions for people with solid general knowledge.",
    "hard": "Challenging questions about lesser-known facts, dates and figures.",
}

CATEGORIES = ("geography", "history", "science", "culture", "sport", "general")

CATEGORY_KEYWORDS = {
    "geography": ("capital", "country", "river", "mountain", "ocean", "continent", "island",
                  "city", "lake", "desert", "border", "time zone", "largest", "smallest"),
    "history": ("year", "war", "founded", "empire", "king", "queen", "president", "century",
                "revolution", "ancient", "treaty", "first person", "dynasty"),
    "science": ("element", "chemical", "planet", "atom", "bone", "blood", "cell", "physics",
                "speed of", "molecule", "species", "gravity", "dna", "formula"),
    "culture": ("composer", "painted", "painting", "novel", "author", "film", "movie", "album",
                "song", "opera", "artist", "wrote", "band", "instrument"),
    "sport": ("football", "soccer", "olympic", "marathon", "tennis", "team", "player",
              "championship", "world cup", "touchdown", "volleyball", "medal", "athlete"),
}

# Open Trivia DB category ids
FALLBACK_API_CATEGORIES = {
    "general": 9,
    "culture": 25,
    "science": 17,
    "sport": 21,
    "geography": 22,
    "history": 23,
}

_NUMERIC_OPTION = re.compile(r'^[\d.,\s%/:-]+(\s*\w{0,4})$')


def _sanitize_text(text: str) -> str:
    """Strip HTML tags and control characters from externally sourced text."""
    text = re.sub(r'<[^>]+>', '', text)
    text = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', text)
    return text.strip()


def normalize_category(category: Optional[str]) -> Optional[str]:
    if not category or not isinstance(category, str):
        return None
    category = category.strip().lower()
    if category in ("", "any", "all", "mixed", "random"):
        return None
    return category


def infer_category(text: str) -> str:
    """Guess a category from keywords in the question text."""
    lower = text.lower()
    best, best_hits = "general", 0
    for category, keywords in CATEGORY_KEYWORDS.items():
        hits = sum(1 for kw in keywords if kw in lower)
        if hits > best_hits:
            best, best_hits = category, hits
    return best


def infer_difficulty(text: str, options: List[str]) -> str:
    """Rough difficulty from question length, numeric options and option length."""
    score = 0
    if len(text) > 90:
        score += 1
    if options and all(_NUMERIC_OPTION.match(opt.strip()) for opt in options):
        score += 1
    if options and sum(len(o) for o in options) / len(options) > 20:
        score += 1
    return ("easy", "medium", "hard")[min(score, 2)]


def fingerprint(text: str) -> str:
    """Content key for dedup: lowercase alphanumerics only."""
    return re.sub(r'[^a-z0-9]+', '', text.lower())


class QuestionModel(BaseModel):
    id: Optional[str] = None
    question: str
    options: List[str]
    correctIndex: int
    category: str = ""
    difficulty: str = ""
    reported: bool = False

    @model_validator(mode="before")
    @classmethod
    def accept_aliases(cls, data):
        if isinstance(data, dict):
            data = dict(data)
            for alias in ("correct", "answer_index", "correct_index"):
                if "correctIndex" not in data and alias in data:
                    data["correctIndex"] = data.pop(alias)
            if "question" not in data and "text" in data:
                data["question"] = data.pop("text")
            if data.get("id") is not None:
                data["id"] = str(data["id"])
        return data

    @field_validator('question')
    @classmethod
    def validate_question(cls, v: str) -> str:
        v = _sanitize_text(v)
        if len(v) < 8:
            raise ValueError('Question text is too short')
        return v

    @field_validator('options')
    @classmethod
    def validate_options(cls, v: List[str]) -> List[str]:
        v = [_sanitize_text(str(opt)) for opt in v]
        if len(v) != 4:
            raise ValueError('Question must have exactly 4 options')
        if any(not opt for opt in v):
            raise ValueError('Options must not be empty')
        if len({opt.lower() for opt in v}) != 4:
            raise ValueError('Options must be unique')
        return v

    @field_validator('correctIndex')
    @classmethod
    def validate_correct_index(cls, v: int) -> int:
        if not 0 <= v <= 3:
            raise ValueError('correctIndex must be 0-3')
        return v

    @model_validator(mode="after")
    def fill_inferred(self):
        category = normalize_category(self.category)
        if not category or len(category) < 2:
            category = infer_category(self.question)
        self.category = category
        difficulty = (self.difficulty or "").strip().lower()
        if difficulty not in config.VALID_DIFFICULTIES:
            difficulty = infer_difficulty(self.question, self.options)
        self.difficulty = difficulty
        if not self.id:
            self.id = str(uuid.uuid4())
        return self


def validate_questions(raw_questions) -> List[dict]:
    """Keep only well-formed questions; invalid ones are dropped with a warning."""
    valid = []
    for raw in raw_questions or []:
        try:
            valid.append(QuestionModel.model_validate(raw).model_dump())
        except ValidationError as e:
            logger.warning("Dropped invalid question: %s", e.errors()[0].get("msg", e))
    return valid


class RequestBudget:
    """Rolling-window request counter shared by every match."""

    def __init__(self, max_requests: int, window_seconds: float,
                 clock: Callable[[], float] = time.time):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self._timestamps: Deque[float] = deque()

    def _prune(self, now: float):
        while self._timestamps and now - self._timestamps[0] >= self.window_seconds:
            self._timestamps.popleft()

    def remaining(self) -> int:
        self._prune(self.clock())
        return max(0, self.max_requests - len(self._timestamps))

    def try_acquire(self) -> bool:
        now = self.clock()
        self._prune(now)
        if len(self._timestamps) >= self.max_requests:
            return False
        self._timestamps.append(now)
        return True


# ---------------------------------------------------------------------------
# Remote stages (blocking, run through asyncio.to_thread)
# ---------------------------------------------------------------------------

def _build_system_prompt(count: int, difficulty: Optional[str], category: Optional[str]) -> str:
    difficulty = difficulty or "medium"
    return SYSTEM_PROMPT_TEMPLATE.format(
        count=count,
        difficulty=difficulty.upper(),
        difficulty_lower=difficulty,
        difficulty_text=DIFFICULTY_INSTRUCTIONS.get(difficulty, DIFFICULTY_INSTRUCTIONS["medium"]),
        category=category or "general knowledge",
    )


def _strip_code_fence(text: str) -> str:
    if text.strip().startswith("```"):
        text = text.strip().split("\n", 1)[1].rsplit("```", 1)[0]
    return text


def _generate_gemini(count: int, difficulty: Optional[str], category: Optional[str]) -> List[dict]:
    if not config.GEMINI_API_KEY:
        logger.debug("Gemini API key not configured")
        return []
    url = f"https://generativelanguage.googleapis.com/v1beta/models/{config.GEMINI_MODEL}:generateContent"
    headers = {"x-goog-api-key": config.GEMINI_API_KEY}
    payload = {
        "contents": [{"parts": [{"text": _build_system_prompt(count, difficulty, category)}]}],
        "generationConfig": {"temperature": 0.8, "responseMimeType": "application/json"},
    }
    for attempt in range(1, config.LLM_MAX_RETRIES + 1):
        try:
            logger.info("Gemini attempt %d/%d for %d questions", attempt, config.LLM_MAX_RETRIES, count)
            response = requests.post(url, json=payload, headers=headers, timeout=config.GEMINI_TIMEOUT)
            response.raise_for_status()
            text = response.json()["candidates"][0]["content"]["parts"][0]["text"]
            data = json.loads(_strip_code_fence(text))
            return data.get("questions", []) if isinstance(data, dict) else []
        except json.JSONDecodeError as e:
            logger.warning("Attempt %d: Failed to parse Gemini response as JSON: %s", attempt, e)
        except requests.RequestException as e:
            logger.error("Attempt %d: HTTP error calling Gemini: %s", attempt, e)
        except (KeyError, IndexError) as e:
            logger.error("Attempt %d: Unexpected Gemini response structure: %s", attempt, e)
    return []


def _generate_ollama(count: int, difficulty: Optional[str], category: Optional[str]) -> List[dict]:
    payload = {
        "model": config.OLLAMA_MODEL,
        "prompt": _build_system_prompt(count, difficulty, category),
        "stream": False,
        "format": "json",
    }
    for attempt in range(1, config.LLM_MAX_RETRIES + 1):
        try:
            logger.info("Ollama attempt %d/%d for %d questions", attempt, config.LLM_MAX_RETRIES, count)
            response = requests.post(config.OLLAMA_URL, json=payload, timeout=config.OLLAMA_TIMEOUT)
            response.raise_for_status()
            data = json.loads(response.json()["response"])
            return data.get("questions", []) if isinstance(data, dict) else []
        except requests.Timeout:
            logger.warning("Attempt %d: Ollama timed out after %ds", attempt, config.OLLAMA_TIMEOUT)
        except json.JSONDecodeError as e:
            logger.warning("Attempt %d: Failed to parse Ollama response as JSON: %s", attempt, e)
        except requests.RequestException as e:
            logger.error("Attempt %d: HTTP error calling Ollama: %s", attempt, e)
        except KeyError as e:
            logger.error("Attempt %d: Unexpected Ollama response structure: %s", attempt, e)
    return []


GENERATORS = {
    "gemini": _generate_gemini,
    "ollama": _generate_ollama,
}


def _fetch_fallback_api(count: int, difficulty: Optional[str], category: Optional[str]) -> List[dict]:
    params: dict = {"amount": min(count, config.FALLBACK_API_MAX_AMOUNT), "type": "multiple"}
    if difficulty:
        params["difficulty"] = difficulty
    if category:
        if category not in FALLBACK_API_CATEGORIES:
            return []
        params["category"] = FALLBACK_API_CATEGORIES[category]
    try:
        response = requests.get(config.FALLBACK_API_URL, params=params, timeout=config.FALLBACK_API_TIMEOUT)
        response.raise_for_status()
        data = response.json()
    except (requests.RequestException, ValueError) as e:
        logger.error("Fallback trivia API failed: %s", e)
        return []
    if data.get("response_code") != 0:
        logger.warning("Fallback trivia API returned code %s", data.get("response_code"))
        return []

    questions = []
    for item in data.get("results", []):
        try:
            text = html.unescape(item["question"])
            correct = html.unescape(item["correct_answer"])
            options = [html.unescape(o) for o in item["incorrect_answers"]] + [correct]
        except (KeyError, TypeError):
            continue
        random.shuffle(options)
        questions.append({
            "id": "otdb-" + hashlib.sha1(text.encode("utf-8")).hexdigest()[:12],
            "question": text,
            "options": options,
            "correctIndex": options.index(correct),
            "category": category or infer_category(text),
            "difficulty": item.get("difficulty", ""),
        })
    return questions


STATIC_POOL = [
    # Geography
    {"id": "static-geo-1", "question": "What is the smallest country in the world?", "options": ["Monaco", "Vatican City", "San Marino", "Liechtenstein"], "correctIndex": 1, "category": "geography", "difficulty": "easy"},
    {"id": "static-geo-2", "question": "What is the capital of Iceland?", "options": ["Oslo", "Reykjavik", "Helsinki", "Stockholm"], "correctIndex": 1, "category": "geography", "difficulty": "easy"},
    {"id": "static-geo-3", "question": "Which is the longest river in Europe?", "options": ["Danube", "Rhine", "Volga", "Seine"], "correctIndex": 2, "category": "geography", "difficulty": "medium"},
    {"id": "static-geo-4", "question": "How many time zones does Russia have?", "options": ["7", "9", "11", "13"], "correctIndex": 2, "category": "geography", "difficulty": "hard"},
    {"id": "static-geo-5", "question": "Which country has the most islands?", "options": ["Indonesia", "Sweden", "Canada", "Japan"], "correctIndex": 1, "category": "geography", "difficulty": "hard"},
    # History
    {"id": "static-his-1", "question": "In which year was the United Nations founded?", "options": ["1943", "1945", "1947", "1949"], "correctIndex": 1, "category": "history", "difficulty": "medium"},
    {"id": "static-his-2", "question": "Who was the first person in space?", "options": ["Neil Armstrong", "Buzz Aldrin", "Yuri Gagarin", "Alan Shepard"], "correctIndex": 2, "category": "history", "difficulty": "easy"},
    {"id": "static-his-3", "question": "How long did the Hundred Years' War last?", "options": ["100 years", "116 years", "99 years", "124 years"], "correctIndex": 1, "category": "history", "difficulty": "hard"},
    {"id": "static-his-4", "question": "Which was the first country to grant women the right to vote?", "options": ["USA", "New Zealand", "Switzerland", "England"], "correctIndex": 1, "category": "history", "difficulty": "medium"},
    {"id": "static-his-5", "question": "In which year did the First World War end?", "options": ["1916", "1917", "1918", "1919"], "correctIndex": 2, "category": "history", "difficulty": "easy"},
    # Science
    {"id": "static-sci-1", "question": "How many bones does an adult human have?", "options": ["186", "206", "226", "246"], "correctIndex": 1, "category": "science", "difficulty": "medium"},
    {"id": "static-sci-2", "question": "What is the most common blood type?", "options": ["A+", "B+", "O+", "AB+"], "correctIndex": 2, "category": "science", "difficulty": "medium"},
    {"id": "static-sci-3", "question": "Which is the lightest chemical element?", "options": ["Helium", "Hydrogen", "Lithium", "Beryllium"], "correctIndex": 1, "category": "science", "difficulty": "easy"},
    {"id": "static-sci-4", "question": "Roughly what percentage of the Earth's surface is covered by water?", "options": ["61%", "71%", "81%", "91%"], "correctIndex": 1, "category": "science", "difficulty": "easy"},
    {"id": "static-sci-5", "question": "What is the speed of sound in air at room temperature?", "options": ["343 m/s", "443 m/s", "543 m/s", "643 m/s"], "correctIndex": 0, "category": "science", "difficulty": "hard"},
    # Culture
    {"id": "static-cul-1", "question": "Who composed the opera 'The Magic Flute'?", "options": ["Beethoven", "Bach", "Mozart", "Handel"], "correctIndex": 2, "category": "culture", "difficulty": "easy"},
    {"id": "static-cul-2", "question": "How many Harry Potter films were made?", "options": ["6", "7", "8", "9"], "correctIndex": 2, "category": "culture", "difficulty": "medium"},
    {"id": "static-cul-3", "question": "In which year was Netflix founded?", "options": ["1995", "1997", "1999", "2001"], "correctIndex": 1, "category": "culture", "difficulty": "hard"},
    {"id": "static-cul-4", "question": "Who painted 'The Starry Night'?", "options": ["Monet", "Van Gogh", "Picasso", "Dali"], "correctIndex": 1, "category": "culture", "difficulty": "easy"},
    {"id": "static-cul-5", "question": "How many strings does a classical guitar have?", "options": ["4", "5", "6", "7"], "correctIndex": 2, "category": "culture", "difficulty": "easy"},
    # Sport
    {"id": "static-spo-1", "question": "How many players does a volleyball team have on court?", "options": ["4", "5", "6", "7"], "correctIndex": 2, "category": "sport", "difficulty": "easy"},
    {"id": "static-spo-2", "question": "In which country did the ancient Olympic Games originate?", "options": ["Italy", "Greece", "France", "England"], "correctIndex": 1, "category": "sport", "difficulty": "easy"},
    {"id": "static-spo-3", "question": "How long is a marathon?", "options": ["40.195 km", "41.195 km", "42.195 km", "43.195 km"], "correctIndex": 2, "category": "sport", "difficulty": "medium"},
    {"id": "static-spo-4", "question": "Which sport is known as the 'queen of sports'?", "options": ["Football", "Tennis", "Athletics", "Swimming"], "correctIndex": 2, "category": "sport", "difficulty": "medium"},
    {"id": "static-spo-5", "question": "How many points is a touchdown worth in American football?", "options": ["5", "6", "7", "8"], "correctIndex": 1, "category": "sport", "difficulty": "medium"},
    # General
    {"id": "static-gen-1", "question": "How many teeth does an adult human normally have?", "options": ["28", "30", "32", "34"], "correctIndex": 2, "category": "general", "difficulty": "easy"},
    {"id": "static-gen-2", "question": "Which language has the most native speakers?", "options": ["English", "Mandarin", "Spanish", "Hindi"], "correctIndex": 1, "category": "general", "difficulty": "easy"},
    {"id": "static-gen-3", "question": "How many hearts does an octopus have?", "options": ["1", "2", "3", "4"], "correctIndex": 2, "category": "general", "difficulty": "medium"},
    {"id": "static-gen-4", "question": "Which animal sleeps the least?", "options": ["Giraffe", "Elephant", "Dolphin", "Horse"], "correctIndex": 0, "category": "general", "difficulty": "hard"},
    {"id": "static-gen-5", "question": "What does 'www' stand for?", "options": ["World Wide Web", "World Web Wide", "Web World Wide", "Wide World Web"], "correctIndex": 0, "category": "general", "difficulty": "easy"},
]


class QuestionSource:
    """Best-effort supplier of validated questions.

    Stages run in order (cache, generator, fallback API, static pool) until
    ``count`` questions are collected. Remote stages draw on rolling budgets
    shared by all matches, so one busy match cannot starve the others of the
    static pool. Per-match fingerprints keep a match from repeating itself.
    """

    def __init__(self, blocklist: Optional[Blocklist] = None,
                 use_generator: bool = config.GENERATOR_ENABLED,
                 use_fallback_api: bool = config.FALLBACK_API_ENABLED,
                 static_pool: Optional[List[dict]] = None):
        self.blocklist = blocklist or default_blocklist
        self.use_generator = use_generator
        self.use_fallback_api = use_fallback_api
        self.static_pool = validate_questions(STATIC_POOL if static_pool is None else static_pool)
        self.generator_budget = RequestBudget(config.GENERATOR_MAX_REQUESTS, config.GENERATOR_WINDOW_SECONDS)
        self.fallback_budget = RequestBudget(config.FALLBACK_API_MAX_REQUESTS, config.FALLBACK_API_WINDOW_SECONDS)
        self.cache: Dict[Tuple[Optional[str], Optional[str]], List[dict]] = {}
        self._seen: Dict[str, Set[str]] = {}  # match_id -> fingerprints already served

    async def get_questions(self, count: int, match_id: Optional[str] = None,
                            difficulty: Optional[str] = None,
                            category: Optional[str] = None) -> List[dict]:
        difficulty = difficulty if difficulty in config.VALID_DIFFICULTIES else None
        category = normalize_category(category)
        seen = self._seen.setdefault(match_id, set()) if match_id else set()
        picked: List[dict] = []

        stages = [
            ("cache", self._from_cache),
            ("generator", self._from_generator),
            ("fallback-api", self._from_fallback_api),
            ("static", self._from_static_pool),
        ]
        for name, stage in stages:
            missing = count - len(picked)
            if missing <= 0:
                break
            try:
                candidates = await stage(missing, difficulty, category)
            except Exception:
                logger.exception("Question stage '%s' failed", name)
                continue
            leftovers = self._collect(candidates, picked, seen, count, keep_seen=(name == "cache"))
            if name == "cache":
                self.cache[(difficulty, category)] = leftovers
            elif name == "generator" and leftovers:
                self._store_in_cache(difficulty, category, leftovers)
            logger.debug("Stage '%s' supplied questions, now %d/%d", name, len(picked), count)

        if len(picked) < count:
            logger.warning("Question source short: %d/%d (difficulty=%s, category=%s)",
                           len(picked), count, difficulty, category)
        return picked

    def remember(self, match_id: str, questions: List[dict]):
        """Record questions a match already holds so later batches skip them."""
        seen = self._seen.setdefault(match_id, set())
        seen.update(fingerprint(q["question"]) for q in questions)

    def forget_match(self, match_id: str):
        self._seen.pop(match_id, None)

    def _usable(self, question: dict) -> bool:
        return not question.get("reported") and not self.blocklist.is_blocked(question.get("id"))

    def _collect(self, candidates: List[dict], picked: List[dict], seen: Set[str], count: int,
                 keep_seen: bool = False) -> List[dict]:
        """Move usable, unseen candidates into ``picked``; return the unused rest."""
        leftovers = []
        for question in candidates:
            key = fingerprint(question["question"])
            if not self._usable(question):
                continue
            if key in seen:
                if keep_seen:
                    leftovers.append(question)
                continue
            if len(picked) >= count:
                leftovers.append(question)
                continue
            seen.add(key)
            picked.append(dict(question))
        return leftovers

    def _store_in_cache(self, difficulty: Optional[str], category: Optional[str], questions: List[dict]):
        bucket = self.cache.setdefault((difficulty, category), [])
        known = {fingerprint(q["question"]) for q in bucket}
        for question in questions:
            key = fingerprint(question["question"])
            if key not in known:
                bucket.append(question)
                known.add(key)
        total = sum(len(b) for b in self.cache.values())
        while total > config.QUESTION_CACHE_MAX and bucket:
            bucket.pop(0)
            total -= 1

    async def _from_cache(self, count: int, difficulty: Optional[str], category: Optional[str]) -> List[dict]:
        return list(self.cache.get((difficulty, category), []))

    async def _from_generator(self, count: int, difficulty: Optional[str], category: Optional[str]) -> List[dict]:
        if not self.use_generator:
            return []
        generate = GENERATORS.get(config.GENERATOR_PROVIDER)
        if generate is None:
            logger.error("Unknown question generator: %s", config.GENERATOR_PROVIDER)
            return []
        if not self.generator_budget.try_acquire():
            logger.info("Generator budget exhausted, skipping")
            return []
        # Ask for a few extra so the surplus can seed the cache.
        raw = await asyncio.to_thread(generate, count + 5, difficulty, category)
        return validate_questions(raw)

    async def _from_fallback_api(self, count: int, difficulty: Optional[str], category: Optional[str]) -> List[dict]:
        if not self.use_fallback_api:
            return []
        if not self.fallback_budget.try_acquire():
            logger.info("Fallback API budget exhausted, skipping")
            return []
        raw = await asyncio.to_thread(_fetch_fallback_api, count, difficulty, category)
        return validate_questions(raw)

    async def _from_static_pool(self, count: int, difficulty: Optional[str], category: Optional[str]) -> List[dict]:
        pool = [q for q in self.static_pool if category is None or q["category"] == category]
        random.shuffle(pool)
        if difficulty:
            pool.sort(key=lambda q: q["difficulty"] != difficulty)
        return pool


question_source = QuestionSource()
