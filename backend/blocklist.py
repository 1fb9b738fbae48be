"""Durable set of reported question ids, stored as a JSON array on disk."""
import json
import logging
import os
from typing import Set

import config

logger = logging.getLogger(__name__)


class Blocklist:
    def __init__(self, path: str = config.BLOCKLIST_PATH):
        self.path = path
        self.ids: Set[str] = set()

    def load(self):
        """Load reported ids. A missing file just means nothing was reported yet."""
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            logger.info("No blocklist file at %s, starting empty", self.path)
            return
        except (OSError, json.JSONDecodeError) as e:
            logger.error("Could not read blocklist %s: %s", self.path, e)
            return
        if not isinstance(data, list):
            logger.error("Blocklist %s is not a JSON array, ignoring it", self.path)
            return
        self.ids = {str(qid) for qid in data if qid}
        logger.info("Loaded %d reported questions", len(self.ids))

    def is_blocked(self, question_id) -> bool:
        return bool(question_id) and str(question_id) in self.ids

    def report(self, question_id) -> bool:
        """Add an id and persist the list. Returns False if nothing changed."""
        if not question_id or str(question_id) in self.ids:
            return False
        self.ids.add(str(question_id))
        try:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(sorted(self.ids), f)
            logger.info("Question %s reported and saved", question_id)
        except OSError as e:
            logger.error("Could not save blocklist %s: %s", self.path, e)
        return True


blocklist = Blocklist()
