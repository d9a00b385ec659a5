from __future__ import annotations

import logging
import random
from typing import Any, List, Optional, Sequence

from pydantic import ValidationError as ModelValidationError

from .errors import NotFoundError
from .models import Question

logger = logging.getLogger(__name__)


class QuestionCatalog:
    """Read side of the question bank, plus the upsert used for seeding.

    Documents that do not satisfy the question invariants (four options,
    exactly one correct) are skipped rather than handed to a game.
    """

    def __init__(self, database: Any, rng: Optional[random.Random] = None):
        self.collection = database.questions
        self._rng = rng or random.Random()

    async def upsert_questions(self, questions: Sequence[Question]) -> int:
        for q in questions:
            await self.collection.update_one({"id": q.id}, {"$set": q.model_dump()}, upsert=True)
        return len(questions)

    async def get_questions(self, question_ids: Sequence[str]) -> List[Question]:
        """Return the questions in the order asked for."""

        found = {q.id: q for q in await self._load({"id": {"$in": list(question_ids)}})}
        missing = [qid for qid in question_ids if qid not in found]
        if missing:
            raise NotFoundError(f"Unknown question id(s): {', '.join(missing)}")
        return [found[qid] for qid in question_ids]

    async def fetch_questions(self, category: str, count: int, difficulty: str | None = None) -> List[Question]:
        query: dict[str, Any] = {}
        if category != "mixed":
            query["category"] = category
        if difficulty:
            query["difficulty"] = difficulty
        pool = await self._load(query)
        if len(pool) <= count:
            self._rng.shuffle(pool)
            return pool
        return self._rng.sample(pool, count)

    async def _load(self, query: dict[str, Any]) -> List[Question]:
        questions: List[Question] = []
        async for doc in self.collection.find(query):
            doc.pop("_id", None)
            try:
                questions.append(Question.model_validate(doc))
            except ModelValidationError as exc:
                logger.warning("question_skipped id=%s error_count=%d", doc.get("id"), exc.error_count())
        return questions
