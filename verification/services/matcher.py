# verification/services/matcher.py
from __future__ import annotations

import asyncio
import logging
import math
from typing import List, Optional, Sequence

from .comparators import Comparator
from .models import BiometricTemplate, CandidateError, ComparisonResult, MatchDecision, ProbeSample

logger = logging.getLogger("app")


class BatchMatcher:
    """
    Прогоняет компаратор по всему набору эталонов и выбирает лучший.

    - порядок перебора = порядок на входе (порядок хранилища);
    - ошибка кандидата попадает в errors и в ранжировании не участвует;
    - победитель: matched и строго больший score, при равенстве: кто раньше;
    - concurrency > 1: группы по N сравнений параллельно, но ранжируем
      всё равно по входному порядку, а не по порядку завершения.
    """

    def __init__(self, comparator: Comparator, concurrency: int = 1):
        self.comparator = comparator
        self.concurrency = max(1, int(concurrency))

    async def find_best_match(self, probe: ProbeSample, templates: Sequence[BiometricTemplate],
                              cancel: Optional[asyncio.Event] = None,
                              prepared: bool = False) -> MatchDecision:
        templates = list(templates)
        decision = MatchDecision(total_templates=len(templates), method=self.comparator.method)
        if not templates:
            logger.info("match: no registered templates, nothing to compare")
            return decision

        if not prepared:
            # ProbeInvalid летит наружу до первого сравнения
            probe = await self.comparator.prepare_probe(probe)

        logger.info("match: 1 vs %d (%s, fan-out %d)",
                    len(templates), self.comparator.method, self.concurrency)
        results: List[Optional[ComparisonResult]] = []
        for start in range(0, len(templates), self.concurrency):
            if cancel is not None and cancel.is_set():
                decision.cancelled = True
                break
            group = templates[start:start + self.concurrency]
            group_results = await self._run_group(probe, group, cancel)
            results.extend(group_results)
            if any(r is None for r in group_results):
                decision.cancelled = True
                break

        self._select(decision, templates, results)
        logger.info(
            "match: compared=%d errors=%d matched=%s score=%s%s",
            decision.candidates_compared, len(decision.errors), decision.matched,
            decision.score, " (cancelled)" if decision.cancelled else "",
        )
        return decision

    async def _run_group(self, probe: ProbeSample, group: Sequence[BiometricTemplate],
                         cancel: Optional[asyncio.Event]) -> List[Optional[ComparisonResult]]:
        tasks = [asyncio.ensure_future(self.comparator.compare(probe, t)) for t in group]
        if cancel is None:
            return list(await asyncio.gather(*tasks))

        waiter = asyncio.ensure_future(cancel.wait())
        everything = asyncio.gather(*tasks)
        try:
            await asyncio.wait({everything, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if everything.done():
            return list(everything.result())

        # отмена: обрываем незавершённые вызовы, забираем готовые
        everything.cancel()
        for t in tasks:
            if not t.done():
                t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        return [t.result() if t.done() and not t.cancelled() else None for t in tasks]

    @staticmethod
    def _select(decision: MatchDecision, templates: Sequence[BiometricTemplate],
                results: Sequence[Optional[ComparisonResult]]) -> None:
        best_score = -math.inf
        observed = -math.inf
        for template, result in zip(templates, results):
            if result is None:
                continue
            if not result.ok:
                decision.errors.append(CandidateError(template.candidate_id, result.error))
                logger.warning("match: %s failed: %s", template.candidate_id, result.error)
                continue
            decision.candidates_compared += 1
            if result.score > observed:
                observed = result.score
                decision.best_observed = result
            if result.matched and result.score > best_score:
                best_score = result.score
                decision.template = template
                decision.score = result.score
                decision.confidence = result.confidence
                decision.distance = result.distance
                decision.method = result.method or decision.method

        decision.matched = decision.template is not None
