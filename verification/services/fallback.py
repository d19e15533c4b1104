# verification/services/fallback.py
from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from .comparators import RemoteFingerprintComparator
from .errors import ComparatorError
from .matcher import BatchMatcher
from .models import BiometricTemplate, MatchDecision, ProbeSample

logger = logging.getLogger("app")

BATCH_METHOD = "NIST_NBIS_BATCH"
SEQUENTIAL_METHOD = "NBIS_SEQUENTIAL_FALLBACK"


class FallbackState(str, enum.Enum):
    BATCH_MODE = "batch"
    WAKING_REMOTE = "waking"
    SEQUENTIAL_MODE = "sequential"
    DONE = "done"


class FallbackController:
    """
    Пакетный запрос -> (ошибка) -> будим сервис -> по одному кандидату.

    Удалённые серверы сравнения живут на засыпающем хостинге: первый запрос после
    простоя падает по тайм-ауту. Поэтому при ошибке пакетного вызова шлём health,
    ждём wake_delay (результат health не важен) и идём последовательным путём.
    """

    def __init__(self, comparator: RemoteFingerprintComparator, matcher: BatchMatcher,
                 wake_delay: float = 4.0):
        self.comparator = comparator
        self.matcher = matcher
        self.wake_delay = float(wake_delay)
        self.state = FallbackState.BATCH_MODE
        self.transitions: List[FallbackState] = [self.state]

    def _enter(self, state: FallbackState) -> None:
        logger.info("fallback: %s -> %s", self.state.value, state.value)
        self.state = state
        self.transitions.append(state)

    async def run(self, probe: ProbeSample, templates: Sequence[BiometricTemplate],
                  cancel: Optional[asyncio.Event] = None) -> MatchDecision:
        templates = list(templates)
        if not templates:
            self._enter(FallbackState.DONE)
            return MatchDecision(total_templates=0, method=BATCH_METHOD)

        probe = await self.comparator.prepare_probe(probe)

        decision = self._exact_duplicate(probe, templates)
        if decision is not None:
            self._enter(FallbackState.DONE)
            return decision

        try:
            raw = await self._cancellable(self.comparator.batch_compare(probe, templates), cancel)
            if raw is None:
                logger.info("fallback: batch call cancelled")
                decision = MatchDecision(total_templates=len(templates), method=BATCH_METHOD, cancelled=True)
            else:
                decision = self._from_batch(raw, templates)
        except (ComparatorError, aiohttp.ClientError, asyncio.TimeoutError, ValueError, TypeError) as e:
            logger.warning("fallback: batch call failed (%s), switching to sequential",
                           str(e) or e.__class__.__name__)
            decision = await self._sequential(probe, templates, cancel)

        self._enter(FallbackState.DONE)
        return decision

    def _exact_duplicate(self, probe: ProbeSample,
                         templates: List[BiometricTemplate]) -> Optional[MatchDecision]:
        """Точный дубликат решается локально, до пакетного запроса."""
        if probe.key is None:
            return None
        for i, t in enumerate(templates):
            try:
                key = self.comparator.canonical(t.payload)
            except (ValueError, TypeError):
                continue
            if key != probe.key:
                continue
            result = self.comparator.exact_result()
            logger.info("fallback: exact duplicate of %s, batch call skipped", t.candidate_id)
            return MatchDecision(
                matched=True, template=t, score=result.score, confidence=result.confidence,
                candidates_compared=i + 1, total_templates=len(templates),
                best_observed=result, method=result.method,
            )
        return None

    @staticmethod
    async def _cancellable(coro, cancel: Optional[asyncio.Event]):
        """Ждёт вызов, пока не выставлен cancel. Отменённый вызов даёт None."""
        if cancel is None:
            return await coro
        call = asyncio.ensure_future(coro)
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({call, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if call.done():
            return call.result()
        call.cancel()
        await asyncio.gather(call, return_exceptions=True)
        return None

    async def _sequential(self, probe: ProbeSample, templates: List[BiometricTemplate],
                          cancel: Optional[asyncio.Event]) -> MatchDecision:
        self._enter(FallbackState.WAKING_REMOTE)
        health = await self.comparator.health()
        logger.info("fallback: wake probe ready=%s, waiting %.1fs", health.get("ready"), self.wake_delay)
        if self.wake_delay > 0:
            await asyncio.sleep(self.wake_delay)

        self._enter(FallbackState.SEQUENTIAL_MODE)
        decision = await self.matcher.find_best_match(probe, templates, cancel=cancel, prepared=True)
        if decision.method != "exact_match":
            decision.method = SEQUENTIAL_METHOD
        return decision

    def _from_batch(self, raw: Dict[str, Any], templates: List[BiometricTemplate]) -> MatchDecision:
        """Ответ batch-compare -> MatchDecision. Неизвестный id победителя = ответ битый."""
        if not isinstance(raw, dict):
            raise ComparatorError("unexpected batch response shape")
        decision = MatchDecision(
            total_templates=len(templates),
            candidates_compared=int(raw.get("total_compared") or len(templates)),
            method=BATCH_METHOD,
        )
        best = raw.get("best_match")
        if not best:
            return decision
        if not isinstance(best, dict):
            raise ComparatorError(f"batch best_match must be an object, got {type(best).__name__}")

        by_id = {t.candidate_id: t for t in templates}
        template = by_id.get(str(best.get("id")))
        if template is None:
            raise ComparatorError(f"batch response names unknown candidate {best.get('id')!r}")
        decision.template = template
        decision.matched = True
        decision.score = float(best.get("score") or 0.0)
        decision.confidence = float(best.get("confidence") or 0.0)
        return decision
