# verification/services/verifier.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Sequence, Set

from .audit import AuditSink
from .comparators import Comparator, RemoteFingerprintComparator
from .decision import VerificationDecision
from .errors import ProbeInvalid, StoreUnavailable
from .fallback import FallbackController
from .matcher import BatchMatcher
from .models import BiometricTemplate, Modality, ProbeSample
from .template_store import TemplateStore

logger = logging.getLogger("app")


class Verifier:
    """
    Точка входа для одного запроса верификации: хранилище -> матчер -> решение -> аудит.
    Наружу всегда уходит корректный словарь-вердикт, исключения не пробрасываются
    (кроме неожиданных ошибок программирования).
    """

    def __init__(self, store: TemplateStore, comparator: Comparator, decision: VerificationDecision,
                 concurrency: int = 1, wake_delay: Optional[float] = None,
                 audit: Optional[AuditSink] = None):
        self.store = store
        self.comparator = comparator
        self.decision = decision
        self.matcher = BatchMatcher(comparator, concurrency=concurrency)
        # wake_delay задан -> пакетный режим с fallback (только для batch-capable компараторов)
        self.wake_delay = wake_delay
        self.audit = audit
        self.pending_audits: Set[asyncio.Future] = set()

    @property
    def modality(self) -> Modality:
        return self.comparator.modality

    def _controller(self) -> Optional[FallbackController]:
        if self.wake_delay is None or not self.comparator.supports_batch:
            return None
        return FallbackController(self.comparator, self.matcher, wake_delay=self.wake_delay)

    async def _templates(self, templates: Optional[Sequence[BiometricTemplate]]):
        if templates is not None:
            return list(templates)
        return await self.store.fetch_templates(self.modality)

    async def verify(self, probe: ProbeSample, templates: Optional[Sequence[BiometricTemplate]] = None,
                     context: Optional[Dict[str, Any]] = None,
                     cancel: Optional[asyncio.Event] = None) -> Dict[str, Any]:
        try:
            candidates = await self._templates(templates)
            controller = self._controller()
            if controller is not None:
                decision = await controller.run(probe, candidates, cancel=cancel)
            else:
                decision = await self.matcher.find_best_match(probe, candidates, cancel=cancel)
        except (ProbeInvalid, StoreUnavailable) as e:
            logger.warning("verify %s: %s: %s", self.modality.value, type(e).__name__, e)
            return self.decision.failure(e)

        verdict = self.decision.render(decision)
        logger.info("verify %s: matched=%s confidence=%s compared=%d/%d",
                    self.modality.value, verdict["matched"], verdict.get("confidence"),
                    decision.candidates_compared, decision.total_templates)
        if self.audit is not None:
            self._audit_later(verdict, context)
        return verdict

    def _audit_later(self, verdict: Dict[str, Any], context: Optional[Dict[str, Any]]) -> None:
        """Аудит не задерживает ответ: запись уходит в поток, ответ отдаётся сразу."""
        # копия: view дописывает в verdict processingTime
        task = asyncio.ensure_future(asyncio.to_thread(self.audit.record, dict(verdict), context))
        self.pending_audits.add(task)
        task.add_done_callback(self.pending_audits.discard)

    async def check_duplicate(self, probe: ProbeSample,
                              templates: Optional[Sequence[BiometricTemplate]] = None) -> Dict[str, Any]:
        """Проверка при регистрации: не принадлежит ли образец уже кому-то."""
        comparator = self.comparator
        if isinstance(comparator, RemoteFingerprintComparator):
            comparator = comparator.for_duplicate_check()
        try:
            candidates = await self._templates(templates)
            decision = await BatchMatcher(comparator, self.matcher.concurrency).find_best_match(probe, candidates)
        except (ProbeInvalid, StoreUnavailable) as e:
            return {**self.decision.failure(e), "isDuplicate": False}

        if not decision.matched:
            return {
                "success": True,
                "isDuplicate": False,
                "message": "No duplicates (first registration)" if decision.no_templates
                else f"{self.modality.value.capitalize()} is unique",
                "errors": [e.as_dict() for e in decision.errors],
            }
        t = decision.template
        subject = {"id": t.subject_id, **t.subject}
        name = subject.get("displayName") or t.subject_id
        return {
            "success": True,
            "isDuplicate": True,
            "existingSubject": subject,
            "label": t.label,
            "similarity": decision.confidence,
            "message": f"Already registered to {name}",
        }

    async def compare_pair(self, probe: ProbeSample, other: Any,
                           duplicate_check: bool = False) -> Dict[str, Any]:
        """Одно сравнение двух образцов (без хранилища)."""
        comparator = self.comparator
        if duplicate_check and isinstance(comparator, RemoteFingerprintComparator):
            comparator = comparator.for_duplicate_check()
        try:
            prepared = await comparator.prepare_probe(probe)
        except ProbeInvalid as e:
            return self.decision.failure(e)
        template = BiometricTemplate(subject_id="candidate", modality=self.modality, payload=other)
        result = await comparator.compare(prepared, template)
        if not result.ok:
            return {"success": False, "matched": False, "error": "comparator_error", "message": result.error}
        return {
            "success": True,
            "matched": result.matched,
            "score": result.score,
            "confidence": round(result.confidence, 1),
            "threshold": result.threshold,
            "method": result.method,
        }
