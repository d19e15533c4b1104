# verification/services/decision.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import ProbeInvalid, StoreUnavailable, VerificationError
from .models import ComparisonResult, MatchDecision

logger = logging.getLogger("app")

DISTANCE = "distance"
CONFIDENCE = "confidence"
SCORE = "score"


@dataclass(frozen=True)
class MatchThreshold:
    """
    Порог принятия решения. distance: чем меньше, тем лучше (<= limit);
    confidence/score: чем больше, тем лучше (>= limit).
    """
    metric: str
    limit: float

    def passes(self, result: ComparisonResult) -> bool:
        if self.metric == DISTANCE:
            return result.distance is not None and result.distance <= self.limit
        value = result.confidence if self.metric == CONFIDENCE else result.score
        return value is not None and value >= self.limit


def _r1(value: Optional[float]) -> Optional[float]:
    return None if value is None else round(float(value), 1)


def _r3(value: Optional[float]) -> Optional[float]:
    return None if value is None else round(float(value), 3)


class VerificationDecision:
    """
    Превращает MatchDecision в ответ для клиента.
    Порог проверяется здесь, один раз для всех модальностей: победитель ниже
    порога всегда отдаётся как matched: false. threshold=None: доверяем флагу
    компаратора (порог определяет удалённый сервис).
    """

    def __init__(self, threshold: Optional[MatchThreshold] = None, noun: str = "biometric"):
        self.threshold = threshold
        self.noun = noun

    def accepts(self, decision: MatchDecision) -> bool:
        if not decision.matched or decision.template is None:
            return False
        if self.threshold is None:
            return True
        winner = ComparisonResult(
            matched=True, score=decision.score or 0.0,
            confidence=decision.confidence or 0.0, distance=decision.distance,
        )
        return self.threshold.passes(winner)

    def render(self, decision: MatchDecision) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "success": True,
            "matched": False,
            "candidatesCompared": decision.candidates_compared,
            "method": decision.method,
        }
        if decision.errors:
            out["errors"] = [e.as_dict() for e in decision.errors]
        if decision.cancelled:
            out["cancelled"] = True

        if decision.no_templates:
            out["message"] = f"No registered {self.noun} templates found"
            return out

        if self.accepts(decision):
            t = decision.template
            subject = {"id": t.subject_id, **t.subject}
            subject.setdefault("displayName", subject.get("id"))
            out.update({
                "matched": True,
                "subject": subject,
                "confidence": _r1(decision.confidence),
                "score": decision.score,
                "message": f"Verified: {subject['displayName']}",
            })
            if t.label:
                out["label"] = t.label
            if decision.distance is not None:
                out["distance"] = _r3(decision.distance)
            return out

        if decision.matched:
            logger.info("decision: winner %s rejected by threshold %s",
                        decision.template.candidate_id, self.threshold)
        out["message"] = self._no_match_message(decision, out)
        return out

    def _no_match_message(self, decision: MatchDecision, out: Dict[str, Any]) -> str:
        best = decision.best_observed
        if best is None:
            if decision.errors:
                return f"No {self.noun} comparison completed ({len(decision.errors)} failed)"
            return f"No matching {self.noun} found"
        out["score"] = best.score
        if best.distance is not None:
            out["bestDistance"] = _r3(best.distance)
            return f"No match found (bestDistance: {best.distance:.2f})"
        out["highestSimilarity"] = _r1(best.confidence)
        return f"No matching {self.noun} found (highestSimilarity: {best.confidence:.1f}%)"

    @staticmethod
    def failure(exc: VerificationError) -> Dict[str, Any]:
        """Система не смогла проверить: в отличие от "проверено: совпадений нет"."""
        if isinstance(exc, ProbeInvalid):
            reason = "probe_invalid"
        elif isinstance(exc, StoreUnavailable):
            reason = "store_unavailable"
        else:
            reason = "verification_error"
        return {"success": False, "matched": False, "error": reason, "message": str(exc)}
