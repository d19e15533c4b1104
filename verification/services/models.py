# verification/services/models.py
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


class Modality(str, enum.Enum):
    FACE = "face"
    FINGERPRINT = "fingerprint"


class ProbeKind(str, enum.Enum):
    DESCRIPTOR = "descriptor"
    IMAGE = "image"


@dataclass(frozen=True)
class BiometricTemplate:
    """
    Один эталон субъекта для одной модальности.
    payload: список чисел (лицо) или base64-изображение (отпечаток).
    subject: только публичные поля: payload наружу не отдаём.
    """
    subject_id: str
    modality: Modality
    payload: Any
    label: str = ""
    captured_at: Optional[datetime] = None
    template_id: Optional[str] = None
    subject: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def candidate_id(self) -> str:
        if self.template_id:
            return self.template_id
        return f"{self.subject_id}:{self.label}" if self.label else self.subject_id


@dataclass
class ProbeSample:
    modality: Modality
    payload: Any
    kind: ProbeKind = ProbeKind.IMAGE
    # заполняются в Comparator.prepare_probe
    key: Optional[bytes] = None
    quality: Optional[Dict[str, Any]] = None


@dataclass
class ComparisonResult:
    matched: bool = False
    score: float = 0.0
    confidence: float = 0.0
    distance: Optional[float] = None
    threshold: Optional[float] = None
    method: str = ""
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failed(cls, reason: str, method: str = "") -> "ComparisonResult":
        return cls(matched=False, error=reason, method=method)


@dataclass
class CandidateError:
    candidate_id: str
    reason: str

    def as_dict(self) -> Dict[str, str]:
        return {"candidateId": self.candidate_id, "reason": self.reason}


@dataclass
class MatchDecision:
    matched: bool = False
    template: Optional[BiometricTemplate] = None
    score: Optional[float] = None
    confidence: Optional[float] = None
    distance: Optional[float] = None
    candidates_compared: int = 0
    total_templates: int = 0
    errors: List[CandidateError] = field(default_factory=list)
    best_observed: Optional[ComparisonResult] = None
    method: str = ""
    cancelled: bool = False

    @property
    def no_templates(self) -> bool:
        return self.total_templates == 0
