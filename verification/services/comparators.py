# verification/services/comparators.py
"""
Попарное сравнение пробы с одним эталоном.

Один интерфейс Comparator, а модальность и транспорт (локально / удалённый сервис)
задаются при создании. Ошибка одного сравнения не бросается наружу, а возвращается
в ComparisonResult.error: пакет не должен падать из-за одного кандидата.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Dict, Optional, Sequence

import aiohttp
import numpy as np

from .descriptor_extractor import DescriptorExtractor
from .errors import ComparatorError, ProbeInvalid, RemoteServiceError
from .image_io import clean_base64, decode_base64, decode_image, image_quality_metrics
from .models import BiometricTemplate, ComparisonResult, Modality, ProbeKind, ProbeSample

logger = logging.getLogger("app")

EXACT_MATCH = "exact_match"


class Comparator:
    modality: Modality
    method: str = ""
    exact_score: float = 100.0
    supports_batch: bool = False

    def ensure_ready(self) -> None:
        """Идемпотентная подготовка ресурса. По умолчанию готовить нечего."""

    def is_healthy(self) -> bool:
        return True

    async def prepare_probe(self, probe: ProbeSample) -> ProbeSample:
        raise NotImplementedError

    def canonical(self, payload: Any) -> bytes:
        """Каноническое представление payload для проверки на точный дубликат."""
        raise NotImplementedError

    async def _compare(self, probe: ProbeSample, template: BiometricTemplate) -> ComparisonResult:
        raise NotImplementedError

    def exact_result(self) -> ComparisonResult:
        return ComparisonResult(matched=True, score=self.exact_score, confidence=100.0, method=EXACT_MATCH)

    async def compare(self, probe: ProbeSample, template: BiometricTemplate) -> ComparisonResult:
        try:
            key = self.canonical(template.payload)
        except (ValueError, TypeError) as e:
            return ComparisonResult.failed(f"malformed template: {e}", self.method)

        if probe.key is not None and probe.key == key:
            return self.exact_result()

        try:
            return await self._compare(probe, template)
        except asyncio.TimeoutError:
            return ComparisonResult.failed("timeout", self.method)
        except RemoteServiceError as e:
            reason = f"remote error {e.status}: {e}" if e.status else f"remote error: {e}"
            return ComparisonResult.failed(reason, self.method)
        except ComparatorError as e:
            return ComparisonResult.failed(str(e), self.method)
        except aiohttp.ClientError as e:
            return ComparisonResult.failed(f"transport error: {e}", self.method)
        except (ValueError, TypeError) as e:
            return ComparisonResult.failed(f"malformed template: {e}", self.method)


# ============================ ЛИЦО: ЛОКАЛЬНО ============================

def euclidean_distance(a: np.ndarray, b: np.ndarray) -> float:
    return float(np.linalg.norm(a - b))


def distance_to_confidence(distance: float) -> float:
    return max(0.0, (1.0 - distance) * 100.0)


class DescriptorComparator(Comparator):
    """Лицо: евклидово расстояние между дескрипторами фиксированной длины."""

    modality = Modality.FACE
    method = "descriptor_distance"
    exact_score = 1.0

    def __init__(self, extractor: Optional[DescriptorExtractor] = None,
                 threshold: float = 0.5, dim: int = 128):
        self.extractor = extractor
        self.threshold = float(threshold)
        self.dim = int(dim)

    def ensure_ready(self) -> None:
        if self.extractor is not None:
            self.extractor.ensure_ready()

    def is_healthy(self) -> bool:
        return self.extractor is None or self.extractor.is_healthy()

    def vector(self, payload: Any) -> np.ndarray:
        vec = np.asarray(payload, dtype=np.float32)
        if vec.ndim != 1 or vec.shape[0] != self.dim:
            raise ValueError(f"descriptor must have {self.dim} values, got shape {vec.shape}")
        if not np.all(np.isfinite(vec)):
            raise ValueError("descriptor contains non-finite values")
        return vec

    def canonical(self, payload: Any) -> bytes:
        return self.vector(payload).tobytes()

    def exact_result(self) -> ComparisonResult:
        return replace(super().exact_result(), distance=0.0, threshold=self.threshold)

    async def prepare_probe(self, probe: ProbeSample) -> ProbeSample:
        payload = probe.payload
        if probe.kind == ProbeKind.IMAGE:
            if self.extractor is None:
                raise ProbeInvalid("image probes need a descriptor extractor")
            img = decode_image(payload)
            extraction = await asyncio.to_thread(self.extractor.extract, img)
            logger.info("probe face detected (confidence %d%%)", extraction.confidence)
            payload = extraction.descriptor
        try:
            key = self.canonical(payload)
        except (ValueError, TypeError) as e:
            raise ProbeInvalid(f"invalid descriptor: {e}") from e
        return replace(probe, payload=payload, kind=ProbeKind.DESCRIPTOR, key=key)

    async def _compare(self, probe: ProbeSample, template: BiometricTemplate) -> ComparisonResult:
        d = euclidean_distance(self.vector(probe.payload), self.vector(template.payload))
        return ComparisonResult(
            matched=d <= self.threshold,
            score=1.0 - d,
            confidence=distance_to_confidence(d),
            distance=d,
            threshold=self.threshold,
            method=self.method,
        )


# ============================ УДАЛЁННЫЕ СЕРВИСЫ ============================

class RemoteComparator(Comparator):
    """Общий HTTP-транспорт: новая aiohttp-сессия на вызов, свой тайм-аут на вызов."""

    async def _request(self, method: str, url: str, timeout: float,
                       json: Optional[Dict[str, Any]] = None,
                       data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        client_timeout = aiohttp.ClientTimeout(total=timeout)
        async with aiohttp.ClientSession(timeout=client_timeout) as session:
            async with session.request(method, url, json=json, data=data) as resp:
                text = await resp.text()
                if resp.status < 200 or resp.status >= 300:
                    raise RemoteServiceError(text[:200] or resp.reason or "error", status=resp.status)
                try:
                    body = await resp.json(content_type=None)
                except ValueError as e:
                    raise RemoteServiceError(f"invalid JSON response: {e}", status=resp.status) from e
                if not isinstance(body, dict):
                    raise RemoteServiceError("unexpected response shape", status=resp.status)
                return body

    @staticmethod
    def is_url(payload: Any) -> bool:
        return isinstance(payload, str) and payload.startswith(("http://", "https://"))

    def wire_image(self, payload: Any) -> str:
        """Как эталон уходит в сервис: ссылка как есть, base64 нормализованным."""
        return payload if self.is_url(payload) else clean_base64(payload)

    def canonical(self, payload: Any) -> bytes:
        if self.is_url(payload):
            return payload.encode("utf-8")
        return decode_base64(payload)

    async def prepare_probe(self, probe: ProbeSample) -> ProbeSample:
        if probe.kind != ProbeKind.IMAGE:
            raise ProbeInvalid(f"{self.modality.value} probe must be an image")
        img = decode_image(probe.payload)
        return replace(probe, payload=clean_base64(probe.payload), key=self.canonical(probe.payload),
                       quality=image_quality_metrics(img))


class CloudFaceComparator(RemoteComparator):
    """Лицо через облачный compare API (Face++). score == confidence сервиса."""

    modality = Modality.FACE
    method = "FacePlusPlus"

    def __init__(self, api_url: str, api_key: str, api_secret: str,
                 threshold: float = 70.0, timeout: float = 30.0):
        self.api_url = api_url
        self.api_key = api_key
        self.api_secret = api_secret
        self.threshold = float(threshold)
        self.timeout = float(timeout)

    async def _compare(self, probe: ProbeSample, template: BiometricTemplate) -> ComparisonResult:
        form: Dict[str, Any] = {
            "api_key": self.api_key,
            "api_secret": self.api_secret,
            "image_base64_2": probe.payload,
        }
        stored = template.payload
        if self.is_url(stored):
            form["image_url1"] = stored
        else:
            form["image_base64_1"] = clean_base64(stored)

        result = await self._request("POST", self.api_url, self.timeout, data=form)
        if result.get("error_message"):
            raise RemoteServiceError(result["error_message"])
        if "confidence" not in result:
            raise ComparatorError("no face found in stored image")
        confidence = float(result["confidence"])
        return ComparisonResult(
            matched=confidence >= self.threshold,
            score=confidence,
            confidence=confidence,
            threshold=self.threshold,
            method=self.method,
        )


class RemoteFingerprintComparator(RemoteComparator):
    """
    Отпечатки: сервер сравнения минуций (NBIS).
    Порог и флаг matched определяет сам сервис: локально не пересчитываем.
    """

    modality = Modality.FINGERPRINT
    method = "NIST_NBIS"
    exact_score = 999.0
    supports_batch = True

    def __init__(self, base_url: str, compare_timeout: float = 30.0,
                 batch_timeout: float = 120.0, health_timeout: float = 90.0,
                 min_contrast: float = 1.0, duplicate_check: bool = False):
        self.base_url = base_url.rstrip("/")
        self.compare_timeout = float(compare_timeout)
        self.batch_timeout = float(batch_timeout)
        self.health_timeout = float(health_timeout)
        self.min_contrast = float(min_contrast)
        self.duplicate_check = duplicate_check

    def for_duplicate_check(self) -> "RemoteFingerprintComparator":
        return RemoteFingerprintComparator(
            self.base_url, self.compare_timeout, self.batch_timeout,
            self.health_timeout, self.min_contrast, duplicate_check=True,
        )

    async def prepare_probe(self, probe: ProbeSample) -> ProbeSample:
        prepared = await super().prepare_probe(probe)
        # однотонный кадр: палец не приложен
        if prepared.quality and prepared.quality["std"] < self.min_contrast:
            raise ProbeInvalid("Fingerprint image is blank")
        return prepared

    async def _compare(self, probe: ProbeSample, template: BiometricTemplate) -> ComparisonResult:
        result = await self._request(
            "POST", f"{self.base_url}/compare", self.compare_timeout,
            json={
                "image1": probe.payload,
                "image2": self.wire_image(template.payload),
                "is_duplicate_check": self.duplicate_check,
            },
        )
        if result.get("success") is False:
            raise ComparatorError(result.get("error") or "comparison failed")
        score = float(result.get("score") or 0.0)
        return ComparisonResult(
            matched=bool(result.get("matched")),
            score=score,
            confidence=float(result.get("confidence") or 0.0),
            threshold=result.get("threshold"),
            method=result.get("method") or self.method,
        )

    async def batch_compare(self, probe: ProbeSample,
                            templates: Sequence[BiometricTemplate]) -> Dict[str, Any]:
        """Один запрос на весь набор. Ошибки транспорта/5xx пробрасываются: их ловит fallback."""
        database = [
            {"id": t.candidate_id, "studentId": t.subject_id, "fingerName": t.label,
             "image": self.wire_image(t.payload)}
            for t in templates
        ]
        return await self._request(
            "POST", f"{self.base_url}/batch-compare", self.batch_timeout,
            json={"query_image": probe.payload, "database": database},
        )

    async def health(self) -> Dict[str, Any]:
        try:
            data = await self._request("GET", f"{self.base_url}/health", self.health_timeout)
        except (aiohttp.ClientError, asyncio.TimeoutError, RemoteServiceError) as e:
            return {"ready": False, "error": str(e) or e.__class__.__name__}
        return {"ready": True, **(data or {})}
