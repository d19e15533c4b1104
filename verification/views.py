# verification/views.py
from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict

import onnxruntime as ort
from django.apps import apps
from django.http import HttpRequest, JsonResponse
from django.views import View

from campus_biometrics.decorators import log_call
from .forms import (
    FaceCloudVerifyForm,
    FaceExtractForm,
    FaceVerifyForm,
    FingerprintBatchForm,
    FingerprintCompareForm,
    FingerprintDuplicateForm,
)
from .services.errors import ProbeInvalid, StoreUnavailable
from .services.image_io import decode_image
from .services.models import Modality, ProbeKind, ProbeSample
from .services.registry import ServiceBundle

logger = logging.getLogger("app")

# error -> HTTP статус; всё остальное (совпало / не совпало) -> 200
ERROR_STATUS = {
    "probe_invalid": 422,
    "store_unavailable": 503,
    "comparator_error": 502,
}

def _services() -> ServiceBundle:
    return apps.get_app_config("verification").services

# ============================ ВСПОМОГАТЕЛЬНОЕ ============================

class BadRequest(Exception):
    pass

def _json_body(request: HttpRequest) -> Dict[str, Any]:
    try:
        payload = json.loads(request.body.decode("utf-8") or "{}")
    except (UnicodeDecodeError, ValueError):
        raise BadRequest("invalid json")
    if not isinstance(payload, dict):
        raise BadRequest("request body must be a JSON object")
    return payload

def _bad_request(message: Any) -> JsonResponse:
    return JsonResponse({"success": False, "message": message}, status=400)

def _form_errors(form) -> str:
    errors = form.errors.get_json_data()
    parts = []
    for field, items in errors.items():
        for item in items:
            parts.append(item["message"] if field == "__all__" else f"{field}: {item['message']}")
    return "; ".join(parts)

def _verdict_response(verdict: Dict[str, Any], started: float) -> JsonResponse:
    verdict["processingTime"] = round((time.perf_counter() - started) * 1000.0, 1)
    status = 200 if verdict.get("success") else ERROR_STATUS.get(verdict.get("error"), 500)
    return JsonResponse(verdict, status=status)

class JsonView(View):
    """Базовый async JSON view: тело запроса -> форма, BadRequest -> 400."""

    form_class = None

    async def bound_form(self, request: HttpRequest):
        form = self.form_class(data=_json_body(request))
        if not form.is_valid():
            logger.error("Invalid %s request: %s", type(self).__name__, form.errors.get_json_data())
            raise BadRequest(_form_errors(form))
        return form.cleaned_data

    async def dispatch(self, request, *args, **kwargs):
        try:
            return await super().dispatch(request, *args, **kwargs)
        except BadRequest as e:
            return _bad_request(str(e))

# ============================ ЛИЦО ============================

class FaceVerifyView(JsonView):
    """Лицо, локально: дескриптор (или изображение) против всех зарегистрированных."""

    form_class = FaceVerifyForm

    def verifier(self):
        return _services().face

    @log_call("FaceVerifyView.post")
    async def post(self, request: HttpRequest, *args, **kwargs) -> JsonResponse:
        started = time.perf_counter()
        data = await self.bound_form(request)
        if data.get("descriptor"):
            probe = ProbeSample(Modality.FACE, data["descriptor"], ProbeKind.DESCRIPTOR)
        else:
            probe = ProbeSample(Modality.FACE, data["image"], ProbeKind.IMAGE)
        verdict = await self.verifier().verify(probe, templates=data.get("students"),
                                               context=data.get("context"))
        return _verdict_response(verdict, started)

class FaceCloudVerifyView(FaceVerifyView):
    """Лицо через облачный compare API: эталоны: фотографии профиля."""

    form_class = FaceCloudVerifyForm

    def verifier(self):
        return _services().face_cloud

class FaceExtractView(JsonView):
    form_class = FaceExtractForm

    @log_call("FaceExtractView.post")
    async def post(self, request: HttpRequest, *args, **kwargs) -> JsonResponse:
        started = time.perf_counter()
        data = await self.bound_form(request)
        extractor = _services().extractor
        try:
            img = decode_image(data["image"])
            extraction = await asyncio.to_thread(extractor.extract, img)
        except ProbeInvalid as e:
            logger.info("Face extraction failed: %s", e)
            return JsonResponse({"success": False, "message": str(e)}, status=422)
        return JsonResponse({
            "success": True,
            "descriptor": extraction.descriptor,
            "confidence": extraction.confidence,
            "processingTime": round((time.perf_counter() - started) * 1000.0, 1),
        })

class FaceDescriptorsView(JsonView):
    """Кто зарегистрирован (без самих дескрипторов)."""

    @log_call("FaceDescriptorsView.get")
    async def get(self, request: HttpRequest, *args, **kwargs) -> JsonResponse:
        started = time.perf_counter()
        verifier = _services().face
        try:
            templates = await verifier.store.fetch_templates(Modality.FACE)
        except StoreUnavailable as e:
            return JsonResponse({"success": False, "message": str(e)}, status=503)
        data = [
            {"id": t.subject_id, **t.subject,
             "capturedAt": t.captured_at.isoformat() if t.captured_at else None}
            for t in templates
        ]
        return JsonResponse({
            "success": True,
            "data": data,
            "count": len(data),
            "fetchTime": round((time.perf_counter() - started) * 1000.0, 1),
        })

class FaceHealthView(JsonView):
    @log_call("FaceHealthView.get")
    async def get(self, request: HttpRequest, *args, **kwargs) -> JsonResponse:
        services = _services()
        return JsonResponse({
            "success": True,
            "message": "Face recognition API is healthy",
            "status": "operational",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "modelsLoaded": services.extractor.is_healthy(),
            "onnxruntimeProviders": ort.get_available_providers(),
        })

# ============================ ОТПЕЧАТКИ ============================

class FingerprintCompareView(JsonView):
    form_class = FingerprintCompareForm

    @log_call("FingerprintCompareView.post")
    async def post(self, request: HttpRequest, *args, **kwargs) -> JsonResponse:
        started = time.perf_counter()
        data = await self.bound_form(request)
        probe = ProbeSample(Modality.FINGERPRINT, data["image1"], ProbeKind.IMAGE)
        result = await _services().fingerprint.compare_pair(
            probe, data["image2"], duplicate_check=data.get("is_duplicate_check", False),
        )
        return _verdict_response(result, started)

class FingerprintBatchVerifyView(JsonView):
    """1 против N: пакетный запрос к серверу минуций, при сбое: по одному."""

    form_class = FingerprintBatchForm

    @log_call("FingerprintBatchVerifyView.post")
    async def post(self, request: HttpRequest, *args, **kwargs) -> JsonResponse:
        started = time.perf_counter()
        data = await self.bound_form(request)
        probe = ProbeSample(Modality.FINGERPRINT, data["queryImage"], ProbeKind.IMAGE)
        verdict = await _services().fingerprint.verify(
            probe, templates=data.get("database"), context=data.get("context"),
        )
        return _verdict_response(verdict, started)

class FingerprintDuplicateView(JsonView):
    form_class = FingerprintDuplicateForm

    @log_call("FingerprintDuplicateView.post")
    async def post(self, request: HttpRequest, *args, **kwargs) -> JsonResponse:
        started = time.perf_counter()
        data = await self.bound_form(request)
        probe = ProbeSample(Modality.FINGERPRINT, data["image"], ProbeKind.IMAGE)
        result = await _services().fingerprint.check_duplicate(probe, templates=data.get("database"))
        return _verdict_response(result, started)

class FingerprintHealthView(JsonView):
    @log_call("FingerprintHealthView.get")
    async def get(self, request: HttpRequest, *args, **kwargs) -> JsonResponse:
        health = await _services().fingerprint.comparator.health()
        return JsonResponse(health, status=200 if health.get("ready") else 503)
