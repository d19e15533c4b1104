# verification/forms.py
from __future__ import annotations

import json
from typing import Any, Dict, List

from django import forms

from .services.models import BiometricTemplate, Modality
from .services.template_store import parse_timestamp, public_subject


class _ContextMixin(forms.Form):
    context = forms.JSONField(required=False)

    def clean_context(self):
        value = self.cleaned_data.get("context")
        if value is not None and not isinstance(value, dict):
            raise forms.ValidationError("context must be an object")
        return value


def _entries(value: Any, field: str) -> List[Dict[str, Any]]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(e, dict) for e in value):
        raise forms.ValidationError(f"{field} must be an array of objects")
    return value


def _maybe_json(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


def _subject(entry: Dict[str, Any]) -> Dict[str, Any]:
    subject = public_subject(entry.get("student") or entry)
    if "displayName" not in subject and entry.get("studentName"):
        subject["displayName"] = entry["studentName"]
    if "matricNumber" not in subject and entry.get("matricNumber"):
        subject["matricNumber"] = entry["matricNumber"]
    return subject


class FaceVerifyForm(_ContextMixin):
    """Проба: готовый дескриптор (из браузера) или изображение (извлечём на сервере)."""
    descriptor = forms.JSONField(required=False)
    image = forms.CharField(required=False, strip=True)
    students = forms.JSONField(required=False)

    def clean_descriptor(self):
        value = self.cleaned_data.get("descriptor")
        if value is not None and not isinstance(value, list):
            raise forms.ValidationError("descriptor must be an array of numbers")
        return value

    def clean_students(self):
        entries = _entries(self.cleaned_data.get("students"), "students")
        if self.data.get("students") is None:
            return None
        templates = []
        for i, e in enumerate(entries):
            sid = e.get("$id") or e.get("id") or e.get("matricNumber") or f"student-{i}"
            payload = e.get("descriptor")
            if payload is None and e.get("faceDescriptor"):
                payload = _maybe_json(e["faceDescriptor"])
            if payload is None:
                payload = e.get("image") or e.get("profilePictureUrl")
            templates.append(BiometricTemplate(
                subject_id=str(sid), modality=Modality.FACE, payload=payload, label="face",
                captured_at=parse_timestamp(e.get("faceCapturedAt")), subject=_subject(e),
            ))
        return templates

    def clean(self):
        data = super().clean()
        if not data.get("descriptor") and not data.get("image"):
            raise forms.ValidationError("descriptor or image is required")
        return data


class FaceCloudVerifyForm(FaceVerifyForm):
    def clean(self):
        data = forms.Form.clean(self)
        if not data.get("image"):
            raise forms.ValidationError("image is required")
        return data


class FaceExtractForm(forms.Form):
    image = forms.CharField(strip=True)

    def clean_image(self):
        value = self.cleaned_data["image"]
        if not value.startswith("data:image/"):
            raise forms.ValidationError("Invalid image format. Must be base64 data URI")
        return value


def _fingerprint_templates(entries: List[Dict[str, Any]]) -> List[BiometricTemplate]:
    templates = []
    for i, e in enumerate(entries):
        sid = e.get("studentId") or e.get("id") or e.get("matricNumber") or f"student-{i}"
        templates.append(BiometricTemplate(
            subject_id=str(sid),
            modality=Modality.FINGERPRINT,
            payload=e.get("imageData") or e.get("image"),
            label=e.get("fingerName") or "",
            template_id=e.get("fileId") or e.get("id"),
            subject=_subject(e),
        ))
    return templates


class FingerprintBatchForm(_ContextMixin):
    queryImage = forms.CharField(strip=True)
    database = forms.JSONField(required=False)

    def clean_database(self):
        if self.data.get("database") is None:
            return None
        return _fingerprint_templates(_entries(self.cleaned_data.get("database"), "database"))


class FingerprintDuplicateForm(forms.Form):
    image = forms.CharField(strip=True)
    database = forms.JSONField(required=False)

    def clean_database(self):
        if self.data.get("database") is None:
            return None
        return _fingerprint_templates(_entries(self.cleaned_data.get("database"), "database"))


class FingerprintCompareForm(forms.Form):
    image1 = forms.CharField(strip=True)
    image2 = forms.CharField(strip=True)
    is_duplicate_check = forms.BooleanField(required=False)
