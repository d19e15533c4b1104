# verification/tests/factories.py
import asyncio
import base64
from dataclasses import replace
from unittest import mock

import cv2
import numpy as np

from verification.services.comparators import Comparator
from verification.services.models import BiometricTemplate, ComparisonResult, Modality


def noise_png_b64(seed: int = 0, size=(48, 48), data_uri: bool = False) -> str:
    """Случайный шум: у каждого seed свои байты, контраст заведомо не нулевой."""
    rng = np.random.default_rng(seed)
    img = rng.integers(0, 255, size=(size[1], size[0], 3), dtype=np.uint8)
    _, buf = cv2.imencode(".png", img)
    b64 = base64.b64encode(buf.tobytes()).decode("ascii")
    return f"data:image/png;base64,{b64}" if data_uri else b64


def flat_png_b64(color: int = 128, size=(48, 48)) -> str:
    img = np.full((size[1], size[0], 3), color, dtype=np.uint8)
    _, buf = cv2.imencode(".png", img)
    return base64.b64encode(buf.tobytes()).decode("ascii")


def face_template(sid: str, payload, **subject) -> BiometricTemplate:
    return BiometricTemplate(subject_id=sid, modality=Modality.FACE, payload=payload,
                             label="face", subject=subject)


def finger_template(sid: str, payload, finger: str = "Thumb", file_id=None, **subject) -> BiometricTemplate:
    return BiometricTemplate(subject_id=sid, modality=Modality.FINGERPRINT, payload=payload,
                             label=finger, template_id=file_id, subject=subject)


def matched(score: float, confidence: float = None) -> ComparisonResult:
    return ComparisonResult(matched=True, score=score,
                            confidence=score * 100 if confidence is None else confidence,
                            method="scripted")


def unmatched(score: float) -> ComparisonResult:
    return ComparisonResult(matched=False, score=score, confidence=score * 100, method="scripted")


class ScriptedComparator(Comparator):
    """Компаратор с заранее заданными ответами по subject_id (или исключением)."""

    modality = Modality.FACE
    method = "scripted"

    def __init__(self, results=None, delays=None):
        self.results = results or {}
        self.delays = delays or {}
        self.calls = []
        self.prepared = 0

    async def prepare_probe(self, probe):
        self.prepared += 1
        return replace(probe, key=self.canonical(probe.payload))

    def canonical(self, payload):
        return str(payload).encode("utf-8")

    async def _compare(self, probe, template):
        self.calls.append(template.subject_id)
        delay = self.delays.get(template.subject_id)
        if delay:
            await asyncio.sleep(delay)
        result = self.results[template.subject_id]
        if isinstance(result, BaseException):
            raise result
        return result


def fake_client_session(responder, status=200):
    """
    Подмена aiohttp.ClientSession для comparators._request.
    responder(url, body) -> разобранный JSON ответа (любой формы) или исключение.
    """
    def request(method, url, json=None, data=None):
        reply = responder(url, json if json is not None else data)
        resp = mock.MagicMock()
        resp.status = status
        resp.reason = "OK" if status == 200 else "Error"
        resp.text = mock.AsyncMock(return_value=repr(reply))
        resp.json = mock.AsyncMock(return_value=reply)
        ctx = mock.MagicMock()
        ctx.__aenter__ = mock.AsyncMock(return_value=resp)
        ctx.__aexit__ = mock.AsyncMock(return_value=False)
        return ctx

    session = mock.MagicMock()
    session.request.side_effect = request
    factory = mock.MagicMock()
    factory.return_value.__aenter__ = mock.AsyncMock(return_value=session)
    factory.return_value.__aexit__ = mock.AsyncMock(return_value=False)
    return factory
