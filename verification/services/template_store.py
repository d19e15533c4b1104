# verification/services/template_store.py
from __future__ import annotations

import asyncio
import base64
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

import aiohttp

from .errors import StoreUnavailable
from .models import BiometricTemplate, Modality

logger = logging.getLogger("app")

FINGERS = (
    ("Thumb", "thumbTemplate"),
    ("Index", "indexTemplate"),
    ("Middle", "middleTemplate"),
    ("Ring", "ringTemplate"),
    ("Pinky", "pinkyTemplate"),
)

PUBLIC_FIELDS = (
    "matricNumber", "firstName", "surname", "middleName",
    "department", "level", "course", "profilePictureUrl",
)


class TemplateStore:
    """Только чтение. Пустой список: "никто не зарегистрирован", а не ошибка."""

    async def fetch_templates(self, modality: Modality) -> List[BiometricTemplate]:
        raise NotImplementedError


class StaticTemplateStore(TemplateStore):
    """Эталоны, переданные прямо в запросе (или в тестах)."""

    def __init__(self, templates: Iterable[BiometricTemplate] = ()):
        self.templates = list(templates)

    async def fetch_templates(self, modality: Modality) -> List[BiometricTemplate]:
        return [t for t in self.templates if t.modality == modality]


def public_subject(doc: Dict[str, Any]) -> Dict[str, Any]:
    subject = {k: doc[k] for k in PUBLIC_FIELDS if doc.get(k) is not None}
    name = " ".join(p for p in (doc.get("firstName"), doc.get("surname")) if p)
    if name:
        subject["displayName"] = name
    return subject


def parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def parse_descriptor(raw: Any, dim: int) -> Optional[List[float]]:
    """faceDescriptor хранится JSON-строкой; берём только массив нужной длины."""
    if raw is None:
        return None
    try:
        value = json.loads(raw) if isinstance(raw, str) else raw
    except ValueError:
        return None
    if not isinstance(value, list) or len(value) != dim:
        return None
    try:
        return [float(x) for x in value]
    except (TypeError, ValueError):
        return None


@dataclass
class AppwriteConfig:
    endpoint: str
    project_id: str
    api_key: str
    database_id: str
    students_collection_id: str = "student"
    fingerprint_bucket_id: str = ""
    descriptor_dim: int = 128
    limit: int = 1000
    timeout: float = 30.0


class AppwriteTemplateStore(TemplateStore):
    """
    Документная БД хостед-бэкенда (REST API).
    face_payload: "descriptor": faceDescriptor (локальное сравнение),
                  "photo": profilePictureUrl (облачный compare API).
    """

    def __init__(self, cfg: AppwriteConfig, face_payload: str = "descriptor"):
        self.cfg = cfg
        self.face_payload = face_payload

    @property
    def _headers(self) -> Dict[str, str]:
        return {
            "X-Appwrite-Project": self.cfg.project_id,
            "X-Appwrite-Key": self.cfg.api_key,
        }

    def _queries(self, modality: Modality) -> List[str]:
        flag = "faceCaptured" if modality == Modality.FACE else "fingerprintsCaptured"
        queries = [
            {"method": "equal", "attribute": "isActive", "values": [True]},
            {"method": "equal", "attribute": flag, "values": [True]},
        ]
        if modality == Modality.FACE and self.face_payload == "descriptor":
            queries.append({"method": "isNotNull", "attribute": "faceDescriptor"})
        queries.append({"method": "limit", "values": [self.cfg.limit]})
        return [json.dumps(q) for q in queries]

    async def _list_documents(self, session: aiohttp.ClientSession, modality: Modality) -> List[Dict[str, Any]]:
        url = (f"{self.cfg.endpoint.rstrip('/')}/databases/{self.cfg.database_id}"
               f"/collections/{self.cfg.students_collection_id}/documents")
        params = [("queries[]", q) for q in self._queries(modality)]
        try:
            async with session.get(url, params=params, headers=self._headers) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise StoreUnavailable(f"template store returned {resp.status}: {text[:200]}")
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise StoreUnavailable(f"template store unreachable: {str(e) or e.__class__.__name__}") from e
        return list(data.get("documents") or [])

    async def _download_file(self, session: aiohttp.ClientSession, file_id: str) -> Optional[str]:
        url = (f"{self.cfg.endpoint.rstrip('/')}/storage/buckets/{self.cfg.fingerprint_bucket_id}"
               f"/files/{file_id}/view")
        try:
            async with session.get(url, headers=self._headers) as resp:
                if resp.status != 200:
                    logger.warning("fingerprint file %s: HTTP %s", file_id, resp.status)
                    return None
                raw = await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("fingerprint file %s: %s", file_id, e)
            return None
        return base64.b64encode(raw).decode("ascii") if raw else None

    async def fetch_templates(self, modality: Modality) -> List[BiometricTemplate]:
        timeout = aiohttp.ClientTimeout(total=self.cfg.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            docs = await self._list_documents(session, modality)
            if modality == Modality.FACE:
                templates = self._face_templates(docs)
            else:
                templates = await self._fingerprint_templates(session, docs)
        logger.info("store: %d %s template(s) from %d active subject(s)",
                    len(templates), modality.value, len(docs))
        return templates

    def _face_templates(self, docs: Sequence[Dict[str, Any]]) -> List[BiometricTemplate]:
        out = []
        for doc in docs:
            if self.face_payload == "photo":
                payload = doc.get("profilePictureUrl")
            else:
                payload = parse_descriptor(doc.get("faceDescriptor"), self.cfg.descriptor_dim)
            if not payload:
                logger.warning("store: invalid face template for %s", doc.get("matricNumber"))
                continue
            out.append(BiometricTemplate(
                subject_id=doc["$id"],
                modality=Modality.FACE,
                payload=payload,
                label="face",
                captured_at=parse_timestamp(doc.get("faceCapturedAt")),
                subject=public_subject(doc),
            ))
        return out

    async def _fingerprint_templates(self, session: aiohttp.ClientSession,
                                     docs: Sequence[Dict[str, Any]]) -> List[BiometricTemplate]:
        out = []
        for doc in docs:
            fingers = [(name, (doc.get(field) or "").strip()) for name, field in FINGERS]
            fingers = [(name, file_id) for name, file_id in fingers if file_id]
            images = await asyncio.gather(*(self._download_file(session, fid) for _, fid in fingers))
            for (name, file_id), image in zip(fingers, images):
                if image is None:
                    continue
                out.append(BiometricTemplate(
                    subject_id=doc["$id"],
                    modality=Modality.FINGERPRINT,
                    payload=image,
                    label=name,
                    captured_at=parse_timestamp(doc.get("fingerprintsCapturedAt")),
                    template_id=file_id,
                    subject=public_subject(doc),
                ))
        return out
