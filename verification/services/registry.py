# verification/services/registry.py
from __future__ import annotations

import logging
from dataclasses import dataclass

from .audit import AuditSink, CompositeAuditSink, LoggingAuditSink, MlflowAuditSink
from .comparators import CloudFaceComparator, DescriptorComparator, RemoteFingerprintComparator
from .decision import CONFIDENCE, DISTANCE, MatchThreshold, VerificationDecision
from .descriptor_extractor import DescriptorExtractor, ExtractorConfig
from .template_store import AppwriteConfig, AppwriteTemplateStore, StaticTemplateStore, TemplateStore
from .verifier import Verifier

logger = logging.getLogger("app")


@dataclass
class ServiceBundle:
    """Всё, что нужно view: создаётся один раз при старте и передаётся явно."""
    extractor: DescriptorExtractor
    face: Verifier
    face_cloud: Verifier
    fingerprint: Verifier


def _store(settings, face_payload: str = "descriptor") -> TemplateStore:
    endpoint = getattr(settings, "APPWRITE_ENDPOINT", "")
    if not endpoint:
        logger.warning("APPWRITE_ENDPOINT is not set: only inline templates will be used")
        return StaticTemplateStore()
    return AppwriteTemplateStore(
        AppwriteConfig(
            endpoint=endpoint,
            project_id=getattr(settings, "APPWRITE_PROJECT_ID", ""),
            api_key=getattr(settings, "APPWRITE_API_KEY", ""),
            database_id=getattr(settings, "APPWRITE_DATABASE_ID", ""),
            students_collection_id=getattr(settings, "APPWRITE_STUDENTS_COLLECTION_ID", "student"),
            fingerprint_bucket_id=getattr(settings, "APPWRITE_FINGERPRINT_BUCKET_ID", ""),
            descriptor_dim=int(getattr(settings, "FACE_DESCRIPTOR_DIM", 128)),
        ),
        face_payload=face_payload,
    )


def _audit(settings) -> AuditSink:
    sinks = [LoggingAuditSink()]
    uri = getattr(settings, "MLFLOW_TRACKING_URI", "")
    if uri:
        sinks.append(MlflowAuditSink(uri, getattr(settings, "MLFLOW_EXPERIMENT", "biometric_verification")))
    return CompositeAuditSink(*sinks)


def build_bundle(settings) -> ServiceBundle:
    dim = int(getattr(settings, "FACE_DESCRIPTOR_DIM", 128))
    face_thr = float(getattr(settings, "FACE_MATCH_THRESHOLD", 0.5))
    cloud_thr = float(getattr(settings, "FACE_CLOUD_MATCH_THRESHOLD", 70.0))
    concurrency = int(getattr(settings, "MATCH_CONCURRENCY", 1))
    audit = _audit(settings)

    extractor = DescriptorExtractor(ExtractorConfig(
        detector_weights=getattr(settings, "FACE_DETECTOR_WEIGHTS", "weights/yolo11n-face.pt"),
        embedder_onnx=getattr(settings, "FACE_DESCRIPTOR_ONNX", "weights/face_descriptor_128.onnx"),
        device=getattr(settings, "DEVICE", "auto"),
        input_size=int(getattr(settings, "FACE_DESCRIPTOR_INPUT_SIZE", 112)),
        descriptor_dim=dim,
    ))

    face = Verifier(
        store=_store(settings),
        comparator=DescriptorComparator(extractor, threshold=face_thr, dim=dim),
        decision=VerificationDecision(MatchThreshold(DISTANCE, face_thr), noun="face"),
        concurrency=concurrency,
        audit=audit,
    )
    face_cloud = Verifier(
        store=_store(settings, face_payload="photo"),
        comparator=CloudFaceComparator(
            api_url=getattr(settings, "FACEPP_API_URL", ""),
            api_key=getattr(settings, "FACEPP_API_KEY", ""),
            api_secret=getattr(settings, "FACEPP_API_SECRET", ""),
            threshold=cloud_thr,
            timeout=float(getattr(settings, "FACEPP_TIMEOUT", 30.0)),
        ),
        decision=VerificationDecision(MatchThreshold(CONFIDENCE, cloud_thr), noun="face"),
        # облачный API с лимитом запросов, строго по одному
        concurrency=1,
        audit=audit,
    )
    fingerprint = Verifier(
        store=_store(settings),
        comparator=RemoteFingerprintComparator(
            base_url=getattr(settings, "FINGERPRINT_SERVER_URL", ""),
            compare_timeout=float(getattr(settings, "FINGERPRINT_COMPARE_TIMEOUT", 30.0)),
            batch_timeout=float(getattr(settings, "FINGERPRINT_BATCH_TIMEOUT", 120.0)),
            health_timeout=float(getattr(settings, "FINGERPRINT_HEALTH_TIMEOUT", 90.0)),
        ),
        # порог определяет сервер минуций
        decision=VerificationDecision(None, noun="fingerprint"),
        concurrency=concurrency,
        wake_delay=float(getattr(settings, "FINGERPRINT_WAKE_DELAY", 4.0)),
        audit=audit,
    )
    return ServiceBundle(extractor=extractor, face=face, face_cloud=face_cloud, fingerprint=fingerprint)
