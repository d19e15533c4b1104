# verification/services/audit.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from mlflow import log_metric, log_params, set_experiment, set_tracking_uri, start_run  # type: ignore

logger = logging.getLogger("app")


class AuditSink:
    """
    Приёмник решений (журнал посещаемости / аудит).
    Fire-and-forget: сбой приёмника логируется и на ответ не влияет.
    """

    def record(self, verdict: Dict[str, Any], context: Optional[Dict[str, Any]] = None) -> None:
        try:
            self._record(verdict, dict(context or {}), datetime.now(timezone.utc))
        except Exception as e:
            logger.error("audit sink %s failed: %s", type(self).__name__, e)

    def _record(self, verdict: Dict[str, Any], context: Dict[str, Any], ts: datetime) -> None:
        raise NotImplementedError


class LoggingAuditSink(AuditSink):
    def _record(self, verdict, context, ts):
        subject = verdict.get("subject") or {}
        logger.info(
            "audit: ts=%s matched=%s subject=%s confidence=%s compared=%s context=%s",
            ts.isoformat(), verdict.get("matched"), subject.get("id"),
            verdict.get("confidence"), verdict.get("candidatesCompared"), context,
        )


class MlflowAuditSink(AuditSink):
    """Метрики верификации в MLflow (если задан трекинг-сервер)."""

    def __init__(self, tracking_uri: str, experiment: str = "biometric_verification"):
        self.tracking_uri = tracking_uri
        self.experiment = experiment

    def _record(self, verdict, context, ts):
        set_tracking_uri(self.tracking_uri)
        set_experiment(self.experiment)
        with start_run():
            log_metric("matched", int(bool(verdict.get("matched"))))
            log_metric("candidates_compared", float(verdict.get("candidatesCompared") or 0))
            if verdict.get("confidence") is not None:
                log_metric("confidence", float(verdict["confidence"]))
            params = {k: str(v) for k, v in context.items()}
            params["method"] = str(verdict.get("method") or "")
            params["ts"] = ts.isoformat()
            log_params(params)


class CompositeAuditSink(AuditSink):
    def __init__(self, *sinks: AuditSink):
        self.sinks = sinks

    def _record(self, verdict, context, ts):
        for sink in self.sinks:
            sink.record(verdict, context)
