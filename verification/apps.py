# verification/apps.py
import logging

from django.apps import AppConfig
from django.conf import settings

logger = logging.getLogger("app")


class VerificationConfig(AppConfig):
    name = "verification"
    default_auto_field = "django.db.models.BigAutoField"

    services = None

    def ready(self):
        from .services.registry import build_bundle

        self.services = build_bundle(settings)
        if getattr(settings, "WARMUP_MODELS", False):
            try:
                self.services.extractor.ensure_ready()
            except Exception as e:
                # не валим старт: ensure_ready повторится на первом запросе
                logger.error("model warm-up failed: %s", e)
        logger.info("verification services ready")
