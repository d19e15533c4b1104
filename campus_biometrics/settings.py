# campus_biometrics/settings.py
import os
from pathlib import Path

from .logging_config import build_logging

BASE_DIR = Path(__file__).resolve().parent.parent


def _env_bool(name: str, default: bool) -> bool:
    return os.environ.get(name, str(default)).strip().lower() in ("1", "true", "yes", "on")


SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "dev-only-insecure-key")
DEBUG = _env_bool("DJANGO_DEBUG", True)
ALLOWED_HOSTS = [h for h in os.environ.get("DJANGO_ALLOWED_HOSTS", "*").split(",") if h]

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.staticfiles",
    "verification.apps.VerificationConfig",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "campus_biometrics.urls"
WSGI_APPLICATION = "campus_biometrics.wsgi.application"
ASGI_APPLICATION = "campus_biometrics.asgi.application"

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": BASE_DIR / "db.sqlite3",
    }
}

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_TZ = True
STATIC_URL = "static/"
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# Пробы приходят base64 в JSON, до 10 МБ
DATA_UPLOAD_MAX_MEMORY_SIZE = 10 * 1024 * 1024

# ============================ ЛОГИ ============================

LOG_DIR = os.environ.get("LOG_DIR", str(BASE_DIR / "logs"))
LOGGING = build_logging(LOG_DIR, os.environ.get("LOG_LEVEL", "INFO"))

# ============================ ЛИЦО ============================

FACE_MATCH_THRESHOLD = float(os.environ.get("FACE_MATCH_THRESHOLD", "0.5"))
FACE_CLOUD_MATCH_THRESHOLD = float(os.environ.get("FACE_CLOUD_MATCH_THRESHOLD", "70"))
FACE_DESCRIPTOR_DIM = int(os.environ.get("FACE_DESCRIPTOR_DIM", "128"))
FACE_DESCRIPTOR_INPUT_SIZE = int(os.environ.get("FACE_DESCRIPTOR_INPUT_SIZE", "112"))
FACE_DETECTOR_WEIGHTS = os.environ.get("FACE_DETECTOR_WEIGHTS", "weights/yolo11n-face.pt")
FACE_DESCRIPTOR_ONNX = os.environ.get("FACE_DESCRIPTOR_ONNX", "weights/face_descriptor_128.onnx")
DEVICE = os.environ.get("DEVICE", "auto")
# грузить модели при старте, а не на первом запросе с изображением
WARMUP_MODELS = _env_bool("WARMUP_MODELS", False)

FACEPP_API_URL = os.environ.get("FACEPP_API_URL", "https://api-us.faceplusplus.com/facepp/v3/compare")
FACEPP_API_KEY = os.environ.get("FACEPP_API_KEY", "")
FACEPP_API_SECRET = os.environ.get("FACEPP_API_SECRET", "")
FACEPP_TIMEOUT = float(os.environ.get("FACEPP_TIMEOUT", "30"))

# ============================ ОТПЕЧАТКИ ============================

FINGERPRINT_SERVER_URL = os.environ.get("FINGERPRINT_SERVER_URL", "https://nbis-server.onrender.com")
FINGERPRINT_COMPARE_TIMEOUT = float(os.environ.get("FINGERPRINT_COMPARE_TIMEOUT", "30"))
FINGERPRINT_BATCH_TIMEOUT = float(os.environ.get("FINGERPRINT_BATCH_TIMEOUT", "120"))
FINGERPRINT_HEALTH_TIMEOUT = float(os.environ.get("FINGERPRINT_HEALTH_TIMEOUT", "90"))
FINGERPRINT_WAKE_DELAY = float(os.environ.get("FINGERPRINT_WAKE_DELAY", "4"))

MATCH_CONCURRENCY = int(os.environ.get("MATCH_CONCURRENCY", "1"))

# ============================ ХРАНИЛИЩЕ ============================

APPWRITE_ENDPOINT = os.environ.get("APPWRITE_ENDPOINT", "")
APPWRITE_PROJECT_ID = os.environ.get("APPWRITE_PROJECT_ID", "")
APPWRITE_API_KEY = os.environ.get("APPWRITE_API_KEY", "")
APPWRITE_DATABASE_ID = os.environ.get("APPWRITE_DATABASE_ID", "")
APPWRITE_STUDENTS_COLLECTION_ID = os.environ.get("APPWRITE_STUDENTS_COLLECTION_ID", "student")
APPWRITE_FINGERPRINT_BUCKET_ID = os.environ.get("APPWRITE_FINGERPRINT_BUCKET_ID", "")

# ============================ АУДИТ ============================

MLFLOW_TRACKING_URI = os.environ.get("MLFLOW_TRACKING_URI", "")
MLFLOW_EXPERIMENT = os.environ.get("MLFLOW_EXPERIMENT", "biometric_verification")
