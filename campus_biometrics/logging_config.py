# campus_biometrics/logging_config.py
import os


def build_logging(log_dir: str, level: str = "INFO") -> dict:
    """dictConfig для Django: stdout + два ротируемых файла (всё / только ошибки)."""
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "ascii_only": {"()": "campus_biometrics.filters.AsciiOnlyFilter"},
            "only_errors": {"()": "campus_biometrics.filters.ErrorLevelFilter"},
            "info_and_above": {"()": "campus_biometrics.filters.InfoAndAboveFilter"},
        },
        "formatters": {
            "standard": {
                "format": "%(levelname)s | %(name)s | %(asctime)s | line %(lineno)d | %(message)s",
                "datefmt": "%H:%M:%S",
            },
        },
        "handlers": {
            "app_stdout": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "standard",
                "filters": ["ascii_only"],
            },
            "file_out": {
                "()": "campus_biometrics.logging_handlers.SizeAndTimeRotatingFileHandler",
                "level": "INFO",
                "formatter": "standard",
                "filename": os.path.join(log_dir, "app.log"),
                "max_bytes": 10 * 1024 * 1024,
                "days": 3,
                "delay": True,
                "filters": ["ascii_only", "info_and_above"],
            },
            "file_err": {
                "()": "campus_biometrics.logging_handlers.SizeAndTimeRotatingFileHandler",
                "level": "ERROR",
                "formatter": "standard",
                "filename": os.path.join(log_dir, "error.log"),
                "max_bytes": 10 * 1024 * 1024,
                "days": 3,
                "delay": True,
                "filters": ["ascii_only", "only_errors"],
            },
        },
        "loggers": {
            "app": {
                "handlers": ["app_stdout", "file_out", "file_err"],
                "level": level,
                "propagate": False,
            },
            "django.request": {
                "handlers": ["file_err"],
                "level": "ERROR",
                "propagate": True,
            },
            # Глушим шум
            "urllib3": {"level": "WARNING", "handlers": [], "propagate": False},
            "aiohttp.access": {"level": "WARNING", "handlers": [], "propagate": False},
            "ultralytics": {"level": "WARNING", "handlers": [], "propagate": True},
            "mlflow": {"level": "WARNING", "handlers": [], "propagate": True},
        },
        "root": {"level": "WARNING", "handlers": ["app_stdout"]},
    }
