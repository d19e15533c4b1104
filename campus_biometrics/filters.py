# campus_biometrics/filters.py
import logging


class AsciiOnlyFilter(logging.Filter):
    """Не-ASCII в сообщении (эмодзи, кириллица из клиентских событий) -> '?'. Запись не отбрасывает."""

    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        if not msg.isascii():
            record.msg = msg.encode("ascii", "replace").decode("ascii")
            record.args = None
        return True


class ErrorLevelFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno >= logging.ERROR


class InfoAndAboveFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno >= logging.INFO
