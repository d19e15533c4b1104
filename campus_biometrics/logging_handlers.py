# campus_biometrics/logging_handlers.py
import os
import time
from logging.handlers import BaseRotatingHandler


class SizeAndTimeRotatingFileHandler(BaseRotatingHandler):
    """
    Ротация по размеру (max_bytes) ИЛИ по возрасту файла (days суток).
    Хранится не больше backup_count старых файлов: log.1 (новый) ... log.N (старый).
    Каталог под лог создаётся сам.
    """

    def __init__(self, filename, mode="a", max_bytes=10 * 1024 * 1024, days=3,
                 backup_count=None, encoding="utf-8", delay=False):
        self.max_bytes = int(max_bytes)
        self.days = float(days)
        self.backup_count = int(backup_count if backup_count is not None else max(1, int(days)))
        self.opened_at = None
        directory = os.path.dirname(os.path.abspath(filename))
        os.makedirs(directory, exist_ok=True)
        super().__init__(filename, mode, encoding, delay)
        self._stamp()

    def _stamp(self):
        try:
            self.opened_at = os.path.getctime(self.baseFilename)
        except OSError:
            self.opened_at = time.time()

    def shouldRollover(self, record):
        if self.stream is None:
            self.stream = self._open()

        if self.max_bytes > 0:
            msg = "%s\n" % self.format(record)
            self.stream.seek(0, 2)
            if self.stream.tell() + len(msg.encode(self.encoding or "utf-8")) > self.max_bytes:
                return True

        if self.days > 0 and (time.time() - self.opened_at) >= self.days * 86400:
            return True
        return False

    def doRollover(self):
        if self.stream:
            self.stream.close()
            self.stream = None

        for i in range(self.backup_count - 1, 0, -1):
            src = f"{self.baseFilename}.{i}"
            dst = f"{self.baseFilename}.{i + 1}"
            if os.path.exists(src):
                os.replace(src, dst)

        if self.backup_count > 0 and os.path.exists(self.baseFilename):
            os.replace(self.baseFilename, f"{self.baseFilename}.1")
        elif os.path.exists(self.baseFilename):
            os.remove(self.baseFilename)

        self.stream = self._open()
        self.opened_at = time.time()
