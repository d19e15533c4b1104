# verification/tests/test_logging.py
import logging
import os
import tempfile
from unittest import mock

from django.test import SimpleTestCase

from campus_biometrics.decorators import log_call
from campus_biometrics.filters import AsciiOnlyFilter, ErrorLevelFilter
from campus_biometrics.logging_config import build_logging
from campus_biometrics.logging_handlers import SizeAndTimeRotatingFileHandler
from verification.services.audit import AuditSink, CompositeAuditSink, MlflowAuditSink


def _record(msg, level=logging.INFO, args=()):
    return logging.LogRecord("app", level, __file__, 1, msg, args, None)


class LogCallTest(SimpleTestCase):
    def test_sync(self):
        @log_call("double")
        def double(x):
            return x * 2

        with self.assertLogs("app", level="INFO") as logs:
            self.assertEqual(double(4), 8)
        self.assertIn("CALL double", logs.output[0])
        self.assertIn("OK double", logs.output[1])

    async def test_async_error_is_logged_and_reraised(self):
        @log_call()
        async def boom():
            raise RuntimeError("nope")

        with self.assertLogs("app", level="INFO") as logs:
            with self.assertRaises(RuntimeError):
                await boom()
        self.assertTrue(any("ERR" in line and "nope" in line for line in logs.output))


class FiltersTest(SimpleTestCase):
    def test_ascii_only_replaces_and_keeps_record(self):
        rec = _record("student %s", args=("Дмитрий",))
        self.assertTrue(AsciiOnlyFilter().filter(rec))
        self.assertEqual(rec.getMessage(), "student " + "?" * 7)

    def test_error_level(self):
        self.assertFalse(ErrorLevelFilter().filter(_record("x", logging.WARNING)))
        self.assertTrue(ErrorLevelFilter().filter(_record("x", logging.ERROR)))

    def test_build_logging(self):
        cfg = build_logging("/tmp/logs", "DEBUG")
        self.assertEqual(cfg["loggers"]["app"]["level"], "DEBUG")
        self.assertEqual(cfg["handlers"]["file_err"]["filename"], os.path.join("/tmp/logs", "error.log"))


class RotatingHandlerTest(SimpleTestCase):
    def test_rolls_over_by_size(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "nested", "app.log")
            handler = SizeAndTimeRotatingFileHandler(path, max_bytes=64, days=0, backup_count=2)
            try:
                for i in range(10):
                    handler.emit(_record("line %02d " % i + "x" * 20))
            finally:
                handler.close()
            self.assertTrue(os.path.exists(path + ".1"))
            self.assertTrue(os.path.exists(path + ".2"))
            self.assertFalse(os.path.exists(path + ".3"))
            self.assertLessEqual(os.path.getsize(path), 64)

    def test_rolls_over_by_age(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "app.log")
            handler = SizeAndTimeRotatingFileHandler(path, max_bytes=0, days=1)
            try:
                handler.emit(_record("first"))
                handler.opened_at -= 2 * 86400
                handler.emit(_record("second"))
            finally:
                handler.close()
            with open(path + ".1", encoding="utf-8") as f:
                self.assertIn("first", f.read())
            with open(path, encoding="utf-8") as f:
                self.assertEqual(f.read().strip(), "second")


class AuditTest(SimpleTestCase):
    def test_failing_sink_does_not_raise(self):
        class Broken(AuditSink):
            def _record(self, verdict, context, ts):
                raise OSError("disk full")

        with self.assertLogs("app", level="ERROR") as logs:
            CompositeAuditSink(Broken()).record({"matched": True})
        self.assertIn("disk full", logs.output[0])

    def test_mlflow_sink(self):
        with mock.patch("verification.services.audit.set_tracking_uri") as uri, \
             mock.patch("verification.services.audit.set_experiment"), \
             mock.patch("verification.services.audit.start_run"), \
             mock.patch("verification.services.audit.log_metric") as metric, \
             mock.patch("verification.services.audit.log_params") as params:
            MlflowAuditSink("file:///tmp/mlruns").record(
                {"matched": True, "confidence": 92.4, "candidatesCompared": 12, "method": "descriptor_distance"},
                {"courseCode": "CSC301"},
            )
        uri.assert_called_once_with("file:///tmp/mlruns")
        metric.assert_any_call("confidence", 92.4)
        metric.assert_any_call("matched", 1)
        logged = params.call_args.args[0]
        self.assertEqual(logged["courseCode"], "CSC301")
        self.assertEqual(logged["method"], "descriptor_distance")
