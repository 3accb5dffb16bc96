import logging
import unittest

from storehouse.events import (
    FETCH_REQUESTED,
    FETCHED,
    UPLOADED,
    CallbackNotifier,
    CompositeNotifier,
    LifecycleEvent,
    LoggingNotifier,
    Notifier,
)
from storehouse.logging_utils import human_filesize, sanitize_log_value


def _event(name, **extra):
    return LifecycleEvent(
        name=name,
        path="a/b.txt",
        location="/srv/files/a/b.txt",
        directory="/srv/files/a",
        **extra,
    )


class BrokenNotifier(Notifier):
    def notify(self, event):
        raise RuntimeError("boom")


class NotifierTests(unittest.TestCase):
    def test_callbacks_are_dispatched_by_name(self):
        seen = []
        notifier = CallbackNotifier().on(UPLOADED, seen.append)

        notifier.notify(_event(UPLOADED, size=3))
        notifier.notify(_event(FETCHED, size=3))

        self.assertEqual([event.name for event in seen], [UPLOADED])

    def test_unknown_event_name_rejected(self):
        with self.assertRaises(ValueError):
            CallbackNotifier().on("deleted", lambda event: None)

    def test_composite_isolates_failing_consumer(self):
        seen = []
        composite = CompositeNotifier([BrokenNotifier(), CallbackNotifier().on(UPLOADED, seen.append)])

        with self.assertLogs("storehouse.events", level="ERROR"):
            composite.notify(_event(UPLOADED))

        self.assertEqual(len(seen), 1)

    def test_event_dict_omits_unset_fields(self):
        payload = _event(FETCH_REQUESTED, url="http://example.com/a").to_dict()
        self.assertEqual(payload["url"], "http://example.com/a")
        self.assertNotIn("size", payload)
        self.assertFalse(_event(FETCH_REQUESTED).completed)
        self.assertTrue(_event(FETCHED).completed)


class LoggingNotifierTests(unittest.TestCase):
    def setUp(self):
        self.logger = logging.getLogger("tests.lifecycle")
        self.notifier = LoggingNotifier(self.logger)

    def test_uploaded_line(self):
        line = self.notifier.format(
            _event(UPLOADED, size=2048, content_type="text/plain", encoding="7bit")
        )
        self.assertIn("uploaded: a/b.txt (/srv/files/a/b.txt) 2.00 KB text/plain (encoding: 7bit)", line)

    def test_fetch_requested_line_escapes_control_characters(self):
        line = self.notifier.format(_event(FETCH_REQUESTED, url="http://x/\nforged"))
        self.assertIn('url-fetch REQUESTED: "http://x/\\nforged": a/b.txt', line)
        self.assertNotIn("\n", line)

    def test_notify_logs_at_info(self):
        with self.assertLogs("tests.lifecycle", level="INFO") as captured:
            self.notifier.notify(_event(FETCHED, url="http://x/y", size=-1))
        self.assertIn("unknown size", captured.output[0])


class LogHelperTests(unittest.TestCase):
    def test_human_filesize(self):
        self.assertEqual(human_filesize(512), "512 B")
        self.assertEqual(human_filesize(5 * 1024 * 1024), "5.00 MB")
        self.assertEqual(human_filesize(-1), "unknown size")

    def test_sanitize_log_value(self):
        self.assertEqual(sanitize_log_value("a\r\nb\x07"), "a\\r\\nb\\x07")
        self.assertEqual(sanitize_log_value(42), 42)


if __name__ == "__main__":
    unittest.main()
