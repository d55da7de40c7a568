import json
import logging

from crmsync.logging_config import QUIET_LOGGERS, JSONFormatter, bind_logger, get_logger, setup_logging


def _record(logger_name="crmsync.test", context=None, level=logging.INFO):
    record = logging.LogRecord(logger_name, level, __file__, 12, "Message persisted", None, None)
    if context is not None:
        record.context = context
    return record


class TestJSONFormatter:
    def test_lifts_pipeline_ids_and_keeps_rest_in_context(self):
        record = _record(context={"thread_key": 1700000000000001, "external_user_id": 12345, "kind": "voice"})

        data = json.loads(JSONFormatter().format(record))

        assert data["level"] == "INFO"
        assert data["service"] == "crmsync"
        assert data["logger"] == "crmsync.test"
        assert data["message"] == "Message persisted"
        assert data["thread_key"] == 1700000000000001
        assert data["external_user_id"] == 12345
        assert data["context"] == {"kind": "voice"}
        assert "location" not in data

    def test_record_context_is_not_mutated(self):
        context = {"thread_key": 1700000000000001}
        JSONFormatter().format(_record(context=context))
        assert context == {"thread_key": 1700000000000001}

    def test_warning_carries_location(self):
        data = json.loads(JSONFormatter().format(_record(level=logging.WARNING)))
        assert data["location"] == "test_logging_config:12"
        assert "context" not in data

    def test_keeps_cyrillic_readable(self):
        line = JSONFormatter().format(_record(context={"name": "Пользователь 1"}))
        assert "Пользователь 1" in line


class TestLoggers:
    def test_namespaced(self):
        assert get_logger("ingest_service").name == "crmsync.ingest_service"

    def test_bound_context_is_merged(self, caplog):
        log = bind_logger("ingest_service", external_user_id=12345, channel_message_id=None)

        with caplog.at_level(logging.INFO, logger="crmsync.ingest_service"):
            log.info("Duplicate update ignored", context={"kind": "voice"})

        assert caplog.records[-1].context == {"external_user_id": 12345, "kind": "voice"}

    def test_call_context_overrides_bound_value(self, caplog):
        log = bind_logger("ingest_service", thread_key=1)

        with caplog.at_level(logging.INFO, logger="crmsync.ingest_service"):
            log.info("Thread switched", context={"thread_key": 2})

        assert caplog.records[-1].context == {"thread_key": 2}


class TestSetupLogging:
    def test_quiets_chatty_libraries_unless_debug(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            setup_logging("INFO")
            assert all(logging.getLogger(name).level == logging.WARNING for name in QUIET_LOGGERS)
            assert isinstance(root.handlers[-1].formatter, JSONFormatter)

            for name in QUIET_LOGGERS:
                logging.getLogger(name).setLevel(logging.NOTSET)
            setup_logging("DEBUG", debug=True)
            assert logging.getLogger("httpx").level == logging.NOTSET
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)
