import logging

import pytest

from calmirror.core.config import AppConfig, GeneralConfig
from calmirror.utils.logging import (
    CATEGORY_POLLING,
    CATEGORY_WEBHOOK,
    SeverityOverrideFilter,
    category,
    log_file_path,
    parse_level,
    setup_logging,
)


def make_record(level=logging.INFO, **extra):
    record = logging.LogRecord("calmirror.test", level, __file__, 1, "message", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def restore_root():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


class TestParseLevel:
    def test_names_are_case_insensitive(self):
        assert parse_level("debug") == logging.DEBUG

    def test_ints_pass_through(self):
        assert parse_level(logging.ERROR) == logging.ERROR

    def test_unknown_name_rejected(self):
        with pytest.raises(ValueError):
            parse_level("LOUD")


class TestSeverityOverrideFilter:
    def test_category_is_relevelled(self):
        record = make_record(**category(CATEGORY_POLLING))
        log_filter = SeverityOverrideFilter({CATEGORY_POLLING: "DEBUG"})

        assert log_filter.filter(record)
        assert record.levelno == logging.DEBUG
        assert record.levelname == "DEBUG"

    def test_demoted_record_dropped_below_threshold(self):
        record = make_record(**category(CATEGORY_POLLING))
        log_filter = SeverityOverrideFilter({CATEGORY_POLLING: "DEBUG"}, threshold=logging.INFO)

        assert not log_filter.filter(record)

    def test_force_level_wins_over_category(self):
        record = make_record(**category(CATEGORY_WEBHOOK, force_level="ERROR"))
        log_filter = SeverityOverrideFilter({CATEGORY_WEBHOOK: "DEBUG"})

        assert log_filter.filter(record)
        assert record.levelno == logging.ERROR

    def test_untagged_record_keeps_level(self):
        record = make_record(logging.WARNING)
        log_filter = SeverityOverrideFilter({CATEGORY_WEBHOOK: "DEBUG"}, threshold=logging.INFO)

        assert log_filter.filter(record)
        assert record.levelno == logging.WARNING


class TestSetupLogging:
    def test_writes_to_log_file(self, tmp_path, restore_root):
        config = AppConfig(general=GeneralConfig(data_dir=tmp_path))

        path = setup_logging(config, level_name="warning")
        logging.getLogger("calmirror.test").debug("written to file only")
        for handler in restore_root.handlers:
            handler.flush()

        assert path == log_file_path(config)
        assert "written to file only" in path.read_text(encoding="utf-8")
        assert len(restore_root.handlers) == 2

    def test_uvicorn_loggers_propagate(self, tmp_path, restore_root):
        uvicorn_logger = logging.getLogger("uvicorn.error")
        uvicorn_logger.addHandler(logging.NullHandler())
        uvicorn_logger.propagate = False

        setup_logging(AppConfig(general=GeneralConfig(data_dir=tmp_path)))

        assert uvicorn_logger.propagate
        assert not uvicorn_logger.handlers
