"""Tests for run log preparation and formatting."""

import logging
from datetime import datetime

import pytest

from runlog import MAX_LOG_BYTES, SEPARATOR, CategoryFormatter, prepare_log, setup_logging


def _record(level, msg, **extra):
    record = logging.LogRecord('freshdock', level, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestPrepareLog:

    def test_creates_log_with_header(self, tmp_path):
        log = tmp_path / 'freshdock.log'
        prepare_log(log, now=datetime(2024, 3, 1, 4, 5, 6))

        content = log.read_text()
        assert content == f"\n{SEPARATOR}\n[ Time     ]: Fri Mar 01 04:05:06 2024\n"

    def test_small_log_is_appended(self, tmp_path):
        log = tmp_path / 'freshdock.log'
        log.write_text("previous run\n")

        prepare_log(log)

        content = log.read_text()
        assert content.startswith("previous run\n")
        assert content.count(SEPARATOR) == 1

    def test_log_over_threshold_is_reset(self, tmp_path):
        log = tmp_path / 'freshdock.log'
        log.write_text("x" * (MAX_LOG_BYTES + 1))

        prepare_log(log)

        content = log.read_text()
        assert 'x' not in content
        assert content.startswith(f"\n\n{SEPARATOR}\n[ Time     ]: ")

    def test_log_at_threshold_is_kept(self, tmp_path):
        log = tmp_path / 'freshdock.log'
        log.write_text("x" * MAX_LOG_BYTES)

        prepare_log(log)

        assert log.read_text().startswith("x" * MAX_LOG_BYTES)


class TestCategoryFormatter:

    @pytest.mark.parametrize("level,category", [
        (logging.INFO, 'Info'),
        (logging.WARNING, 'Warning'),
        (logging.ERROR, 'Error'),
    ])
    def test_level_categories(self, level, category):
        line = CategoryFormatter().format(_record(level, "hello"))
        assert line == f"[ {category:<8} ]: hello"

    def test_explicit_category_wins(self):
        line = CategoryFormatter().format(_record(logging.INFO, "[ nginx ]", category='Checking'))
        assert line == "[ Checking ]: [ nginx ]"


def test_setup_logging_writes_to_file(tmp_path):
    log = tmp_path / 'freshdock.log'
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        logger = setup_logging(log, 'INFO')
        logger.info("Container updated.")
        for handler in root.handlers:
            handler.flush()
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        for handler in saved_handlers:
            root.addHandler(handler)
        root.setLevel(saved_level)

    assert "[ Info     ]: Container updated." in log.read_text()
