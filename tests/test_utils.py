import datetime
import logging

from questweave.utils import Config, setup_logging
from questweave.utils.text_utils import format_progress, sanitize_text, truncate_text
from questweave.utils.time_utils import hours_between


def test_format_progress():
    assert format_progress(0.5) == "50%"
    assert format_progress(0.575) == "57.5%"
    assert format_progress(1.0) == "100%"


def test_truncate_and_sanitize():
    assert truncate_text("abcdefghij", 6) == "abc..."
    assert truncate_text(None) == ""
    assert sanitize_text("caf\udce9") == "caf"
    assert sanitize_text(None) is None


def test_hours_between():
    start = datetime.datetime(2024, 1, 1, 10, 0)
    assert hours_between(start, start + datetime.timedelta(minutes=90)) == 1.5


def test_config_defaults():
    assert 0 < Config.UNLOCK_SCORE_THRESHOLD <= 1
    assert Config.DATABASE_URL


def test_setup_logging_quiets_libraries():
    setup_logging("DEBUG")
    assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
    assert logging.getLogger("aiogram").level == logging.WARNING
