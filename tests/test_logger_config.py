import io
import logging

import pytest

from logger_config import get_logger, setup_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def test_setup_logging_writes_formatted_lines():
    stream = io.StringIO()
    setup_logging('debug', stream=stream)

    get_logger('code_graph.test').debug("resolved %d edges", 3)

    line = stream.getvalue()
    assert ' - code_graph.test - DEBUG - ' in line
    assert line.rstrip().endswith('resolved 3 edges')


def test_repeated_setup_replaces_the_handler():
    first, second = io.StringIO(), io.StringIO()
    setup_logging('INFO', stream=first)
    setup_logging('WARNING', stream=second)

    logging.getLogger('jobs').info("hidden")
    logging.getLogger('jobs').warning("shown")

    assert len(logging.getLogger().handlers) == 1
    assert first.getvalue() == ''
    assert 'shown' in second.getvalue() and 'hidden' not in second.getvalue()


def test_unknown_level_falls_back_to_info():
    setup_logging('chatty', stream=io.StringIO())
    assert logging.getLogger().level == logging.INFO
