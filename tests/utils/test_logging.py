"""
Tests for logging utilities.
"""

import logging

import pytest

from aliasgraph.utils.logging import ColoredFormatter, format_bytes, setup_logging


@pytest.fixture
def logger_name():
    name = 'aliasgraph.test_logging'
    yield name
    logger = logging.getLogger(name)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


class TestSetupLogging:
    """Test logger configuration."""

    def test_console_only(self, logger_name):
        logger = setup_logging(logger_name, file=False)

        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, ColoredFormatter)

    def test_plain_console(self, logger_name):
        logger = setup_logging(logger_name, colored=False)

        assert not isinstance(logger.handlers[0].formatter, ColoredFormatter)

    def test_file_handler(self, logger_name, tmp_path):
        logger = setup_logging(logger_name, log_dir=str(tmp_path), console=False, level=logging.DEBUG)
        logger.debug('converted 3 tensors')

        for handler in logger.handlers:
            handler.flush()
        (log_file,) = tmp_path.glob(f'{logger_name}_*.log')
        assert 'converted 3 tensors' in log_file.read_text()

    def test_repeated_setup_replaces_handlers(self, logger_name):
        setup_logging(logger_name)
        logger = setup_logging(logger_name)

        assert len(logger.handlers) == 1


class TestColoredFormatter:
    """Test level coloring."""

    def test_colors_level(self):
        formatter = ColoredFormatter('%(levelname)s %(message)s')
        record = logging.LogRecord('x', logging.WARNING, __file__, 1, 'hello', None, None)

        text = formatter.format(record)

        assert '\033[33m' in text
        assert record.levelname == 'WARNING'


class TestFormatBytes:
    """Test human-readable sizes."""

    def test_units(self):
        assert format_bytes(512) == '512 B'
        assert format_bytes(1536) == '1.50 KB'
        assert format_bytes(3 * 1024 ** 2) == '3.00 MB'
        assert format_bytes(5 * 1024 ** 4) == '5120.00 GB'
