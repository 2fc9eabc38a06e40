import logging

from logger_utils import ColoredFormatter, setup_logging, shutdown_logging


def make_record(level=logging.WARNING, msg="reset delegate subscription: boom"):
    return logging.LogRecord("stake_watcher", level, __file__, 1, msg, None, None)


def test_plain_format_includes_logger_name():
    formatter = ColoredFormatter(use_colors=False)
    line = formatter.format(make_record())
    assert line.endswith("- WARNING - stake_watcher - reset delegate subscription: boom")


def test_setup_levels_and_quiet_libraries():
    root = setup_logging(verbose=True, no_color=True)
    try:
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert logging.getLogger("web3").level == logging.WARNING

        setup_logging(verbose=False, no_color=True)
        assert root.level == logging.INFO
        assert len(root.handlers) == 1
    finally:
        shutdown_logging(root)
    assert root.handlers == []
