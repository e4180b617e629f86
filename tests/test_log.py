import sys

from loguru import logger

from feed_engine.log import setup_logging


def test_setup_logging_writes_daily_file(tmp_path):
    try:
        setup_logging("debug", log_dir=tmp_path)
        logger.debug("hello from the tests")

        files = list(tmp_path.glob("feed_engine_*.log"))
        assert len(files) == 1
        assert "hello from the tests" in files[0].read_text()
    finally:
        logger.remove()
        logger.add(sys.stderr)
