import io
import logging

from facetview.core.log import (
    RunContextFilter,
    configure_logging,
    current_run_context,
    run_context,
)


def test_run_context_layers_and_restores():
    assert current_run_context() == {}
    with run_context(datasetKey="ds", attempt=1):
        with run_context(step="write") as ctx:
            assert ctx == {"datasetKey": "ds", "attempt": 1, "step": "write"}
            with run_context(step=None):
                assert "step" not in current_run_context()
        assert current_run_context() == {"datasetKey": "ds", "attempt": 1}
    assert current_run_context() == {}


def test_run_context_filter_renders_fields():
    record = logging.LogRecord("facetview.test", logging.INFO, __file__, 1, "msg", None, None)
    flt = RunContextFilter()
    flt.filter(record)
    assert record.run_context == ""
    with run_context(datasetKey="ds", step="load"):
        flt.filter(record)
    assert record.run_context == " [datasetKey=ds step=load]"


def test_configure_logging_is_idempotent_and_stamps_context():
    stream = io.StringIO()
    name = "facetview.tests.configure"
    logger = configure_logging(level="DEBUG", stream=stream, logger_name=name, propagate=False)
    configure_logging(level="DEBUG", stream=stream, logger_name=name, propagate=False)
    handlers = [h for h in logger.handlers if isinstance(h, logging.StreamHandler)]
    assert len(handlers) == 1
    with run_context(datasetKey="ds9"):
        logger.info("hello")
    assert "[datasetKey=ds9]" in stream.getvalue()
    assert "hello" in stream.getvalue()
