import io
import logging

import pytest

from trento_fleet.logger import configure_logging, get_logger


@pytest.fixture
def log_stream():
    stream = io.StringIO()
    configure_logging("DEBUG", None, stream=stream)
    return stream


class TestFormatter:
    def test_event_message_and_fields(self, log_stream):
        get_logger("services.readiness").info("readiness.retry", "Probe not ready", probe="web", attempt=2)
        line = log_stream.getvalue().strip()
        assert "| INFO     | services.readiness | (*) readiness.retry | Probe not ready |" in line
        assert line.endswith("probe: web | attempt: 2")

    def test_context_host_comes_first(self, log_stream):
        logger = get_logger("services.readiness")
        with logger.context(host="vm15sp5rpm.westeurope.cloudapp.azure.com"):
            logger.warning("readiness.failed", "Probe failed", probe="web")
        logger.info("readiness.done", "Outside")
        first, second = log_stream.getvalue().strip().splitlines()
        assert "(!) readiness.failed | Probe failed | host: vm15sp5rpm.westeurope.cloudapp.azure.com | probe: web" in first
        assert "host:" not in second

    def test_level_filter(self):
        stream = io.StringIO()
        configure_logging("warning", None, stream=stream)
        get_logger("cli").debug("cli.debug", "hidden")
        assert stream.getvalue() == ""


class TestOperation:
    def test_start_step_complete(self, log_stream):
        with get_logger("services.terraform").operation("terraform.apply", "Running", log="tf.log") as op:
            op.step("init", "Terraform init finished", exit_code=0)
            op.step("apply", "Slow", level=logging.WARNING)
        lines = log_stream.getvalue().strip().splitlines()
        assert "(*) operation.start | Running | operation: terraform.apply | log: tf.log" in lines[0]
        assert "(*) >> init | Terraform init finished | operation: terraform.apply | exit_code: 0" in lines[1]
        assert "WARNING" in lines[2]
        assert "(*) operation.complete | Completed | operation: terraform.apply | duration_ms: " in lines[3]

    def test_error_is_logged_and_propagates(self, log_stream):
        with pytest.raises(RuntimeError):
            with get_logger("services.ssh_keys").operation("ssh_keys.setup", "Setting up"):
                raise RuntimeError("boom")
        last = log_stream.getvalue().strip().splitlines()[-1]
        assert "(x) operation.error | Failed" in last
        assert "error_type: RuntimeError | error: boom" in last

    def test_file_handler(self, tmp_path):
        log_file = tmp_path / "logs" / "trento-fleet.log"
        configure_logging("INFO", str(log_file), stream=io.StringIO())
        get_logger("cli").info("cli.run", "hello")
        for handler in logging.getLogger("trento_fleet").handlers:
            handler.flush()
        assert "hello" in log_file.read_text()
