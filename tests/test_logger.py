"""Tests for logging setup and structured log entries."""

import gzip
import json
import logging
from pathlib import Path

import pytest
from hypothesis import given
from hypothesis import strategies as st

from fpbackup.config import ConfigNotFoundError, ConfigurationError, LoggingConfig
from fpbackup.errors import NotFoundError, ParseError, SafetyAbort, TraversalRejected, ValidationError
from fpbackup.logger import (
    LOGGER_NAME,
    ErrorCode,
    GzipRotatingFileHandler,
    LoggingError,
    StructuredLogEntry,
    get_error_guidance,
    log_backup_completion,
    log_backup_error,
    log_structured,
    log_verification_result,
    map_exception_to_error_code,
    setup_logging,
)


@pytest.fixture(autouse=True)
def reset_package_logger():
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()


def flush(logger: logging.Logger) -> None:
    for handler in logger.handlers:
        handler.flush()


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_file_handlers_without_console(self, tmp_path: Path):
        config = LoggingConfig(
            level="INFO",
            log_file=tmp_path / "logs" / "a.log",
            error_log_file=tmp_path / "logs" / "a.err",
        )

        logger = setup_logging(config, console=False)

        assert len(logger.handlers) == 2
        assert all(isinstance(h, GzipRotatingFileHandler) for h in logger.handlers)
        assert (tmp_path / "logs").is_dir()

    def test_console_handler_added(self, tmp_path: Path):
        logger = setup_logging(
            log_file=tmp_path / "a.log",
            error_log_file=tmp_path / "a.err",
            console=True,
        )
        assert len(logger.handlers) == 3

    def test_repeated_setup_does_not_duplicate(self, tmp_path: Path):
        kwargs = dict(log_file=tmp_path / "a.log", error_log_file=tmp_path / "a.err", console=False)
        setup_logging(**kwargs)
        logger = setup_logging(**kwargs)
        assert len(logger.handlers) == 2

    def test_errors_go_to_both_files(self, tmp_path: Path):
        logger = setup_logging(
            log_file=tmp_path / "a.log",
            error_log_file=tmp_path / "a.err",
            level="DEBUG",
            console=False,
        )
        child = logging.getLogger(f"{LOGGER_NAME}.backup")

        child.info("routine")
        child.error("broken")
        flush(logger)

        main_log = (tmp_path / "a.log").read_text()
        error_log = (tmp_path / "a.err").read_text()
        assert "routine" in main_log and "broken" in main_log
        assert "broken" in error_log and "routine" not in error_log

    def test_invalid_level(self, tmp_path: Path):
        with pytest.raises(LoggingError, match="Invalid log level"):
            setup_logging(log_file=tmp_path / "a.log", error_log_file=tmp_path / "a.err", level="LOUD")


class TestGzipRotation:
    """Rotated log files are compressed."""

    def test_rotated_file_is_gzipped(self, tmp_path: Path):
        logger = setup_logging(
            log_file=tmp_path / "a.log",
            error_log_file=tmp_path / "a.err",
            max_bytes=200,
            backup_count=2,
            console=False,
        )

        for i in range(20):
            logger.info(f"line {i} " + "x" * 40)
        flush(logger)

        rotated = tmp_path / "a.log.1.gz"
        assert rotated.exists()
        with gzip.open(rotated, "rt") as f:
            assert "line" in f.read()
        assert not (tmp_path / "a.log.3.gz").exists()


class TestStructuredLogging:
    """Structured JSON entries."""

    def test_entry_carries_guidance(self):
        entry = StructuredLogEntry.create("WARNING", "all expired", ErrorCode.RETENTION_SAFETY_ABORT)
        assert entry.error_code == "E6001"
        assert entry.guidance == get_error_guidance(ErrorCode.RETENTION_SAFETY_ABORT)

    @given(
        message=st.text(max_size=50),
        code=st.sampled_from(list(ErrorCode)),
        context=st.dictionaries(st.text(max_size=10), st.integers(), max_size=3),
    )
    def test_json_carries_every_set_field(self, message, code, context):
        entry = StructuredLogEntry.create("ERROR", message, code, context or None)
        data = json.loads(entry.to_json())

        assert data["message"] == message
        assert data["error_code"] == code.value
        assert data["guidance"] == get_error_guidance(code)
        assert data.get("context") == (context or None)

    def test_log_structured_emits_json(self, caplog):
        logger = logging.getLogger(f"{LOGGER_NAME}.test")
        with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
            log_structured(logger, "ERROR", "copy failed", ErrorCode.RESTORE_FAILED, {"file": "a.txt"})

        parsed = json.loads(caplog.records[-1].getMessage())
        assert caplog.records[-1].levelno == logging.ERROR
        assert parsed["error_code"] == "E5004"
        assert parsed["context"] == {"file": "a.txt"}


class TestVerificationLogging:
    """log_verification_result picks the most severe finding."""

    @pytest.mark.parametrize(
        "corrupted, missing, extra, code",
        [
            (["a"], ["b"], ["c"], "E4001"),
            ([], ["b"], ["c"], "E4002"),
            ([], [], ["c"], "E4003"),
        ],
    )
    def test_findings(self, corrupted, missing, extra, code):
        logger = logging.getLogger(f"{LOGGER_NAME}.verify")
        entry = log_verification_result(logger, Path("/b"), 1, corrupted, missing, extra)
        assert entry.error_code == code

    def test_intact_returns_none(self, caplog):
        logger = logging.getLogger(f"{LOGGER_NAME}.verify")
        with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
            assert log_verification_result(logger, Path("/b"), 3, [], [], []) is None
        assert "3 file(s) intact" in caplog.text


class TestHelpers:
    """Small logging helpers."""

    @pytest.mark.parametrize(
        "exception, code",
        [
            (ConfigNotFoundError("x"), ErrorCode.CONFIG_NOT_FOUND),
            (ConfigurationError("x"), ErrorCode.CONFIG_INVALID),
            (NotFoundError("x"), ErrorCode.SNAPSHOT_NOT_FOUND),
            (ParseError("x"), ErrorCode.RESTORE_METADATA_INVALID),
            (TraversalRejected("/root", "../x"), ErrorCode.RESTORE_TRAVERSAL_REJECTED),
            (SafetyAbort("x"), ErrorCode.RETENTION_SAFETY_ABORT),
            (PermissionError("x"), ErrorCode.DESTINATION_UNWRITABLE),
            (RuntimeError("x"), ErrorCode.UNKNOWN_ERROR),
        ],
    )
    def test_map_exception_to_error_code(self, exception, code):
        assert map_exception_to_error_code(exception) is code

    def test_completion_formats_size(self, caplog):
        logger = logging.getLogger(f"{LOGGER_NAME}.backup")
        with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
            log_backup_completion(logger, 1.5, 3, 3 * 1024 * 1024, Path("/b/Backup_Full_1"))
        assert "3.00 MB" in caplog.text
        assert "Files backed up: 3" in caplog.text

    @pytest.mark.parametrize(
        "error, explicit, code",
        [
            (SafetyAbort("x"), None, "E6001"),
            (RuntimeError("x"), None, "E0001"),
            (ValidationError("no source"), ErrorCode.SOURCE_NOT_FOUND, "E2001"),
        ],
    )
    def test_backup_error_is_structured(self, caplog, error, explicit, code):
        logger = logging.getLogger(f"{LOGGER_NAME}.backup")
        with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
            entry = log_backup_error(logger, error, "copying", explicit)

        assert entry.error_code == code
        parsed = json.loads(caplog.records[-1].getMessage())
        assert parsed["message"] == f"Backup failed during copying: {error}"
        assert parsed["context"] == {"exception": type(error).__name__}
