import logging
import json
from logging.handlers import RotatingFileHandler
from pathlib import Path
from datetime import datetime, timezone
from typing import Optional, Union

from .error_handler import classify_error, mask_credential
from .utils.paths import get_logs_dir


class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logs."""

    def format(self, record):
        # The message is already a dict, so we just format it as a JSON string
        return json.dumps(record.msg)


# Module-level state for lazy initialization
_failure_logger: Optional[logging.Logger] = None
_configured_logs_dir: Optional[Path] = None


def configure_failure_logger(logs_dir: Optional[Union[Path, str]] = None) -> None:
    """
    Configure the failure logger to use a specific logs directory.

    Call this before first use if you want to override the default location.
    If not called, the logger will use get_logs_dir() on first use.
    """
    global _configured_logs_dir, _failure_logger
    _configured_logs_dir = Path(logs_dir) if logs_dir else None
    # Reset logger so it gets reconfigured on next use
    _failure_logger = None


def _setup_failure_logger(logs_dir: Path) -> logging.Logger:
    """Sets up a dedicated JSON logger writing detailed failures to logs/failures.log."""
    logger = logging.getLogger("gemini_relay.failures")
    logger.setLevel(logging.INFO)
    logger.propagate = False

    # Clear existing handlers to prevent duplicates on re-setup
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()

    try:
        logs_dir.mkdir(parents=True, exist_ok=True)

        handler = RotatingFileHandler(
            logs_dir / "failures.log",
            maxBytes=5 * 1024 * 1024,  # 5 MB
            backupCount=2,
            encoding="utf-8",
        )
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)
    except OSError as e:
        logging.warning(f"Cannot create failure log file handler: {e}")
        logger.addHandler(logging.NullHandler())

    return logger


def get_failure_logger() -> logging.Logger:
    global _failure_logger

    if _failure_logger is None:
        logs_dir = _configured_logs_dir if _configured_logs_dir else get_logs_dir()
        _failure_logger = _setup_failure_logger(logs_dir)

    return _failure_logger


main_lib_logger = logging.getLogger("gemini_relay")


def _extract_response_body(error: Exception) -> Optional[str]:
    """Pull the upstream response body off our own errors or httpx errors."""
    body = getattr(error, "body", None)
    if body:
        return str(body)

    response = getattr(error, "response", None)
    if response is not None:
        try:
            return response.text
        except Exception:
            return None
    return None


def log_failure(
    api_key: str,
    model: str,
    attempt: int,
    error: Exception,
    tier: Optional[str] = None,
):
    """
    Logs a detailed failure record to failures.log and a one-line summary to
    the library logger. The key is always masked.

    Args:
        api_key: The key that was used
        model: The model that was requested
        attempt: The attempt number within the request (1-based)
        error: The exception that occurred
        tier: Key tier the credential belongs to ("premium" / "regular")
    """
    raw_response = _extract_response_body(error)
    failure_class = classify_error(error)
    status_code = getattr(error, "status_code", None)

    detailed_log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "api_key_ending": mask_credential(api_key),
        "key_tier": tier,
        "model": model,
        "attempt_number": attempt,
        "failure_class": failure_class.value,
        "status_code": status_code,
        "error_type": type(error).__name__,
        "error_message": str(error)[:5000],
        "raw_response": raw_response[:10000] if raw_response else None,
    }

    summary_message = (
        f"Call failed for model {model} with {tier or 'unknown'} key "
        f"{mask_credential(api_key)}: {failure_class.value}"
        + (f" (HTTP {status_code})" if status_code else "")
        + f". Error: {type(error).__name__}."
    )

    try:
        get_failure_logger().error(detailed_log_data)
    except OSError as e:
        logging.warning(f"Failed to write to failures.log: {e}")

    main_lib_logger.warning(summary_message)
