import json
import logging

from tusvault.tracing import current_trace_id

REQUEST_LOGGER = "tusvault.request"
AUDIT_LOGGER = "tusvault.audit"
FINALIZE_LOGGER = "tusvault.finalize"


def _json_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return logger


request_logger = _json_logger(REQUEST_LOGGER)
audit_logger = _json_logger(AUDIT_LOGGER)
finalize_logger = _json_logger(FINALIZE_LOGGER)


def _emit(logger: logging.Logger, payload: dict, level: int = logging.INFO) -> None:
    payload.setdefault("trace_id", current_trace_id())
    logger.log(level, json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str))


def log_event(payload: dict) -> None:
    _emit(request_logger, payload)


def audit_event(payload: dict) -> None:
    payload.setdefault("event", "audit")
    _emit(audit_logger, payload)


def finalize_event(payload: dict, level: int = logging.INFO) -> None:
    _emit(finalize_logger, payload, level)
