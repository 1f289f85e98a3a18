"""Structured JSON logging for the question detection service."""

import logging
import sys
from pythonjsonlogger import jsonlogger
from config import config

# Attributes every LogRecord has; context under these names would be rejected by `extra`
RESERVED_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}

UTTERANCE_MARKER = "-utt-"


class DetectionJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter for detection logs.

    Records scoped to an utterance also carry its session, so one session
    can be followed across buffer, strategies and merger. Raw model
    payloads logged with malformed responses are cut to LOG_PAYLOAD_CHARS.
    """

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record['app'] = 'question-detection'
        log_record['environment'] = 'development' if config.api_debug else 'production'
        log_record['level'] = record.levelname

        utterance_id = log_record.get('utterance_id')
        if isinstance(utterance_id, str) and UTTERANCE_MARKER in utterance_id and 'session_id' not in log_record:
            log_record['session_id'] = utterance_id.rsplit(UTTERANCE_MARKER, 1)[0]

        payload = log_record.get('raw_payload')
        if isinstance(payload, str) and len(payload) > config.log_payload_chars:
            log_record['raw_payload'] = payload[:config.log_payload_chars] + '...'
            log_record['raw_payload_chars'] = len(payload)


def log_level() -> int:
    """API_DEBUG wins over LOG_LEVEL; unknown level names fall back to INFO."""
    if config.api_debug:
        return logging.DEBUG
    level = logging.getLevelName(config.log_level.upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logging():
    """Configure structured JSON logging on stdout."""
    logger = logging.getLogger('question_detection')
    level = log_level()
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(DetectionJsonFormatter(
        '%(timestamp)s %(level)s %(name)s %(message)s %(module)s %(lineno)d',
        rename_fields={'timestamp': '@timestamp', 'level': 'severity'}
    ))
    logger.addHandler(console_handler)

    return logger


logger = setup_logging()


def _context(kwargs: dict) -> dict:
    return {f'ctx_{key}' if key in RESERVED_ATTRS else key: value for key, value in kwargs.items()}


def log_info(message: str, **kwargs):
    """Log info message with additional context."""
    logger.info(message, extra=_context(kwargs))


def log_error(message: str, **kwargs):
    """Log error message with context, and the traceback when handling an exception."""
    logger.error(message, extra=_context(kwargs), exc_info=sys.exc_info()[0] is not None)


def log_warning(message: str, **kwargs):
    """Log warning message with additional context."""
    logger.warning(message, extra=_context(kwargs))


def log_debug(message: str, **kwargs):
    logger.debug(message, extra=_context(kwargs))
