import json
import logging
import sys
import traceback

import loguru
from fastapi import Response
from loguru import logger

from scim_sync.monitoring.request_context import request_id_ctx

# Third-party stdlib loggers that are too chatty at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "asyncpg", "uvicorn.access")

# Extra keys and response headers whose values never reach the log sink
SECRET_KEYS = frozenset(
    {"authorization", "bearer_token", "token", "password", "api_key", "domain_db_connection_string"}
)
REDACTED = "***"

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<magenta>{pair}</magenta> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<bold><white>{message}</white></bold> | <dim>{extra}</dim> {stacktrace}"
)


# Loggers configuration runs at application creation -- scim_sync.main.create_app
def configure_logger(log_level: str = "INFO"):
    """
    Configure loguru logger with a structured stdout sink.

    Args:
        log_level: Minimum level written to stdout
    """
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.remove()  # remove the default logger

    logger.add(
        sink=sys.stdout,
        level=log_level.upper(),
        diagnose=False,
        format=LOG_FORMAT,
        filter=process_log_record,
    )


def process_log_record(record: "loguru.Record") -> "loguru.Record":
    r"""
    Prepare a record for the stdout sink.

    1. ``pair`` names the (tenant, provider) pair the engine was working on,
       taken from the ``tenant_id``/``provider_id`` extras that poll cycles
       contextualize and reconciler calls pass; "-" outside of any pair.
    2. The current request id is added to the extras of records logged while
       serving an API call.
    3. Credentials are redacted and the extras are serialized to JSON.
    4. Error logs get their traceback on one line (\r instead of \n) so the
       aggregator does not split it into multiple events.
    """
    extra = record["extra"]
    record["pair"] = pair_label(extra)

    request_id = request_id_ctx.get()
    if request_id and "request_id" not in extra:
        extra["request_id"] = request_id

    if extra:
        record["extra"] = json.dumps(redact(extra), default=str)

    record["stacktrace"] = ""
    if record["exception"]:
        record["stacktrace"] = get_formatted_stacktrace(
            record["exception"], replace_newline_character_with_carriage_return=True
        )

    return record


def pair_label(extra: dict) -> str:
    tenant_id = extra.get("tenant_id")
    provider_id = extra.get("provider_id")
    if tenant_id and provider_id:
        return f"{tenant_id}:{provider_id}"
    return tenant_id or "-"


def redact(values: dict) -> dict:
    """Copy of ``values`` with secret-looking keys masked, nested dictionaries included."""
    redacted = {}
    for key, value in values.items():
        if str(key).lower() in SECRET_KEYS:
            redacted[key] = REDACTED
        elif isinstance(value, dict):
            redacted[key] = redact(value)
        else:
            redacted[key] = value
    return redacted


def get_formatted_stacktrace(loguru_record_exception, replace_newline_character_with_carriage_return: bool) -> str:
    """Get the formatted stacktrace for the current exception."""
    exc_type, exc_value, exc_traceback = loguru_record_exception
    stacktrace = "".join(traceback.format_exception(exc_type, exc_value, exc_traceback))
    if replace_newline_character_with_carriage_return:
        stacktrace = stacktrace.replace("\n", "\r")
    return stacktrace


def log_response_info(response: Response):
    """Log an error response; credentials in headers are masked."""
    response_info = {
        "status_code": response.status_code,
        "headers": redact(dict(response.headers.items())),
    }
    logger.debug("Response sent", http_response=response_info)
