"""Structured ``event=... key=value`` logging for the cascade service.

Everything logs under the ``cascademerge`` logger. ``configure_logging`` picks
one of three modes: quiet (nothing is emitted), ``low`` (warnings plus the
events an operator acts on) and ``high`` (every event).
"""

from __future__ import annotations

from contextlib import contextmanager
import json
import logging
import sys
import threading
from typing import Final, Iterator, Literal, cast


_LOGGER_NAME: Final[str] = "cascademerge"
_MAX_VALUE_LEN: Final[int] = 120
_NO_REPO: Final[str] = "-"
_LINE_FORMAT: Final[str] = (
    "%(asctime)s %(levelname)s %(name)s [%(threadName)s] "
    "repo_full_name=%(repo_full_name)s %(message)s"
)
_OPERATOR_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "webhook_rejected",
        "webhook_payload_invalid",
        "cascade_pr_created",
        "cascade_pr_merged",
        "cascade_pr_failed",
        "cascade_event_failed",
        "development_branch_lookup_failed",
        "bitbucket_request_failed",
    }
)

_repo_context = threading.local()


VerboseMode = Literal["low", "high"]


def configure_logging(verbose: bool | str | None) -> None:
    logger = logging.getLogger(_LOGGER_NAME)
    logger.propagate = False
    logger.handlers.clear()
    mode = _verbose_mode(verbose)

    if mode is None:
        logger.addHandler(logging.NullHandler())
        logger.setLevel(logging.CRITICAL + 1)
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(_LINE_FORMAT))
    handler.addFilter(_CascadeRecordFilter(mode))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


def log_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.info(_format_event(event, fields))


def log_warning_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.warning(_format_event(event, fields))


@contextmanager
def logging_repo_context(repo_full_name: str | None) -> Iterator[None]:
    """Attribute log lines from this thread to ``repo_full_name`` until exit."""
    previous = getattr(_repo_context, "repo_full_name", None)
    _repo_context.repo_full_name = repo_full_name
    try:
        yield
    finally:
        _repo_context.repo_full_name = previous


def _format_event(event: str, fields: dict[str, object]) -> str:
    rendered = [f"event={_render_value(event)}"]
    rendered.extend(f"{key}={_render_value(fields[key])}" for key in sorted(fields))
    return " ".join(rendered)


def _render_value(value: object) -> str:
    if value is None:
        text = "null"
    elif isinstance(value, bool):
        text = str(value).lower()
    elif isinstance(value, int | float):
        text = str(value)
    elif isinstance(value, str):
        text = " ".join(value.split())
        if len(text) > _MAX_VALUE_LEN:
            text = text[:_MAX_VALUE_LEN] + "..."
        text = text or "<empty>"
    elif isinstance(value, tuple | list):
        # Reviewer uuids and branch lists.
        text = ",".join(_render_value(item) for item in value) or "<empty>"
    else:
        text = f"<{type(value).__name__}>"

    if "=" in text or any(ch.isspace() for ch in text):
        return json.dumps(text)
    return text


def _verbose_mode(verbose: bool | str | None) -> VerboseMode | None:
    if verbose is None or verbose is False:
        return None
    if verbose is True:
        return "high"
    mode = verbose.strip().lower()
    if mode not in ("low", "high"):
        raise ValueError(f"Unsupported verbose mode: {verbose!r}")
    return cast(VerboseMode, mode)


def _message_field(message: str, key: str) -> str | None:
    """Return the value of ``key=`` in an event line, decoding quoted values."""
    prefix = f"{key}="
    for token in message.split(" "):
        if not token.startswith(prefix):
            continue
        raw = token[len(prefix) :]
        if not raw.startswith('"'):
            return raw or None
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            return raw
        return decoded if isinstance(decoded, str) else raw
    return None


def _repo_full_name_for_record(record: logging.LogRecord) -> str:
    bound = getattr(_repo_context, "repo_full_name", None)
    if bound:
        return bound
    return _message_field(record.getMessage(), "repo_full_name") or _NO_REPO


class _CascadeRecordFilter(logging.Filter):
    def __init__(self, mode: VerboseMode) -> None:
        super().__init__()
        self.mode = mode

    def filter(self, record: logging.LogRecord) -> bool:
        record.repo_full_name = _repo_full_name_for_record(record)
        if self.mode == "high" or record.levelno >= logging.WARNING:
            return True
        message = record.getMessage()
        if not message.startswith("event="):
            return False
        return _message_field(message, "event") in _OPERATOR_EVENTS
