"""Centralized logging configuration with Supabase support.

Every handler gets a RedactingFilter, so bearer tokens, authorization
codes, PKCE verifiers and client secrets are masked before a record is
written anywhere. Structured context passed as `extra={"context": {...}}`
is scrubbed by key as well.

Sinks:
- stderr, plain text (always)
- Supabase `logs` table, JSON rows sent in batches (when configured)
"""

import atexit
import json
import logging
import os
import re
import sys
import threading
from datetime import datetime, timezone
from queue import Empty, Full, Queue
from typing import Any, Optional

REDACTED = "[REDACTED]"

SENSITIVE_KEYS = frozenset({
    "access_token",
    "refresh_token",
    "id_token",
    "token",
    "code",
    "code_verifier",
    "client_secret",
    "password",
    "authorization",
    "cookie",
    "state",
})

_TOKEN_PATTERNS = [
    (re.compile(r"(?i)\b(bearer)\s+[A-Za-z0-9\-._~+/]+=*"), r"\1 " + REDACTED),
    (re.compile(
        r"(?i)\b(access_token|refresh_token|id_token|client_secret|code_verifier|password|authorization|cookie)"
        r"(\"?\s*[=:]\s*\"?)([^\s&\"',]+)"),
     r"\1\2" + REDACTED),
    (re.compile(r"\beyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*"), REDACTED),
]

_TAG = re.compile(r"\[([A-Z_]+)\]\s*(.*)", re.S)


def redact(text: str) -> str:
    """Mask token values and credentials in free text."""
    for pattern, replacement in _TOKEN_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def scrub(value: Any) -> Any:
    """Copy of a structured value with sensitive keys masked."""
    if isinstance(value, dict):
        return {
            k: REDACTED if str(k).lower() in SENSITIVE_KEYS else scrub(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [scrub(v) for v in value]
    if isinstance(value, str):
        return redact(value)
    return value


class RedactingFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        cleaned = redact(message)
        if cleaned != message or record.args:
            record.msg = cleaned
            record.args = None
        context = getattr(record, "context", None)
        if context is not None:
            record.context = scrub(context)
        return True


def split_tag(message: str) -> tuple[Optional[str], str]:
    """'[TOKEN] issued' -> ('TOKEN', 'issued')."""
    match = _TAG.match(message)
    if match:
        return match.group(1), match.group(2)
    return None, message


class JSONFormatter(logging.Formatter):
    """One JSON object per record, shaped like a row of the `logs` table."""

    def __init__(self, service_name: str = None, environment: str = None):
        super().__init__()
        self.service_name = service_name or "mcp-oauth-broker"
        self.environment = environment

    def build_entry(self, record: logging.LogRecord) -> dict:
        tag, message = split_tag(record.getMessage())
        extra = {"logger": record.name, "function": record.funcName, "line": record.lineno}

        context = getattr(record, "context", None)
        if context:
            extra["context"] = scrub(context)
        if record.exc_info:
            extra["exception"] = redact(self.formatException(record.exc_info))

        return {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "service": self.service_name,
            "environment": self.environment,
            "level": record.levelname,
            "tag": tag,
            "message": message,
            "module": record.module,
            "extra": extra,
        }

    def format(self, record: logging.LogRecord) -> str:
        return json.dumps(self.build_entry(record), default=str)


class PlainFormatter(logging.Formatter):
    """Plain text formatter for stderr output (local debugging)."""

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )


class SupabaseHandler(logging.Handler):
    """Batch log rows into a Supabase table.

    Rows are sent when batch_size rows are waiting and every
    flush_interval seconds from a daemon thread. The queue is bounded:
    while Supabase is unreachable, rows beyond max_queue are dropped and
    counted rather than held in memory.
    """

    def __init__(
        self,
        supabase_client,
        service_name: str,
        table: str = "logs",
        batch_size: int = 20,
        flush_interval: float = 10.0,
        max_queue: int = 5000,
    ):
        super().__init__()
        self.supabase = supabase_client
        self.service_name = service_name
        self.table = table
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.dropped = 0

        self._queue: Queue = Queue(maxsize=max_queue)
        self._send_lock = threading.Lock()
        self._shutdown = threading.Event()
        self._worker = threading.Thread(target=self._run, name="supabase-log-flush", daemon=True)
        self._worker.start()

        atexit.register(self.close)

    def _row(self, record: logging.LogRecord) -> dict:
        if isinstance(self.formatter, JSONFormatter):
            return self.formatter.build_entry(record)
        tag, message = split_tag(redact(record.getMessage()))
        return {
            "service": self.service_name,
            "level": record.levelname,
            "tag": tag,
            "message": message,
            "module": record.module,
            "extra": {},
        }

    def emit(self, record: logging.LogRecord):
        try:
            self._queue.put_nowait(self._row(record))
        except Full:
            self.dropped += 1
            return
        except Exception:
            self.handleError(record)
            return

        if self._queue.qsize() >= self.batch_size:
            self.flush()

    def _run(self):
        while not self._shutdown.wait(self.flush_interval):
            self.flush()

    def _drain(self, limit: int) -> list:
        rows = []
        while len(rows) < limit:
            try:
                rows.append(self._queue.get_nowait())
            except Empty:
                break
        return rows

    def flush(self):
        """Send up to two batches of queued rows."""
        with self._send_lock:
            rows = self._drain(self.batch_size * 2)
            if not rows or not self.supabase:
                return
            try:
                self.supabase.table(self.table).insert(rows).execute()
            except Exception as e:
                # stderr only: logging here would recurse into this handler
                print(f"[WARNING] Failed to send {len(rows)} logs to Supabase: {e}", file=sys.stderr)

    def close(self):
        if self._shutdown.is_set():
            return
        self._shutdown.set()
        while not self._queue.empty():
            before = self._queue.qsize()
            self.flush()
            if self._queue.qsize() >= before:
                break
        if self.dropped:
            print(f"[WARNING] {self.dropped} log rows were dropped (Supabase queue full)", file=sys.stderr)
        super().close()


def setup_logging(
    service_name: str = None,
    level: str = "INFO",
    environment: str = None,
    supabase_client=None,
) -> logging.Logger:
    """Configure the root logger.

    Args:
        service_name: Name attached to structured log rows.
        level: Root log level.
        environment: Deployment environment (development/production).
        supabase_client: Supabase client for remote logging, or None.

    Returns:
        The configured root logger. Handlers from an earlier call are
        closed first, so calling this twice does not leak flush threads.
    """
    service_name = service_name or os.getenv("SERVICE_NAME", "mcp-oauth-broker")
    redacting = RedactingFilter()

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        if isinstance(handler, SupabaseHandler):
            handler.close()
    root_logger.handlers.clear()
    root_logger.setLevel(level)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(level)
    stderr_handler.setFormatter(PlainFormatter())
    stderr_handler.addFilter(redacting)
    root_logger.addHandler(stderr_handler)

    supabase_enabled = False
    if supabase_client:
        try:
            handler = SupabaseHandler(supabase_client=supabase_client, service_name=service_name)
            handler.setLevel(logging.INFO)
            handler.setFormatter(JSONFormatter(service_name, environment))
            handler.addFilter(redacting)
            root_logger.addHandler(handler)
            supabase_enabled = True
        except Exception as e:
            print(f"[WARNING] Supabase logging setup failed: {e}", file=sys.stderr)

    # Supabase and the provider client both use httpx
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    if supabase_enabled:
        logger.info(f"[STARTUP] Supabase logging enabled for service: {service_name}")
    else:
        logger.info("[STARTUP] Supabase logging disabled (no client)")

    return root_logger
