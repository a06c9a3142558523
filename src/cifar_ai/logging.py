from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Final, Literal, Protocol, runtime_checkable

from .request_context import request_id_var

_LOGGER_NAME: Final[str] = "cifar_ai"
_EVT_PREFIX: Final[str] = "EVT "
_INT_FIELDS: Final[frozenset[str]] = frozenset({"latency_ms", "shards", "bytes", "index"})
_FLOAT_FIELDS: Final[frozenset[str]] = frozenset({"confidence"})

LogStyle = Literal["json", "pretty", "auto"]


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        payload: dict[str, object] = {
            "ts": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": msg,
        }
        rid = request_id_var.get()
        if rid:
            payload["request_id"] = rid
        extra = _parse_evt_fields(msg)
        if "event" in extra:
            payload["message"] = str(extra.pop("event"))
        payload.update(extra)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class _ConsoleFormatter(logging.Formatter):
    """Colorized single-line formatter for terminals.

    The first bare token is shown as the event name and ``key=value`` tokens
    are highlighted; EVT messages are unpacked the same way.
    """

    _RESET = "\x1b[0m"
    _BOLD = "\x1b[1m"
    _DIM = "\x1b[2m"
    _GRAY = "\x1b[90m"
    _RED = "\x1b[91m"
    _GREEN = "\x1b[92m"
    _YELLOW = "\x1b[93m"
    _BLUE = "\x1b[94m"
    _MAGENTA = "\x1b[95m"
    _CYAN = "\x1b[36m"
    _WHITE = "\x1b[97m"

    _LEVELS: Final[tuple[tuple[int, str, str], ...]] = (
        (logging.CRITICAL, "CRIT", _MAGENTA),
        (logging.ERROR, "ERROR", _RED),
        (logging.WARNING, "WARN", _YELLOW),
        (logging.INFO, "INFO", _CYAN),
    )

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.now(UTC).strftime("%H:%M:%S")
        parts: list[str] = [f"{self._DIM}[{ts}]{self._RESET}", self._level_tag(record.levelno)]
        if record.name and record.name != _LOGGER_NAME:
            parts.append(f"{self._DIM}{self._GRAY}{record.name}{self._RESET}")

        event, kv_pairs, tail = self._split_message(record.getMessage())
        if event:
            parts.append(f"{self._BOLD}{self._BLUE}{event}{self._RESET}")
        for k, v in kv_pairs:
            parts.append(f"{self._DIM}{self._CYAN}{k}{self._RESET}={self._color_value(k, v)}")
        if tail:
            parts.append(tail)
        if record.exc_info:
            parts.append(f"\n{self._RED}{self.formatException(record.exc_info)}{self._RESET}")

        rid = request_id_var.get()
        if rid:
            parts.append(f"{self._DIM}{self._GRAY}rid={rid}{self._RESET}")
        return " ".join(parts)

    def _level_tag(self, level: int) -> str:
        for threshold, name, color in self._LEVELS:
            if level >= threshold:
                return f"{self._BOLD}{color}[{name}]{self._RESET}"
        return f"{self._BOLD}{self._GRAY}[DEBUG]{self._RESET}"

    def _split_message(self, msg: str) -> tuple[str | None, list[tuple[str, str]], str | None]:
        if msg.startswith(_EVT_PREFIX):
            extra = _parse_evt_fields(msg)
            name = str(extra.pop("event", "event"))
            return name, [(k, str(v)) for k, v in extra.items()], None
        toks = msg.split()
        if not toks:
            return None, [], None
        event: str | None = None
        if "=" not in toks[0]:
            event = toks[0]
            toks = toks[1:]
        kv: list[tuple[str, str]] = []
        rest: list[str] = []
        for t in toks:
            k, sep, v = t.partition("=")
            if sep and k.strip():
                kv.append((k.strip(), v))
            else:
                rest.append(t)
        return event, kv, (" ".join(rest) if rest else None)

    def _color_value(self, key: str, v: str) -> str:
        ks = key.lower()
        vs = v.strip()
        if ks.endswith("_ms") or ks.endswith("_s") or ks.endswith("seconds"):
            color = self._MAGENTA
        elif ks in {"label", "source"}:
            color = self._GREEN
        elif vs.lower() in {"true", "false"}:
            color = self._CYAN
        elif _is_float_str(vs):
            color = self._GREEN
        else:
            color = self._WHITE
        return f"{color}{vs}{self._RESET}"


def log_event(event: str, fields: Mapping[str, object] | None = None) -> None:
    """Emit a structured ``EVT`` line; values containing spaces are dropped."""
    parts: list[str] = [f"event={event}"]
    for key, val in (fields or {}).items():
        if isinstance(val, bool):
            parts.append(f"{key}={'true' if val else 'false'}")
        elif isinstance(val, int | float):
            parts.append(f"{key}={val}")
        elif isinstance(val, str) and val and not any(c.isspace() for c in val):
            parts.append(f"{key}={val}")
    get_logger().info(_EVT_PREFIX + " ".join(parts))


def _parse_evt_fields(msg: str) -> dict[str, object]:
    if not msg.startswith(_EVT_PREFIX):
        return {}
    out: dict[str, object] = {}
    for tok in msg[len(_EVT_PREFIX) :].split():
        k, sep, v = tok.partition("=")
        key = k.strip()
        if not sep or not key:
            continue
        val: object = v
        if key in _INT_FIELDS and v.isdigit():
            val = int(v)
        elif key in _FLOAT_FIELDS and _is_float_str(v):
            val = float(v)
        elif v in {"true", "false"}:
            val = v == "true"
        out[key] = val
    return out


def _is_float_str(s: str) -> bool:
    return bool(s) and s.count(".") <= 1 and s.replace(".", "", 1).isdigit()


def _env_level() -> int:
    v = os.environ.get("CIFAR_LOG_LEVEL", "").strip().upper()
    return {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }.get(v, logging.INFO)


def _env_truthy(name: str) -> bool:
    v = os.environ.get(name)
    if not v:
        return False
    return v.strip().lower() in {"1", "true", "yes", "on", "y"}


def init_logging(style: LogStyle = "auto") -> logging.Logger:
    """Initialize or refresh the project logger.

    Any existing StreamHandler is replaced by one bound to the current
    ``sys.stdout`` so repeated calls (and pytest's capture) never duplicate
    output.
    """
    logger = logging.getLogger(_LOGGER_NAME)
    lvl = _env_level()
    logger.setLevel(lvl)
    logger.propagate = _env_truthy("CIFAR_LOG_PROPAGATE") or _env_truthy("LOG_PROPAGATE")

    for h in list(logger.handlers):
        if isinstance(h, logging.StreamHandler):
            logger.removeHandler(h)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(_choose_formatter(style))
    handler.setLevel(lvl)
    logger.addHandler(handler)
    return logger


def get_logger() -> logging.Logger:
    return logging.getLogger(_LOGGER_NAME)


@runtime_checkable
class _HasIsatty(Protocol):
    def isatty(self) -> bool: ...


def _choose_formatter(style: LogStyle = "auto") -> logging.Formatter:
    if style == "json":
        return _JsonFormatter()
    if style == "pretty":
        return _ConsoleFormatter()

    force_json = _env_truthy("CIFAR_LOG_JSON") or _env_truthy("LOG_JSON")
    force_pretty = _env_truthy("CIFAR_LOG_PRETTY") or _env_truthy("LOG_PRETTY")
    out_stream = sys.stdout
    is_tty = isinstance(out_stream, _HasIsatty) and bool(out_stream.isatty())
    if not force_json and (force_pretty or is_tty):
        return _ConsoleFormatter()
    return _JsonFormatter()
