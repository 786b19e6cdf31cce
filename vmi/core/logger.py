# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vmi/core/logger.py
"""
Logging for vmi: one project logger ("vmi") with an emoji line format on
the console, NDJSON when asked for, a TRACE level below DEBUG, and context
key=value pairs carried by bound adapters (job endpoints, upload parts).
"""
from __future__ import annotations

import datetime as _dt
import json
import logging
import os
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from termcolor import colored as _colored

from .utils import is_tty

TRACE = 5
if not hasattr(logging, "TRACE"):
    logging.TRACE = TRACE  # type: ignore[attr-defined]
    logging.addLevelName(TRACE, "TRACE")


def _logger_trace(self: logging.Logger, msg: str, *args, **kwargs) -> None:
    if self.isEnabledFor(TRACE):
        self._log(TRACE, msg, args, **kwargs)


if not hasattr(logging.Logger, "trace"):
    logging.Logger.trace = _logger_trace  # type: ignore[attr-defined]

# levelname -> (emoji, termcolor color)
_LEVELS: Dict[str, Tuple[str, str]] = {
    "TRACE": ("🧬", "cyan"),
    "DEBUG": ("🔍", "blue"),
    "INFO": ("✅", "green"),
    "WARNING": ("⚠️", "yellow"),
    "ERROR": ("💥", "red"),
    "CRITICAL": ("🧨", "red"),
}

Ctx = Mapping[str, Any]


def c(text: str, color: Optional[str] = None, attrs: Optional[List[str]] = None, *, enable: bool = True) -> str:
    """Colorize text when enabled."""
    if not enable or not color:
        return text
    return _colored(text, color=color, attrs=attrs or [])


def _emoji_ok(stream: Any = None) -> bool:
    enc = getattr(stream or sys.stderr, "encoding", None) or "utf-8"
    try:
        "✅".encode(enc)
    except (LookupError, UnicodeEncodeError):
        return False
    return True


def _clip(v: Any, max_len: int = 240) -> str:
    s = str(v).replace("\n", "\\n").replace("\r", "\\r")
    return s if len(s) <= max_len else s[: max_len - 1] + "…"


def _ctx_suffix(ctx: Optional[Ctx]) -> str:
    if not ctx:
        return ""
    return " " + " ".join(f"{_clip(k, 80)}={_clip(v)}" for k, v in sorted(ctx.items(), key=lambda kv: str(kv[0])))


class ContextLoggerAdapter(logging.LoggerAdapter):
    """
    Adapter with a persistent context dict, rendered after the message.
    `extra={"ctx": {...}}` on a call merges on top for that record only.

      log = Log.bind(logger, src="disk.img", dst="disk.vmdk")
      log.info("Writing")
      log.warning("Part retried", extra={"ctx": {"part": 3}})
    """

    def __init__(self, logger: logging.Logger, ctx: Optional[Ctx] = None):
        super().__init__(logger, extra={"ctx": dict(ctx or {})})

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> Tuple[Any, Dict[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        extra["ctx"] = {**self.extra["ctx"], **(extra.get("ctx") or {})}
        kwargs["extra"] = extra
        return msg, kwargs

    def bind(self, **ctx: Any) -> "ContextLoggerAdapter":
        return ContextLoggerAdapter(self.logger, {**self.extra["ctx"], **ctx})


@dataclass(frozen=True)
class LogStyle:
    color: bool = True
    show_ms: bool = False
    show_src: bool = False
    show_thread: bool = False  # reader and upload worker threads
    show_logger: bool = False
    utc: bool = False
    emoji: bool = True


class EmojiFormatter(logging.Formatter):
    """`HH:MM:SS 🔍 DEBUG    [extras] message key=value ...`"""

    def __init__(self, style: LogStyle, stream: Any = None):
        super().__init__()
        self.style = style
        self._color = style.color and is_tty(stream if stream is not None else sys.stderr)

    def _clock(self, created: float) -> str:
        tz = _dt.timezone.utc if self.style.utc else None
        dt = _dt.datetime.fromtimestamp(created, tz=tz)
        return dt.strftime("%H:%M:%S.%f")[:-3] if self.style.show_ms else dt.strftime("%H:%M:%S")

    def _extras(self, record: logging.LogRecord) -> str:
        bits: List[str] = []
        if self.style.show_thread:
            bits.append(f"thread={record.threadName}")
        if self.style.show_logger:
            bits.append(record.name)
        if self.style.show_src:
            bits.append(f"{record.module}:{record.lineno}")
        return " [" + " ".join(bits) + "]" if bits else ""

    def format(self, record: logging.LogRecord) -> str:
        emoji, color = _LEVELS.get(record.levelname, ("•", ""))
        if not self.style.emoji:
            emoji = "·"
        lvl = c(f"{record.levelname:<8}", color, enable=self._color)
        msg = record.getMessage()
        if record.levelno >= logging.WARNING:
            msg = c(msg, color, ["bold"], enable=self._color)
        line = f"{self._clock(record.created)} {emoji} {lvl}{self._extras(record)} {msg}"
        line += _ctx_suffix(getattr(record, "ctx", None))
        if record.exc_info:
            line += "\n" + "\n".join("  " + ln for ln in self.formatException(record.exc_info).splitlines())
        return line


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for CI and log shipping."""

    def __init__(self, *, utc: bool = True):
        super().__init__()
        self.utc = utc

    def format(self, record: logging.LogRecord) -> str:
        tz = _dt.timezone.utc if self.utc else None
        obj: Dict[str, Any] = {
            "ts": _dt.datetime.fromtimestamp(record.created, tz=tz).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "pid": os.getpid(),
            "thread": record.threadName,
        }
        ctx = getattr(record, "ctx", None)
        if ctx:
            obj["ctx"] = {str(k): _clip(v) for k, v in ctx.items()}
        if record.exc_info:
            obj["exc_type"] = record.exc_info[0].__name__ if record.exc_info[0] else "Exception"
            obj["traceback"] = self.formatException(record.exc_info)
        return json.dumps(obj, ensure_ascii=False)


_setup_lock = threading.Lock()


class Log:
    @staticmethod
    def level_for(verbose: int, quiet: int) -> int:
        """
        default INFO; -q WARNING, -qq ERROR; -vv DEBUG, -vvv TRACE.
        Quiet wins over verbose.
        """
        if quiet >= 2:
            return logging.ERROR
        if quiet == 1:
            return logging.WARNING
        if verbose >= 3:
            return TRACE
        if verbose >= 2:
            return logging.DEBUG
        return logging.INFO

    @staticmethod
    def bind(logger: logging.Logger, **ctx: Any) -> ContextLoggerAdapter:
        return ContextLoggerAdapter(logger, ctx)

    @staticmethod
    def step(logger: Any, msg: str, **ctx: Any) -> None:
        logger.info("➡️  %s", msg, extra={"ctx": ctx} if ctx else None)

    @staticmethod
    def ok(logger: Any, msg: str, **ctx: Any) -> None:
        logger.info("✅ %s", msg, extra={"ctx": ctx} if ctx else None)

    @staticmethod
    def warn(logger: Any, msg: str, **ctx: Any) -> None:
        logger.warning("⚠️  %s", msg, extra={"ctx": ctx} if ctx else None)

    @staticmethod
    def fail(logger: Any, msg: str, **ctx: Any) -> None:
        logger.error("💥 %s", msg, extra={"ctx": ctx} if ctx else None)

    @staticmethod
    def setup(
        verbose: int = 0,
        log_file: Optional[str] = None,
        *,
        quiet: int = 0,
        color: Optional[bool] = None,
        utc: bool = False,
        logger_name: str = "vmi",
        json_logs: bool = False,
        stream: Any = None,
    ) -> logging.Logger:
        """
        Configure and return the project logger. Handlers from an earlier
        call are replaced. A log file always gets the detailed uncolored
        layout (or NDJSON with json_logs).
        """
        stream = stream if stream is not None else sys.stderr
        level = Log.level_for(verbose, quiet)
        with _setup_lock:
            logger = logging.getLogger(logger_name)
            logger.propagate = False
            logger.setLevel(level)
            for h in list(logger.handlers):
                logger.removeHandler(h)
                h.close()

            style = LogStyle(
                color=True if color is None else bool(color),
                show_ms=verbose >= 3,
                show_src=verbose >= 3,
                show_thread=verbose >= 2,
                utc=utc,
                emoji=_emoji_ok(stream),
            )
            sh = logging.StreamHandler(stream=stream)
            sh.setLevel(level)
            sh.setFormatter(JsonFormatter(utc=utc) if json_logs else EmojiFormatter(style, stream))
            logger.addHandler(sh)

            if log_file:
                fp = Path(log_file).expanduser().resolve()
                fp.parent.mkdir(parents=True, exist_ok=True)
                fh = logging.FileHandler(fp, encoding="utf-8")
                fh.setLevel(level)
                fh.setFormatter(
                    JsonFormatter(utc=utc)
                    if json_logs
                    else EmojiFormatter(
                        LogStyle(color=False, show_ms=True, show_src=True, show_thread=True, show_logger=True,
                                 utc=utc, emoji=style.emoji)
                    )
                )
                logger.addHandler(fh)

        logger.debug("Logger initialized (level=%s, pid=%s)", logging.getLevelName(level), os.getpid())
        logger.trace("TRACE enabled")  # type: ignore[attr-defined]
        return logger

    @staticmethod
    def configure(section: Any, **kw: Any) -> logging.Logger:
        """Set up from a `logging:` config section (verbose, quiet, log_file, json)."""
        return Log.setup(section.verbose, section.log_file, quiet=section.quiet, json_logs=section.json, **kw)
