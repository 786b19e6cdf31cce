# SPDX-License-Identifier: LGPL-3.0-or-later
# vmi/core/exceptions.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional


def _safe_int(x: Any, default: int = 1) -> int:
    try:
        return int(x)
    except Exception:
        return default


def _clamp_exit_code(code: int) -> int:
    if code < 0:
        return 1
    if code > 255:
        return 255
    return code


def _one_line(s: str, limit: int = 600) -> str:
    s = (s or "").strip().replace("\r", " ").replace("\n", " ")
    s = " ".join(s.split())
    return s if len(s) <= limit else (s[: limit - 3] + "...")


_SECRET_KEY_PARTS = (
    "pass",
    "password",
    "secret",
    "token",
    "apikey",
    "api_key",
    "auth",
    "signature",
    "credential",
    "session",
    "private",
)

REDACTED = "***REDACTED***"


def _is_secret_key(k: str) -> bool:
    ks = (k or "").lower()
    return any(p in ks for p in _SECRET_KEY_PARTS)


def _redact(ctx: Dict[str, Any]) -> Dict[str, Any]:
    return {k: (REDACTED if _is_secret_key(str(k)) else v) for k, v in ctx.items()}


def _format_context_compact(ctx: Dict[str, Any]) -> str:
    parts = []
    for k in sorted(ctx.keys()):
        v = ctx.get(k)
        if _is_secret_key(str(k)):
            parts.append(f"{k}=<redacted>")
        else:
            parts.append(f"{k}={v!r}")
    return ", ".join(parts)


class ErrorKind(str, Enum):
    MALFORMED_LAYOUT = "MalformedLayout"
    UNSUPPORTED_VARIANT = "UnsupportedVariant"
    INTEGRITY_VIOLATION = "IntegrityViolation"
    UNKNOWN_FORMAT = "UnknownFormat"
    IMPORT_REJECTED = "ImportRejected"
    IMAGE_NOT_FOUND = "ImageNotFound"
    IO_FAILURE = "IOFailure"
    CANCELLED = "Cancelled"
    TIMEOUT = "OperationTimeout"
    FATAL = "Fatal"
    INTERNAL = "Internal"


@dataclass(eq=False)
class VmiError(Exception):
    """
    Base project error with:
      - stable fields for reporting/JSON
      - readable __str__ (what users see)
      - a kind from the error taxonomy
    """
    code: int = 1
    msg: str = "error"
    cause: Optional[BaseException] = None
    context: Optional[Dict[str, Any]] = None

    kind: ClassVar[ErrorKind] = ErrorKind.INTERNAL

    def __post_init__(self) -> None:
        self.code = _clamp_exit_code(_safe_int(self.code, default=1))
        self.msg = _one_line(self.msg) or self.__class__.__name__
        if self.context is None:
            self.context = {}
        super().__init__(self.msg)
        self.args = (self.msg,)
        if self.cause is not None and self.__cause__ is None:
            self.__cause__ = self.cause

    def with_context(self, **ctx: Any) -> "VmiError":
        self.context.update(ctx)
        return self

    def cause_chain(self) -> List[str]:
        """Messages from this error down through its causes."""
        chain: List[str] = []
        seen: set[int] = set()
        cur: Optional[BaseException] = self
        while cur is not None and id(cur) not in seen:
            seen.add(id(cur))
            if isinstance(cur, VmiError):
                chain.append(f"{cur.kind.value}: {cur.msg}")
                nxt = cur.cause if cur.cause is not None else cur.__cause__
            else:
                chain.append(f"{type(cur).__name__}: {_one_line(str(cur))}")
                nxt = cur.__cause__ or cur.__context__
            cur = nxt
        return chain

    def user_message(self, *, include_context: bool = False, include_cause: bool = False) -> str:
        parts = [self.msg or self.__class__.__name__]

        if include_context and self.context:
            parts.append(f"[{_one_line(_format_context_compact(self.context), limit=600)}]")

        if include_cause and self.cause is not None:
            parts.append("(cause: " + " <- ".join(self.cause_chain()[1:]) + ")")

        return " ".join(parts)

    def __str__(self) -> str:
        return self.user_message(include_context=False, include_cause=False)

    def to_dict(self, *, include_cause: bool = False) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "type": self.__class__.__name__,
            "kind": self.kind.value,
            "code": self.code,
            "message": self.msg,
            "context": _redact(self.context or {}),
        }
        if include_cause and self.cause is not None:
            d["cause"] = {"type": type(self.cause).__name__, "message": _one_line(str(self.cause))}
            d["chain"] = self.cause_chain()
        return d


class Fatal(VmiError):
    """
    User-facing fatal error (exit code should be honored by top-level main()).
    """
    kind = ErrorKind.FATAL


class MalformedLayout(VmiError):
    """Extent invariants violated (gaps, overlaps, size mismatch, bad tables)."""
    kind = ErrorKind.MALFORMED_LAYOUT


class UnsupportedVariant(VmiError):
    """Format recognized, but this sub-variant cannot be handled."""
    kind = ErrorKind.UNSUPPORTED_VARIANT


class IntegrityViolation(VmiError):
    """Checksum or manifest mismatch."""
    kind = ErrorKind.INTEGRITY_VIOLATION


class UnknownFormat(VmiError):
    kind = ErrorKind.UNKNOWN_FORMAT


class ImportRejected(VmiError):
    """Provider reported the import as failed."""
    kind = ErrorKind.IMPORT_REJECTED

    @property
    def provider_message(self) -> str:
        return str((self.context or {}).get("provider_message", self.msg))


class ImageNotFound(VmiError):
    kind = ErrorKind.IMAGE_NOT_FOUND


class IOFailure(VmiError):
    """Underlying stream/transfer error. Always wraps a cause."""
    kind = ErrorKind.IO_FAILURE

    def __post_init__(self) -> None:
        if self.cause is None:
            self.cause = OSError(self.msg)
        super().__post_init__()


class Cancelled(VmiError):
    kind = ErrorKind.CANCELLED


class OperationTimeout(VmiError):
    kind = ErrorKind.TIMEOUT


def wrap_fatal(msg: str, exc: Optional[BaseException] = None, code: int = 2, **context: Any) -> Fatal:
    return Fatal(code=code, msg=msg, cause=exc, context=context or None)


def wrap_io(msg: str, exc: BaseException, **context: Any) -> IOFailure:
    return IOFailure(msg=f"{msg}: {exc}", cause=exc, context=context or None)


def kind_of(e: BaseException) -> ErrorKind:
    if isinstance(e, VmiError):
        return e.kind
    if isinstance(e, OSError):
        return ErrorKind.IO_FAILURE
    return ErrorKind.INTERNAL


def format_exception_for_cli(e: BaseException, *, verbose: int = 0) -> str:
    """
    One-liner output for CLI.

    verbose=0: just message
    verbose=1: message + compact context (if any)
    verbose>=2: message + context + cause chain
    """
    if isinstance(e, VmiError):
        return f"{e.kind.value}: " + e.user_message(
            include_context=(verbose >= 1),
            include_cause=(verbose >= 2),
        )

    if verbose >= 2:
        return f"{type(e).__name__}: {_one_line(str(e))}"
    return _one_line(str(e)) or type(e).__name__
