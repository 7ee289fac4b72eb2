"""Outcomes of completing a login callback.

``complete_login`` never raises; it returns exactly one of these. Every
variant answers ``ok``, ``handled`` and ``error`` so callers can branch
without isinstance checks, and ``as_dict()`` gives the flat shape pages
log or show to support.
"""

from dataclasses import dataclass
from typing import Any, ClassVar, Optional, Union


def _compact(**fields: Any) -> dict[str, Any]:
    return {k: v for k, v in fields.items() if v is not None}


@dataclass(frozen=True)
class LoginSucceeded:
    user_id: str
    next_target: str
    ok: ClassVar[bool] = True
    handled: ClassVar[bool] = True
    error: ClassVar[Optional[str]] = None

    def as_dict(self) -> dict[str, Any]:
        return {"ok": True, "handled": True, "user_id": self.user_id, "next": self.next_target}


@dataclass(frozen=True)
class NotHandled:
    """The URL is not this provider's callback."""
    ok: ClassVar[bool] = True
    handled: ClassVar[bool] = False
    error: ClassVar[Optional[str]] = None

    def as_dict(self) -> dict[str, Any]:
        return {"ok": True, "handled": False}


@dataclass(frozen=True)
class ConfigError:
    """Client id or backend settings missing or malformed."""
    error: str
    detail: Optional[str] = None
    ok: ClassVar[bool] = False
    handled: ClassVar[bool] = True

    def as_dict(self) -> dict[str, Any]:
        return _compact(ok=False, error=self.error, detail=self.detail)


@dataclass(frozen=True)
class TransportError:
    """Exchange endpoint unreachable or timed out. ``detail`` is ``TIMEOUT`` for timeouts."""
    error: str
    detail: str
    endpoint: str
    ok: ClassVar[bool] = False
    handled: ClassVar[bool] = True

    def as_dict(self) -> dict[str, Any]:
        return {"ok": False, "error": self.error, "detail": self.detail, "endpoint": self.endpoint}


@dataclass(frozen=True)
class ProtocolError:
    """State mismatch, rejected code, malformed response. Fail closed."""
    error: str
    detail: Any = None
    status: Optional[int] = None
    ok: ClassVar[bool] = False
    handled: ClassVar[bool] = True

    def as_dict(self) -> dict[str, Any]:
        return _compact(ok=False, error=self.error, detail=self.detail, status=self.status)


@dataclass(frozen=True)
class InfraError:
    """The exchange endpoint failed on its side (5xx)."""
    error: str
    detail: Any = None
    status: Optional[int] = None
    ok: ClassVar[bool] = False
    handled: ClassVar[bool] = True

    def as_dict(self) -> dict[str, Any]:
        return _compact(ok=False, error=self.error, detail=self.detail, status=self.status)


LoginOutcome = Union[LoginSucceeded, NotHandled, ConfigError, TransportError, ProtocolError, InfraError]
