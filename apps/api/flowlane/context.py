from __future__ import annotations

from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
cascade_depth_var: ContextVar[int | None] = ContextVar("cascade_depth", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_cascade_depth(value: int | None) -> Token[int | None]:
    return cascade_depth_var.set(value)


def reset_cascade_depth(token: Token[int | None]) -> None:
    cascade_depth_var.reset(token)


def get_cascade_depth() -> int:
    return cascade_depth_var.get() or 0


def get_log_context() -> dict[str, str | None]:
    return {"correlation_id": get_correlation_id()}
