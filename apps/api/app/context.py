from __future__ import annotations

from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
workflow_run_id_var: ContextVar[str | None] = ContextVar("workflow_run_id", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_workflow_run_id(value: str | None) -> Token[str | None]:
    return workflow_run_id_var.set(value)


def reset_workflow_run_id(token: Token[str | None]) -> None:
    workflow_run_id_var.reset(token)


def get_workflow_run_id() -> str | None:
    return workflow_run_id_var.get()
