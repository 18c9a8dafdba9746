from __future__ import annotations

from contextvars import ContextVar

organization_id_ctx: ContextVar[int | None] = ContextVar("organization_id", default=None)
user_id_ctx: ContextVar[int | None] = ContextVar("user_id", default=None)
client_ip_ctx: ContextVar[str | None] = ContextVar("client_ip", default=None)
user_agent_ctx: ContextVar[str | None] = ContextVar("user_agent", default=None)


def set_request_context(
    organization_id: int | None,
    user_id: int | None,
    *,
    client_ip: str | None = None,
    user_agent: str | None = None,
) -> None:
    organization_id_ctx.set(organization_id)
    user_id_ctx.set(user_id)
    client_ip_ctx.set(client_ip)
    user_agent_ctx.set(user_agent)


def get_organization_id() -> int | None:
    return organization_id_ctx.get()


def get_user_id() -> int | None:
    return user_id_ctx.get()


def get_client_ip() -> str | None:
    return client_ip_ctx.get()


def get_user_agent() -> str | None:
    return user_agent_ctx.get()
