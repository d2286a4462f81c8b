"""Request parsing and response shaping shared by the route modules."""
from __future__ import annotations

from enum import Enum
from typing import Any, Type, TypeVar
from uuid import UUID

from aiohttp import web

E = TypeVar("E", bound=Enum)


async def read_json(request: web.Request) -> dict[str, Any]:
    """Body as a JSON object; an empty body reads as ``{}``."""
    if not request.can_read_body:
        return {}
    try:
        data = await request.json()
    except ValueError as exc:
        raise web.HTTPBadRequest(text="Invalid JSON payload") from exc
    if not isinstance(data, dict):
        raise web.HTTPBadRequest(text="JSON body must be an object")
    return data


def path_uuid(request: web.Request, name: str) -> UUID:
    raw = request.match_info[name]
    try:
        return UUID(raw)
    except ValueError as exc:
        raise web.HTTPBadRequest(text=f"Invalid {name}: {raw}") from exc


def query_int(request: web.Request, name: str, default: int, *, minimum: int = 0) -> int:
    raw = request.rel_url.query.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise web.HTTPBadRequest(text=f"{name} must be an integer") from exc
    if value < minimum:
        raise web.HTTPBadRequest(text=f"{name} must be >= {minimum}")
    return value


def query_enum(request: web.Request, name: str, enum_cls: Type[E]) -> E | None:
    """Case-insensitive enum lookup for filters like ``?status=failed``."""
    raw = request.rel_url.query.get(name)
    if not raw:
        return None
    try:
        return enum_cls(raw.upper())
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_cls)
        raise web.HTTPBadRequest(text=f"Invalid {name}: {raw} (expected one of {allowed})") from exc


def pagination_params(request: web.Request, *, default_limit: int = 50, max_limit: int = 100) -> tuple[int, int]:
    limit = min(query_int(request, "limit", default_limit, minimum=1), max_limit)
    return limit, query_int(request, "offset", 0)


def paginated_response(items: list[Any], *, key: str, total: int, limit: int, offset: int) -> dict[str, Any]:
    return {
        key: items,
        "total": total,
        "page": offset // limit + 1,
        "pageSize": limit,
        "hasMore": offset + len(items) < total,
    }
