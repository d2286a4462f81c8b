"""Webhook subscription admin endpoints."""
from __future__ import annotations

from aiohttp import web
from pydantic import ValidationError

from webhook_service.api.utils import (
    paginated_response,
    pagination_params,
    path_uuid,
    query_enum,
    read_json,
)
from webhook_service.core.exceptions import (
    InternalSchedulingError,
    NotFoundError,
    SubscriptionConfigError,
)
from webhook_service.domain.dto import SubscriptionCreateDTO, SubscriptionUpdateDTO, WebhookTestDTO
from webhook_service.domain.enums import DeliveryStatus
from webhook_service.services.dependencies import get_dispatcher, get_ledger, get_registry

routes = web.RouteTableDef()


@routes.post("/webhooks")
async def create_webhook(request: web.Request):
    body = await read_json(request)
    try:
        dto = SubscriptionCreateDTO.model_validate(body)
    except ValidationError as exc:
        raise web.HTTPBadRequest(text=exc.json()) from exc
    registry = get_registry(request)
    try:
        subscription = await registry.create(dto)
    except SubscriptionConfigError as exc:
        raise web.HTTPBadRequest(text=str(exc)) from exc
    return web.json_response(subscription.to_api(include_secret=True), status=201)


@routes.get("/webhooks")
async def list_webhooks(request: web.Request):
    registry = get_registry(request)
    limit, offset = pagination_params(request)
    items, total = await registry.list(limit=limit, offset=offset)
    payload = paginated_response(
        [item.to_api() for item in items],
        limit=limit,
        offset=offset,
        key="webhooks",
        total=total,
    )
    return web.json_response(payload)


@routes.get("/webhooks/{webhook_id}")
async def get_webhook(request: web.Request):
    webhook_id = path_uuid(request, "webhook_id")
    registry = get_registry(request)
    try:
        subscription = await registry.get(webhook_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.json_response(subscription.to_api())


@routes.patch("/webhooks/{webhook_id}")
async def update_webhook(request: web.Request):
    webhook_id = path_uuid(request, "webhook_id")
    body = await read_json(request)
    try:
        dto = SubscriptionUpdateDTO.model_validate(body)
    except ValidationError as exc:
        raise web.HTTPBadRequest(text=exc.json()) from exc
    registry = get_registry(request)
    try:
        subscription = await registry.update(webhook_id, dto)
    except SubscriptionConfigError as exc:
        raise web.HTTPBadRequest(text=str(exc)) from exc
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.json_response(subscription.to_api())


@routes.delete("/webhooks/{webhook_id}")
async def delete_webhook(request: web.Request):
    webhook_id = path_uuid(request, "webhook_id")
    registry = get_registry(request)
    try:
        await registry.delete(webhook_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.Response(status=204)


@routes.post("/webhooks/{webhook_id}/rotate-secret")
async def rotate_webhook_secret(request: web.Request):
    webhook_id = path_uuid(request, "webhook_id")
    registry = get_registry(request)
    try:
        subscription = await registry.rotate_secret(webhook_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.json_response(subscription.to_api(include_secret=True))


@routes.get("/webhooks/{webhook_id}/deliveries")
async def list_deliveries(request: web.Request):
    webhook_id = path_uuid(request, "webhook_id")
    status = query_enum(request, "status", DeliveryStatus)
    limit, offset = pagination_params(request)
    ledger = get_ledger(request)
    try:
        items, total = await ledger.get_history(webhook_id, status=status, limit=limit, offset=offset)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    payload = paginated_response(
        [item.to_api() for item in items],
        limit=limit,
        offset=offset,
        key="deliveries",
        total=total,
    )
    return web.json_response(payload)


@routes.get("/webhooks/{webhook_id}/deliveries/{event_id}")
async def get_delivery_status(request: web.Request):
    webhook_id = path_uuid(request, "webhook_id")
    event_id = path_uuid(request, "event_id")
    ledger = get_ledger(request)
    try:
        latest = await ledger.get_status(event_id, webhook_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    attempts = await ledger.get_attempts(event_id, webhook_id)
    return web.json_response(
        {
            "latest": latest.to_api(),
            "attempts": [attempt.to_api() for attempt in attempts],
        }
    )


@routes.get("/webhooks/{webhook_id}/stats")
async def get_delivery_stats(request: web.Request):
    webhook_id = path_uuid(request, "webhook_id")
    ledger = get_ledger(request)
    try:
        stats = await ledger.get_statistics(webhook_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.json_response(stats.to_api())


@routes.post("/webhooks/{webhook_id}/redeliver/{event_id}")
async def redeliver_event(request: web.Request):
    webhook_id = path_uuid(request, "webhook_id")
    event_id = path_uuid(request, "event_id")
    dispatcher = get_dispatcher(request)
    try:
        attempt = await dispatcher.redeliver(webhook_id, event_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.json_response(attempt.to_api(), status=202)


@routes.post("/webhooks/{webhook_id}/test")
async def send_test_webhook(request: web.Request):
    webhook_id = path_uuid(request, "webhook_id")
    body = await read_json(request)
    try:
        dto = WebhookTestDTO.model_validate(body)
    except ValidationError as exc:
        raise web.HTTPBadRequest(text=exc.json()) from exc
    dispatcher = get_dispatcher(request)
    try:
        attempt = await dispatcher.send_test(webhook_id, dto)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    except InternalSchedulingError as exc:
        raise web.HTTPServiceUnavailable(text=str(exc)) from exc
    return web.json_response(attempt.to_api(), status=202)
