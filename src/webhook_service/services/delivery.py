"""Outbound HTTP delivery of signed webhook bodies."""
from __future__ import annotations

import asyncio

import aiohttp
from aiohttp import ClientSession, ClientTimeout, TCPConnector

from webhook_service.core.exceptions import PermanentDeliveryError, TransientDeliveryError
from webhook_service.domain.models import DeliveryTask
from webhook_service.services.signature import SignatureService

SIGNATURE_HEADER = "X-Eventr-Signature"
EVENT_ID_HEADER = "X-Eventr-Event-Id"
EVENT_TYPE_HEADER = "X-Eventr-Event-Type"
ATTEMPT_HEADER = "X-Eventr-Delivery-Attempt"


def build_headers(task: DeliveryTask, body: bytes, signatures: SignatureService) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: signatures.header_value(task.secret, body),
        EVENT_ID_HEADER: str(task.event_id),
        EVENT_TYPE_HEADER: task.event_type.value,
        ATTEMPT_HEADER: str(task.attempt_number),
    }


class WebhookSender:
    """POSTs a claimed task to its subscriber.

    ``send`` returns ``(status_code, response_snippet)`` on 2xx and raises
    :class:`TransientDeliveryError` / :class:`PermanentDeliveryError`
    otherwise. One :class:`aiohttp.ClientSession` is shared by all workers;
    its connector caps connections per destination host. The timeout covers
    the wait for a free connection too, so ``limit_per_host`` must not be
    below the number of workers that can target one host at once.
    """

    def __init__(
        self,
        signature_service: SignatureService,
        *,
        timeout_seconds: float = 10.0,
        limit_per_host: int = 5,
        snippet_length: int = 1000,
        session: ClientSession | None = None,
    ):
        self._signatures = signature_service
        self._timeout = ClientTimeout(total=timeout_seconds)
        self._limit_per_host = limit_per_host
        self._snippet_length = snippet_length
        self._session = session

    async def start(self) -> None:
        if self._session is None:
            self._session = ClientSession(
                timeout=self._timeout,
                connector=TCPConnector(limit=0, limit_per_host=self._limit_per_host),
            )

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    def _snippet(self, text: str) -> str:
        return text[: self._snippet_length]

    async def send(self, task: DeliveryTask) -> tuple[int, str]:
        if self._session is None:
            await self.start()
        assert self._session is not None

        body = task.request_body.encode("utf-8")
        headers = build_headers(task, body, self._signatures)
        try:
            async with self._session.post(
                task.url,
                data=body,
                headers=headers,
                timeout=self._timeout,
                allow_redirects=False,
            ) as resp:
                text = self._snippet(await resp.text(errors="replace"))
                if 200 <= resp.status < 300:
                    return resp.status, text
                message = f"HTTP {resp.status}"
                if resp.status == 429 or resp.status >= 500:
                    raise TransientDeliveryError(message, status_code=resp.status, body=text)
                raise PermanentDeliveryError(message, status_code=resp.status, body=text)
        except asyncio.TimeoutError as exc:
            raise TransientDeliveryError(
                f"Timed out after {self._timeout.total:g}s"
            ) from exc
        except aiohttp.ClientError as exc:
            raise TransientDeliveryError(f"{type(exc).__name__}: {exc}") from exc
