"""
Telegram Bot API client.

Every call returns a SendResult instead of raising for platform errors;
a 429 response becomes SendResult.rate_limited with the server's
``parameters.retry_after`` hint. Transport failures (connect/read errors)
are retried twice by tenacity and then propagate to the dispatcher, which
applies the queue's own retry policy.
"""
from __future__ import annotations

from typing import Any, Optional

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import MessagingClient, SendResult
from config.settings import TelegramConfig
from models.schemas import MessageOptions

logger = structlog.get_logger()


class TelegramBotClient(MessagingClient):
    def __init__(self, config: TelegramConfig = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or TelegramConfig()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=f"{self.config.api_base_url}/bot{self.config.bot_token}/",
                timeout=httpx.Timeout(self.config.timeout, connect=5.0),
                transport=self._transport,
            )
        return self._client

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=5),
        reraise=True,
    )
    async def _post(self, method: str, payload: dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        return await client.post(method, json=payload)

    async def call(self, method: str, payload: dict[str, Any]) -> SendResult:
        """Invoke any Bot API method and map the response."""
        resp = await self._post(method, payload)
        try:
            body = resp.json()
        except ValueError:
            body = {"ok": False, "error_code": resp.status_code, "description": resp.text[:200]}

        if body.get("ok"):
            result = body.get("result")
            message_id = result.get("message_id") if isinstance(result, dict) else None
            return SendResult.ok(message_id)

        error_code = int(body.get("error_code", resp.status_code))
        description = body.get("description", "")
        if error_code == 429:
            retry_after = float((body.get("parameters") or {}).get("retry_after", 1))
            logger.warning("telegram_rate_limited", method=method, retry_after=retry_after)
            return SendResult.rate_limited(retry_after, description)

        logger.error("telegram_api_error", method=method, error_code=error_code, description=description)
        return SendResult.error(error_code, description)

    async def send(self, target: str, content: str, options: Optional[MessageOptions] = None) -> SendResult:
        payload: dict[str, Any] = {"chat_id": target, "text": content}
        if options is not None:
            payload.update(options.to_api())
        return await self.call("sendMessage", payload)

    async def edit_message_text(
        self, target: str, message_id: int, content: str, options: Optional[MessageOptions] = None,
    ) -> SendResult:
        payload: dict[str, Any] = {"chat_id": target, "message_id": message_id, "text": content}
        if options is not None:
            payload.update(options.to_api())
        return await self.call("editMessageText", payload)

    async def answer_callback_query(self, callback_query_id: str, text: str = "") -> SendResult:
        payload: dict[str, Any] = {"callback_query_id": callback_query_id}
        if text:
            payload["text"] = text
        return await self.call("answerCallbackQuery", payload)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
