"""Outbound notifications for automation events.

Up to three targets are notified per event (a generic JSON endpoint,
Telegram, Discord), each retried independently. Delivery never raises:
the caller gets a report listing the outcome of every target.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping

import httpx

from mirror_bot.config import WebhookSettings

LOGGER = logging.getLogger(__name__)

WEBHOOK_SCHEMA_VERSION = "1.0.0"
SIGNATURE_HEADER = "x-mirror-bot-signature"
DEFAULT_EVENT = "mirror-bot.alert"
DEFAULT_TEXT = "mirror-bot alert"
DISCORD_USERNAME = "mirror-bot"
TELEGRAM_SEND_URL = "https://api.telegram.org/bot{token}/sendMessage"

BASE_BACKOFF_SECONDS = 0.2
MAX_BACKOFF_SECONDS = 5.0
MAX_RETRY_AFTER_SECONDS = 60.0

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([a-zA-Z0-9_.-]+)\s*\}\}")


def render_template(template: str, context: Mapping[str, Any]) -> str:
    """Substitute ``{{ a.b }}`` paths from ``context``; missing paths render empty."""

    def _lookup(match: re.Match[str]) -> str:
        value: Any = context
        for part in match.group(1).split("."):
            if not isinstance(value, Mapping) or part not in value:
                return ""
            value = value[part]
        if value is None:
            return ""
        if isinstance(value, (Mapping, list)):
            return json.dumps(value, separators=(",", ":"), default=str)
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    return _PLACEHOLDER_RE.sub(_lookup, template)


def sign_body(secret: str, serialized: str) -> str:
    return hmac.new(secret.encode("utf-8"), serialized.encode("utf-8"), hashlib.sha256).hexdigest()


def _message_text(context: Mapping[str, Any]) -> str:
    return str(context.get("message") or context.get("alertMessage") or DEFAULT_TEXT)


class WebhookNotifier:
    """Delivers event contexts to every configured target.

    Parameters
    ----------
    settings:
        Target URLs, template, HMAC secret, timeout and retry count.
    sleep:
        Backoff sleeper; injectable so retries can be tested instantly.
    """

    def __init__(
        self,
        settings: WebhookSettings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._sleep = sleep

    @property
    def has_targets(self) -> bool:
        return self._settings.has_targets

    def generic_body(self, context: Mapping[str, Any]) -> Any:
        if self._settings.webhook_template:
            rendered = render_template(self._settings.webhook_template, context)
            try:
                return json.loads(rendered)
            except ValueError:
                return {"message": rendered}
        return {
            "event": context.get("event") or DEFAULT_EVENT,
            "generatedAt": datetime.now(timezone.utc).isoformat(),
            "payload": dict(context),
        }

    def _requests(self, context: Mapping[str, Any]) -> List[tuple[str, str, Any]]:
        s = self._settings
        requests: List[tuple[str, str, Any]] = []
        if s.webhook_url:
            requests.append(("generic", s.webhook_url, self.generic_body(context)))
        if s.telegram_bot_token and s.telegram_chat_id:
            requests.append(
                (
                    "telegram",
                    TELEGRAM_SEND_URL.format(token=s.telegram_bot_token),
                    {"chat_id": s.telegram_chat_id, "text": _message_text(context), "parse_mode": "Markdown"},
                )
            )
        if s.discord_webhook_url:
            requests.append(
                ("discord", s.discord_webhook_url, {"content": _message_text(context), "username": DISCORD_USERNAME})
            )
        return requests

    async def send(self, context: Mapping[str, Any]) -> Dict[str, Any]:
        results: List[Dict[str, Any]] = []
        requests = self._requests(context)
        if requests:
            async with httpx.AsyncClient(timeout=self._settings.timeout_seconds) as client:
                for target, url, body in requests:
                    outcome = await self._post_with_retry(client, url, body)
                    if not outcome["ok"]:
                        LOGGER.warning("webhook target=%s failed: %s", target, outcome.get("error"))
                    results.append({"target": target, **outcome})

        success = sum(1 for item in results if item["ok"])
        return {
            "schemaVersion": WEBHOOK_SCHEMA_VERSION,
            "generatedAt": datetime.now(timezone.utc).isoformat(),
            "count": len(results),
            "successCount": success,
            "failureCount": len(results) - success,
            "results": results,
        }

    async def _post_with_retry(self, client: httpx.AsyncClient, url: str, body: Any) -> Dict[str, Any]:
        serialized = json.dumps(body, separators=(",", ":"), default=str)
        headers = {"content-type": "application/json"}
        if self._settings.webhook_secret:
            headers[SIGNATURE_HEADER] = sign_body(self._settings.webhook_secret, serialized)

        retries = max(0, self._settings.retries)
        status: int | None = None
        error = "unknown error"
        for attempt in range(retries + 1):
            retry_after: str | None = None
            try:
                response = await client.post(url, content=serialized, headers=headers)
                status = response.status_code
                if response.status_code == 429:
                    retry_after = response.headers.get("Retry-After")
                response.raise_for_status()
                return {"ok": True, "attempt": attempt + 1, "status": status, "error": None}
            except httpx.HTTPStatusError as exc:
                error = f"HTTP {exc.response.status_code}"
            except httpx.HTTPError as exc:
                status = None
                error = str(exc) or type(exc).__name__

            if attempt >= retries:
                break
            delay = min(MAX_BACKOFF_SECONDS, BASE_BACKOFF_SECONDS * (2 ** attempt))
            if retry_after:
                try:
                    delay = max(delay, min(float(retry_after), MAX_RETRY_AFTER_SECONDS))
                except ValueError:
                    pass
            await self._sleep(delay)

        return {"ok": False, "attempt": retries + 1, "status": status, "error": error}
