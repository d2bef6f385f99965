"""Tests for webhook rendering, signing and delivery."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Dict, List

import httpx
import pytest

from mirror_bot.config import WebhookSettings
from mirror_bot.webhooks import (
    MAX_RETRY_AFTER_SECONDS,
    SIGNATURE_HEADER,
    WebhookNotifier,
    render_template,
    sign_body,
)

Handler = Callable[[httpx.Request], httpx.Response]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _install_transport(monkeypatch: pytest.MonkeyPatch, handler: Handler) -> List[httpx.Request]:
    seen: List[httpx.Request] = []
    real_client = httpx.AsyncClient

    def _record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    def _factory(**kwargs: Any) -> httpx.AsyncClient:
        return real_client(transport=httpx.MockTransport(_record), **kwargs)

    monkeypatch.setattr("mirror_bot.webhooks.httpx.AsyncClient", _factory)
    return seen


def _notifier(sleeps: List[float], **settings: Any) -> WebhookNotifier:
    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return WebhookNotifier(WebhookSettings(**settings), sleep=_sleep)


CONTEXT: Dict[str, Any] = {
    "event": "autopilot.trigger",
    "message": "[mirror-bot autopilot] YES odds 10.0% are below trigger 15%.",
    "action": {"status": "simulated", "amountUsdc": 10},
}


# ---------------------------------------------------------------------------
# Templates / signatures
# ---------------------------------------------------------------------------


class TestRenderTemplate:
    def test_paths_and_types(self) -> None:
        context = {"a": {"b": 3}, "flag": True, "obj": {"x": [1, 2]}, "none": None}
        rendered = render_template("{{ a.b }}|{{flag}}|{{ obj }}|{{ none }}|{{ missing.path }}", context)
        assert rendered == '3|true|{"x":[1,2]}||'

    def test_plain_text_untouched(self) -> None:
        assert render_template("no placeholders", {}) == "no placeholders"


def test_sign_body_is_hmac_sha256() -> None:
    digest = sign_body("secret", '{"a":1}')
    assert len(digest) == 64
    assert digest == sign_body("secret", '{"a":1}')
    assert digest != sign_body("other", '{"a":1}')


class TestGenericBody:
    def test_default_envelope(self) -> None:
        body = _notifier([], webhook_url="https://hooks.example/x").generic_body(CONTEXT)
        assert body["event"] == "autopilot.trigger"
        assert body["payload"]["action"]["status"] == "simulated"
        assert "generatedAt" in body

    def test_json_template(self) -> None:
        notifier = _notifier([], webhook_url="https://x", webhook_template='{"text": "{{ action.status }}"}')
        assert notifier.generic_body(CONTEXT) == {"text": "simulated"}

    def test_non_json_template_wrapped(self) -> None:
        notifier = _notifier([], webhook_url="https://x", webhook_template="status={{ action.status }}")
        assert notifier.generic_body(CONTEXT) == {"message": "status=simulated"}


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------


class TestSend:
    def test_no_targets(self) -> None:
        notifier = _notifier([])
        assert notifier.has_targets is False
        report = asyncio.run(notifier.send(CONTEXT))
        assert report["count"] == 0
        assert report["results"] == []

    def test_all_targets_with_signature(self, monkeypatch: pytest.MonkeyPatch) -> None:
        seen = _install_transport(monkeypatch, lambda request: httpx.Response(200))
        notifier = _notifier(
            [],
            webhook_url="https://hooks.example/generic",
            webhook_secret="s3cret",
            telegram_bot_token="TOKEN",
            telegram_chat_id="42",
            discord_webhook_url="https://discord.example/hook",
        )
        report = asyncio.run(notifier.send(CONTEXT))

        assert report["count"] == 3
        assert report["successCount"] == 3
        assert [item["target"] for item in report["results"]] == ["generic", "telegram", "discord"]

        generic, telegram, discord = seen
        assert generic.headers[SIGNATURE_HEADER] == sign_body("s3cret", generic.content.decode("utf-8"))
        assert str(telegram.url) == "https://api.telegram.org/botTOKEN/sendMessage"
        assert json.loads(telegram.content) == {
            "chat_id": "42",
            "text": CONTEXT["message"],
            "parse_mode": "Markdown",
        }
        assert json.loads(discord.content) == {"content": CONTEXT["message"], "username": "mirror-bot"}

    def test_unsigned_without_secret(self, monkeypatch: pytest.MonkeyPatch) -> None:
        seen = _install_transport(monkeypatch, lambda request: httpx.Response(204))
        asyncio.run(_notifier([], webhook_url="https://x.example").send(CONTEXT))
        assert SIGNATURE_HEADER not in seen[0].headers

    def test_retries_rate_limit_honoring_retry_after(self, monkeypatch: pytest.MonkeyPatch) -> None:
        responses = [httpx.Response(429, headers={"Retry-After": "2"}), httpx.Response(500), httpx.Response(200)]
        _install_transport(monkeypatch, lambda request: responses.pop(0))
        sleeps: List[float] = []
        report = asyncio.run(_notifier(sleeps, webhook_url="https://x.example").send(CONTEXT))

        result = report["results"][0]
        assert result["ok"] is True
        assert result["attempt"] == 3
        assert sleeps == [2.0, 0.4]

    def test_retry_after_is_capped(self, monkeypatch: pytest.MonkeyPatch) -> None:
        responses = [httpx.Response(429, headers={"Retry-After": "86400"}), httpx.Response(200)]
        _install_transport(monkeypatch, lambda request: responses.pop(0))
        sleeps: List[float] = []
        report = asyncio.run(_notifier(sleeps, webhook_url="https://x.example").send(CONTEXT))

        assert report["results"][0]["ok"] is True
        assert sleeps == [MAX_RETRY_AFTER_SECONDS]

    def test_exhausted_retries_reported(self, monkeypatch: pytest.MonkeyPatch) -> None:
        _install_transport(monkeypatch, lambda request: httpx.Response(503))
        sleeps: List[float] = []
        report = asyncio.run(_notifier(sleeps, webhook_url="https://x.example", retries=2).send(CONTEXT))

        assert report["failureCount"] == 1
        assert report["results"][0] == {
            "target": "generic",
            "ok": False,
            "attempt": 3,
            "status": 503,
            "error": "HTTP 503",
        }
        assert sleeps == [0.2, 0.4]

    def test_transport_error_does_not_raise(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def _refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        _install_transport(monkeypatch, _refuse)
        report = asyncio.run(_notifier([], webhook_url="https://x.example", retries=0).send(CONTEXT))
        assert report["results"][0]["ok"] is False
        assert report["results"][0]["status"] is None
        assert report["results"][0]["error"] == "connection refused"
