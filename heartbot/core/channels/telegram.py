"""Telegram channel — Bot API send helper."""

from __future__ import annotations

from html import escape

import httpx

TELEGRAM_API = "https://api.telegram.org/bot{token}"
MAX_MESSAGE_CHARS = 4096


async def send_message(token: str, chat_id: int | str, text: str) -> bool:
    """Send a heartbeat message via Telegram Bot API. Returns True on HTTP 200.

    The first line (the ``⏰ Reminder`` / ``☀️ Good morning`` headline) is
    sent bold; on an HTML parse error the raw text is retried unformatted.
    """
    url = f"{TELEGRAM_API.format(token=token)}/sendMessage"
    text = clip(text)

    async with httpx.AsyncClient(timeout=httpx.Timeout(30.0)) as client:
        resp = await client.post(
            url,
            json={
                "chat_id": chat_id,
                "text": to_html(text),
                "parse_mode": "HTML",
            },
        )
        # Fallback to plain text if HTML parsing fails
        if resp.status_code != 200:
            resp = await client.post(
                url,
                json={"chat_id": chat_id, "text": text},
            )
    return resp.status_code == 200


def to_html(text: str) -> str:
    """Escape task summaries and bold the headline.

    Summaries are user text, so ``*`` or ``<`` in them is never markup.
    """
    headline, sep, body = text.partition("\n")
    return f"<b>{escape(headline, quote=False)}</b>{sep}{escape(body, quote=False)}"


def clip(text: str, limit: int = MAX_MESSAGE_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"
