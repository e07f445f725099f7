from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

import requests

LOGGER = logging.getLogger(__name__)

_LEVELS = {"info": 10, "warning": 20, "error": 30, "critical": 40}
TELEGRAM_API = "https://api.telegram.org"


@dataclass(slots=True)
class AlertConfig:
    enabled: bool = True
    webhook_url: str | None = None
    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None
    cooldown_seconds: int = 30
    min_level: str = "warning"


class AlertDispatcher:
    """
    Pushes operator alerts to a JSON webhook and/or a Telegram chat.

    Alerts under `min_level` are dropped, and one alert per dedupe key is sent
    per cooldown window. Workers call `send` concurrently.
    """

    def __init__(self, config: AlertConfig, *, monotonic: Callable[[], float] = time.monotonic):
        self.config = config
        self._monotonic = monotonic
        self._last_sent: dict[str, float] = {}
        self._lock = threading.Lock()

    @property
    def has_channels(self) -> bool:
        return bool(self._webhook_url() or self._telegram_target())

    def _webhook_url(self) -> str:
        return (self.config.webhook_url or "").strip()

    def _telegram_target(self) -> tuple[str, str] | None:
        token = (self.config.telegram_bot_token or "").strip()
        chat_id = (self.config.telegram_chat_id or "").strip()
        if not token or not chat_id:
            return None
        return token, chat_id

    def _claim(self, key: str) -> bool:
        now = self._monotonic()
        with self._lock:
            prev = self._last_sent.get(key)
            if prev is not None and now - prev < self.config.cooldown_seconds:
                return False
            self._last_sent[key] = now
            return True

    def send(
        self,
        *,
        event: str,
        message: str,
        level: str = "info",
        context: dict[str, Any] | None = None,
        dedupe_key: str | None = None,
    ) -> bool:
        if not self.config.enabled or not self.has_channels:
            return False
        if _LEVELS.get(level.lower(), 10) < _LEVELS.get(self.config.min_level, 20):
            return False
        if not self._claim(dedupe_key or event):
            LOGGER.debug("Alert suppressed event=%s key=%s", event, dedupe_key or event)
            return False

        context = context or {}
        text = f"[{level.upper()}] {event}: {message}"
        if context:
            text += " | " + " ".join(f"{key}={value}" for key, value in context.items())

        webhook = self._webhook_url()
        if webhook:
            self._post(
                "Webhook",
                webhook,
                {
                    "event": event,
                    "level": level,
                    "text": text,
                    "context": {key: str(value) for key, value in context.items()},
                },
            )
        telegram = self._telegram_target()
        if telegram is not None:
            token, chat_id = telegram
            self._post(
                "Telegram",
                f"{TELEGRAM_API}/bot{token}/sendMessage",
                {"chat_id": chat_id, "text": text},
            )
        return True

    def _post(self, channel: str, url: str, payload: dict[str, Any]) -> None:
        try:
            response = requests.post(url, json=payload, timeout=10)
            response.raise_for_status()
        except requests.RequestException as exc:
            LOGGER.warning("%s alert failed: %s", channel, exc)
