from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Mapping

import requests

LOGGER = logging.getLogger(__name__)

_KEY_FIELDS = ("apiKey", "api_key", "key")
_SECRET_FIELDS = ("secretKey", "secret", "api_secret")


class CredentialMissing(RuntimeError):
    """No usable exchange API key/secret could be found."""


@dataclass(frozen=True, slots=True)
class ExchangeCredentials:
    api_key: str
    api_secret: str
    source: str

    def __repr__(self) -> str:
        return f"ExchangeCredentials(api_key='{self.api_key[:4]}***', source='{self.source}')"


def _first(payload: Mapping[str, Any], fields: tuple[str, ...]) -> str | None:
    for name in fields:
        value = payload.get(name)
        if value:
            return str(value).strip()
    return None


def parse_credentials(payload: Any, *, source: str) -> ExchangeCredentials:
    if not isinstance(payload, dict):
        raise CredentialMissing(f"credentials payload from {source} is not a JSON object")
    api_key = _first(payload, _KEY_FIELDS)
    api_secret = _first(payload, _SECRET_FIELDS)
    if not api_key or not api_secret:
        raise CredentialMissing(f"credentials from {source} are missing apiKey/secretKey")
    return ExchangeCredentials(api_key=api_key, api_secret=api_secret, source=source)


def fetch_remote_credentials(
    url: str,
    *,
    token: str | None = None,
    timeout_seconds: int = 10,
) -> ExchangeCredentials:
    """Download the whole credentials document in one request and parse it once."""
    headers: dict[str, str] = {}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    try:
        response = requests.get(url, headers=headers, timeout=timeout_seconds)
        response.raise_for_status()
        payload = response.json()
    except requests.RequestException as exc:
        raise CredentialMissing(f"could not download credentials: {exc}") from exc
    except ValueError as exc:
        raise CredentialMissing(f"credentials document is not valid JSON: {exc}") from exc
    return parse_credentials(payload, source="remote")


def load_credentials(env: Mapping[str, str] | None = None) -> ExchangeCredentials:
    environ = os.environ if env is None else env
    url = (environ.get("CREDENTIALS_URL") or "").strip()
    if url:
        LOGGER.info("Loading exchange credentials from remote key store")
        return fetch_remote_credentials(url, token=environ.get("CREDENTIALS_TOKEN") or None)
    api_key = (environ.get("EXCHANGE_API_KEY") or "").strip()
    api_secret = (environ.get("EXCHANGE_API_SECRET") or "").strip()
    if not api_key or not api_secret:
        raise CredentialMissing(
            "Set EXCHANGE_API_KEY and EXCHANGE_API_SECRET, or CREDENTIALS_URL, in the environment or .env"
        )
    return ExchangeCredentials(api_key=api_key, api_secret=api_secret, source="env")
