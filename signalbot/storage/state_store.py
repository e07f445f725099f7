from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any

from signalbot.storage.models import TradeState

LOGGER = logging.getLogger(__name__)


class TradeStateStore:
    """Per-symbol trade state kept in one JSON document, rewritten atomically."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.lock = threading.Lock()
        self._records: dict[str, dict[str, Any]] = self._read()

    def _read(self) -> dict[str, dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            LOGGER.warning("Could not read trade state %s, starting empty: %s", self.path, exc)
            return {}
        if not isinstance(payload, dict):
            return {}
        return {str(k): v for k, v in payload.items() if isinstance(v, dict)}

    def load(self, symbol: str) -> TradeState:
        with self.lock:
            record = self._records.get(symbol)
        if record is None:
            return TradeState(symbol=symbol)
        return TradeState.from_dict(symbol, record)

    def save(self, state: TradeState) -> None:
        with self.lock:
            self._records[state.symbol] = state.to_dict()
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp_path.write_text(
                json.dumps(self._records, indent=2, ensure_ascii=True),
                encoding="utf-8",
            )
            tmp_path.replace(self.path)

    def symbols(self) -> list[str]:
        with self.lock:
            return sorted(self._records)
