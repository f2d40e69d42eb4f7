"""JSON file recording the last generated billing month and months awaiting retry."""

import json
import os
from datetime import date
from pathlib import Path

from ibp_billing.core.models import GenerationState
from ibp_billing.observability import get_logger

logger = get_logger(__name__)


class JsonGenerationStateStore:
    """Implements IGenerationStateStore with a small JSON document."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    def load(self) -> GenerationState:
        """Return the recorded state, or an empty one when absent or unreadable."""
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            value = raw["last_generated_month"]
            pending = raw.get("pending_months", [])
        except FileNotFoundError:
            return GenerationState()
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.warning("generation_state_unreadable", path=str(self._path), error=str(exc))
            return GenerationState()

        try:
            last = date.fromisoformat(value) if value is not None else None
            pending_months = sorted({date.fromisoformat(item) for item in pending})
        except (TypeError, ValueError) as exc:
            logger.warning("generation_state_unreadable", path=str(self._path), error=str(exc))
            return GenerationState()
        return GenerationState(last_generated_month=last, pending_months=pending_months)

    def save(self, state: GenerationState) -> None:
        """Atomically replace the recorded state."""
        last = state.last_generated_month
        document = {
            "last_generated_month": last.isoformat() if last is not None else None,
            "pending_months": [month.isoformat() for month in state.pending_months],
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(document, sort_keys=True), encoding="utf-8")
        os.replace(tmp_path, self._path)
        logger.debug(
            "generation_state_saved",
            path=str(self._path),
            month=document["last_generated_month"],
            pending=document["pending_months"],
        )
