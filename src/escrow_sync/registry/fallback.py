"""Local fallback list of escrow addresses created from this host."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path

from ..models import canonical_address, is_address
from ..utils.logging_config import StructuredLogger

logger = StructuredLogger(__name__)


class FallbackRegistry:
    """Ordered JSON array of canonical addresses, oldest first."""

    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()

    def load(self) -> list[str]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Fallback registry unreadable", path=str(self.path), error=str(exc))
            return []
        if not isinstance(data, list):
            return []

        out: list[str] = []
        seen: set[str] = set()
        for item in data:
            if not is_address(item):
                continue
            address = canonical_address(item)
            if address in seen:
                continue
            seen.add(address)
            out.append(address)
        return out

    def add(self, address: str) -> bool:
        address = canonical_address(address)
        current = self.load()
        if address in current:
            return False
        current.append(address)
        self._write(current)
        logger.info("Fallback registry updated", address=address, size=len(current))
        return True

    def _write(self, addresses: list[str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), prefix=".escrows.", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fp:
                json.dump(addresses, fp, indent=2)
                fp.write("\n")
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
