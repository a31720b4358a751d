"""Provider API key resolution."""

from __future__ import annotations

import logging
from pathlib import Path

from portfolio_chat.config import Settings

logger = logging.getLogger(__name__)


class SecretsResolver:
    """Resolves named secrets from settings, then from `<secrets_dir>/<NAME>` files.

    Resolved values are cached for the lifetime of the resolver.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._cache: dict[str, str] = {}

    def get(self, name: str) -> str:
        if name in self._cache:
            return self._cache[name]

        value = str(getattr(self.settings, name.lower(), "") or "").strip()
        if not value and self.settings.secrets_dir is not None:
            value = self._read_file(Path(self.settings.secrets_dir) / name)
        if not value:
            logger.warning("secrets.missing name=%s", name)
            return ""

        self._cache[name] = value
        return value

    def _read_file(self, path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return ""
        except OSError as exc:
            logger.warning("secrets.read_failed path=%s error=%s", path, exc)
            return ""
