# =============================================================================
# HyperWa -- Module Loader
# =============================================================================

from __future__ import annotations

import asyncio
import importlib
from types import ModuleType
from typing import TYPE_CHECKING

from ._logging import logger

if TYPE_CHECKING:
    from .bot import HyperWaBot


class ModuleLoader:
    """Imports configured modules and calls their ``setup(bot)`` once.

    ``load_modules`` runs after every successful open; modules already
    loaded are skipped, so reconnects don't register handlers twice.
    """

    def __init__(self, bot: HyperWaBot, names: list[str] | None = None) -> None:
        self._bot = bot
        self._names = list(names or [])
        self.loaded: dict[str, ModuleType] = {}

    async def load_modules(self) -> int:
        """Load pending modules; returns how many were newly loaded."""
        count = 0
        for name in self._names:
            if name in self.loaded:
                continue
            try:
                module = importlib.import_module(name)
            except Exception as exc:
                logger.error("Could not import module %s: %s", name, exc)
                continue

            setup = getattr(module, "setup", None)
            if setup is None:
                logger.warning("Module %s has no setup(bot), skipping", name)
                continue
            try:
                result = setup(self._bot)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Module %s failed to set up", name)
                continue

            self.loaded[name] = module
            count += 1

        if count:
            logger.info("Loaded %d module(s): %s", count, ", ".join(self.loaded))
        return count
