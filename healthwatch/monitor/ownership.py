"""Ownership flag for multi-process setups.

Election happens elsewhere (file lock, IPC, leader lease …); whatever
decides it flips this flag and asks the scheduler to re-check.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class Ownership:
    """Callable ``is_owner()`` capability handed to the Scheduler."""

    def __init__(self, owner: bool = True) -> None:
        self._owner = owner

    def __call__(self) -> bool:
        return self._owner

    def set(self, owner: bool) -> None:
        if owner != self._owner:
            logger.info("Scheduler ownership %s", "acquired" if owner else "released")
        self._owner = owner
