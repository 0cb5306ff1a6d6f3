from __future__ import annotations

import logging
from typing import Mapping

from .config import BridgeSettings, UserEntry
from .models import AuthorizationResult

logger = logging.getLogger("wa_bridge.directory")


class StaticUserDirectory:
    """User lookup backed by the ``users`` table in settings.

    Keys may be phone numbers or opaque linked-device ids; both are matched
    literally. A user without a project is treated as unregistered.
    """

    def __init__(self, users: Mapping[str, UserEntry]):
        self._users = {key.strip(): entry for key, entry in users.items() if key.strip()}

    @classmethod
    def from_settings(cls, settings: BridgeSettings) -> "StaticUserDirectory":
        return cls(settings.users)

    def __len__(self) -> int:
        return len(self._users)

    async def lookup(self, external_id: str) -> AuthorizationResult | None:
        entry = self._users.get(external_id)
        if entry is None:
            logger.info("No user found for identifier: %s", external_id)
            return None
        if not entry.project_id:
            logger.info("User %s has no project configured", entry.user_id)
            return None
        return AuthorizationResult(user_id=entry.user_id, project_id=entry.project_id)
