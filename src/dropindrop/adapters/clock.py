"""
Horloge et générateur d'identifiants.

Injectés partout où le domaine a besoin de "maintenant" ou d'un
nouvel identifiant, afin que les tests puissent les figer.
"""

from __future__ import annotations

import abc
import uuid
from datetime import datetime, timezone


class AbstractHorloge(abc.ABC):
    @abc.abstractmethod
    def maintenant(self) -> datetime:
        """Instant courant, toujours avec fuseau (UTC)."""
        raise NotImplementedError


class HorlogeSystème(AbstractHorloge):
    def maintenant(self) -> datetime:
        return datetime.now(timezone.utc)


class AbstractGénérateurIds(abc.ABC):
    @abc.abstractmethod
    def nouvel_id(self) -> str:
        raise NotImplementedError


class GénérateurUuid(AbstractGénérateurIds):
    def nouvel_id(self) -> str:
        return str(uuid.uuid4())
