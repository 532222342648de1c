"""
Commands du domaine.

Les commands représentent des intentions : quelque chose que
le système doit faire. Contrairement aux events (faits passés),
les commands sont des demandes qui peuvent échouer.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


class Command:
    """Classe de base pour toutes les commands."""
    pass


# --- Drops ---


@dataclass(frozen=True)
class CréerDrop(Command):
    nom: str
    ids_articles: list[str]
    ids_groupes: list[str] = field(default_factory=list)
    programmé_pour: Optional[datetime] = None
    id_modèle_message: Optional[str] = None


@dataclass(frozen=True)
class ProgrammerDrop(Command):
    id_drop: str
    quand: datetime


@dataclass(frozen=True)
class AnnulerDrop(Command):
    id_drop: str


@dataclass(frozen=True)
class SupprimerDrop(Command):
    """Autorisé uniquement tant que le drop est en BROUILLON."""

    id_drop: str


@dataclass(frozen=True)
class EnvoyerDrop(Command):
    """Validation, envoi des paires autorisées, puis bilan."""

    id_drop: str


@dataclass(frozen=True)
class RelancerDrop(Command):
    """Nouvelle tentative explicite d'un drop ÉCHOUÉ."""

    id_drop: str


@dataclass(frozen=True)
class EnvoyerDropsÉchus(Command):
    """Envoie les drops programmés dont l'heure est passée."""
    pass


# --- Commandes et tickets ---


@dataclass(frozen=True)
class ConfirmerPaiement(Command):
    id_commande: str


@dataclass(frozen=True)
class ÉmettreTicket(Command):
    id_commande: str
    durée_heures: Optional[float] = None


@dataclass(frozen=True)
class RemettreTicket(Command):
    """Remise au client : ticket utilisé et commande retirée, atomiquement."""

    id_ticket: str
    id_agent: str
