"""
Events du domaine.

Des faits accomplis, immuables, nommés au passé. Ils sont émis par
les agrégats (Drop, Commande, Ticket) et collectés par le Unit of Work
à la fin de chaque transaction.
"""

from dataclasses import dataclass


class Event:
    """Classe de base pour tous les events du domaine."""
    pass


@dataclass(frozen=True)
class DropEnvoyé(Event):
    """Toutes les paires tentées ont été livrées."""

    id_drop: str
    total_articles: int
    total_groupes: int


@dataclass(frozen=True)
class DropÉchoué(Event):
    """Au moins une paire (article, groupe) n'a pas pu être livrée."""

    id_drop: str
    nom: str
    échecs: int
    réussis: int


@dataclass(frozen=True)
class CommandePayée(Event):
    id_commande: str


@dataclass(frozen=True)
class TicketÉmis(Event):
    id_ticket: str
    id_commande: str
    code: str


@dataclass(frozen=True)
class TicketUtilisé(Event):
    """Le ticket a été remis : la commande est retirée en boutique."""

    id_ticket: str
    id_commande: str
    id_agent: str
