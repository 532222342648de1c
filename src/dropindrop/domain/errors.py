"""
Erreurs du domaine.

Quatre familles, chacune avec sa traduction côté HTTP :

- ErreurValidation : entrée invalide ou opération impossible en l'état (400)
- ErreurConflit : unicité violée, transition interdite, course perdue (409)
- Introuvable : drop, ticket ou commande inconnu (404)
- ErreurTransitoire : transport indisponible, éligible à une relance (503)

Les anomalies sont des valeurs structurées (un code + des champs) :
le contrôle de flux s'appuie sur le code, le message français n'est
que de la présentation.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Optional


class CodeAnomalie(str, Enum):
    NOM_INVALIDE = "INVALID_NAME"
    NOMBRE_ARTICLES = "ARTICLE_COUNT"
    ARTICLES_EN_DOUBLE = "DUPLICATE_ARTICLES"
    NOMBRE_GROUPES = "GROUP_COUNT"
    GROUPES_EN_DOUBLE = "DUPLICATE_GROUPS"
    DATE_PASSÉE = "SCHEDULE_IN_PAST"
    STATUT_INCOMPATIBLE = "INCOMPATIBLE_STATUS"
    ARTICLE_INCONNU = "UNKNOWN_ARTICLE"
    ARTICLE_ARCHIVÉ = "ARCHIVED_ARTICLE"
    ARTICLE_EN_RUPTURE = "OUT_OF_STOCK_ARTICLE"
    GROUPE_INCONNU = "UNKNOWN_GROUP"
    AUCUN_GROUPE = "NO_GROUP"
    DÉJÀ_ENVOYÉS = "ALREADY_SENT_TODAY"
    GROUPE_ÉPUISÉ = "GROUP_EXHAUSTED"
    DROP_VOLUMINEUX = "LARGE_DROP"
    DIFFUSION_LARGE = "MANY_GROUPS"
    PROGRAMMATION_PROCHE = "SCHEDULED_SOON"
    PROGRAMMATION_LOINTAINE = "SCHEDULED_FAR"
    DURÉE_INVALIDE = "INVALID_TTL"


@dataclass(frozen=True)
class Anomalie:
    """Une erreur ou un avertissement, exploitable par une machine."""

    code: CodeAnomalie
    message: str
    id_groupe: Optional[str] = None
    id_article: Optional[str] = None
    nombre: Optional[int] = None

    def __str__(self) -> str:
        return self.message


class ErreurDomaine(Exception):
    """Base de toutes les erreurs métier."""

    code = "DOMAIN_ERROR"

    def __init__(
        self,
        message: str,
        anomalies: Iterable[Anomalie] = (),
        **détails: Any,
    ):
        super().__init__(message)
        self.message = message
        self.anomalies = list(anomalies)
        self.détails = détails


class ErreurValidation(ErreurDomaine):
    code = "VALIDATION_ERROR"


class ErreurConflit(ErreurDomaine):
    code = "CONFLICT"


class Introuvable(ErreurDomaine):
    code = "NOT_FOUND"


class ErreurTransitoire(ErreurDomaine):
    code = "TRANSIENT_ERROR"


# --- Drops ---


class TransitionInterdite(ErreurConflit):
    """Levée quand le statut courant d'un drop n'autorise pas l'opération."""

    code = "ILLEGAL_TRANSITION"

    def __init__(self, id_drop: str, statut: str, cible: str):
        super().__init__(
            f"Le drop {id_drop} ne peut pas passer de {statut} à {cible}",
            statut=statut,
            cible=cible,
        )


class EnvoiImpossible(ErreurValidation):
    """Aucun groupe n'a d'article autorisé : l'envoi ne peut pas avoir lieu."""

    code = "NOTHING_TO_SEND"

    def __init__(self, id_drop: str, validations: list, anomalies: Iterable[Anomalie] = ()):
        super().__init__(
            f"Aucun article ne peut être envoyé pour le drop {id_drop} aujourd'hui",
            anomalies=anomalies,
        )
        self.validations = validations


# --- Tickets ---


class TicketDéjàÉmis(ErreurConflit):
    code = "TICKET_ALREADY_ISSUED"

    def __init__(self, id_commande: str):
        super().__init__(
            f"Un ticket existe déjà pour la commande {id_commande}",
            id_commande=id_commande,
        )


class TicketDéjàUtilisé(ErreurConflit):
    code = "TICKET_ALREADY_USED"

    def __init__(self, id_ticket: str, utilisé_le, utilisé_par: Optional[str]):
        super().__init__(
            f"Ticket déjà utilisé le {utilisé_le:%d/%m/%Y %H:%M} par {utilisé_par}",
            id_ticket=id_ticket,
            utilisé_le=utilisé_le,
            utilisé_par=utilisé_par,
        )
        self.utilisé_le = utilisé_le
        self.utilisé_par = utilisé_par


class TicketExpiré(ErreurValidation):
    code = "TICKET_EXPIRED"

    def __init__(self, id_ticket: str, expire_le):
        super().__init__(
            f"Ticket expiré depuis le {expire_le:%d/%m/%Y %H:%M}",
            id_ticket=id_ticket,
            expire_le=expire_le,
        )
        self.expire_le = expire_le


class CommandeNonPayée(ErreurValidation):
    code = "ORDER_NOT_PAID"

    def __init__(self, id_commande: str, statut: str):
        super().__init__(
            f"Commande {id_commande} au statut {statut} : seules les commandes payées sont retirables",
            id_commande=id_commande,
            statut_paiement=statut,
        )
