"""
Règle du même jour.

Un article ne peut pas être envoyé au même groupe WhatsApp plus d'une
fois par jour calendaire, même depuis des drops différents.

La garde est une lecture ponctuelle sur un journal append-only
(l'historique des envois) et non un compteur : elle peut être recalculée
à tout moment pour une validation "à blanc", avant tout engagement.
Un groupe épuisé ne bloque jamais tout le drop : l'envoi devient partiel.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import TYPE_CHECKING, Iterable, Protocol, Sequence
from zoneinfo import ZoneInfo

from dropindrop.domain.errors import Anomalie, CodeAnomalie

if TYPE_CHECKING:
    from dropindrop.domain.model import Groupe


class HistoriqueEnvois(Protocol):
    """Ce dont la garde a besoin de l'historique : une lecture par fenêtre."""

    def articles_envoyés(self, id_groupe: str, début: datetime, fin: datetime) -> set[str]:
        ...


@dataclass(frozen=True)
class ValidationGroupe:
    """
    Résultat de la règle pour un groupe.

    articles_autorisés et articles_bloqués partitionnent exactement
    les articles du drop, dans l'ordre du drop.
    """

    id_groupe: str
    nom_groupe: str
    articles_autorisés: tuple[str, ...]
    articles_bloqués: tuple[str, ...]
    avertissements: tuple[Anomalie, ...] = ()

    @property
    def épuisé(self) -> bool:
        return not self.articles_autorisés


def bornes_du_jour(jour: date, fuseau: ZoneInfo) -> tuple[datetime, datetime]:
    """
    Début et fin du jour calendaire dans le fuseau de référence, en UTC.

    Les deux bornes sont incluses : 00:00:00.000000 et 23:59:59.999999.
    """
    début = datetime.combine(jour, time.min, tzinfo=fuseau)
    fin = datetime.combine(jour, time.max, tzinfo=fuseau)
    return début.astimezone(timezone.utc), fin.astimezone(timezone.utc)


def jour_de(instant: datetime, fuseau: ZoneInfo) -> date:
    """Jour calendaire d'un instant, vu depuis le fuseau de référence."""
    return instant.astimezone(fuseau).date()


class GardeMêmeJour:
    """Évalue la règle du même jour pour un ensemble (articles × groupes)."""

    def __init__(self, fuseau: ZoneInfo):
        self.fuseau = fuseau

    def aujourdhui(self, maintenant: datetime) -> date:
        return jour_de(maintenant, self.fuseau)

    def évaluer(
        self,
        historique: HistoriqueEnvois,
        ids_articles: Sequence[str],
        groupes: Iterable[Groupe],
        jour: date,
    ) -> list[ValidationGroupe]:
        """
        Partitionne, groupe par groupe, les articles en autorisés/bloqués.

        Lecture pure : aucun effet de bord, on peut l'appeler autant de
        fois que nécessaire. Un blocage n'est jamais une exception, il
        s'exprime dans les données (listes + avertissements).
        """
        début, fin = bornes_du_jour(jour, self.fuseau)
        validations = []
        for groupe in groupes:
            déjà_envoyés = historique.articles_envoyés(groupe.id, début, fin)
            bloqués = tuple(a for a in ids_articles if a in déjà_envoyés)
            autorisés = tuple(a for a in ids_articles if a not in déjà_envoyés)
            validations.append(
                ValidationGroupe(
                    id_groupe=groupe.id,
                    nom_groupe=groupe.nom,
                    articles_autorisés=autorisés,
                    articles_bloqués=bloqués,
                    avertissements=_avertissements(groupe, bloqués, autorisés),
                )
            )
        return validations


def _avertissements(
    groupe: Groupe, bloqués: tuple[str, ...], autorisés: tuple[str, ...]
) -> tuple[Anomalie, ...]:
    avertissements = []
    if bloqués:
        avertissements.append(
            Anomalie(
                code=CodeAnomalie.DÉJÀ_ENVOYÉS,
                message=f'{len(bloqués)} article(s) déjà envoyé(s) à "{groupe.nom}" aujourd\'hui',
                id_groupe=groupe.id,
                nombre=len(bloqués),
            )
        )
    if not autorisés:
        avertissements.append(
            Anomalie(
                code=CodeAnomalie.GROUPE_ÉPUISÉ,
                message=f'BLOQUÉ : tous les articles ont déjà été envoyés à "{groupe.nom}" aujourd\'hui',
                id_groupe=groupe.id,
            )
        )
    return tuple(avertissements)


def peut_envoyer(validations: Iterable[ValidationGroupe]) -> bool:
    """Vrai si au moins un groupe a au moins un article autorisé."""
    return any(v.articles_autorisés for v in validations)


@dataclass(frozen=True)
class Résumé:
    total_groupes: int
    groupes_bloqués: int
    groupes_partiels: int
    groupes_libres: int
    total_avertissements: int


def résumé(validations: Sequence[ValidationGroupe]) -> Résumé:
    return Résumé(
        total_groupes=len(validations),
        groupes_bloqués=sum(1 for v in validations if not v.articles_autorisés),
        groupes_partiels=sum(
            1 for v in validations if v.articles_autorisés and v.articles_bloqués
        ),
        groupes_libres=sum(1 for v in validations if not v.articles_bloqués),
        total_avertissements=sum(len(v.avertissements) for v in validations),
    )
