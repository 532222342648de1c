"""
Modèle de domaine pour la diffusion des drops.

Un Drop est une diffusion d'articles vers des groupes WhatsApp.
C'est l'agrégat racine : toutes les transitions de statut passent par
lui, et la table TRANSITIONS est la seule source de vérité sur ce qui
est permis. Les articles et les groupes appartiennent à des systèmes
externes ; le domaine n'en lit que l'identité et la disponibilité.

L'historique des envois (EntréeHistorique) est un journal append-only :
une entrée par tentative, jamais modifiée ni supprimée.
"""

from __future__ import annotations

from dataclasses import dataclass
import math
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Iterable, Optional, Sequence

from dropindrop.domain import events
from dropindrop.domain.errors import (
    Anomalie,
    CodeAnomalie,
    EnvoiImpossible,
    ErreurValidation,
    TransitionInterdite,
)
from dropindrop.domain.same_day import Résumé, ValidationGroupe, peut_envoyer, résumé

NOM_MIN = 3
NOM_MAX = 100
ARTICLES_MAX = 20
GROUPES_MAX = 10

# Au-delà, le drop reste valide mais mérite un avertissement
ARTICLES_CONSEILLÉS = 10
GROUPES_CONSEILLÉS = 5
PRÉAVIS_CONSEILLÉ = timedelta(hours=1)
HORIZON_CONSEILLÉ = timedelta(days=7)

# Deux secondes par message, une de battement entre deux messages
SECONDES_PAR_MESSAGE = 3


# --- Collaborateurs externes (lecture seule) ---


class StatutArticle(str, Enum):
    DISPONIBLE = "AVAILABLE"
    EN_RUPTURE = "OUT_OF_STOCK"
    ARCHIVÉ = "ARCHIVED"


@dataclass
class Article:
    id: str
    nom: str
    prix: int
    stock: int = 0
    statut: StatutArticle = StatutArticle.DISPONIBLE

    @property
    def disponible(self) -> bool:
        return self.statut == StatutArticle.DISPONIBLE and self.stock > 0


@dataclass
class Groupe:
    """Un groupe WhatsApp de destination."""

    id: str
    nom: str


# --- Historique des envois ---


class Résultat(str, Enum):
    SUCCÈS = "SUCCESS"
    ÉCHEC = "FAILURE"


@dataclass
class EntréeHistorique:
    """
    Fait immuable : une tentative d'envoi d'un article à un groupe.

    `jour` n'est renseigné que pour les succès ; c'est lui qui porte
    l'index unique (article, groupe, jour) en base. Un échec ne réserve
    rien et laisse la paire éligible à une relance.
    """

    id: str
    id_article: str
    id_groupe: str
    id_drop: str
    envoyé_le: datetime
    résultat: Résultat
    jour: Optional[date] = None
    erreur: Optional[str] = None

    @classmethod
    def succès(cls, id: str, id_article: str, id_groupe: str, id_drop: str,
               envoyé_le: datetime, jour: date) -> EntréeHistorique:
        return cls(id, id_article, id_groupe, id_drop, envoyé_le, Résultat.SUCCÈS, jour)

    @classmethod
    def échec(cls, id: str, id_article: str, id_groupe: str, id_drop: str,
              envoyé_le: datetime, erreur: str) -> EntréeHistorique:
        return cls(id, id_article, id_groupe, id_drop, envoyé_le, Résultat.ÉCHEC, None, erreur)


@dataclass(frozen=True)
class MessageArticle:
    """Contenu opaque transmis au transport pour une paire (article, groupe)."""

    id_drop: str
    nom_drop: str
    id_article: str
    nom_article: str
    prix: int
    id_modèle_message: Optional[str] = None


@dataclass(frozen=True)
class RésultatEnvoi:
    id_article: str
    id_groupe: str
    succès: bool
    erreur: Optional[str] = None


# --- Drop ---


class StatutDrop(str, Enum):
    BROUILLON = "DRAFT"
    PROGRAMMÉ = "SCHEDULED"
    EN_COURS = "SENDING"
    ENVOYÉ = "SENT"
    ÉCHOUÉ = "FAILED"
    ANNULÉ = "CANCELLED"


TRANSITIONS: dict[StatutDrop, frozenset[StatutDrop]] = {
    StatutDrop.BROUILLON: frozenset(
        {StatutDrop.PROGRAMMÉ, StatutDrop.EN_COURS, StatutDrop.ANNULÉ}
    ),
    StatutDrop.PROGRAMMÉ: frozenset(
        {StatutDrop.PROGRAMMÉ, StatutDrop.EN_COURS, StatutDrop.ANNULÉ}
    ),
    StatutDrop.EN_COURS: frozenset({StatutDrop.ENVOYÉ, StatutDrop.ÉCHOUÉ}),
    # Une relance est toujours une action explicite de l'opérateur
    StatutDrop.ÉCHOUÉ: frozenset({StatutDrop.EN_COURS}),
    StatutDrop.ENVOYÉ: frozenset(),
    StatutDrop.ANNULÉ: frozenset(),
}

ENVOYABLES = frozenset({StatutDrop.BROUILLON, StatutDrop.PROGRAMMÉ})


@dataclass(frozen=True)
class ValidationDrop:
    """Résultat dérivé, recalculé à chaque appel : jamais mis en cache."""

    peut_envoyer: bool
    erreurs: tuple[Anomalie, ...]
    avertissements: tuple[Anomalie, ...]
    par_groupe: tuple[ValidationGroupe, ...]
    résumé: Résumé
    durée_estimée_minutes: int


class Drop:
    """
    Agrégat racine : une diffusion d'articles vers des groupes.

    Cycle de vie :
        BROUILLON -> PROGRAMMÉ -> EN_COURS -> ENVOYÉ | ÉCHOUÉ
        BROUILLON | PROGRAMMÉ -> ANNULÉ
        ÉCHOUÉ -> EN_COURS (relance)
    """

    def __init__(
        self,
        id: str,
        nom: str,
        ids_articles: Sequence[str],
        ids_groupes: Sequence[str],
        créé_le: datetime,
        programmé_pour: Optional[datetime] = None,
        id_modèle_message: Optional[str] = None,
        statut: StatutDrop = StatutDrop.BROUILLON,
    ):
        self.id = id
        self.nom = nom
        self.ids_articles = list(ids_articles)
        self.ids_groupes = list(ids_groupes)
        self.créé_le = créé_le
        self.programmé_pour = programmé_pour
        self.id_modèle_message = id_modèle_message
        self.statut = statut
        self.total_articles_envoyés = 0
        self.total_groupes_envoyés = 0
        self.envoyé_le: Optional[datetime] = None
        self.événements: list[events.Event] = []

    def __repr__(self) -> str:
        return f"<Drop {self.id} {self.statut.value}>"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Drop):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    @classmethod
    def créer(
        cls,
        id: str,
        nom: str,
        ids_articles: Sequence[str],
        ids_groupes: Sequence[str],
        maintenant: datetime,
        programmé_pour: Optional[datetime] = None,
        id_modèle_message: Optional[str] = None,
    ) -> Drop:
        """
        Crée un drop en BROUILLON.

        Toutes les violations sont collectées avant de lever
        ErreurValidation, pas seulement la première.
        """
        nom = (nom or "").strip()
        erreurs = []
        if not NOM_MIN <= len(nom) <= NOM_MAX:
            erreurs.append(Anomalie(
                CodeAnomalie.NOM_INVALIDE,
                f"Le nom doit contenir entre {NOM_MIN} et {NOM_MAX} caractères",
            ))
        if not 1 <= len(ids_articles) <= ARTICLES_MAX:
            erreurs.append(Anomalie(
                CodeAnomalie.NOMBRE_ARTICLES,
                f"Entre 1 et {ARTICLES_MAX} articles par drop",
                nombre=len(ids_articles),
            ))
        if len(set(ids_articles)) != len(ids_articles):
            erreurs.append(Anomalie(CodeAnomalie.ARTICLES_EN_DOUBLE, "Articles en double détectés"))
        if len(ids_groupes) > GROUPES_MAX:
            erreurs.append(Anomalie(
                CodeAnomalie.NOMBRE_GROUPES,
                f"Maximum {GROUPES_MAX} groupes par envoi",
                nombre=len(ids_groupes),
            ))
        if len(set(ids_groupes)) != len(ids_groupes):
            erreurs.append(Anomalie(CodeAnomalie.GROUPES_EN_DOUBLE, "Groupes en double détectés"))
        if programmé_pour is not None and programmé_pour <= maintenant:
            erreurs.append(Anomalie(
                CodeAnomalie.DATE_PASSÉE, "La date programmée doit être dans le futur"
            ))
        if erreurs:
            raise ErreurValidation("Drop invalide", anomalies=erreurs)

        return cls(
            id=id,
            nom=nom,
            ids_articles=ids_articles,
            ids_groupes=ids_groupes,
            créé_le=maintenant,
            programmé_pour=programmé_pour,
            id_modèle_message=id_modèle_message,
        )

    # --- Transitions ---

    def _passer_à(self, cible: StatutDrop) -> None:
        if cible not in TRANSITIONS[self.statut]:
            raise TransitionInterdite(self.id, self.statut.value, cible.value)
        self.statut = cible

    def _exiger(self, statuts: Iterable[StatutDrop], cible: StatutDrop) -> None:
        if self.statut not in statuts:
            raise TransitionInterdite(self.id, self.statut.value, cible.value)

    def programmer(self, quand: datetime, maintenant: datetime) -> None:
        self._exiger(ENVOYABLES, StatutDrop.PROGRAMMÉ)
        if quand <= maintenant:
            raise ErreurValidation(
                "La date programmée doit être dans le futur",
                anomalies=[Anomalie(CodeAnomalie.DATE_PASSÉE, "Date programmée passée")],
            )
        self._passer_à(StatutDrop.PROGRAMMÉ)
        self.programmé_pour = quand

    def annuler(self) -> None:
        # Un drop EN_COURS laisserait un état partiel indéfini
        self._passer_à(StatutDrop.ANNULÉ)

    @property
    def supprimable(self) -> bool:
        return self.statut == StatutDrop.BROUILLON

    def est_échu(self, maintenant: datetime) -> bool:
        return (
            self.statut == StatutDrop.PROGRAMMÉ
            and self.programmé_pour is not None
            and self.programmé_pour <= maintenant
        )

    def commencer_envoi(
        self,
        par_groupe: Sequence[ValidationGroupe],
        erreurs: Sequence[Anomalie] = (),
    ) -> dict[str, tuple[str, ...]]:
        """
        BROUILLON | PROGRAMMÉ -> EN_COURS.

        Retourne, par groupe, les articles autorisés par la règle du même
        jour. Si aucun groupe n'a d'article autorisé, l'envoi est refusé
        avec le détail par groupe : "rien envoyé" ne doit jamais ressembler
        à "envoyé avec succès".
        """
        self._exiger(ENVOYABLES, StatutDrop.EN_COURS)
        return self._démarrer(par_groupe, erreurs)

    def relancer(
        self,
        par_groupe: Sequence[ValidationGroupe],
        erreurs: Sequence[Anomalie] = (),
    ) -> dict[str, tuple[str, ...]]:
        """
        ÉCHOUÉ -> EN_COURS.

        La règle est réévaluée : les paires déjà livrées lors de la
        tentative précédente sont maintenant bloquées et ne partent pas
        une seconde fois.
        """
        self._exiger({StatutDrop.ÉCHOUÉ}, StatutDrop.EN_COURS)
        return self._démarrer(par_groupe, erreurs)

    def _démarrer(
        self,
        par_groupe: Sequence[ValidationGroupe],
        erreurs: Sequence[Anomalie],
    ) -> dict[str, tuple[str, ...]]:
        if erreurs:
            raise ErreurValidation(f"Le drop {self.id} ne peut pas être envoyé", anomalies=erreurs)
        if not peut_envoyer(par_groupe):
            raise EnvoiImpossible(
                self.id,
                list(par_groupe),
                anomalies=[a for v in par_groupe for a in v.avertissements],
            )
        self._passer_à(StatutDrop.EN_COURS)
        return {v.id_groupe: v.articles_autorisés for v in par_groupe if v.articles_autorisés}

    def terminer_envoi(
        self,
        résultats: Sequence[RésultatEnvoi],
        maintenant: datetime,
        déjà_envoyées: Iterable[tuple[str, str]] = (),
    ) -> None:
        """
        EN_COURS -> ENVOYÉ | ÉCHOUÉ.

        Les totaux comptent ce qui a réellement été livré par ce drop
        (cette tentative et les précédentes), pas ce qui était demandé.
        `déjà_envoyées` : paires (article, groupe) livrées avant la relance.
        """
        réussies = {(r.id_article, r.id_groupe) for r in résultats if r.succès}
        livrées = réussies | set(déjà_envoyées)
        self.total_articles_envoyés = len({a for a, _ in livrées})
        self.total_groupes_envoyés = len({g for _, g in livrées})

        échecs = [r for r in résultats if not r.succès]
        if résultats and not échecs:
            self._passer_à(StatutDrop.ENVOYÉ)
            self.envoyé_le = maintenant
            self.événements.append(events.DropEnvoyé(
                id_drop=self.id,
                total_articles=self.total_articles_envoyés,
                total_groupes=self.total_groupes_envoyés,
            ))
        else:
            self._passer_à(StatutDrop.ÉCHOUÉ)
            self.événements.append(events.DropÉchoué(
                id_drop=self.id,
                nom=self.nom,
                échecs=len(échecs),
                réussis=len(réussies),
            ))


def composer_validation(
    drop: Drop,
    articles: dict[str, Optional[Article]],
    groupes_inconnus: Sequence[str],
    par_groupe: Sequence[ValidationGroupe],
    maintenant: Optional[datetime] = None,
) -> ValidationDrop:
    """
    Assemble le résultat de validation d'un drop.

    Les erreurs empêchent tout envoi ; les avertissements informent
    l'opérateur (règle du même jour, ruptures, drop volumineux, date
    de programmation trop proche ou trop lointaine). Sans `maintenant`,
    la date de programmation n'est pas examinée.
    """
    erreurs = []
    avertissements = []

    if drop.statut not in ENVOYABLES | {StatutDrop.ÉCHOUÉ}:
        erreurs.append(Anomalie(
            CodeAnomalie.STATUT_INCOMPATIBLE,
            f"Le drop ne peut pas être envoyé (statut : {drop.statut.value})",
        ))
    for id_article in drop.ids_articles:
        article = articles.get(id_article)
        if article is None:
            erreurs.append(Anomalie(
                CodeAnomalie.ARTICLE_INCONNU, f"Article {id_article} introuvable",
                id_article=id_article,
            ))
        elif article.statut == StatutArticle.ARCHIVÉ:
            erreurs.append(Anomalie(
                CodeAnomalie.ARTICLE_ARCHIVÉ, f'Article "{article.nom}" archivé',
                id_article=id_article,
            ))
        elif not article.disponible:
            avertissements.append(Anomalie(
                CodeAnomalie.ARTICLE_EN_RUPTURE, f'Article "{article.nom}" en rupture de stock',
                id_article=id_article,
            ))
    for id_groupe in groupes_inconnus:
        erreurs.append(Anomalie(
            CodeAnomalie.GROUPE_INCONNU, f"Groupe {id_groupe} introuvable", id_groupe=id_groupe,
        ))
    if not drop.ids_groupes:
        erreurs.append(Anomalie(CodeAnomalie.AUCUN_GROUPE, "Aucun groupe de destination"))

    if len(drop.ids_articles) > ARTICLES_CONSEILLÉS:
        avertissements.append(Anomalie(
            CodeAnomalie.DROP_VOLUMINEUX,
            f"{len(drop.ids_articles)} articles - drop complexe, envisager de diviser",
            nombre=len(drop.ids_articles),
        ))
    if len(drop.ids_groupes) > GROUPES_CONSEILLÉS:
        avertissements.append(Anomalie(
            CodeAnomalie.DIFFUSION_LARGE,
            f"{len(drop.ids_groupes)} groupes - temps d'envoi prolongé",
            nombre=len(drop.ids_groupes),
        ))
    if drop.programmé_pour is not None and maintenant is not None:
        avertissements.extend(_avertissements_programmation(drop.programmé_pour - maintenant))
    avertissements.extend(a for v in par_groupe for a in v.avertissements)

    return ValidationDrop(
        peut_envoyer=not erreurs and peut_envoyer(par_groupe),
        erreurs=tuple(erreurs),
        avertissements=tuple(avertissements),
        par_groupe=tuple(par_groupe),
        résumé=résumé(par_groupe),
        durée_estimée_minutes=durée_estimée(len(drop.ids_articles), len(drop.ids_groupes)),
    )


def _avertissements_programmation(délai: timedelta) -> list[Anomalie]:
    if délai < PRÉAVIS_CONSEILLÉ:
        return [Anomalie(CodeAnomalie.PROGRAMMATION_PROCHE, "Programmé dans moins d'1 heure")]
    if délai > HORIZON_CONSEILLÉ:
        return [Anomalie(CodeAnomalie.PROGRAMMATION_LOINTAINE, "Programmé dans plus de 7 jours")]
    return []


def durée_estimée(nombre_articles: int, nombre_groupes: int) -> int:
    """Durée d'envoi estimée, en minutes entières (arrondi supérieur)."""
    return math.ceil(nombre_articles * nombre_groupes * SECONDES_PAR_MESSAGE / 60)
