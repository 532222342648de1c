"""
Pattern Repository.

Chaque repository expose une interface de type collection qui masque
l'accès aux données. Les noms de méthodes du pattern (add, get) restent
en anglais ; les requêtes spécifiques au domaine sont en français.

Les repositories d'agrégats (drops, tickets, commandes) tracent les
objets vus pendant la transaction dans `seen`, ce qui permet au Unit
of Work de collecter leurs événements. L'historique, le catalogue et
l'annuaire des groupes ne portent pas d'événements.
"""

from __future__ import annotations

import abc
from contextlib import contextmanager
from datetime import datetime
from typing import Generic, Iterator, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from dropindrop.domain import model, tickets
from dropindrop.domain.errors import ErreurConflit

A = TypeVar("A")

# SQLSTATE d'une transaction SERIALIZABLE qui a perdu une course (PostgreSQL)
ÉCHEC_DE_SÉRIALISATION = "40001"


def est_échec_de_sérialisation(erreur: DBAPIError) -> bool:
    # psycopg 3 expose sqlstate, psycopg2 pgcode
    code = getattr(erreur.orig, "sqlstate", None) or getattr(erreur.orig, "pgcode", None)
    return code == ÉCHEC_DE_SÉRIALISATION


@contextmanager
def course_perdue(session: Session) -> Iterator[None]:
    """
    Traduit un échec de sérialisation en ErreurConflit.

    Sous SERIALIZABLE, le perdant d'une course peut être refusé dès la
    lecture verrouillante, avant même le commit. Les autres erreurs du
    stockage remontent telles quelles.
    """
    try:
        yield
    except DBAPIError as e:
        if not est_échec_de_sérialisation(e):
            raise
        session.rollback()
        raise ErreurConflit("Modifié simultanément par une autre opération") from e


class AbstractRepository(abc.ABC, Generic[A]):
    """
    Base des repositories d'agrégats.

    Template Method : les méthodes publiques gèrent le tracking via
    `seen`, puis délèguent aux méthodes abstraites préfixées _.
    """

    def __init__(self) -> None:
        self.seen: set[A] = set()

    def add(self, agrégat: A) -> None:
        self._add(agrégat)
        self.seen.add(agrégat)

    def get(self, id: str) -> Optional[A]:
        return self._vu(self._get(id))

    def _vu(self, agrégat: Optional[A]) -> Optional[A]:
        if agrégat is not None:
            self.seen.add(agrégat)
        return agrégat

    @abc.abstractmethod
    def _add(self, agrégat: A) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def _get(self, id: str) -> Optional[A]:
        raise NotImplementedError


# --- Drops ---


class AbstractDropRepository(AbstractRepository[model.Drop]):
    def supprimer(self, drop: model.Drop) -> None:
        self._supprimer(drop)
        self.seen.discard(drop)

    def échus(self, maintenant: datetime) -> list[model.Drop]:
        """Drops PROGRAMMÉS dont l'heure d'envoi est passée."""
        échus = [d for d in self._programmés() if d.est_échu(maintenant)]
        self.seen.update(échus)
        return échus

    @abc.abstractmethod
    def _supprimer(self, drop: model.Drop) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def _programmés(self) -> list[model.Drop]:
        raise NotImplementedError


class SqlAlchemyDropRepository(AbstractDropRepository):
    def __init__(self, session: Session):
        super().__init__()
        self.session = session

    def _add(self, drop: model.Drop) -> None:
        self.session.add(drop)

    def _get(self, id: str) -> Optional[model.Drop]:
        return self.session.get(model.Drop, id)

    def _supprimer(self, drop: model.Drop) -> None:
        self.session.delete(drop)

    def _programmés(self) -> list[model.Drop]:
        return list(
            self.session.scalars(
                select(model.Drop).filter_by(statut=model.StatutDrop.PROGRAMMÉ)
            )
        )


# --- Historique des envois ---


class AbstractHistorique(abc.ABC):
    """
    Journal append-only des tentatives d'envoi.

    Seule source de vérité de la règle du même jour. On n'y modifie ni
    ne supprime jamais rien. Un second succès pour le même
    (article, groupe, jour) est refusé par le stockage lui-même.
    """

    def ajouter(self, entrée: model.EntréeHistorique) -> None:
        self._ajouter(entrée)

    @abc.abstractmethod
    def _ajouter(self, entrée: model.EntréeHistorique) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def articles_envoyés(self, id_groupe: str, début: datetime, fin: datetime) -> set[str]:
        """Articles livrés avec succès au groupe entre début et fin (inclus)."""
        raise NotImplementedError

    @abc.abstractmethod
    def paires_livrées(self, id_drop: str) -> set[tuple[str, str]]:
        """Paires (article, groupe) livrées avec succès par un drop."""
        raise NotImplementedError

    @abc.abstractmethod
    def du_drop(self, id_drop: str) -> list[model.EntréeHistorique]:
        raise NotImplementedError


class SqlAlchemyHistorique(AbstractHistorique):
    def __init__(self, session: Session):
        self.session = session

    def _ajouter(self, entrée: model.EntréeHistorique) -> None:
        self.session.add(entrée)

    def articles_envoyés(self, id_groupe: str, début: datetime, fin: datetime) -> set[str]:
        EH = model.EntréeHistorique
        requête = select(EH.id_article).where(
            EH.id_groupe == id_groupe,
            EH.résultat == model.Résultat.SUCCÈS,
            EH.envoyé_le >= début,
            EH.envoyé_le <= fin,
        )
        return set(self.session.scalars(requête))

    def paires_livrées(self, id_drop: str) -> set[tuple[str, str]]:
        EH = model.EntréeHistorique
        requête = select(EH.id_article, EH.id_groupe).where(
            EH.id_drop == id_drop, EH.résultat == model.Résultat.SUCCÈS
        )
        return {(a, g) for a, g in self.session.execute(requête)}

    def du_drop(self, id_drop: str) -> list[model.EntréeHistorique]:
        EH = model.EntréeHistorique
        requête = select(EH).where(EH.id_drop == id_drop).order_by(EH.envoyé_le)
        return list(self.session.scalars(requête))


# --- Commandes et tickets ---


class AbstractCommandeRepository(AbstractRepository[tickets.Commande]):
    def get_pour_maj(self, id: str) -> Optional[tickets.Commande]:
        """Comme get, en verrouillant la ligne jusqu'à la fin de la transaction."""
        return self._vu(self._get_pour_maj(id))

    def _get_pour_maj(self, id: str) -> Optional[tickets.Commande]:
        return self._get(id)


class SqlAlchemyCommandeRepository(AbstractCommandeRepository):
    def __init__(self, session: Session):
        super().__init__()
        self.session = session

    def _add(self, commande: tickets.Commande) -> None:
        self.session.add(commande)

    def _get(self, id: str) -> Optional[tickets.Commande]:
        return self.session.get(tickets.Commande, id)

    def _get_pour_maj(self, id: str) -> Optional[tickets.Commande]:
        with course_perdue(self.session):
            return self.session.get(tickets.Commande, id, with_for_update=True)


class AbstractTicketRepository(AbstractRepository[tickets.Ticket]):
    def get_par_code(self, code: str) -> Optional[tickets.Ticket]:
        return self._vu(self._get_par_code(code))

    def get_par_commande(self, id_commande: str) -> Optional[tickets.Ticket]:
        return self._vu(self._get_par_commande(id_commande))

    def get_pour_remise(self, id: str) -> Optional[tickets.Ticket]:
        """Charge le ticket en verrouillant sa ligne (SELECT ... FOR UPDATE)."""
        return self._vu(self._get_pour_remise(id))

    def _get_pour_remise(self, id: str) -> Optional[tickets.Ticket]:
        return self._get(id)

    @abc.abstractmethod
    def _get_par_code(self, code: str) -> Optional[tickets.Ticket]:
        raise NotImplementedError

    @abc.abstractmethod
    def _get_par_commande(self, id_commande: str) -> Optional[tickets.Ticket]:
        raise NotImplementedError


class SqlAlchemyTicketRepository(AbstractTicketRepository):
    def __init__(self, session: Session):
        super().__init__()
        self.session = session

    def _add(self, ticket: tickets.Ticket) -> None:
        self.session.add(ticket)

    def _get(self, id: str) -> Optional[tickets.Ticket]:
        return self.session.get(tickets.Ticket, id)

    def _get_pour_remise(self, id: str) -> Optional[tickets.Ticket]:
        with course_perdue(self.session):
            return self.session.get(tickets.Ticket, id, with_for_update=True)

    def _get_par_code(self, code: str) -> Optional[tickets.Ticket]:
        return self.session.scalars(
            select(tickets.Ticket).filter_by(code=code)
        ).first()

    def _get_par_commande(self, id_commande: str) -> Optional[tickets.Ticket]:
        return self.session.scalars(
            select(tickets.Ticket).filter_by(id_commande=id_commande)
        ).first()


# --- Collaborateurs externes, en lecture seule ---


class AbstractCatalogue(abc.ABC):
    @abc.abstractmethod
    def get(self, id: str) -> Optional[model.Article]:
        raise NotImplementedError


class SqlAlchemyCatalogue(AbstractCatalogue):
    def __init__(self, session: Session):
        self.session = session

    def get(self, id: str) -> Optional[model.Article]:
        return self.session.get(model.Article, id)


class AbstractAnnuaireGroupes(abc.ABC):
    @abc.abstractmethod
    def get(self, id: str) -> Optional[model.Groupe]:
        raise NotImplementedError


class SqlAlchemyAnnuaireGroupes(AbstractAnnuaireGroupes):
    def __init__(self, session: Session):
        self.session = session

    def get(self, id: str) -> Optional[model.Groupe]:
        return self.session.get(model.Groupe, id)
