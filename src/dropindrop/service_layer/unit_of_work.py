"""
Pattern Unit of Work.

Le Unit of Work (UoW) délimite une transaction atomique : tout ce qui
est fait entre l'entrée et le commit est écrit ensemble, ou pas du tout.
Il collecte aussi les événements émis par les agrégats rencontrés.

    with uow:
        # ... opérations sur les repositories ...
        uow.commit()

Quand le stockage refuse un commit (index unique violé, ligne modifiée
entre-temps, transaction sérialisée perdante), le UoW annule et lève
ErreurConflit : c'est le stockage, pas la vérification préalable,
qui a le dernier mot.
"""

from __future__ import annotations

import abc
import logging
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from dropindrop.adapters import repository
from dropindrop.config import get_settings
from dropindrop.domain import events
from dropindrop.domain.errors import ErreurConflit

logger = logging.getLogger(__name__)

DEFAULT_ENGINE = create_engine(
    get_settings().DATABASE_URL,
    isolation_level="SERIALIZABLE",
)
DEFAULT_SESSION_FACTORY = sessionmaker(bind=DEFAULT_ENGINE)


class AbstractUnitOfWork(abc.ABC):
    """
    Interface abstraite du Unit of Work.

    Le rollback est automatique si commit() n'est pas appelé
    (grâce au __exit__ du context manager).
    """

    drops: repository.AbstractDropRepository
    historique: repository.AbstractHistorique
    commandes: repository.AbstractCommandeRepository
    tickets: repository.AbstractTicketRepository
    catalogue: repository.AbstractCatalogue
    groupes: repository.AbstractAnnuaireGroupes

    def __init__(self) -> None:
        self._vus: list = []
        self._commité = False

    def __enter__(self) -> AbstractUnitOfWork:
        self._commité = False
        return self

    def __exit__(self, *args: object) -> None:
        self.rollback()
        vus = list(self._agrégats_vus())
        if not self._commité:
            # Rien n'a été écrit : les événements de cette transaction n'ont pas eu lieu
            for agrégat in vus:
                agrégat.événements.clear()
        self._vus.extend(vus)

    def commit(self) -> None:
        self._commit()
        self._commité = True

    def collect_new_events(self) -> Iterator[events.Event]:
        """
        Vide les événements des agrégats vus depuis la dernière collecte,
        y compris ceux des transactions précédentes du même handler.
        """
        vus, self._vus = self._vus + list(self._agrégats_vus()), []
        for agrégat in vus:
            while agrégat.événements:
                yield agrégat.événements.pop(0)

    def _agrégats_vus(self) -> Iterator:
        for repo in (self.drops, self.commandes, self.tickets):
            yield from repo.seen

    @abc.abstractmethod
    def dupliquer(self) -> AbstractUnitOfWork:
        """
        Un UoW indépendant sur le même stockage.

        Deux fils d'exécution ne partagent jamais une même session :
        chaque requête, chaque worker de diffusion a le sien.
        """
        raise NotImplementedError

    @abc.abstractmethod
    def _commit(self) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def rollback(self) -> None:
        raise NotImplementedError


class SqlAlchemyUnitOfWork(AbstractUnitOfWork):
    """
    Implémentation concrète du UoW avec SQLAlchemy.

    Crée une session à l'entrée du context manager,
    la ferme à la sortie. Rollback automatique si pas de commit.
    """

    def __init__(self, session_factory: sessionmaker = DEFAULT_SESSION_FACTORY):
        super().__init__()
        self.session_factory = session_factory

    def __enter__(self) -> SqlAlchemyUnitOfWork:
        self.session: Session = self.session_factory()
        self.drops = repository.SqlAlchemyDropRepository(self.session)
        self.historique = repository.SqlAlchemyHistorique(self.session)
        self.commandes = repository.SqlAlchemyCommandeRepository(self.session)
        self.tickets = repository.SqlAlchemyTicketRepository(self.session)
        self.catalogue = repository.SqlAlchemyCatalogue(self.session)
        self.groupes = repository.SqlAlchemyAnnuaireGroupes(self.session)
        return super().__enter__()

    def __exit__(self, *args: object) -> None:
        super().__exit__(*args)
        self.session.close()

    def dupliquer(self) -> SqlAlchemyUnitOfWork:
        return SqlAlchemyUnitOfWork(self.session_factory)

    def _commit(self) -> None:
        try:
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            logger.info("Commit refusé par une contrainte d'unicité : %s", e.orig)
            raise ErreurConflit("Enregistrement déjà existant") from e
        except StaleDataError as e:
            self.session.rollback()
            logger.info("Commit refusé, ligne modifiée par une autre transaction : %s", e)
            raise ErreurConflit("Modifié simultanément par une autre opération") from e
        except DBAPIError as e:
            if not repository.est_échec_de_sérialisation(e):
                raise
            self.session.rollback()
            logger.info("Commit refusé, transaction concurrente sérialisée avant : %s", e.orig)
            raise ErreurConflit("Modifié simultanément par une autre opération") from e

    def rollback(self) -> None:
        self.session.rollback()
