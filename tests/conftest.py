"""
Configuration partagée pour les tests.

Le mapping ORM est démarré une seule fois pour toute la session de tests.
Les fakes (repositories en mémoire, Unit of Work, horloge, transport)
servent aux tests unitaires ; les fixtures SQLite aux tests
d'intégration et e2e.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from itertools import count

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from dropindrop.adapters import clock, orm, repository
from dropindrop.adapters.messaging import AbstractMessagerie, RapportEnvoi
from dropindrop.adapters.notifications import AbstractNotifications
from dropindrop.config import Settings
from dropindrop.domain import model
from dropindrop.domain.errors import ErreurConflit
from dropindrop.service_layer import bootstrap, unit_of_work

# Vendredi 14 mars 2025, 11:00 à Douala (UTC+1)
MAINTENANT = datetime(2025, 3, 14, 10, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session", autouse=True)
def mappers():
    """Démarre le mapping ORM une fois pour toute la session."""
    orm.start_mappers()


# --- Fakes pour les tests ---


class FakeDropRepository(repository.AbstractDropRepository):
    def __init__(self) -> None:
        super().__init__()
        self._drops: dict[str, model.Drop] = {}

    def _add(self, drop):
        self._drops[drop.id] = drop

    def _get(self, id):
        return self._drops.get(id)

    def _supprimer(self, drop):
        del self._drops[drop.id]

    def _programmés(self):
        return [d for d in self._drops.values() if d.statut == model.StatutDrop.PROGRAMMÉ]


class FakeHistorique(repository.AbstractHistorique):
    """
    Historique en mémoire. Les ajouts ne deviennent visibles qu'au
    commit, qui applique la même contrainte d'unicité que la base.
    """

    def __init__(self) -> None:
        self.entrées: list[model.EntréeHistorique] = []
        self._en_attente: list[model.EntréeHistorique] = []

    def _ajouter(self, entrée):
        self._en_attente.append(entrée)

    def valider(self) -> None:
        en_attente, self._en_attente = self._en_attente, []
        clés = {
            (e.id_article, e.id_groupe, e.jour) for e in self.entrées if e.jour is not None
        }
        for entrée in en_attente:
            if entrée.jour is not None:
                clé = (entrée.id_article, entrée.id_groupe, entrée.jour)
                if clé in clés:
                    raise ErreurConflit("Enregistrement déjà existant")
                clés.add(clé)
        self.entrées.extend(en_attente)

    def annuler(self) -> None:
        self._en_attente = []

    def articles_envoyés(self, id_groupe, début, fin):
        return {
            e.id_article for e in self.succès()
            if e.id_groupe == id_groupe and début <= e.envoyé_le <= fin
        }

    def paires_livrées(self, id_drop):
        return {(e.id_article, e.id_groupe) for e in self.succès() if e.id_drop == id_drop}

    def du_drop(self, id_drop):
        return sorted((e for e in self.entrées if e.id_drop == id_drop), key=lambda e: e.envoyé_le)

    def succès(self) -> list[model.EntréeHistorique]:
        return [e for e in self.entrées if e.résultat == model.Résultat.SUCCÈS]

    def échecs(self) -> list[model.EntréeHistorique]:
        return [e for e in self.entrées if e.résultat == model.Résultat.ÉCHEC]


class FakeCommandeRepository(repository.AbstractCommandeRepository):
    def __init__(self, commandes=()):
        super().__init__()
        self._commandes = {c.id: c for c in commandes}

    def _add(self, commande):
        self._commandes[commande.id] = commande

    def _get(self, id):
        return self._commandes.get(id)


class FakeTicketRepository(repository.AbstractTicketRepository):
    def __init__(self) -> None:
        super().__init__()
        self._tickets = {}

    def _add(self, ticket):
        if any(t.code == ticket.code for t in self._tickets.values()):
            raise ErreurConflit("Enregistrement déjà existant")
        self._tickets[ticket.id] = ticket

    def _get(self, id):
        return self._tickets.get(id)

    def _get_par_code(self, code):
        return next((t for t in self._tickets.values() if t.code == code), None)

    def _get_par_commande(self, id_commande):
        return next((t for t in self._tickets.values() if t.id_commande == id_commande), None)


class FakeCatalogue(repository.AbstractCatalogue):
    def __init__(self, articles=()):
        self._articles = {a.id: a for a in articles}

    def get(self, id):
        return self._articles.get(id)

    def ajouter(self, article):
        self._articles[article.id] = article


class FakeAnnuaireGroupes(repository.AbstractAnnuaireGroupes):
    def __init__(self, groupes=()):
        self._groupes = {g.id: g for g in groupes}

    def get(self, id):
        return self._groupes.get(id)


class FakeUnitOfWork(unit_of_work.AbstractUnitOfWork):
    """
    Unit of Work en mémoire pour les tests.

    Un seul stockage partagé : dupliquer() retourne le même objet, et un
    verrou réentrant sérialise les transactions des différents threads
    (requêtes concurrentes, workers de diffusion).
    """

    def __init__(self, articles=(), groupes=(), commandes=()):
        super().__init__()
        self.drops = FakeDropRepository()
        self.historique = FakeHistorique()
        self.commandes = FakeCommandeRepository(commandes)
        self.tickets = FakeTicketRepository()
        self.catalogue = FakeCatalogue(articles)
        self.groupes = FakeAnnuaireGroupes(groupes)
        self.committed = False
        self._verrou = threading.RLock()

    def __enter__(self) -> FakeUnitOfWork:
        self._verrou.acquire()
        for repo in (self.drops, self.commandes, self.tickets):
            repo.seen = set()
        return super().__enter__()

    def __exit__(self, *args):
        try:
            super().__exit__(*args)
        finally:
            self._verrou.release()

    def dupliquer(self) -> FakeUnitOfWork:
        return self

    def collect_new_events(self):
        with self._verrou:
            return list(super().collect_new_events())

    def _commit(self) -> None:
        self.historique.valider()
        self.committed = True

    def rollback(self) -> None:
        self.historique.annuler()


class FakeHorloge(clock.AbstractHorloge):
    def __init__(self, maintenant: datetime = MAINTENANT):
        self.instant = maintenant

    def maintenant(self) -> datetime:
        return self.instant

    def avancer(self, **durée) -> None:
        self.instant += timedelta(**durée)


class IdsSéquentiels(clock.AbstractGénérateurIds):
    def __init__(self, préfixe: str = "id"):
        self.préfixe = préfixe
        self._compteur = count(1)
        self._verrou = threading.Lock()

    def nouvel_id(self) -> str:
        with self._verrou:
            return f"{self.préfixe}-{next(self._compteur)}"


class FakeMessagerie(AbstractMessagerie):
    """
    Transport en mémoire.

    `refus` : paires (groupe, article) refusées par la passerelle ;
    `exceptions` : paires dont l'envoi lève l'exception donnée ;
    `avant_envoi` : crochet appelé avant chaque envoi (simulations).
    """

    def __init__(self) -> None:
        self.envoyés: list[tuple[str, str]] = []
        self.refus: set[tuple[str, str]] = set()
        self.exceptions: dict[tuple[str, str], Exception] = {}
        self.avant_envoi = None
        self._verrou = threading.Lock()

    def envoyer(self, id_groupe, message):
        paire = (id_groupe, message.id_article)
        if self.avant_envoi is not None:
            self.avant_envoi(id_groupe, message)
        if paire in self.exceptions:
            raise self.exceptions[paire]
        if paire in self.refus:
            return RapportEnvoi(succès=False, erreur="Groupe introuvable côté passerelle")
        with self._verrou:
            self.envoyés.append(paire)
        return RapportEnvoi(succès=True)


class FakeNotifications(AbstractNotifications):
    """Capture les notifications envoyées pour vérification dans les tests."""

    def __init__(self) -> None:
        self.envoyées: list[tuple[str, str]] = []

    def send(self, destination: str, message: str) -> None:
        self.envoyées.append((destination, message))


# --- Données de référence ---


def articles_de_test() -> list[model.Article]:
    return [
        model.Article("art-a", "Robe wax", 15000, stock=5),
        model.Article("art-b", "Sac en raphia", 8500, stock=3),
        model.Article("art-c", "Sandales cuir", 12000, stock=8),
        model.Article("art-d", "Foulard soie", 6000, stock=2),
    ]


def groupes_de_test() -> list[model.Groupe]:
    return [
        model.Groupe("grp-1@g.us", "Clientes Akwa"),
        model.Groupe("grp-2@g.us", "Clientes Bonapriso"),
        model.Groupe("grp-3@g.us", "VIP Yaoundé"),
    ]


def settings_de_test(**valeurs) -> Settings:
    valeurs.setdefault("DELAI_ENVOI_SECONDES", 2.0)
    return Settings(_env_file=None, EMAIL_ALERTES="ops@dropindrop.test", **valeurs)


# --- Fixtures : fakes ---


@pytest.fixture
def horloge():
    return FakeHorloge()


@pytest.fixture
def messagerie():
    return FakeMessagerie()


@pytest.fixture
def notifications():
    return FakeNotifications()


@pytest.fixture
def uow():
    return FakeUnitOfWork(articles=articles_de_test(), groupes=groupes_de_test())


@pytest.fixture
def bus(uow, messagerie, horloge, notifications):
    return bootstrap.bootstrap(
        start_orm=False,
        uow=uow,
        notifications_adapter=notifications,
        messagerie=messagerie,
        horloge=horloge,
        ids=IdsSéquentiels(),
        settings=settings_de_test(),
    )


# --- Fixtures : SQLite ---


@pytest.fixture
def sqlite_session_factory(tmp_path):
    """
    Base SQLite sur fichier : chaque session a sa propre connexion,
    ce qui permet de rejouer des transactions concurrentes.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'dropindrop.db'}",
        connect_args={"timeout": 30, "check_same_thread": False},
    )
    orm.metadata.create_all(engine)
    yield sessionmaker(bind=engine)
    engine.dispose()


@pytest.fixture
def sqlite_uow(sqlite_session_factory):
    return unit_of_work.SqlAlchemyUnitOfWork(sqlite_session_factory)


@pytest.fixture
def référentiel_sqlite(sqlite_session_factory):
    """Articles et groupes de référence insérés en base."""
    session = sqlite_session_factory()
    session.add_all(articles_de_test() + groupes_de_test())
    session.commit()
    session.close()
