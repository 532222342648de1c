"""
Mapping ORM avec SQLAlchemy (classical mapping).

On définit les tables séparément, puis on mappe les classes
du domaine sur ces tables. Le modèle reste ignorant de la persistance.

Deux contraintes portent les garanties "au plus une fois" :
- historique_envois : unique (article_id, groupe_id, jour), où `jour`
  n'est renseigné que pour les succès ;
- tickets : unique commande_id, unique code.

Les colonnes `version` sont des compteurs optimistes : une mise à jour
concurrente sur une ligne déjà modifiée échoue au commit.

Les colonnes SQL restent en ASCII, le mapping traduit vers les
attributs français du domaine.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import registry
from sqlalchemy.types import TypeDecorator

from dropindrop.domain import model, tickets

metadata = MetaData()
mapper_registry = registry(metadata=metadata)


class HorodatageUTC(TypeDecorator):
    """Stocke un instant avec fuseau en UTC naïf, le relit en UTC avec fuseau."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is not None:
            value = value.replace(tzinfo=timezone.utc)
        return value


def _énumération(classe: type, nom: str) -> Enum:
    # On stocke les valeurs ("DRAFT"), pas les noms de membres français
    return Enum(
        classe,
        name=nom,
        native_enum=False,
        length=20,
        values_callable=lambda e: [m.value for m in e],
    )


# --- Définition des tables ---

articles = Table(
    "articles",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("nom", String(255), nullable=False),
    Column("prix", Integer, nullable=False),
    Column("stock", Integer, nullable=False, server_default="0"),
    Column("statut", _énumération(model.StatutArticle, "statut_article"), nullable=False),
)

groupes = Table(
    "groupes",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("nom", String(255), nullable=False),
)

drops = Table(
    "drops",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("nom", String(100), nullable=False),
    Column("ids_articles", JSON, nullable=False),
    Column("ids_groupes", JSON, nullable=False),
    Column("id_modele_message", String(36), nullable=True),
    Column("programme_pour", HorodatageUTC, nullable=True),
    Column("statut", _énumération(model.StatutDrop, "statut_drop"), nullable=False),
    Column("total_articles_envoyes", Integer, nullable=False, server_default="0"),
    Column("total_groupes_envoyes", Integer, nullable=False, server_default="0"),
    Column("cree_le", HorodatageUTC, nullable=False),
    Column("envoye_le", HorodatageUTC, nullable=True),
    Column("version", Integer, nullable=False),
)

historique_envois = Table(
    "historique_envois",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("article_id", String(36), nullable=False),
    Column("groupe_id", String(64), nullable=False),
    Column("drop_id", String(36), ForeignKey("drops.id"), nullable=False),
    Column("envoye_le", HorodatageUTC, nullable=False),
    Column("resultat", _énumération(model.Résultat, "resultat_envoi"), nullable=False),
    Column("jour", Date, nullable=True),
    Column("erreur", String(500), nullable=True),
    UniqueConstraint("article_id", "groupe_id", "jour", name="uq_historique_article_groupe_jour"),
    Index("ix_historique_groupe_envoye_le", "groupe_id", "envoye_le"),
)

commandes = Table(
    "commandes",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("statut_paiement", _énumération(tickets.StatutPaiement, "statut_paiement"), nullable=False),
    Column("statut_retrait", _énumération(tickets.StatutRetrait, "statut_retrait"), nullable=False),
    Column("retiree_le", HorodatageUTC, nullable=True),
    Column("retiree_par", String(64), nullable=True),
    Column("version", Integer, nullable=False),
)

tickets_table = Table(
    "tickets",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("commande_id", String(36), ForeignKey("commandes.id"), nullable=False, unique=True),
    Column("code", String(9), nullable=False, unique=True),
    Column("charge_qr", String(512), nullable=False, index=True),
    Column("emis_le", HorodatageUTC, nullable=False),
    Column("expire_le", HorodatageUTC, nullable=False),
    Column("est_utilise", Boolean, nullable=False, server_default="0"),
    Column("utilise_le", HorodatageUTC, nullable=True),
    Column("utilise_par", String(64), nullable=True),
    Column("version", Integer, nullable=False),
)


def start_mappers() -> None:
    """
    Configure le mapping entre les classes du domaine et les tables SQL.

    Idempotent : le bootstrap et les tests peuvent l'appeler tous les deux.
    """
    if mapper_registry.mappers:
        return

    mapper_registry.map_imperatively(model.Article, articles)
    mapper_registry.map_imperatively(model.Groupe, groupes)
    mapper_registry.map_imperatively(
        model.EntréeHistorique,
        historique_envois,
        properties={
            "id_article": historique_envois.c.article_id,
            "id_groupe": historique_envois.c.groupe_id,
            "id_drop": historique_envois.c.drop_id,
            "envoyé_le": historique_envois.c.envoye_le,
            "résultat": historique_envois.c.resultat,
        },
    )
    mapper_registry.map_imperatively(
        model.Drop,
        drops,
        properties={
            "id_modèle_message": drops.c.id_modele_message,
            "programmé_pour": drops.c.programme_pour,
            "total_articles_envoyés": drops.c.total_articles_envoyes,
            "total_groupes_envoyés": drops.c.total_groupes_envoyes,
            "créé_le": drops.c.cree_le,
            "envoyé_le": drops.c.envoye_le,
        },
        version_id_col=drops.c.version,
    )
    mapper_registry.map_imperatively(
        tickets.Commande,
        commandes,
        properties={
            "retirée_le": commandes.c.retiree_le,
            "retirée_par": commandes.c.retiree_par,
        },
        version_id_col=commandes.c.version,
    )
    mapper_registry.map_imperatively(
        tickets.Ticket,
        tickets_table,
        properties={
            "id_commande": tickets_table.c.commande_id,
            "émis_le": tickets_table.c.emis_le,
            "est_utilisé": tickets_table.c.est_utilise,
            "utilisé_le": tickets_table.c.utilise_le,
            "utilisé_par": tickets_table.c.utilise_par,
        },
        version_id_col=tickets_table.c.version,
    )

    for classe in (model.Drop, tickets.Commande, tickets.Ticket):
        event.listen(classe, "load", _initialiser_événements)


def _initialiser_événements(agrégat: object, _: object) -> None:
    """Le chargement depuis la BDD ne passe pas par __init__."""
    agrégat.événements = []
