"""
Views (lecture) pour le pattern CQRS.

Côté Query : ces fonctions lisent sans jamais écrire. La validation
d'un drop et la vérification d'un ticket n'ont aucun effet de bord,
on peut les appeler autant de fois que nécessaire avant d'engager
un envoi ou une remise.

Les instantanés (dict) sont ce que l'API renvoie ; les handlers
s'en servent aussi pour retourner l'état après une écriture.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Optional

from dropindrop.adapters.clock import AbstractHorloge
from dropindrop.domain import model, ticket_codes
from dropindrop.domain.errors import Introuvable
from dropindrop.domain.same_day import GardeMêmeJour
from dropindrop.domain.tickets import Commande, Ticket
from dropindrop.service_layer import unit_of_work


def _iso(valeur: Optional[datetime | date]) -> Optional[str]:
    return valeur.isoformat() if valeur is not None else None


def instantané_drop(drop: model.Drop) -> dict[str, Any]:
    return {
        "id": drop.id,
        "nom": drop.nom,
        "statut": drop.statut.value,
        "ids_articles": list(drop.ids_articles),
        "ids_groupes": list(drop.ids_groupes),
        "programmé_pour": _iso(drop.programmé_pour),
        "id_modèle_message": drop.id_modèle_message,
        "total_articles_envoyés": drop.total_articles_envoyés,
        "total_groupes_envoyés": drop.total_groupes_envoyés,
        "créé_le": _iso(drop.créé_le),
        "envoyé_le": _iso(drop.envoyé_le),
    }


def instantané_ticket(ticket: Ticket) -> dict[str, Any]:
    return {
        "id": ticket.id,
        "id_commande": ticket.id_commande,
        "code": ticket.code,
        "charge_qr": ticket.charge_qr,
        "émis_le": _iso(ticket.émis_le),
        "expire_le": _iso(ticket.expire_le),
        "est_utilisé": ticket.est_utilisé,
        "utilisé_le": _iso(ticket.utilisé_le),
        "utilisé_par": ticket.utilisé_par,
    }


def instantané_commande(commande: Commande) -> dict[str, Any]:
    return {
        "id": commande.id,
        "statut_paiement": commande.statut_paiement.value,
        "statut_retrait": commande.statut_retrait.value,
        "retirée_le": _iso(commande.retirée_le),
        "retirée_par": commande.retirée_par,
    }


def vérification(ticket: Ticket, commande: Commande) -> dict[str, Any]:
    return {"ticket": instantané_ticket(ticket), "commande": instantané_commande(commande)}


# --- Drops ---


def évaluer_drop(
    drop: model.Drop,
    uow: unit_of_work.AbstractUnitOfWork,
    garde: GardeMêmeJour,
    maintenant: datetime,
) -> model.ValidationDrop:
    """
    Validation complète d'un drop à un instant donné.

    À appeler dans une transaction ouverte : c'est la même lecture qui
    sert à l'aperçu opérateur et au démarrage d'un envoi.
    """
    articles = {id_article: uow.catalogue.get(id_article) for id_article in drop.ids_articles}
    groupes, inconnus = [], []
    for id_groupe in drop.ids_groupes:
        groupe = uow.groupes.get(id_groupe)
        if groupe is None:
            inconnus.append(id_groupe)
        else:
            groupes.append(groupe)
    par_groupe = garde.évaluer(
        uow.historique, drop.ids_articles, groupes, garde.aujourdhui(maintenant)
    )
    return model.composer_validation(drop, articles, inconnus, par_groupe, maintenant)


def valider_drop(
    id_drop: str,
    uow: unit_of_work.AbstractUnitOfWork,
    garde: GardeMêmeJour,
    horloge: AbstractHorloge,
) -> model.ValidationDrop:
    """Aperçu "à blanc" : ce qui partirait si l'envoi démarrait maintenant."""
    with uow:
        drop = uow.drops.get(id_drop)
        if drop is None:
            raise Introuvable(f"Drop {id_drop} introuvable", id_drop=id_drop)
        return évaluer_drop(drop, uow, garde, horloge.maintenant())


def historique_drop(id_drop: str, uow: unit_of_work.AbstractUnitOfWork) -> list[dict]:
    """Toutes les tentatives d'envoi d'un drop, dans l'ordre chronologique."""
    with uow:
        return [
            {
                "id_article": e.id_article,
                "id_groupe": e.id_groupe,
                "résultat": e.résultat.value,
                "envoyé_le": _iso(e.envoyé_le),
                "erreur": e.erreur,
            }
            for e in uow.historique.du_drop(id_drop)
        ]


# --- Tickets ---


def _trouver_ticket(uow: unit_of_work.AbstractUnitOfWork, identifiant: str) -> Ticket:
    """Par code lisible (ABCD-1234) ou par charge QR complète."""
    ticket = None
    if ticket_codes.est_un_code(identifiant):
        ticket = uow.tickets.get_par_code(ticket_codes.normaliser_code(identifiant))
    else:
        charge = ticket_codes.décoder(identifiant)
        if charge is not None:
            ticket = uow.tickets.get_par_code(charge.code)
            # La charge n'est pas signée : seule celle émise avec le ticket fait foi
            if ticket is not None and ticket.charge_qr != identifiant.strip():
                ticket = None
    if ticket is None:
        raise Introuvable("Ticket introuvable")
    return ticket


def vérifier_ticket(
    identifiant: str,
    uow: unit_of_work.AbstractUnitOfWork,
    horloge: AbstractHorloge,
) -> dict[str, Any]:
    """
    Contrôle de remise sans effet : lève l'erreur précise qui
    empêcherait la remise (utilisé, expiré, non payé), sinon
    retourne le ticket et sa commande.
    """
    with uow:
        ticket = _trouver_ticket(uow, identifiant)
        commande = uow.commandes.get(ticket.id_commande)
        if commande is None:
            raise Introuvable(f"Commande {ticket.id_commande} introuvable")
        ticket.contrôler(commande, horloge.maintenant())
        return vérification(ticket, commande)
