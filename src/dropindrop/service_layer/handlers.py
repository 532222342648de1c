"""
Handlers pour les commands et events.

Les handlers sont les fonctions qui traitent les commands et events
transitant par le message bus.

- Command handlers : exécutent une action (peuvent échouer)
- Event handlers : réagissent à un fait passé (ne doivent pas échouer)

Un envoi de drop se déroule en trois temps, chacun dans sa propre
transaction : démarrage (validation puis EN_COURS), diffusion (une
écriture d'historique par paire), bilan (ENVOYÉ ou ÉCHOUÉ). Aucune
transaction ne reste ouverte pendant les appels au transport.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from dropindrop.domain import commands, events, model, ticket_codes
from dropindrop.domain.errors import (
    Anomalie,
    CodeAnomalie,
    ErreurConflit,
    ErreurDomaine,
    ErreurValidation,
    Introuvable,
    TicketDéjàÉmis,
    TicketDéjàUtilisé,
)
from dropindrop.domain.tickets import Ticket
from dropindrop.views import views

if TYPE_CHECKING:
    from dropindrop.adapters.clock import AbstractGénérateurIds, AbstractHorloge
    from dropindrop.adapters.notifications import AbstractNotifications
    from dropindrop.domain.same_day import GardeMêmeJour
    from dropindrop.service_layer.dispatch import ExécuteurEnvoi
    from dropindrop.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)

# Collisions de codes : 26^4 * 10^4 combinaisons, quelques essais suffisent
TENTATIVES_CODE = 5


def _drop(uow: AbstractUnitOfWork, id_drop: str) -> model.Drop:
    drop = uow.drops.get(id_drop)
    if drop is None:
        raise Introuvable(f"Drop {id_drop} introuvable", id_drop=id_drop)
    return drop


def _durée(heures: float) -> timedelta:
    try:
        return timedelta(hours=heures)
    except (OverflowError, ValueError) as e:
        raise ErreurValidation(
            f"Durée de validité invalide : {heures} h",
            anomalies=[Anomalie(CodeAnomalie.DURÉE_INVALIDE, "Durée de validité invalide")],
        ) from e


# --- Drops ---


def créer_drop(
    cmd: commands.CréerDrop,
    uow: AbstractUnitOfWork,
    horloge: AbstractHorloge,
    ids: AbstractGénérateurIds,
) -> dict[str, Any]:
    """
    Crée un drop en BROUILLON.

    Une date programmée est enregistrée telle quelle ; le drop ne passe
    au statut PROGRAMMÉ que sur une command ProgrammerDrop explicite.
    """
    drop = model.Drop.créer(
        id=ids.nouvel_id(),
        nom=cmd.nom,
        ids_articles=cmd.ids_articles,
        ids_groupes=cmd.ids_groupes,
        maintenant=horloge.maintenant(),
        programmé_pour=cmd.programmé_pour,
        id_modèle_message=cmd.id_modèle_message,
    )
    with uow:
        uow.drops.add(drop)
        uow.commit()
        return views.instantané_drop(drop)


def programmer_drop(
    cmd: commands.ProgrammerDrop,
    uow: AbstractUnitOfWork,
    horloge: AbstractHorloge,
) -> dict[str, Any]:
    with uow:
        drop = _drop(uow, cmd.id_drop)
        drop.programmer(cmd.quand, horloge.maintenant())
        uow.commit()
        return views.instantané_drop(drop)


def annuler_drop(cmd: commands.AnnulerDrop, uow: AbstractUnitOfWork) -> dict[str, Any]:
    with uow:
        drop = _drop(uow, cmd.id_drop)
        drop.annuler()
        uow.commit()
        return views.instantané_drop(drop)


def supprimer_drop(cmd: commands.SupprimerDrop, uow: AbstractUnitOfWork) -> None:
    with uow:
        drop = _drop(uow, cmd.id_drop)
        if not drop.supprimable:
            raise ErreurConflit(
                f"Seul un drop en brouillon peut être supprimé (statut : {drop.statut.value})",
                statut=drop.statut.value,
            )
        uow.drops.supprimer(drop)
        uow.commit()


def _plan(
    drop: model.Drop,
    autorisés: dict[str, tuple[str, ...]],
    uow: AbstractUnitOfWork,
) -> dict[str, list[model.MessageArticle]]:
    """Messages à envoyer, groupe par groupe, dans l'ordre du drop."""
    articles = {}
    for ids_articles in autorisés.values():
        for id_article in ids_articles:
            if id_article not in articles:
                articles[id_article] = uow.catalogue.get(id_article)
    return {
        id_groupe: [
            model.MessageArticle(
                id_drop=drop.id,
                nom_drop=drop.nom,
                id_article=id_article,
                nom_article=articles[id_article].nom,
                prix=articles[id_article].prix,
                id_modèle_message=drop.id_modèle_message,
            )
            for id_article in ids_articles
        ]
        for id_groupe, ids_articles in autorisés.items()
    }


def _diffuser_et_conclure(
    id_drop: str,
    plan: dict[str, list[model.MessageArticle]],
    uow: AbstractUnitOfWork,
    horloge: AbstractHorloge,
    exécuteur: ExécuteurEnvoi,
) -> dict[str, Any]:
    try:
        résultats = exécuteur.exécuter(id_drop, plan, uow)
    except Exception:
        # Le drop ne doit jamais rester EN_COURS : le bilan a lieu quoi qu'il arrive
        logger.exception("Diffusion du drop %s interrompue", id_drop)
        résultats = [
            model.RésultatEnvoi(m.id_article, id_groupe, succès=False, erreur="Diffusion interrompue")
            for id_groupe, messages in plan.items()
            for m in messages
        ]
    with uow:
        drop = _drop(uow, id_drop)
        drop.terminer_envoi(résultats, horloge.maintenant(), uow.historique.paires_livrées(id_drop))
        uow.commit()
        logger.info(
            "Drop %s terminé : %s (%d article(s), %d groupe(s))",
            id_drop, drop.statut.value, drop.total_articles_envoyés, drop.total_groupes_envoyés,
        )
        return views.instantané_drop(drop)


def envoyer_drop(
    cmd: commands.EnvoyerDrop,
    uow: AbstractUnitOfWork,
    garde: GardeMêmeJour,
    horloge: AbstractHorloge,
    exécuteur: ExécuteurEnvoi,
) -> dict[str, Any]:
    """
    Envoie un drop BROUILLON ou PROGRAMMÉ.

    La validation est recalculée ici, jamais reprise d'un aperçu
    précédent. Les paires bloquées par la règle du même jour sont
    retirées du plan ; si plus rien ne peut partir, EnvoiImpossible.
    """
    with uow:
        drop = _drop(uow, cmd.id_drop)
        validation = views.évaluer_drop(drop, uow, garde, horloge.maintenant())
        autorisés = drop.commencer_envoi(validation.par_groupe, validation.erreurs)
        plan = _plan(drop, autorisés, uow)
        uow.commit()
    return _diffuser_et_conclure(cmd.id_drop, plan, uow, horloge, exécuteur)


def relancer_drop(
    cmd: commands.RelancerDrop,
    uow: AbstractUnitOfWork,
    garde: GardeMêmeJour,
    horloge: AbstractHorloge,
    exécuteur: ExécuteurEnvoi,
) -> dict[str, Any]:
    """
    Relance un drop ÉCHOUÉ.

    Les paires livrées par la tentative précédente figurent dans
    l'historique du jour : la garde les bloque, elles ne repartent pas.
    """
    with uow:
        drop = _drop(uow, cmd.id_drop)
        validation = views.évaluer_drop(drop, uow, garde, horloge.maintenant())
        autorisés = drop.relancer(validation.par_groupe, validation.erreurs)
        plan = _plan(drop, autorisés, uow)
        uow.commit()
    logger.info("Relance du drop %s", cmd.id_drop)
    return _diffuser_et_conclure(cmd.id_drop, plan, uow, horloge, exécuteur)


def envoyer_drops_échus(
    cmd: commands.EnvoyerDropsÉchus,
    uow: AbstractUnitOfWork,
    garde: GardeMêmeJour,
    horloge: AbstractHorloge,
    exécuteur: ExécuteurEnvoi,
) -> list[dict[str, Any]]:
    """
    Envoie, l'un après l'autre, les drops programmés arrivés à échéance.

    Un drop refusé (règle du même jour, article archivé...) est journalisé
    et n'empêche pas les suivants de partir.
    """
    with uow:
        ids_drops = [drop.id for drop in uow.drops.échus(horloge.maintenant())]
    envoyés = []
    for id_drop in ids_drops:
        try:
            envoyés.append(
                envoyer_drop(commands.EnvoyerDrop(id_drop), uow, garde, horloge, exécuteur)
            )
        except ErreurDomaine as e:
            logger.warning("Drop programmé %s non envoyé : %s", id_drop, e.message)
    return envoyés


# --- Commandes et tickets ---


def confirmer_paiement(cmd: commands.ConfirmerPaiement, uow: AbstractUnitOfWork) -> dict[str, Any]:
    with uow:
        commande = uow.commandes.get_pour_maj(cmd.id_commande)
        if commande is None:
            raise Introuvable(f"Commande {cmd.id_commande} introuvable", id_commande=cmd.id_commande)
        commande.confirmer_paiement()
        uow.commit()
        return views.instantané_commande(commande)


def émettre_ticket(
    cmd: commands.ÉmettreTicket,
    uow: AbstractUnitOfWork,
    horloge: AbstractHorloge,
    ids: AbstractGénérateurIds,
    durée_ticket: timedelta,
) -> dict[str, Any]:
    """
    Émet le ticket de retrait d'une commande payée.

    Un seul ticket par commande : une seconde émission lève
    TicketDéjàÉmis. Si le code tiré existe déjà, on en tire un autre.
    """
    durée = durée_ticket if cmd.durée_heures is None else _durée(cmd.durée_heures)
    for tentative in range(1, TENTATIVES_CODE + 1):
        try:
            with uow:
                commande = uow.commandes.get(cmd.id_commande)
                if commande is None:
                    raise Introuvable(
                        f"Commande {cmd.id_commande} introuvable", id_commande=cmd.id_commande
                    )
                if uow.tickets.get_par_commande(commande.id) is not None:
                    raise TicketDéjàÉmis(commande.id)
                ticket = Ticket.émettre(
                    ids.nouvel_id(), commande, ticket_codes.générer_code(), horloge.maintenant(), durée
                )
                uow.tickets.add(ticket)
                uow.commit()
                return views.instantané_ticket(ticket)
        except TicketDéjàÉmis:
            raise
        except ErreurConflit:
            # Code déjà pris, ou émission concurrente : le tour suivant tranche
            logger.warning(
                "Conflit à l'émission du ticket de %s (tentative %d)", cmd.id_commande, tentative
            )
    raise ErreurConflit(
        f"Impossible d'émettre un ticket unique pour la commande {cmd.id_commande}",
        id_commande=cmd.id_commande,
    )


def remettre_ticket(
    cmd: commands.RemettreTicket,
    uow: AbstractUnitOfWork,
    horloge: AbstractHorloge,
) -> dict[str, Any]:
    """
    Remise en boutique : le ticket est utilisé et la commande retirée,
    dans la même transaction.

    Les lignes du ticket et de la commande sont verrouillées ; si une
    remise concurrente passe malgré tout la première, le commit échoue
    sur la version et l'appelant reçoit TicketDéjàUtilisé.
    """
    try:
        with uow:
            ticket = uow.tickets.get_pour_remise(cmd.id_ticket)
            if ticket is None:
                raise Introuvable(f"Ticket {cmd.id_ticket} introuvable", id_ticket=cmd.id_ticket)
            commande = uow.commandes.get_pour_maj(ticket.id_commande)
            if commande is None:
                raise Introuvable(f"Commande {ticket.id_commande} introuvable")
            ticket.utiliser(commande, cmd.id_agent, horloge.maintenant())
            uow.commit()
            return views.vérification(ticket, commande)
    except TicketDéjàUtilisé:
        raise
    except ErreurConflit:
        with uow:
            ticket = uow.tickets.get(cmd.id_ticket)
            if ticket is not None and ticket.est_utilisé:
                raise TicketDéjàUtilisé(ticket.id, ticket.utilisé_le, ticket.utilisé_par)
        raise


# --- Event Handlers ---


def publier_drop_envoyé(event: events.DropEnvoyé) -> None:
    logger.info(
        "Drop %s envoyé : %d article(s) vers %d groupe(s)",
        event.id_drop, event.total_articles, event.total_groupes,
    )


def alerter_drop_échoué(
    event: events.DropÉchoué,
    notifications: AbstractNotifications,
    email_alertes: str,
) -> None:
    """Prévient l'équipe : un drop échoué attend une relance manuelle."""
    notifications.send(
        destination=email_alertes,
        message=(
            f'Le drop "{event.nom}" ({event.id_drop}) a échoué : '
            f"{event.échecs} envoi(s) en échec, {event.réussis} réussi(s). "
            "Une relance est possible depuis le tableau de bord."
        ),
    )


def émettre_ticket_après_paiement(
    event: events.CommandePayée,
    uow: AbstractUnitOfWork,
    horloge: AbstractHorloge,
    ids: AbstractGénérateurIds,
    durée_ticket: timedelta,
) -> None:
    try:
        émettre_ticket(commands.ÉmettreTicket(event.id_commande), uow, horloge, ids, durée_ticket)
    except TicketDéjàÉmis:
        logger.info("Ticket déjà émis pour la commande %s", event.id_commande)


def publier_ticket_émis(event: events.TicketÉmis) -> None:
    logger.info("Ticket %s émis pour la commande %s", event.code, event.id_commande)


def publier_ticket_utilisé(event: events.TicketUtilisé) -> None:
    logger.info(
        "Commande %s retirée (ticket %s, agent %s)",
        event.id_commande, event.id_ticket, event.id_agent,
    )
