"""
Bootstrap : assemblage de l'application (Composition Root).

Ce module construit le message bus avec toutes ses dépendances.
C'est le seul endroit qui lit la configuration et qui connaît les
implémentations concrètes de chaque abstraction ; les tests y
injectent leurs fakes via les paramètres.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any

from dropindrop.adapters import clock, messaging, notifications, orm
from dropindrop.config import Settings, get_settings
from dropindrop.domain import commands, events
from dropindrop.domain.same_day import GardeMêmeJour
from dropindrop.service_layer import dispatch, handlers, messagebus, unit_of_work


def bootstrap(
    start_orm: bool = True,
    uow: unit_of_work.AbstractUnitOfWork | None = None,
    notifications_adapter: notifications.AbstractNotifications | None = None,
    messagerie: messaging.AbstractMessagerie | None = None,
    horloge: clock.AbstractHorloge | None = None,
    ids: clock.AbstractGénérateurIds | None = None,
    settings: Settings | None = None,
    **extra_dependencies: Any,
) -> messagebus.MessageBus:
    """
    Construit et retourne un MessageBus configuré.

    En production, utilise les implémentations concrètes.
    En test, on injecte des fakes via les paramètres.
    """
    settings = settings or get_settings()

    if start_orm:
        orm.start_mappers()

    if uow is None:
        uow = unit_of_work.SqlAlchemyUnitOfWork()

    if notifications_adapter is None:
        notifications_adapter = notifications.EmailNotifications(
            smtp_host=settings.SMTP_HOST, smtp_port=settings.SMTP_PORT
        )

    if messagerie is None:
        messagerie = messaging.WahaMessagerie(
            url=settings.WAHA_URL,
            session=settings.WAHA_SESSION,
            clé_api=settings.WAHA_API_KEY,
            délai=settings.DELAI_ENVOI_SECONDES,
        )

    horloge = horloge or clock.HorlogeSystème()
    ids = ids or clock.GénérateurUuid()

    dependencies: dict[str, Any] = {
        "horloge": horloge,
        "ids": ids,
        "garde": GardeMêmeJour(settings.fuseau),
        "exécuteur": dispatch.ExécuteurEnvoi(
            messagerie,
            horloge,
            ids,
            settings.fuseau,
            max_groupes=settings.MAX_GROUPES_PARALLELES,
            délai_envoi=settings.DELAI_ENVOI_SECONDES,
        ),
        "notifications": notifications_adapter,
        "email_alertes": settings.EMAIL_ALERTES,
        "durée_ticket": timedelta(hours=settings.DUREE_TICKET_HEURES),
        **extra_dependencies,
    }

    return messagebus.MessageBus(
        uow=uow,
        event_handlers=EVENT_HANDLERS,
        command_handlers=COMMAND_HANDLERS,
        dependencies=dependencies,
    )


# --- Routage des messages vers les handlers ---

EVENT_HANDLERS: dict[type[events.Event], list] = {
    events.DropEnvoyé: [handlers.publier_drop_envoyé],
    events.DropÉchoué: [handlers.alerter_drop_échoué],
    events.CommandePayée: [handlers.émettre_ticket_après_paiement],
    events.TicketÉmis: [handlers.publier_ticket_émis],
    events.TicketUtilisé: [handlers.publier_ticket_utilisé],
}

COMMAND_HANDLERS: dict[type[commands.Command], Any] = {
    commands.CréerDrop: handlers.créer_drop,
    commands.ProgrammerDrop: handlers.programmer_drop,
    commands.AnnulerDrop: handlers.annuler_drop,
    commands.SupprimerDrop: handlers.supprimer_drop,
    commands.EnvoyerDrop: handlers.envoyer_drop,
    commands.RelancerDrop: handlers.relancer_drop,
    commands.EnvoyerDropsÉchus: handlers.envoyer_drops_échus,
    commands.ConfirmerPaiement: handlers.confirmer_paiement,
    commands.ÉmettreTicket: handlers.émettre_ticket,
    commands.RemettreTicket: handlers.remettre_ticket,
}
