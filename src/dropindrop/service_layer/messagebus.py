"""
Message Bus.

Le message bus est le point central de dispatch des messages
(commands et events) vers leurs handlers respectifs.

Fonctionnement :
1. Un message (command ou event) entre dans le bus
2. Le bus trouve le(s) handler(s) correspondant(s)
3. Le handler est exécuté
4. Les événements émis pendant l'exécution sont collectés et traités à leur tour

Différences clés :
- Une command a exactement UN handler ; l'erreur remonte à l'appelant
- Un event peut avoir 0 à N handlers ; les erreurs sont loggées mais ne bloquent pas

Le bus est partagé entre les requêtes HTTP concurrentes : chaque appel
à handle() travaille sur son propre Unit of Work et sa propre file.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Union

from dropindrop.domain import commands, events
from dropindrop.service_layer import unit_of_work

logger = logging.getLogger(__name__)

Message = Union[commands.Command, events.Event]


class MessageBus:
    """
    Message Bus avec injection de dépendances.

    Les dépendances (horloge, exécuteur, notifications...) sont fournies
    à la construction et transmises aux handlers par introspection de
    leurs signatures : un paramètre reçoit la dépendance de même nom.
    """

    def __init__(
        self,
        uow: unit_of_work.AbstractUnitOfWork,
        event_handlers: dict[type[events.Event], list[Callable]],
        command_handlers: dict[type[commands.Command], Callable],
        dependencies: dict[str, Any] | None = None,
    ):
        self.uow = uow
        self.event_handlers = event_handlers
        self.command_handlers = command_handlers
        self.dependencies = dependencies or {}
        self._paramètres: dict[Callable, list[str]] = {}

    def handle(self, message: Message) -> list[Any]:
        """
        Traite un message et tous les événements qui en découlent.

        Retourne les résultats des command handlers, dans l'ordre.
        """
        uow = self.uow.dupliquer()
        queue: list[Message] = [message]
        results: list[Any] = []
        while queue:
            message = queue.pop(0)
            if isinstance(message, events.Event):
                self._handle_event(message, uow, queue)
            elif isinstance(message, commands.Command):
                results.append(self._handle_command(message, uow, queue))
            else:
                raise ValueError(f"Message de type inconnu : {type(message)}")
        return results

    def _handle_event(
        self, event: events.Event, uow: unit_of_work.AbstractUnitOfWork, queue: list[Message]
    ) -> None:
        for handler in self.event_handlers.get(type(event), []):
            try:
                logger.debug("Traitement de l'event %s avec %s", event, handler.__name__)
                self._call_handler(handler, event, uow)
                queue.extend(uow.collect_new_events())
            except Exception:
                logger.exception("Erreur lors du traitement de l'event %s", event)

    def _handle_command(
        self, command: commands.Command, uow: unit_of_work.AbstractUnitOfWork, queue: list[Message]
    ) -> Any:
        logger.debug("Traitement de la command %s", command)
        handler = self.command_handlers.get(type(command))
        if handler is None:
            raise ValueError(f"Aucun handler pour la command {type(command)}")
        result = self._call_handler(handler, command, uow)
        queue.extend(uow.collect_new_events())
        return result

    def _call_handler(
        self, handler: Callable, message: Message, uow: unit_of_work.AbstractUnitOfWork
    ) -> Any:
        """
        Appelle un handler en injectant ses dépendances par nom.

        Le premier paramètre est le message ; "uow" reçoit le Unit of Work
        de l'appel en cours, les autres sont cherchés dans les dépendances.
        """
        if handler not in self._paramètres:
            self._paramètres[handler] = list(inspect.signature(handler).parameters)[1:]
        kwargs: dict[str, Any] = {}
        for name in self._paramètres[handler]:
            if name == "uow":
                kwargs[name] = uow
            elif name in self.dependencies:
                kwargs[name] = self.dependencies[name]
        return handler(message, **kwargs)
