"""
Adapter pour les alertes opérateur.

Quand un drop échoue, l'équipe doit le savoir pour décider d'une
relance. Le mécanisme concret (email ici) reste derrière une interface.
"""

from __future__ import annotations

import abc
import smtplib
from email.message import EmailMessage


class AbstractNotifications(abc.ABC):
    @abc.abstractmethod
    def send(self, destination: str, message: str) -> None:
        raise NotImplementedError


class EmailNotifications(AbstractNotifications):
    """Envoie les alertes par SMTP."""

    def __init__(
        self,
        smtp_host: str = "localhost",
        smtp_port: int = 587,
        expéditeur: str = "drops@dropindrop.com",
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.expéditeur = expéditeur

    def send(self, destination: str, message: str) -> None:
        courriel = EmailMessage()
        courriel["Subject"] = "Alerte diffusion DropInDrop"
        courriel["From"] = self.expéditeur
        courriel["To"] = destination
        courriel.set_content(message)
        with smtplib.SMTP(self.smtp_host, self.smtp_port) as smtp:
            smtp.send_message(courriel)
