"""
Adapter pour l'envoi de messages WhatsApp.

Le domaine ne voit qu'une capacité opaque : "envoyer ce message à ce
groupe" et observer le résultat. L'implémentation concrète parle à une
passerelle WAHA (WhatsApp HTTP API).

Convention de retour :
- RapportEnvoi(succès=False) : la passerelle a répondu et refusé ;
- ErreurTransitoire : délai dépassé ou réseau indisponible.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from typing import Optional

import requests

from dropindrop.domain.errors import ErreurTransitoire
from dropindrop.domain.model import MessageArticle

logger = logging.getLogger(__name__)

LONGUEUR_MAX = 4096  # limite WhatsApp


@dataclass(frozen=True)
class RapportEnvoi:
    succès: bool
    erreur: Optional[str] = None


class AbstractMessagerie(abc.ABC):
    @abc.abstractmethod
    def envoyer(self, id_groupe: str, message: MessageArticle) -> RapportEnvoi:
        raise NotImplementedError


def formater(message: MessageArticle) -> str:
    """Texte WhatsApp d'un article de drop (gras avec *, prix en FCFA)."""
    prix = f"{message.prix:,}".replace(",", " ")
    texte = (
        f"🆕 *{message.nom_drop}*\n\n"
        f"📦 *{message.nom_article}*\n"
        f"💰 {prix} FCFA"
    )
    if len(texte) > LONGUEUR_MAX:
        texte = texte[: LONGUEUR_MAX - 3] + "..."
    return texte


class WahaMessagerie(AbstractMessagerie):
    """Implémentation concrète via l'API HTTP de WAHA."""

    def __init__(
        self,
        url: str = "http://localhost:3000",
        session: str = "default",
        clé_api: str = "",
        délai: float = 15.0,
    ):
        self.url = url.rstrip("/")
        self.session = session
        self.clé_api = clé_api
        self.délai = délai

    def envoyer(self, id_groupe: str, message: MessageArticle) -> RapportEnvoi:
        headers = {"X-Api-Key": self.clé_api} if self.clé_api else {}
        try:
            réponse = requests.post(
                f"{self.url}/api/sendText",
                json={
                    "session": self.session,
                    "chatId": id_groupe,
                    "text": formater(message),
                },
                headers=headers,
                timeout=self.délai,
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise ErreurTransitoire(f"Passerelle WhatsApp injoignable : {e}") from e

        if réponse.status_code >= 500:
            raise ErreurTransitoire(
                f"Passerelle WhatsApp en erreur ({réponse.status_code})"
            )
        if not réponse.ok:
            logger.warning(
                "Envoi refusé vers %s : %s %s", id_groupe, réponse.status_code, réponse.text
            )
            return RapportEnvoi(succès=False, erreur=f"HTTP {réponse.status_code}")
        return RapportEnvoi(succès=True)
