"""
Commandes et tickets de retrait.

Un ticket est un bon de retrait à usage unique, émis une seule fois
par commande payée. Son cycle de vie : (aucun) -> ÉMIS -> UTILISÉ.
L'expiration n'est pas un statut stocké, elle se déduit de expire_le.

La remise bascule le ticket ET la commande ensemble : le ticket passe
à utilisé, la commande à RETIRÉE. C'est au Unit of Work de garantir
que les deux écritures forment une seule transaction.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from dropindrop.domain import events, ticket_codes
from dropindrop.domain.errors import (
    Anomalie,
    CodeAnomalie,
    CommandeNonPayée,
    ErreurConflit,
    ErreurValidation,
    TicketDéjàUtilisé,
    TicketExpiré,
)


class StatutPaiement(str, Enum):
    EN_ATTENTE = "PENDING"
    PAYÉE = "PAID"
    ÉCHOUÉE = "FAILED"
    REMBOURSÉE = "REFUNDED"


class StatutRetrait(str, Enum):
    EN_ATTENTE = "PENDING"
    RETIRÉE = "PICKED_UP"
    ANNULÉE = "CANCELLED"


class Commande:
    """
    Commande passée au checkout.

    Elle appartient au système de commande ; le domaine ne fait
    évoluer que le statut de paiement (confirmation) et le statut
    de retrait (remise du ticket).
    """

    def __init__(
        self,
        id: str,
        statut_paiement: StatutPaiement = StatutPaiement.EN_ATTENTE,
        statut_retrait: StatutRetrait = StatutRetrait.EN_ATTENTE,
    ):
        self.id = id
        self.statut_paiement = statut_paiement
        self.statut_retrait = statut_retrait
        self.retirée_le: Optional[datetime] = None
        self.retirée_par: Optional[str] = None
        self.événements: list[events.Event] = []

    def __repr__(self) -> str:
        return f"<Commande {self.id}>"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Commande):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    @property
    def payée(self) -> bool:
        return self.statut_paiement == StatutPaiement.PAYÉE

    def confirmer_paiement(self) -> None:
        """Idempotent : une commande déjà payée n'émet rien de nouveau."""
        if self.payée:
            return
        if self.statut_paiement == StatutPaiement.REMBOURSÉE:
            raise ErreurConflit(
                f"Commande {self.id} remboursée : paiement non confirmable",
                id_commande=self.id,
            )
        self.statut_paiement = StatutPaiement.PAYÉE
        self.événements.append(events.CommandePayée(id_commande=self.id))

    def marquer_retirée(self, id_agent: str, maintenant: datetime) -> None:
        if self.statut_retrait != StatutRetrait.EN_ATTENTE:
            raise ErreurConflit(
                f"Commande {self.id} déjà au statut de retrait {self.statut_retrait.value}",
                id_commande=self.id,
                statut_retrait=self.statut_retrait.value,
            )
        self.statut_retrait = StatutRetrait.RETIRÉE
        self.retirée_le = maintenant
        self.retirée_par = id_agent


class Ticket:
    """Agrégat : bon de retrait à usage unique d'une commande payée."""

    def __init__(
        self,
        id: str,
        id_commande: str,
        code: str,
        charge_qr: str,
        émis_le: datetime,
        expire_le: datetime,
    ):
        self.id = id
        self.id_commande = id_commande
        self.code = code
        self.charge_qr = charge_qr
        self.émis_le = émis_le
        self.expire_le = expire_le
        self.est_utilisé = False
        self.utilisé_le: Optional[datetime] = None
        self.utilisé_par: Optional[str] = None
        self.événements: list[events.Event] = []

    def __repr__(self) -> str:
        return f"<Ticket {self.code}>"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Ticket):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    @classmethod
    def émettre(
        cls,
        id: str,
        commande: Commande,
        code: str,
        maintenant: datetime,
        durée: timedelta,
    ) -> Ticket:
        """
        Émet le ticket d'une commande payée, sans toucher à la commande.

        L'unicité "un ticket par commande" est vérifiée par l'appelant
        et garantie en dernier ressort par l'index unique en base.
        """
        if durée <= timedelta(0):
            raise ErreurValidation(
                "La durée de validité doit être positive",
                anomalies=[Anomalie(CodeAnomalie.DURÉE_INVALIDE, "Durée de validité invalide")],
            )
        if not commande.payée:
            raise CommandeNonPayée(commande.id, commande.statut_paiement.value)

        ticket = cls(
            id=id,
            id_commande=commande.id,
            code=code,
            charge_qr=ticket_codes.encoder(commande.id, code, maintenant),
            émis_le=maintenant,
            expire_le=maintenant + durée,
        )
        ticket.événements.append(events.TicketÉmis(id_ticket=id, id_commande=commande.id, code=code))
        return ticket

    def est_expiré(self, maintenant: datetime) -> bool:
        return self.expire_le < maintenant

    def peut_être_utilisé(self, maintenant: datetime) -> bool:
        return not self.est_utilisé and not self.est_expiré(maintenant)

    def contrôler(self, commande: Commande, maintenant: datetime) -> None:
        """
        Lève l'erreur précise qui empêche la remise.

        "Déjà utilisé" passe avant "expiré" : une seconde remise doit
        toujours dire qui a retiré la commande, et quand.
        """
        if self.est_utilisé:
            raise TicketDéjàUtilisé(self.id, self.utilisé_le, self.utilisé_par)
        if self.est_expiré(maintenant):
            raise TicketExpiré(self.id, self.expire_le)
        if not commande.payée:
            raise CommandeNonPayée(commande.id, commande.statut_paiement.value)

    def utiliser(self, commande: Commande, id_agent: str, maintenant: datetime) -> None:
        """
        Remise : ticket utilisé et commande retirée, ensemble.

        Tous les contrôles passent avant la moindre écriture, de sorte
        qu'un refus ne laisse aucun effet partiel.
        """
        if commande.id != self.id_commande:
            raise ErreurValidation(f"Le ticket {self.id} n'appartient pas à la commande {commande.id}")
        self.contrôler(commande, maintenant)
        commande.marquer_retirée(id_agent, maintenant)
        self.est_utilisé = True
        self.utilisé_le = maintenant
        self.utilisé_par = id_agent
        self.événements.append(events.TicketUtilisé(
            id_ticket=self.id, id_commande=commande.id, id_agent=id_agent
        ))
