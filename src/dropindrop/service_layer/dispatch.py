"""
Exécution d'une diffusion.

Pour chaque groupe, les articles autorisés partent un par un (les
passerelles WhatsApp limitent le débit par conversation) ; les groupes,
eux, sont traités en parallèle dans un pool borné.

Chaque tentative est consignée dans l'historique immédiatement après
l'appel au transport, jamais en lot à la fin : si le processus meurt en
cours de route, l'historique reflète exactement ce qui est parti.

Un échec sur une paire n'interrompt jamais les autres. Le résultat
agrégé est rendu à Drop.terminer_envoi.
"""

from __future__ import annotations

import concurrent.futures
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Mapping, Sequence
from zoneinfo import ZoneInfo

from dropindrop.adapters.clock import AbstractGénérateurIds, AbstractHorloge
from dropindrop.adapters.messaging import AbstractMessagerie, RapportEnvoi
from dropindrop.domain.errors import ErreurConflit, ErreurTransitoire
from dropindrop.domain.model import EntréeHistorique, MessageArticle, RésultatEnvoi
from dropindrop.domain.same_day import bornes_du_jour, jour_de
from dropindrop.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)

DÉJÀ_ENVOYÉ = "Déjà envoyé à ce groupe aujourd'hui"


class ExécuteurEnvoi:
    def __init__(
        self,
        messagerie: AbstractMessagerie,
        horloge: AbstractHorloge,
        ids: AbstractGénérateurIds,
        fuseau: ZoneInfo,
        max_groupes: int = 4,
        délai_envoi: float = 15.0,
    ):
        self.messagerie = messagerie
        self.horloge = horloge
        self.ids = ids
        self.fuseau = fuseau
        self.max_groupes = max_groupes
        self.délai_envoi = délai_envoi

    def exécuter(
        self,
        id_drop: str,
        plan: Mapping[str, Sequence[MessageArticle]],
        uow: AbstractUnitOfWork,
    ) -> list[RésultatEnvoi]:
        """
        Envoie chaque message du plan (groupe -> messages) et consigne
        chaque tentative. Retourne un résultat par paire tentée.
        """
        if not plan:
            return []
        workers = min(self.max_groupes, len(plan))
        logger.info(
            "Diffusion du drop %s : %d groupe(s), %d worker(s)", id_drop, len(plan), workers
        )
        # Un envoi bloqué au-delà du délai garde son thread : on prévoit de la marge
        envois = ThreadPoolExecutor(max_workers=workers * 2, thread_name_prefix="envoi")
        try:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="groupe") as pool:
                futurs = [
                    pool.submit(
                        self._diffuser_au_groupe, id_drop, id_groupe, messages, uow.dupliquer(), envois
                    )
                    for id_groupe, messages in plan.items()
                ]
                résultats: list[RésultatEnvoi] = []
                for futur in futurs:
                    résultats.extend(futur.result())
        finally:
            envois.shutdown(wait=False, cancel_futures=True)
        return résultats

    def _diffuser_au_groupe(
        self,
        id_drop: str,
        id_groupe: str,
        messages: Sequence[MessageArticle],
        uow: AbstractUnitOfWork,
        envois: ThreadPoolExecutor,
    ) -> list[RésultatEnvoi]:
        return [
            self._envoyer_une_paire(id_drop, id_groupe, message, uow, envois)
            for message in messages
        ]

    def _envoyer_une_paire(
        self,
        id_drop: str,
        id_groupe: str,
        message: MessageArticle,
        uow: AbstractUnitOfWork,
        envois: ThreadPoolExecutor,
    ) -> RésultatEnvoi:
        """
        Une paire, un résultat. Une panne du stockage pendant la
        vérification ou la consignation est un échec de la paire : elle
        n'interrompt ni le groupe ni la diffusion.
        """
        try:
            return self._tenter_une_paire(id_drop, id_groupe, message, uow, envois)
        except Exception as e:
            logger.exception(
                "Tentative non consignée : article %s, groupe %s", message.id_article, id_groupe
            )
            erreur = f"Historique indisponible : {e}" if str(e) else "Historique indisponible"
            return RésultatEnvoi(message.id_article, id_groupe, succès=False, erreur=erreur[:500])

    def _tenter_une_paire(
        self,
        id_drop: str,
        id_groupe: str,
        message: MessageArticle,
        uow: AbstractUnitOfWork,
        envois: ThreadPoolExecutor,
    ) -> RésultatEnvoi:
        id_article = message.id_article
        if self._déjà_livrée(uow, id_article, id_groupe):
            logger.info("Article %s déjà livré à %s aujourd'hui, ignoré", id_article, id_groupe)
            return self._consigner_échec(uow, id_drop, id_article, id_groupe, DÉJÀ_ENVOYÉ)

        rapport = self._appeler_transport(envois, id_groupe, message)
        if not rapport.succès:
            return self._consigner_échec(uow, id_drop, id_article, id_groupe, rapport.erreur)

        envoyé_le = self.horloge.maintenant()
        entrée = EntréeHistorique.succès(
            self.ids.nouvel_id(), id_article, id_groupe, id_drop,
            envoyé_le, jour_de(envoyé_le, self.fuseau),
        )
        try:
            with uow:
                uow.historique.ajouter(entrée)
                uow.commit()
        except ErreurConflit:
            # Une diffusion concurrente a consigné la même paire avant nous
            logger.warning(
                "Succès refusé par l'index unique : article %s, groupe %s", id_article, id_groupe
            )
            return self._consigner_échec(uow, id_drop, id_article, id_groupe, DÉJÀ_ENVOYÉ)

        logger.debug("Article %s livré à %s", id_article, id_groupe)
        return RésultatEnvoi(id_article, id_groupe, succès=True)

    def _déjà_livrée(self, uow: AbstractUnitOfWork, id_article: str, id_groupe: str) -> bool:
        début, fin = bornes_du_jour(jour_de(self.horloge.maintenant(), self.fuseau), self.fuseau)
        with uow:
            return id_article in uow.historique.articles_envoyés(id_groupe, début, fin)

    def _appeler_transport(
        self, envois: ThreadPoolExecutor, id_groupe: str, message: MessageArticle
    ) -> RapportEnvoi:
        futur = envois.submit(self.messagerie.envoyer, id_groupe, message)
        try:
            return futur.result(timeout=self.délai_envoi)
        except concurrent.futures.TimeoutError:
            futur.cancel()
            return RapportEnvoi(False, f"Délai d'envoi de {self.délai_envoi}s dépassé")
        except ErreurTransitoire as e:
            return RapportEnvoi(False, e.message)
        except Exception as e:
            logger.exception("Erreur inattendue à l'envoi vers %s", id_groupe)
            return RapportEnvoi(False, str(e) or type(e).__name__)

    def _consigner_échec(
        self,
        uow: AbstractUnitOfWork,
        id_drop: str,
        id_article: str,
        id_groupe: str,
        erreur: str | None,
    ) -> RésultatEnvoi:
        erreur = (erreur or "Échec de l'envoi")[:500]
        with uow:
            uow.historique.ajouter(EntréeHistorique.échec(
                self.ids.nouvel_id(), id_article, id_groupe, id_drop,
                self.horloge.maintenant(), erreur,
            ))
            uow.commit()
        logger.warning("Échec de l'envoi de %s à %s : %s", id_article, id_groupe, erreur)
        return RésultatEnvoi(id_article, id_groupe, succès=False, erreur=erreur)
