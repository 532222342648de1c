"""
Tests des handlers via le message bus (high gear).

Ces tests utilisent les fakes (repositories en mémoire, Unit of Work,
horloge, transport) pour tester les cas d'usage complets sans base de
données ni réseau.
"""

from __future__ import annotations

import threading
from datetime import timedelta
from zoneinfo import ZoneInfo

import pytest

from dropindrop.domain import commands, ticket_codes
from dropindrop.domain.errors import (
    CodeAnomalie,
    CommandeNonPayée,
    EnvoiImpossible,
    ErreurConflit,
    ErreurValidation,
    Introuvable,
    TicketDéjàÉmis,
    TicketDéjàUtilisé,
    TicketExpiré,
    TransitionInterdite,
)
from dropindrop.domain.model import EntréeHistorique, Résultat, StatutArticle, StatutDrop
from dropindrop.domain.same_day import jour_de
from dropindrop.domain.tickets import Commande, StatutPaiement, StatutRetrait
from dropindrop.views import views

G1, G2 = "grp-1@g.us", "grp-2@g.us"
DOUALA = ZoneInfo("Africa/Douala")


def créer_drop(bus, ids_articles=("art-a", "art-b"), ids_groupes=(G1, G2), **kwargs) -> str:
    [drop] = bus.handle(commands.CréerDrop(
        nom=kwargs.pop("nom", "Arrivage du vendredi"),
        ids_articles=list(ids_articles),
        ids_groupes=list(ids_groupes),
        **kwargs,
    ))
    return drop["id"]


def déjà_envoyé(uow, horloge, id_article, id_groupe, id_drop="drop-ancien"):
    maintenant = horloge.maintenant()
    with uow:
        uow.historique.ajouter(EntréeHistorique.succès(
            f"h-{id_article}-{id_groupe}", id_article, id_groupe, id_drop,
            maintenant - timedelta(hours=1), jour_de(maintenant, DOUALA),
        ))
        uow.commit()


def valider(bus, id_drop):
    return views.valider_drop(
        id_drop, bus.uow, bus.dependencies["garde"], bus.dependencies["horloge"]
    )


class TestCréerDrop:
    def test_créer_un_drop(self, bus, uow):
        id_drop = créer_drop(bus)

        drop = uow.drops.get(id_drop)
        assert drop.statut == StatutDrop.BROUILLON
        assert drop.ids_groupes == [G1, G2]
        assert uow.committed

    def test_un_drop_invalide_n_est_pas_enregistré(self, bus, uow):
        with pytest.raises(ErreurValidation):
            créer_drop(bus, ids_articles=[])

        assert uow.committed is False

    def test_une_date_programmée_ne_programme_pas_le_drop(self, bus, uow, horloge):
        id_drop = créer_drop(bus, programmé_pour=horloge.maintenant() + timedelta(hours=4))

        assert uow.drops.get(id_drop).statut == StatutDrop.BROUILLON


class TestValiderDrop:
    def test_validation_d_un_drop_sain(self, bus):
        id_drop = créer_drop(bus)

        validation = valider(bus, id_drop)

        assert validation.peut_envoyer
        assert validation.erreurs == ()
        assert [v.articles_autorisés for v in validation.par_groupe] == [
            ("art-a", "art-b"), ("art-a", "art-b")
        ]

    def test_blocage_partiel_signalé_en_avertissement(self, bus, uow, horloge):
        déjà_envoyé(uow, horloge, "art-a", G1)
        déjà_envoyé(uow, horloge, "art-b", G1)
        id_drop = créer_drop(bus, ids_articles=["art-a", "art-b", "art-c"])

        validation = valider(bus, id_drop)

        v1, v2 = validation.par_groupe
        assert v1.articles_autorisés == ("art-c",)
        assert v1.articles_bloqués == ("art-a", "art-b")
        assert v2.articles_autorisés == ("art-a", "art-b", "art-c")
        assert validation.peut_envoyer
        assert [a.code for a in validation.avertissements] == [CodeAnomalie.DÉJÀ_ENVOYÉS]

    def test_la_validation_est_idempotente_et_sans_effet(self, bus, uow, messagerie):
        id_drop = créer_drop(bus)

        assert valider(bus, id_drop) == valider(bus, id_drop)
        assert uow.drops.get(id_drop).statut == StatutDrop.BROUILLON
        assert messagerie.envoyés == []

    def test_groupe_et_article_inconnus(self, bus):
        id_drop = créer_drop(bus, ids_articles=["art-a", "art-x"], ids_groupes=[G1, "inconnu@g.us"])

        validation = valider(bus, id_drop)

        assert not validation.peut_envoyer
        assert {e.code for e in validation.erreurs} == {
            CodeAnomalie.ARTICLE_INCONNU, CodeAnomalie.GROUPE_INCONNU
        }

    def test_drop_inconnu(self, bus):
        with pytest.raises(Introuvable):
            valider(bus, "drop-fantôme")


class TestEnvoyerDrop:
    def test_envoi_complet(self, bus, uow, messagerie, notifications):
        id_drop = créer_drop(bus)

        [drop] = bus.handle(commands.EnvoyerDrop(id_drop))

        assert drop["statut"] == "SENT"
        assert (drop["total_articles_envoyés"], drop["total_groupes_envoyés"]) == (2, 2)
        assert sorted(messagerie.envoyés) == [
            (G1, "art-a"), (G1, "art-b"), (G2, "art-a"), (G2, "art-b")
        ]
        assert len(uow.historique.succès()) == 4
        assert notifications.envoyées == []

    def test_envoi_partiel_ne_renvoie_pas_les_paires_du_jour(self, bus, uow, horloge, messagerie):
        déjà_envoyé(uow, horloge, "art-a", G1)
        déjà_envoyé(uow, horloge, "art-b", G1)
        id_drop = créer_drop(bus, ids_articles=["art-a", "art-b", "art-c"])

        [drop] = bus.handle(commands.EnvoyerDrop(id_drop))

        assert sorted(messagerie.envoyés) == [
            (G1, "art-c"), (G2, "art-a"), (G2, "art-b"), (G2, "art-c")
        ]
        assert drop["statut"] == "SENT"
        assert (drop["total_articles_envoyés"], drop["total_groupes_envoyés"]) == (3, 2)

    def test_blocage_total_refuse_l_envoi(self, bus, uow, horloge, messagerie):
        déjà_envoyé(uow, horloge, "art-a", G1)
        déjà_envoyé(uow, horloge, "art-b", G1)
        id_drop = créer_drop(bus, ids_groupes=[G1])

        with pytest.raises(EnvoiImpossible) as exc:
            bus.handle(commands.EnvoyerDrop(id_drop))

        (validation,) = exc.value.validations
        assert validation.articles_bloqués == ("art-a", "art-b")
        assert uow.drops.get(id_drop).statut == StatutDrop.BROUILLON
        assert messagerie.envoyés == []

    def test_le_même_article_ne_part_qu_une_fois_par_jour_entre_drops(self, bus, messagerie):
        premier = créer_drop(bus, ids_articles=["art-a"], ids_groupes=[G1])
        second = créer_drop(bus, ids_articles=["art-a", "art-b"], ids_groupes=[G1])

        bus.handle(commands.EnvoyerDrop(premier))
        bus.handle(commands.EnvoyerDrop(second))

        assert messagerie.envoyés == [(G1, "art-a"), (G1, "art-b")]

    def test_le_lendemain_l_article_peut_repartir(self, bus, horloge, messagerie):
        premier = créer_drop(bus, ids_articles=["art-a"], ids_groupes=[G1])
        bus.handle(commands.EnvoyerDrop(premier))
        horloge.avancer(days=1)
        second = créer_drop(bus, ids_articles=["art-a"], ids_groupes=[G1])

        bus.handle(commands.EnvoyerDrop(second))

        assert messagerie.envoyés == [(G1, "art-a"), (G1, "art-a")]

    def test_un_échec_marque_le_drop_échoué_et_alerte(self, bus, uow, messagerie, notifications):
        messagerie.refus.add((G2, "art-b"))
        id_drop = créer_drop(bus)

        [drop] = bus.handle(commands.EnvoyerDrop(id_drop))

        assert drop["statut"] == "FAILED"
        assert drop["total_articles_envoyés"] == 2
        assert len(uow.historique.échecs()) == 1
        [(destination, message)] = notifications.envoyées
        assert destination == "ops@dropindrop.test"
        assert "Arrivage du vendredi" in message

    def test_article_archivé_bloque_l_envoi(self, bus, uow, messagerie):
        uow.catalogue.get("art-b").statut = StatutArticle.ARCHIVÉ
        id_drop = créer_drop(bus)

        with pytest.raises(ErreurValidation) as exc:
            bus.handle(commands.EnvoyerDrop(id_drop))

        assert [a.code for a in exc.value.anomalies] == [CodeAnomalie.ARTICLE_ARCHIVÉ]
        assert uow.drops.get(id_drop).statut == StatutDrop.BROUILLON
        assert messagerie.envoyés == []

    def test_un_drop_envoyé_ne_repart_pas(self, bus):
        id_drop = créer_drop(bus)
        bus.handle(commands.EnvoyerDrop(id_drop))

        with pytest.raises(TransitionInterdite):
            bus.handle(commands.EnvoyerDrop(id_drop))

    def test_drop_inconnu(self, bus):
        with pytest.raises(Introuvable):
            bus.handle(commands.EnvoyerDrop("drop-fantôme"))

    def test_le_message_porte_le_drop_et_l_article(self, bus, messagerie):
        reçus = []
        messagerie.avant_envoi = lambda id_groupe, message: reçus.append(message)
        id_drop = créer_drop(bus, ids_articles=["art-a"], ids_groupes=[G1])

        bus.handle(commands.EnvoyerDrop(id_drop))

        (message,) = reçus
        assert (message.id_drop, message.nom_drop) == (id_drop, "Arrivage du vendredi")
        assert (message.nom_article, message.prix) == ("Robe wax", 15000)


class TestRelancerDrop:
    def test_la_relance_ne_renvoie_que_les_paires_manquantes(self, bus, uow, messagerie):
        messagerie.refus.add((G2, "art-b"))
        id_drop = créer_drop(bus)
        bus.handle(commands.EnvoyerDrop(id_drop))
        messagerie.refus.clear()
        messagerie.envoyés.clear()

        [drop] = bus.handle(commands.RelancerDrop(id_drop))

        assert messagerie.envoyés == [(G2, "art-b")]
        assert drop["statut"] == "SENT"
        assert (drop["total_articles_envoyés"], drop["total_groupes_envoyés"]) == (2, 2)

    def test_seul_un_drop_échoué_se_relance(self, bus):
        id_drop = créer_drop(bus)

        with pytest.raises(TransitionInterdite):
            bus.handle(commands.RelancerDrop(id_drop))

    def test_une_diffusion_interrompue_laisse_le_drop_échoué(self, bus, uow, messagerie, monkeypatch):
        id_drop = créer_drop(bus)

        def interrompre(*args):
            raise RuntimeError("pool arrêté")

        with monkeypatch.context() as m:
            m.setattr(bus.dependencies["exécuteur"], "exécuter", interrompre)
            [drop] = bus.handle(commands.EnvoyerDrop(id_drop))

        assert drop["statut"] == "FAILED"
        assert uow.drops.get(id_drop).statut == StatutDrop.ÉCHOUÉ
        [drop] = bus.handle(commands.RelancerDrop(id_drop))
        assert drop["statut"] == "SENT"
        assert len(messagerie.envoyés) == 4

    def test_une_panne_de_l_historique_n_immobilise_pas_le_drop(self, bus, uow, messagerie, monkeypatch):
        messagerie.refus.add((G1, "art-a"))
        id_drop = créer_drop(bus)
        valider_historique = uow.historique.valider

        def refuser_les_échecs():
            if any(e.résultat == Résultat.ÉCHEC for e in uow.historique._en_attente):
                raise RuntimeError("base indisponible")
            valider_historique()

        with monkeypatch.context() as m:
            m.setattr(uow.historique, "valider", refuser_les_échecs)
            [drop] = bus.handle(commands.EnvoyerDrop(id_drop))

        assert drop["statut"] == "FAILED"
        assert uow.historique.échecs() == []
        messagerie.refus.clear()
        [drop] = bus.handle(commands.RelancerDrop(id_drop))
        assert drop["statut"] == "SENT"
        assert messagerie.envoyés.count((G1, "art-a")) == 1


class TestProgrammerAnnulerSupprimer:
    def test_programmer_puis_annuler(self, bus, uow, horloge):
        id_drop = créer_drop(bus)

        [drop] = bus.handle(commands.ProgrammerDrop(id_drop, horloge.maintenant() + timedelta(hours=2)))
        assert drop["statut"] == "SCHEDULED"

        [drop] = bus.handle(commands.AnnulerDrop(id_drop))
        assert drop["statut"] == "CANCELLED"

    def test_un_drop_échoué_ou_envoyé_ne_s_annule_pas(self, bus, uow, messagerie):
        messagerie.refus.add((G2, "art-b"))
        échoué = créer_drop(bus)
        bus.handle(commands.EnvoyerDrop(échoué))
        envoyé = créer_drop(bus, ids_articles=["art-c"], ids_groupes=[G1])
        bus.handle(commands.EnvoyerDrop(envoyé))

        for id_drop, statut in ((échoué, StatutDrop.ÉCHOUÉ), (envoyé, StatutDrop.ENVOYÉ)):
            with pytest.raises(TransitionInterdite):
                bus.handle(commands.AnnulerDrop(id_drop))
            assert uow.drops.get(id_drop).statut == statut

    def test_supprimer_un_brouillon(self, bus, uow):
        id_drop = créer_drop(bus)

        bus.handle(commands.SupprimerDrop(id_drop))

        assert uow.drops.get(id_drop) is None

    def test_un_drop_programmé_ne_se_supprime_pas(self, bus, uow, horloge):
        id_drop = créer_drop(bus)
        bus.handle(commands.ProgrammerDrop(id_drop, horloge.maintenant() + timedelta(hours=2)))

        with pytest.raises(ErreurConflit):
            bus.handle(commands.SupprimerDrop(id_drop))

        assert uow.drops.get(id_drop) is not None

    def test_envoyer_les_drops_échus(self, bus, uow, horloge, messagerie):
        échu = créer_drop(bus, ids_articles=["art-a"], ids_groupes=[G1])
        plus_tard = créer_drop(bus, ids_articles=["art-b"], ids_groupes=[G2])
        bus.handle(commands.ProgrammerDrop(échu, horloge.maintenant() + timedelta(minutes=30)))
        bus.handle(commands.ProgrammerDrop(plus_tard, horloge.maintenant() + timedelta(hours=5)))
        horloge.avancer(hours=1)

        [envoyés] = bus.handle(commands.EnvoyerDropsÉchus())

        assert [d["id"] for d in envoyés] == [échu]
        assert messagerie.envoyés == [(G1, "art-a")]
        assert uow.drops.get(plus_tard).statut == StatutDrop.PROGRAMMÉ

    def test_un_drop_échu_refusé_n_empêche_pas_les_autres(self, bus, uow, horloge, messagerie):
        déjà_envoyé(uow, horloge, "art-a", G1)
        bloqué = créer_drop(bus, ids_articles=["art-a"], ids_groupes=[G1])
        libre = créer_drop(bus, ids_articles=["art-b"], ids_groupes=[G1])
        for id_drop in (bloqué, libre):
            bus.handle(commands.ProgrammerDrop(id_drop, horloge.maintenant() + timedelta(minutes=5)))
        horloge.avancer(minutes=10)

        [envoyés] = bus.handle(commands.EnvoyerDropsÉchus())

        assert [d["id"] for d in envoyés] == [libre]
        assert uow.drops.get(bloqué).statut == StatutDrop.PROGRAMMÉ


# --- Tickets ---


@pytest.fixture
def commande_payée(uow):
    commande = Commande("cmd-1", statut_paiement=StatutPaiement.PAYÉE)
    uow.commandes.add(commande)
    return commande


def émettre(bus, id_commande="cmd-1", **kwargs) -> dict:
    [ticket] = bus.handle(commands.ÉmettreTicket(id_commande, **kwargs))
    return ticket


def vérifier(bus, identifiant):
    return views.vérifier_ticket(identifiant, bus.uow, bus.dependencies["horloge"])


class TestPaiementEtÉmission:
    def test_le_paiement_émet_le_ticket(self, bus, uow):
        uow.commandes.add(Commande("cmd-9"))

        [commande] = bus.handle(commands.ConfirmerPaiement("cmd-9"))

        assert commande["statut_paiement"] == "PAID"
        ticket = uow.tickets.get_par_commande("cmd-9")
        assert ticket is not None
        assert ticket.expire_le - ticket.émis_le == timedelta(hours=24)

    def test_confirmer_deux_fois_ne_crée_qu_un_ticket(self, bus, uow):
        uow.commandes.add(Commande("cmd-9"))

        bus.handle(commands.ConfirmerPaiement("cmd-9"))
        bus.handle(commands.ConfirmerPaiement("cmd-9"))

        assert len(uow.tickets._tickets) == 1

    def test_émettre_avec_une_durée_explicite(self, bus, commande_payée, horloge):
        ticket = émettre(bus, durée_heures=2)

        assert ticket_codes.est_un_code(ticket["code"])
        assert ticket["expire_le"] == (horloge.maintenant() + timedelta(hours=2)).isoformat()

    def test_une_seule_émission_par_commande(self, bus, commande_payée):
        émettre(bus)

        with pytest.raises(TicketDéjàÉmis):
            émettre(bus)

    def test_pas_de_ticket_pour_une_commande_non_payée(self, bus, uow):
        uow.commandes.add(Commande("cmd-2"))

        with pytest.raises(CommandeNonPayée):
            émettre(bus, "cmd-2")

    def test_commande_inconnue(self, bus):
        with pytest.raises(Introuvable):
            émettre(bus, "cmd-inconnue")

    def test_un_code_déjà_pris_est_retiré(self, bus, uow, commande_payée, monkeypatch):
        uow.commandes.add(Commande("cmd-2", statut_paiement=StatutPaiement.PAYÉE))
        codes = iter(["AAAA-1111", "AAAA-1111", "BBBB-2222"])
        monkeypatch.setattr(ticket_codes, "générer_code", lambda: next(codes))

        premier = émettre(bus, "cmd-1")
        second = émettre(bus, "cmd-2")

        assert (premier["code"], second["code"]) == ("AAAA-1111", "BBBB-2222")


class TestVérification:
    def test_vérifier_par_code(self, bus, commande_payée):
        ticket = émettre(bus)

        résultat = vérifier(bus, ticket["code"].lower())

        assert résultat["ticket"]["id"] == ticket["id"]
        assert résultat["commande"]["statut_paiement"] == "PAID"

    def test_vérifier_par_charge_qr(self, bus, commande_payée):
        ticket = émettre(bus)

        résultat = vérifier(bus, ticket["charge_qr"])

        assert résultat["ticket"]["code"] == ticket["code"]

    def test_une_charge_qr_fabriquée_est_refusée(self, bus, commande_payée, horloge):
        ticket = émettre(bus)
        contrefaçon = ticket_codes.encoder("cmd-1", ticket["code"], horloge.maintenant() + timedelta(hours=1))

        with pytest.raises(Introuvable):
            vérifier(bus, contrefaçon)

    def test_code_inconnu(self, bus):
        with pytest.raises(Introuvable):
            vérifier(bus, "ZZZZ-0000")

    def test_la_vérification_ne_consomme_pas_le_ticket(self, bus, uow, commande_payée):
        ticket = émettre(bus)

        vérifier(bus, ticket["code"])
        vérifier(bus, ticket["code"])

        assert not uow.tickets.get(ticket["id"]).est_utilisé

    def test_ticket_expiré(self, bus, commande_payée, horloge):
        ticket = émettre(bus, durée_heures=1)
        horloge.avancer(hours=2)

        with pytest.raises(TicketExpiré):
            vérifier(bus, ticket["code"])
        with pytest.raises(TicketExpiré):
            bus.handle(commands.RemettreTicket(ticket["id"], "agent-1"))


class TestRemise:
    def test_remise_en_boutique(self, bus, uow, commande_payée):
        ticket = émettre(bus)

        [résultat] = bus.handle(commands.RemettreTicket(ticket["id"], "agent-1"))

        assert résultat["ticket"]["est_utilisé"]
        assert résultat["ticket"]["utilisé_par"] == "agent-1"
        assert résultat["commande"]["statut_retrait"] == "PICKED_UP"
        assert commande_payée.statut_retrait == StatutRetrait.RETIRÉE

    def test_double_remise(self, bus, commande_payée, horloge):
        ticket = émettre(bus)
        bus.handle(commands.RemettreTicket(ticket["id"], "agent-1"))
        horloge.avancer(minutes=5)

        with pytest.raises(TicketDéjàUtilisé) as exc:
            bus.handle(commands.RemettreTicket(ticket["id"], "agent-2"))

        assert exc.value.utilisé_par == "agent-1"
        assert exc.value.utilisé_le == horloge.maintenant() - timedelta(minutes=5)

    def test_remises_concurrentes_un_seul_gagnant(self, bus, commande_payée):
        ticket = émettre(bus)
        départ = threading.Barrier(20)
        succès, conflits = [], []

        def remettre(n):
            départ.wait()
            try:
                bus.handle(commands.RemettreTicket(ticket["id"], f"agent-{n}"))
                succès.append(n)
            except ErreurConflit:
                conflits.append(n)

        threads = [threading.Thread(target=remettre, args=(n,)) for n in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(succès) == 1
        assert len(conflits) == 19
        assert commande_payée.retirée_par == f"agent-{succès[0]}"

    def test_ticket_inconnu(self, bus):
        with pytest.raises(Introuvable):
            bus.handle(commands.RemettreTicket("tkt-inconnu", "agent-1"))
