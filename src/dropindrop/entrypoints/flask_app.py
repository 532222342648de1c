"""
Point d'entrée Flask.

L'API Flask est un thin adapter : elle se contente de
convertir les requêtes HTTP en commands, les envoie au
message bus, et convertit les résultats en réponses HTTP.

L'API ne contient aucune logique métier. Les erreurs du domaine
sont traduites en un seul endroit (gérer_erreur_domaine).
"""

from __future__ import annotations

import dataclasses
import logging
from datetime import date, datetime
from typing import Any, Optional

import click
from flask import Flask, jsonify, request

from dropindrop.adapters import orm
from dropindrop.config import get_settings
from dropindrop.domain import commands
from dropindrop.domain.errors import (
    EnvoiImpossible,
    ErreurConflit,
    ErreurDomaine,
    ErreurTransitoire,
    ErreurValidation,
    Introuvable,
)
from dropindrop.service_layer import bootstrap, unit_of_work
from dropindrop.views import views

logging.basicConfig(
    level=get_settings().LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s : %(message)s",
)
logger = logging.getLogger(__name__)

app = Flask(__name__)
bus = bootstrap.bootstrap()


# --- Conversion ---


def _json(valeur: Any) -> Any:
    if isinstance(valeur, (datetime, date)):
        return valeur.isoformat()
    return valeur


def _statut_http(erreur: ErreurDomaine) -> int:
    if isinstance(erreur, Introuvable):
        return 404
    if isinstance(erreur, ErreurConflit):
        return 409
    if isinstance(erreur, ErreurTransitoire):
        return 503
    return 400


def _données() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ErreurValidation("Corps JSON attendu")
    return data


def _champ(data: dict, nom: str) -> Any:
    if data.get(nom) is None:
        raise ErreurValidation(f"Champ obligatoire manquant : {nom}", champ=nom)
    return data[nom]


def _texte(valeur: Any, nom: str) -> str:
    if not isinstance(valeur, str):
        raise ErreurValidation(f"Texte attendu : {nom}", champ=nom)
    return valeur


def _identifiants(valeur: Any, nom: str) -> list[str]:
    if not isinstance(valeur, list) or not all(isinstance(v, str) for v in valeur):
        raise ErreurValidation(f"Liste d'identifiants attendue : {nom}", champ=nom)
    return valeur


def _heures(valeur: Any) -> Optional[float]:
    if valeur is None:
        return None
    # bool est un int pour Python, pas une durée
    if isinstance(valeur, bool) or not isinstance(valeur, (int, float)):
        raise ErreurValidation(f"Nombre d'heures attendu : {valeur!r}", champ="durée_heures")
    return valeur


def _instant(valeur: Optional[str]) -> Optional[datetime]:
    """ISO 8601 ; sans fuseau, l'heure est lue dans le fuseau de référence."""
    if valeur is None:
        return None
    try:
        instant = datetime.fromisoformat(valeur)
    except (TypeError, ValueError) as e:
        raise ErreurValidation(f"Date invalide : {valeur}") from e
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=get_settings().fuseau)
    return instant


@app.errorhandler(ErreurDomaine)
def gérer_erreur_domaine(erreur: ErreurDomaine):
    corps = {
        "code": erreur.code,
        "message": erreur.message,
        "anomalies": [dataclasses.asdict(a) for a in erreur.anomalies],
        **{clé: _json(v) for clé, v in erreur.détails.items()},
    }
    if isinstance(erreur, EnvoiImpossible):
        corps["par_groupe"] = [dataclasses.asdict(v) for v in erreur.validations]
    statut = _statut_http(erreur)
    if statut >= 500:
        logger.error("Erreur transitoire : %s", erreur.message)
    return jsonify(corps), statut


# --- Drops ---


@app.route("/drops", methods=["POST"])
def créer_drop_endpoint():
    """
    POST /drops
    Body JSON : { nom, ids_articles, ids_groupes?, programmé_pour?, id_modèle_message? }
    """
    data = _données()
    cmd = commands.CréerDrop(
        nom=_texte(_champ(data, "nom"), "nom"),
        ids_articles=_identifiants(_champ(data, "ids_articles"), "ids_articles"),
        ids_groupes=_identifiants(data.get("ids_groupes") or [], "ids_groupes"),
        programmé_pour=_instant(data.get("programmé_pour")),
        id_modèle_message=data.get("id_modèle_message"),
    )
    drop = bus.handle(cmd).pop(0)
    return jsonify(drop), 201


@app.route("/drops/<id_drop>/validation", methods=["GET"])
def valider_drop_endpoint(id_drop: str):
    """Aperçu sans effet : erreurs, avertissements et détail par groupe."""
    validation = views.valider_drop(
        id_drop, bus.uow.dupliquer(), bus.dependencies["garde"], bus.dependencies["horloge"]
    )
    return jsonify(dataclasses.asdict(validation)), 200


@app.route("/drops/<id_drop>/envoi", methods=["POST"])
def envoyer_drop_endpoint(id_drop: str):
    drop = bus.handle(commands.EnvoyerDrop(id_drop)).pop(0)
    return jsonify(drop), 200


@app.route("/drops/<id_drop>/relance", methods=["POST"])
def relancer_drop_endpoint(id_drop: str):
    drop = bus.handle(commands.RelancerDrop(id_drop)).pop(0)
    return jsonify(drop), 200


@app.route("/drops/<id_drop>/programmation", methods=["POST"])
def programmer_drop_endpoint(id_drop: str):
    """Body JSON : { quand }"""
    quand = _instant(_champ(_données(), "quand"))
    drop = bus.handle(commands.ProgrammerDrop(id_drop, quand)).pop(0)
    return jsonify(drop), 200


@app.route("/drops/<id_drop>/annulation", methods=["POST"])
def annuler_drop_endpoint(id_drop: str):
    drop = bus.handle(commands.AnnulerDrop(id_drop)).pop(0)
    return jsonify(drop), 200


@app.route("/drops/<id_drop>", methods=["DELETE"])
def supprimer_drop_endpoint(id_drop: str):
    bus.handle(commands.SupprimerDrop(id_drop))
    return "", 204


@app.route("/drops/<id_drop>/historique", methods=["GET"])
def historique_drop_endpoint(id_drop: str):
    return jsonify(views.historique_drop(id_drop, bus.uow.dupliquer())), 200


# --- Commandes et tickets ---


@app.route("/commandes/<id_commande>/paiement", methods=["POST"])
def confirmer_paiement_endpoint(id_commande: str):
    commande = bus.handle(commands.ConfirmerPaiement(id_commande)).pop(0)
    return jsonify(commande), 200


@app.route("/commandes/<id_commande>/ticket", methods=["POST"])
def émettre_ticket_endpoint(id_commande: str):
    """Body JSON optionnel : { durée_heures }"""
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        raise ErreurValidation("Corps JSON attendu")
    ticket = bus.handle(
        commands.ÉmettreTicket(id_commande, durée_heures=_heures(data.get("durée_heures")))
    ).pop(0)
    return jsonify(ticket), 201


@app.route("/tickets/verification", methods=["GET"])
def vérifier_ticket_endpoint():
    """GET /tickets/verification?identifiant=<code ou charge QR>"""
    identifiant = request.args.get("identifiant")
    if not identifiant:
        raise ErreurValidation("Paramètre obligatoire manquant : identifiant")
    résultat = views.vérifier_ticket(
        identifiant, bus.uow.dupliquer(), bus.dependencies["horloge"]
    )
    return jsonify(résultat), 200


@app.route("/tickets/<id_ticket>/remise", methods=["POST"])
def remettre_ticket_endpoint(id_ticket: str):
    """Body JSON : { id_agent }"""
    id_agent = _texte(_champ(_données(), "id_agent"), "id_agent")
    résultat = bus.handle(commands.RemettreTicket(id_ticket, id_agent)).pop(0)
    return jsonify(résultat), 200


# --- CLI ---


@app.cli.command("init-db")
def init_db():
    """Crée les tables manquantes."""
    orm.metadata.create_all(unit_of_work.DEFAULT_ENGINE)
    click.echo("Base de données initialisée")


@app.cli.command("envoyer-drops-echus")
def envoyer_drops_échus():
    """Envoie les drops programmés arrivés à échéance (à lancer par cron)."""
    envoyés = bus.handle(commands.EnvoyerDropsÉchus()).pop(0)
    for drop in envoyés:
        click.echo(f"{drop['id']} {drop['statut']}")
    click.echo(f"{len(envoyés)} drop(s) traité(s)")
