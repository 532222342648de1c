"""
Codes de retrait et charge utile du QR code.

Toute la connaissance du format "sur le fil" est confinée ici :
remplacer la charge base64/JSON par un jeton signé ne doit toucher
que ce module, jamais la vérification ni la remise.

La charge n'est PAS signée : quiconque connaît un code valide peut
fabriquer un QR équivalent. La vérification compare donc la charge
présentée à celle enregistrée avec le ticket.
"""

from __future__ import annotations

import base64
import binascii
import json
import re
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

FORMAT_CODE = re.compile(r"^[A-Z]{4}-[0-9]{4}$")


@dataclass(frozen=True)
class ChargeQR:
    id_commande: str
    code: str
    émis_le: datetime


def générer_code() -> str:
    """Code lisible par un humain, format ABCD-1234."""
    lettres = "".join(secrets.choice(string.ascii_uppercase) for _ in range(4))
    chiffres = "".join(secrets.choice(string.digits) for _ in range(4))
    return f"{lettres}-{chiffres}"


def normaliser_code(saisie: str) -> str:
    return saisie.strip().upper()


def est_un_code(saisie: str) -> bool:
    return bool(FORMAT_CODE.match(normaliser_code(saisie)))


def encoder(id_commande: str, code: str, émis_le: datetime) -> str:
    données = {
        "orderId": id_commande,
        "uniqueCode": code,
        "timestamp": int(émis_le.timestamp() * 1000),
    }
    return base64.b64encode(json.dumps(données).encode("utf-8")).decode("ascii")


def décoder(charge: str) -> Optional[ChargeQR]:
    """Retourne None si la charge est illisible ou incomplète."""
    try:
        données = json.loads(base64.b64decode(charge.strip(), validate=True))
        return ChargeQR(
            id_commande=str(données["orderId"]),
            code=str(données["uniqueCode"]),
            émis_le=datetime.fromtimestamp(données["timestamp"] / 1000, tz=timezone.utc),
        )
    except (binascii.Error, ValueError, KeyError, TypeError, OverflowError, OSError):
        return None
