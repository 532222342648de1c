"""
Configuration de l'application.

Lue depuis l'environnement (ou un fichier .env). Seul le bootstrap
et l'entrypoint la consultent : les composants reçoivent des
paramètres explicites à la construction.
"""

from functools import lru_cache
from zoneinfo import ZoneInfo

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    # Base de données
    DATABASE_URL: str = "sqlite:///dropindrop.db"

    # Le "jour" de la règle du même jour est celui de ce fuseau
    FUSEAU_HORAIRE: str = "Africa/Douala"

    # Tickets
    DUREE_TICKET_HEURES: float = 24

    # Diffusion
    MAX_GROUPES_PARALLELES: int = 4
    DELAI_ENVOI_SECONDES: float = 15.0

    # Passerelle WhatsApp (WAHA)
    WAHA_URL: str = "http://localhost:3000"
    WAHA_SESSION: str = "default"
    WAHA_API_KEY: str = ""

    # Alertes
    SMTP_HOST: str = "localhost"
    SMTP_PORT: int = 587
    EMAIL_ALERTES: str = "drops@dropindrop.com"

    LOG_LEVEL: str = "INFO"

    @property
    def fuseau(self) -> ZoneInfo:
        return ZoneInfo(self.FUSEAU_HORAIRE)


@lru_cache()
def get_settings() -> Settings:
    return Settings()
