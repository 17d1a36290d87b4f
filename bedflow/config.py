from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# DB SQLite su file nella root del progetto, salvo override da ambiente
DEFAULT_DB_PATH = Path(__file__).resolve().parents[1] / "bedflow.sqlite"
DATABASE_URL = os.getenv("BEDFLOW_DATABASE_URL", f"sqlite:///{DEFAULT_DB_PATH}")
SQL_ECHO = os.getenv("BEDFLOW_SQL_ECHO", "0").lower() in ("1", "true", "yes")

# In produzione: mettila in variabile d'ambiente
JWT_SECRET = os.getenv("JWT_SECRET", "CHANGE_ME_DEV_SECRET")
JWT_ALG = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", "120"))

LOGLEVEL = os.getenv("LOGLEVEL", "info")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGIN", "*").split(",") if o.strip()]

SEED_PASSWORD = os.getenv("BEDFLOW_SEED_PASSWORD", "BedFlow123")

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "1893"))

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def setup_logging(level: str | None = None) -> None:
    """Configura il logging root una sola volta (livello da LOGLEVEL)."""
    name = (level or LOGLEVEL).lower()
    logging.basicConfig(
        level=_LOG_LEVELS.get(name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
