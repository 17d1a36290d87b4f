from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum, String
from sqlalchemy.orm import Mapped, mapped_column

from bedflow.db import Base


def new_uuid() -> str:
    return str(uuid.uuid4())


class Ruolo(enum.Enum):
    NURSE = "NURSE"
    COORDINATOR = "COORDINATOR"
    ADMIN = "ADMIN"


class Utente(Base):
    """
    Utente applicativo per autenticazione.
    - username univoco
    - password_hash con pbkdf2_sha512 (passlib)
    - ruolo usato dalle route protette
    """
    __tablename__ = "utenti"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    username: Mapped[str] = mapped_column(String(80), unique=True, nullable=False)
    nome_completo: Mapped[str] = mapped_column(String(160), nullable=False)
    ruolo: Mapped[Ruolo] = mapped_column(Enum(Ruolo), default=Ruolo.NURSE, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)
