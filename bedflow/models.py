from __future__ import annotations

import enum
import uuid
from datetime import date, datetime

from sqlalchemy import Boolean, Date, DateTime, Enum, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


def new_uuid() -> str:
    return str(uuid.uuid4())


class TipoUnita(enum.Enum):
    FLOOR = "FLOOR"
    SERVICE = "SERVICE"


class Piano(Base):
    """Unità di degenza: un piano o un servizio."""
    __tablename__ = "piani"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    nome: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    tipo: Mapped[TipoUnita] = mapped_column(Enum(TipoUnita), default=TipoUnita.FLOOR, nullable=False)

    stanze: Mapped[list["Stanza"]] = relationship(back_populates="piano", order_by="Stanza.nome")
    letti: Mapped[list["Letto"]] = relationship(back_populates="piano")

    def __repr__(self) -> str:
        return f"Piano({self.nome}, {self.tipo.value})"


class Stanza(Base):
    __tablename__ = "stanze"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    piano_id: Mapped[str] = mapped_column(ForeignKey("piani.id"), nullable=False)
    nome: Mapped[str] = mapped_column(String(120), nullable=False)

    piano: Mapped["Piano"] = relationship(back_populates="stanze")
    letti: Mapped[list["Letto"]] = relationship(back_populates="stanza", order_by="Letto.ordine")


class Letto(Base):
    __tablename__ = "letti"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    codice: Mapped[str] = mapped_column(String(40), nullable=False, unique=True)
    ordine: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    stanza_id: Mapped[str] = mapped_column(ForeignKey("stanze.id"), nullable=False)
    piano_id: Mapped[str] = mapped_column(ForeignKey("piani.id"), nullable=False)

    bloccato: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    bloccato_da_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    motivo_blocco: Mapped[str | None] = mapped_column(String(255), nullable=True)
    bloccato_il: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    stanza: Mapped["Stanza"] = relationship(back_populates="letti")
    piano: Mapped["Piano"] = relationship(back_populates="letti")
    stato_clinico: Mapped["StatoClinico"] = relationship(back_populates="letto", uselist=False)
    ricoveri: Mapped[list["Ricovero"]] = relationship(back_populates="letto")

    def __repr__(self) -> str:
        return f"Letto({self.codice})"


class StatoClinico(Base):
    """Osservazioni cliniche correnti del letto (drenaggi, medicazioni, cateteri)."""
    __tablename__ = "stati_clinici"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    letto_id: Mapped[str] = mapped_column(ForeignKey("letti.id"), nullable=False, unique=True)

    cvp_presente: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    terapia_presente: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    dib_presente: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    drenaggi_presenti: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    drenaggi_sede: Mapped[str | None] = mapped_column(String(255), nullable=True)
    drenaggi_volume: Mapped[str | None] = mapped_column(String(255), nullable=True)
    drenaggi_aspetto: Mapped[str | None] = mapped_column(String(255), nullable=True)
    drenaggi_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    evacuazioni_presenti: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    evacuazioni_numero: Mapped[str | None] = mapped_column(String(50), nullable=True)
    evacuazioni_consistenza: Mapped[str | None] = mapped_column(String(120), nullable=True)
    evacuazioni_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    diuresi_presente: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    diuresi_volume: Mapped[str | None] = mapped_column(String(120), nullable=True)
    diuresi_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    medicazioni_sede: Mapped[str | None] = mapped_column(String(255), nullable=True)
    medicazioni_tipo: Mapped[str | None] = mapped_column(String(255), nullable=True)
    medicazioni_stato: Mapped[str | None] = mapped_column(String(255), nullable=True)
    medicazioni_ultimo_cambio: Mapped[str | None] = mapped_column(String(120), nullable=True)
    medicazioni_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    aggiornato_il: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.now, onupdate=datetime.now, nullable=False
    )

    letto: Mapped["Letto"] = relationship(back_populates="stato_clinico")


# Campi clinici aggiornabili via API: i flag accettano solo booleani
CAMPI_CLINICI_FLAG = (
    "cvp_presente",
    "terapia_presente",
    "dib_presente",
    "drenaggi_presenti",
    "evacuazioni_presenti",
    "diuresi_presente",
)
CAMPI_CLINICI_TESTO = (
    "drenaggi_sede",
    "drenaggi_volume",
    "drenaggi_aspetto",
    "drenaggi_note",
    "evacuazioni_numero",
    "evacuazioni_consistenza",
    "evacuazioni_note",
    "diuresi_volume",
    "diuresi_note",
    "medicazioni_sede",
    "medicazioni_tipo",
    "medicazioni_stato",
    "medicazioni_ultimo_cambio",
    "medicazioni_note",
)
CAMPI_CLINICI = CAMPI_CLINICI_FLAG + CAMPI_CLINICI_TESTO


class Paziente(Base):
    __tablename__ = "pazienti"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    nome: Mapped[str] = mapped_column(String(160), nullable=False)
    data_nascita: Mapped[date | None] = mapped_column(Date, nullable=True)
    numero_processo: Mapped[str | None] = mapped_column(String(40), nullable=True, index=True)
    sottosistema: Mapped[str | None] = mapped_column(String(40), nullable=True)

    ricoveri: Mapped[list["Ricovero"]] = relationship(back_populates="paziente")

    def __repr__(self) -> str:
        return f"Paziente({self.nome}, {self.numero_processo or '-'})"


class Ricovero(Base):
    __tablename__ = "ricoveri"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    letto_id: Mapped[str] = mapped_column(ForeignKey("letti.id"), nullable=False)
    paziente_id: Mapped[str] = mapped_column(ForeignKey("pazienti.id"), nullable=False)

    chirurgo: Mapped[str] = mapped_column(String(120), nullable=False, default="N/A")
    intervento: Mapped[str] = mapped_column(String(255), nullable=False, default="N/A")
    eta: Mapped[int | None] = mapped_column(Integer, nullable=True)
    sesso: Mapped[str | None] = mapped_column(String(10), nullable=True)

    specialita: Mapped[str | None] = mapped_column(String(120), nullable=True)
    osservazioni: Mapped[str | None] = mapped_column(Text, nullable=True)
    allergie: Mapped[str | None] = mapped_column(String(255), nullable=True)

    data_entrata: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)
    data_dimissione: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    attivo: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)

    letto: Mapped["Letto"] = relationship(back_populates="ricoveri")
    paziente: Mapped["Paziente"] = relationship(back_populates="ricoveri")


class VocePiano(Base):
    """Riga di pianificazione esplicita per (giorno, codice letto)."""
    __tablename__ = "voci_piano"
    __table_args__ = (
        UniqueConstraint("data_piano", "codice_letto", name="uq_piano_data_codice"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    data_piano: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    codice_letto: Mapped[str] = mapped_column(String(40), nullable=False)
    # opzionale: il codice può non corrispondere più a un letto (voce orfana)
    letto_id: Mapped[str | None] = mapped_column(ForeignKey("letti.id"), nullable=True)

    nome_paziente: Mapped[str | None] = mapped_column(String(255), nullable=True)
    numero_processo: Mapped[str | None] = mapped_column(String(255), nullable=True)
    eta: Mapped[int | None] = mapped_column(Integer, nullable=True)
    sesso: Mapped[str | None] = mapped_column(String(255), nullable=True)
    chirurgo: Mapped[str | None] = mapped_column(String(255), nullable=True)
    specialita: Mapped[str | None] = mapped_column(String(255), nullable=True)
    intervento: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sottosistema: Mapped[str | None] = mapped_column(String(255), nullable=True)
    allergie: Mapped[str | None] = mapped_column(String(255), nullable=True)
    osservazioni: Mapped[str | None] = mapped_column(String(500), nullable=True)
    data_entrata: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    data_dimissione: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    creato_da_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    aggiornato_il: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.now, onupdate=datetime.now, nullable=False
    )

    letto: Mapped["Letto"] = relationship()


class RegistroAudit(Base):
    __tablename__ = "registro_audit"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False, index=True)
    utente_id: Mapped[str | None] = mapped_column(ForeignKey("utenti.id"), nullable=True)
    azione: Mapped[str] = mapped_column(String(40), nullable=False)
    motivo: Mapped[str | None] = mapped_column(Text, nullable=True)

    entita: Mapped[str] = mapped_column(String(40), nullable=False, default="Letto")
    entita_id: Mapped[str] = mapped_column(String(36), nullable=False, default="unknown")

    letto_id: Mapped[str | None] = mapped_column(ForeignKey("letti.id"), nullable=True, index=True)
    # denormalizzati: restano leggibili anche se il letto viene rinominato
    codice_letto: Mapped[str | None] = mapped_column(String(40), nullable=True)
    nome_piano: Mapped[str | None] = mapped_column(String(120), nullable=True)

    stato_prima: Mapped[str | None] = mapped_column(Text, nullable=True)
    stato_dopo: Mapped[str | None] = mapped_column(Text, nullable=True)
    diff: Mapped[str | None] = mapped_column(Text, nullable=True)

    utente: Mapped["Utente"] = relationship()
    letto: Mapped["Letto"] = relationship()


class Impostazione(Base):
    __tablename__ = "impostazioni"

    chiave: Mapped[str] = mapped_column(String(80), primary_key=True)
    valore: Mapped[str] = mapped_column(Text, nullable=False)


from .auth_models import Utente  # noqa: E402,F401  registra la tabella utenti nel metadata
