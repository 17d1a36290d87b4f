"""
Audit trail: snapshot JSON prima/dopo di ogni modifica e diff superficiale.

Il diff confronta solo le chiavi di primo livello (serializzate in JSON):
una modifica annidata si vede come modifica dell'intera chiave che la
contiene. Se manca uno dei due snapshot il diff è il marcatore
DIFF_COMPLETO invece di un confronto parziale.
"""
from __future__ import annotations

import json
import logging
from datetime import date, datetime, time, timedelta
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, joinedload

from .db import db_session
from .models import Letto, Piano, RegistroAudit, Ricovero

_LOGGER = logging.getLogger(__name__)

DIFF_COMPLETO = {"msg": "Full change"}

TAKE_DEFAULT = 200
TAKE_MAX = 500

_ASSENTE = object()


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    raise TypeError(f"Tipo non serializzabile: {type(value).__name__}")


def to_json(value: Any) -> str:
    return json.dumps(value, default=_json_default, ensure_ascii=False)


def _serializza(value: Any) -> str | None:
    if value is _ASSENTE:
        return None
    return to_json(value)


def calcola_diff(prima: dict[str, Any] | None, dopo: dict[str, Any] | None) -> dict[str, Any]:
    """
    Ritorna {chiave: {"from": ..., "to": ...}} per ogni chiave di primo livello
    il cui valore serializzato cambia. Una chiave assente e una chiave a null
    sono considerate diverse.
    """
    if prima is None or dopo is None:
        return dict(DIFF_COMPLETO)

    diff: dict[str, Any] = {}
    for key in list(prima) + [k for k in dopo if k not in prima]:
        a = prima.get(key, _ASSENTE)
        b = dopo.get(key, _ASSENTE)
        if _serializza(a) != _serializza(b):
            diff[key] = {
                "from": None if a is _ASSENTE else a,
                "to": None if b is _ASSENTE else b,
            }
    return diff


def registra_modifica(
    s: Session,
    utente_id: str | None,
    azione: str,
    letto_id: str | None,
    prima: dict[str, Any] | None,
    dopo: dict[str, Any] | None,
    motivo: str | None,
    entita: str = "Letto",
    entita_id: str | None = None,
    codice_letto: str | None = None,
) -> RegistroAudit:
    """
    Scrive una riga di audit nella sessione del chiamante:
    commit/rollback insieme alla modifica che descrive.
    """
    diff = calcola_diff(prima, dopo)
    nome_piano = None

    if letto_id:
        row = s.execute(
            select(Letto.codice, Piano.nome).join(Piano, Piano.id == Letto.piano_id).where(Letto.id == letto_id)
        ).first()
        if row:
            codice_letto, nome_piano = row.codice, row.nome

    voce = RegistroAudit(
        utente_id=utente_id,
        azione=azione,
        letto_id=letto_id,
        codice_letto=codice_letto,
        nome_piano=nome_piano,
        motivo=motivo,
        entita=entita,
        entita_id=entita_id or "unknown",
        stato_prima=to_json(prima) if prima is not None else None,
        stato_dopo=to_json(dopo) if dopo is not None else None,
        diff=to_json(diff) if diff else None,
    )
    s.add(voce)
    s.flush()
    _LOGGER.info("Audit %s su %s (%s)", azione, codice_letto or "-", entita)
    return voce


def _parse_json(value: str | None) -> Any:
    if not value:
        return None
    try:
        return json.loads(value)
    except ValueError:
        return None


def _snapshot_da_stati(*stati: Any) -> dict[str, Any] | None:
    for stato in stati:
        if not isinstance(stato, dict):
            continue
        ricovero = stato.get("ricovero") if isinstance(stato.get("ricovero"), dict) else {}
        paziente = stato.get("paziente") or ricovero.get("paziente")
        if isinstance(paziente, dict) and (paziente.get("nome") or paziente.get("numero_processo")):
            return {"nome": paziente.get("nome"), "numero_processo": paziente.get("numero_processo")}
        meta = stato.get("meta")
        if isinstance(meta, dict) and meta.get("nome_paziente"):
            return {"nome": meta.get("nome_paziente"), "numero_processo": meta.get("numero_processo")}
    return None


def _contiene(valore: str | None, filtro: str) -> bool:
    if not filtro:
        return True
    return bool(valore) and filtro in valore.lower()


def log_flat(voce: RegistroAudit, paziente: dict[str, Any] | None = None) -> dict[str, Any]:
    paziente = paziente or {}
    letto = voce.letto
    return {
        "id": voce.id,
        "timestamp": voce.timestamp.isoformat(),
        "azione": voce.azione,
        "motivo": voce.motivo,
        "entita": voce.entita,
        "entita_id": voce.entita_id,
        "codice_letto": voce.codice_letto or (letto.codice if letto else None),
        "nome_piano": voce.nome_piano or (letto.piano.nome if letto else None),
        "utente": (
            {"id": voce.utente.id, "username": voce.utente.username, "nome_completo": voce.utente.nome_completo}
            if voce.utente else None
        ),
        "nome_paziente": paziente.get("nome"),
        "numero_processo_paziente": paziente.get("numero_processo"),
        "diff": _parse_json(voce.diff),
        "stato_prima": _parse_json(voce.stato_prima),
        "stato_dopo": _parse_json(voce.stato_dopo),
    }


def lista_log(
    data_inizio: date | None = None,
    data_fine: date | None = None,
    codice_letto: str | None = None,
    piano: str | None = None,
    paziente: str | None = None,
    numero_processo: str | None = None,
    take: int | None = None,
) -> list[dict[str, Any]]:
    """
    Registro audit filtrato, dal più recente.
    Il paziente di ogni riga si ricava (in ordine) dal ricovero referenziato,
    dagli snapshot salvati, dal ricovero attivo del letto.
    """
    limite = min(max(take or TAKE_DEFAULT, 1), TAKE_MAX)

    with db_session() as s:
        q = (
            select(RegistroAudit)
            .options(
                joinedload(RegistroAudit.utente),
                joinedload(RegistroAudit.letto).joinedload(Letto.piano),
            )
            .order_by(RegistroAudit.timestamp.desc(), RegistroAudit.id.desc())
            .limit(limite)
        )
        if data_inizio:
            q = q.where(RegistroAudit.timestamp >= datetime.combine(data_inizio, time.min))
        if data_fine:
            q = q.where(RegistroAudit.timestamp < datetime.combine(data_fine + timedelta(days=1), time.min))
        if codice_letto and codice_letto.strip():
            pattern = f"%{codice_letto.strip().lower()}%"
            q = q.outerjoin(Letto, Letto.id == RegistroAudit.letto_id).where(
                or_(func.lower(RegistroAudit.codice_letto).like(pattern), func.lower(Letto.codice).like(pattern))
            )
        if piano and piano.strip():
            q = q.where(RegistroAudit.nome_piano == piano.strip())

        voci = list(s.scalars(q).unique())

        ricovero_ids = {v.entita_id for v in voci if v.entita == "Ricovero" and v.entita_id}
        pazienti_ricovero: dict[str, dict[str, Any]] = {}
        if ricovero_ids:
            for r in s.scalars(
                select(Ricovero).options(joinedload(Ricovero.paziente)).where(Ricovero.id.in_(ricovero_ids))
            ):
                pazienti_ricovero[r.id] = {"nome": r.paziente.nome, "numero_processo": r.paziente.numero_processo}

        letto_ids = {v.letto_id for v in voci if v.letto_id}
        pazienti_letto: dict[str, dict[str, Any]] = {}
        if letto_ids:
            for r in s.scalars(
                select(Ricovero)
                .options(joinedload(Ricovero.paziente))
                .where(Ricovero.letto_id.in_(letto_ids), Ricovero.attivo.is_(True))
            ):
                pazienti_letto.setdefault(
                    r.letto_id, {"nome": r.paziente.nome, "numero_processo": r.paziente.numero_processo}
                )

        filtro_paziente = (paziente or "").strip().lower()
        filtro_processo = (numero_processo or "").strip().lower()

        risultato = []
        for v in voci:
            snap = None
            if v.entita == "Ricovero":
                snap = pazienti_ricovero.get(v.entita_id)
            if not snap:
                snap = _snapshot_da_stati(_parse_json(v.stato_dopo), _parse_json(v.stato_prima))
            if not snap and v.letto_id:
                snap = pazienti_letto.get(v.letto_id)
            snap = snap or {}

            if not _contiene(snap.get("nome"), filtro_paziente):
                continue
            if not _contiene(snap.get("numero_processo"), filtro_processo):
                continue
            risultato.append(log_flat(v, snap))
        return risultato


def storico_letto(letto_id: str) -> list[dict[str, Any]]:
    with db_session() as s:
        voci = s.scalars(
            select(RegistroAudit)
            .options(joinedload(RegistroAudit.utente), joinedload(RegistroAudit.letto).joinedload(Letto.piano))
            .where(RegistroAudit.letto_id == letto_id)
            .order_by(RegistroAudit.timestamp.desc(), RegistroAudit.id.desc())
        ).unique()
        return [log_flat(v) for v in voci]
