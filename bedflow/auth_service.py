from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select

from .auth_models import Ruolo, Utente
from .auth_security import hash_password, verify_password
from .db import db_session
from .errors import ErroreValidazione, NonTrovato, OperazioneNegata

_LOGGER = logging.getLogger(__name__)

MIN_PASSWORD = 8


def _verifica_password_nuova(password: str | None) -> str:
    if not password or len(password) < MIN_PASSWORD:
        raise ErroreValidazione(f"La password deve avere almeno {MIN_PASSWORD} caratteri.")
    return password


def _parse_ruolo(ruolo: Any) -> Ruolo:
    if isinstance(ruolo, Ruolo):
        return ruolo
    try:
        return Ruolo(str(ruolo or "").strip().upper())
    except ValueError:
        raise ErroreValidazione("Ruolo non valido.") from None


def utente_flat(u: Utente) -> dict[str, Any]:
    return {
        "id": u.id,
        "username": u.username,
        "nome_completo": u.nome_completo,
        "ruolo": u.ruolo.value,
        "is_active": u.is_active,
        "created_at": u.created_at.isoformat(),
    }


def crea_utente(username: str, password: str, nome_completo: str | None = None, ruolo: Any = Ruolo.NURSE) -> str:
    username = (username or "").strip().lower()
    if not username or not password:
        raise ErroreValidazione("Username e password sono obbligatori.")
    _verifica_password_nuova(password)
    ruolo = _parse_ruolo(ruolo)

    with db_session() as s:
        exists = s.execute(select(Utente).where(Utente.username == username)).scalar_one_or_none()
        if exists:
            raise ErroreValidazione("Username già registrato.")

        u = Utente(
            username=username,
            nome_completo=(nome_completo or "").strip() or username,
            ruolo=ruolo,
            password_hash=hash_password(password),
            is_active=True,
        )
        s.add(u)
        s.flush()
        _LOGGER.info("Creato utente %s (%s)", username, ruolo.value)
        return u.id


def autentica(username: str, password: str) -> Utente | None:
    username = (username or "").strip().lower()
    with db_session() as s:
        u = s.execute(select(Utente).where(Utente.username == username)).scalar_one_or_none()
        if not u or not u.is_active:
            return None
        if not verify_password(password, u.password_hash):
            return None
        return u


def get_utente_by_id(user_id: str) -> Utente | None:
    with db_session() as s:
        return s.get(Utente, user_id)


def cambia_password(user_id: str, password_attuale: str, password_nuova: str) -> None:
    _verifica_password_nuova(password_nuova)
    with db_session() as s:
        u = s.get(Utente, user_id)
        if not u or not u.is_active:
            raise NonTrovato("Utente non trovato.")
        if not verify_password(password_attuale or "", u.password_hash):
            raise ErroreValidazione("Password attuale non corretta.")
        u.password_hash = hash_password(password_nuova)


def lista_utenti_flat() -> list[dict[str, Any]]:
    with db_session() as s:
        utenti = s.scalars(select(Utente).where(Utente.is_active.is_(True)).order_by(Utente.username)).all()
        return [utente_flat(u) for u in utenti]


def disattiva_utente(user_id: str, richiedente_id: str) -> None:
    """
    Cancellazione logica: l'utente resta per l'audit, lo username viene
    rinominato per liberarlo.
    """
    if user_id == richiedente_id:
        raise OperazioneNegata("Non puoi eliminare il tuo utente.")
    with db_session() as s:
        u = s.get(Utente, user_id)
        if not u or not u.is_active:
            raise NonTrovato("Utente non trovato.")
        vecchio = u.username
        u.is_active = False
        u.username = f"{vecchio}__deleted__{int(datetime.now().timestamp())}"
        _LOGGER.info("Utente %s disattivato", vecchio)


def reimposta_password(user_id: str, password_nuova: str) -> None:
    _verifica_password_nuova(password_nuova)
    with db_session() as s:
        u = s.get(Utente, user_id)
        if not u or not u.is_active:
            raise NonTrovato("Utente non trovato.")
        u.password_hash = hash_password(password_nuova)
