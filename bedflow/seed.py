from __future__ import annotations

import logging

from sqlalchemy import select

from .auth_models import Ruolo, Utente
from .auth_security import hash_password
from .config import SEED_PASSWORD
from .db import db_session
from .models import Impostazione, Letto, Piano, Stanza, StatoClinico, TipoUnita
from .ordinamento import calcola_ordine
from .services import CHIAVE_NOME_OSPEDALE

_LOGGER = logging.getLogger(__name__)


def seed_base() -> None:
    """
    Popola dati minimi (idempotente):
    - utenti demo (uno per ruolo)
    - nome dell'ospedale
    - un piano e un servizio con stanze e letti
    """
    with db_session() as s:
        # Utenti
        utenti = [
            ("admin1", "Amministratore", Ruolo.ADMIN),
            ("coord1", "Coordinatrice Turno", Ruolo.COORDINATOR),
            ("enf1", "Infermiere Reparto", Ruolo.NURSE),
        ]
        for username, nome, ruolo in utenti:
            if s.execute(select(Utente).where(Utente.username == username)).scalar_one_or_none() is None:
                s.add(Utente(
                    username=username,
                    nome_completo=nome,
                    ruolo=ruolo,
                    password_hash=hash_password(SEED_PASSWORD),
                    is_active=True,
                ))

        # Impostazioni
        if s.get(Impostazione, CHIAVE_NOME_OSPEDALE) is None:
            s.add(Impostazione(chiave=CHIAVE_NOME_OSPEDALE, valore="Hospital Demo"))

        # Struttura: unità -> stanze -> codici letto
        struttura = [
            ("Floor 1", TipoUnita.FLOOR, {
                "Room 1": ["F1-R1-B1", "F1-R1-B2"],
                "Room 2": ["F1-R2-B1"],
            }),
            ("Service A", TipoUnita.SERVICE, {
                "Room A": ["SVC-A-1"],
            }),
        ]
        for nome_piano, tipo, stanze in struttura:
            piano = s.execute(select(Piano).where(Piano.nome == nome_piano)).scalar_one_or_none()
            if piano is None:
                piano = Piano(nome=nome_piano, tipo=tipo)
                s.add(piano)
                s.flush()

            for nome_stanza, codici in stanze.items():
                stanza = s.execute(
                    select(Stanza).where(Stanza.piano_id == piano.id, Stanza.nome == nome_stanza)
                ).scalar_one_or_none()
                if stanza is None:
                    stanza = Stanza(piano_id=piano.id, nome=nome_stanza)
                    s.add(stanza)
                    s.flush()

                for codice in codici:
                    if s.execute(select(Letto).where(Letto.codice == codice)).scalar_one_or_none() is not None:
                        continue
                    letto = Letto(codice=codice, ordine=calcola_ordine(codice), stanza_id=stanza.id, piano_id=piano.id)
                    s.add(letto)
                    s.flush()
                    s.add(StatoClinico(letto_id=letto.id))

    _LOGGER.info("Seed base completato")
