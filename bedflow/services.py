from __future__ import annotations

import logging
from datetime import date, datetime, time
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, selectinload

from .audit import registra_modifica
from .auth_models import Ruolo
from .db import Base, db_session, engine
from .errors import ErroreValidazione, NonTrovato, OperazioneNegata
from .models import (
    CAMPI_CLINICI_FLAG,
    CAMPI_CLINICI_TESTO,
    Impostazione,
    Letto,
    Paziente,
    Piano,
    RegistroAudit,
    Ricovero,
    StatoClinico,
    Stanza,
    TipoUnita,
    VocePiano,
)
from .ordinamento import calcola_ordine, ordina_per_codice

_LOGGER = logging.getLogger(__name__)

ETA_MAX = 130
CHIAVE_NOME_OSPEDALE = "nome_ospedale"


# =========================
# Bootstrap DB
# =========================
def init_db() -> None:
    """Crea le tabelle se non esistono."""
    Base.metadata.create_all(bind=engine)


# =========================
# Normalizzazione input
# =========================
def pulisci_testo(value: Any, max_len: int | None = None) -> str | None:
    """Trim; stringa vuota -> None; tronca a max_len se indicato."""
    if value is None:
        return None
    testo = str(value).strip()
    if not testo:
        return None
    if max_len is not None and len(testo) > max_len:
        return testo[:max_len]
    return testo


def parse_eta(value: Any) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ErroreValidazione("Età non valida.")
    try:
        eta = int(str(value).strip())
    except ValueError:
        raise ErroreValidazione("Età non valida.") from None
    if eta < 0 or eta > ETA_MAX:
        raise ErroreValidazione("Età non valida.")
    return eta


def parse_data_ora(value: Any, etichetta: str = "Data") -> datetime | None:
    """Accetta date/datetime o stringhe ISO (anche con 'Z'); ritorna datetime locale naive."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        return datetime.combine(value, time.min)
    else:
        try:
            dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            raise ErroreValidazione(f"{etichetta} non valida.") from None
    if dt.tzinfo is not None:
        dt = dt.astimezone().replace(tzinfo=None)
    return dt


def parse_data(value: Any, etichetta: str = "Data") -> date | None:
    dt = parse_data_ora(value, etichetta)
    return dt.date() if dt else None


# =========================
# Helper / DTO
# =========================
def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value else None


def _get_letto(s: Session, letto_id: str) -> Letto:
    letto = s.get(Letto, letto_id)
    if not letto:
        raise NonTrovato("Letto non trovato.")
    return letto


def _verifica_blocco(letto: Letto, ruolo: Ruolo, messaggio: str = "Letto bloccato.") -> None:
    if letto.bloccato and ruolo != Ruolo.ADMIN:
        raise OperazioneNegata(messaggio)


def _ricovero_attivo(s: Session, letto_id: str) -> Ricovero | None:
    return s.scalars(
        select(Ricovero)
        .where(Ricovero.letto_id == letto_id, Ricovero.attivo.is_(True))
        .order_by(Ricovero.data_entrata.desc())
        .limit(1)
    ).first()


def snapshot_ricovero(r: Ricovero) -> dict[str, Any]:
    """Snapshot annidato usato dall'audit (paziente / ricovero / meta)."""
    return {
        "paziente": {
            "nome": r.paziente.nome,
            "numero_processo": r.paziente.numero_processo,
            "sottosistema": r.paziente.sottosistema,
            "data_nascita": r.paziente.data_nascita,
        },
        "ricovero": {
            "chirurgo": r.chirurgo,
            "intervento": r.intervento,
            "eta": r.eta,
            "sesso": r.sesso,
            "data_entrata": r.data_entrata,
            "data_dimissione": r.data_dimissione,
        },
        "meta": {
            "specialita": r.specialita,
            "osservazioni": r.osservazioni,
            "allergie": r.allergie,
        },
    }


def stato_clinico_flat(st: StatoClinico | None) -> dict[str, Any] | None:
    if st is None:
        return None
    out: dict[str, Any] = {"id": st.id, "letto_id": st.letto_id}
    for campo in CAMPI_CLINICI_FLAG + CAMPI_CLINICI_TESTO:
        out[campo] = getattr(st, campo)
    return out


def ricovero_flat(r: Ricovero) -> dict[str, Any]:
    return {
        "id": r.id,
        "letto_id": r.letto_id,
        "chirurgo": r.chirurgo,
        "intervento": r.intervento,
        "eta": r.eta,
        "sesso": r.sesso,
        "data_entrata": _iso(r.data_entrata),
        "data_dimissione": _iso(r.data_dimissione),
        "attivo": r.attivo,
        "paziente": {
            "id": r.paziente.id,
            "nome": r.paziente.nome,
            "numero_processo": r.paziente.numero_processo,
            "sottosistema": r.paziente.sottosistema,
            "data_nascita": _iso(r.paziente.data_nascita),
        },
        "meta": {
            "specialita": r.specialita,
            "osservazioni": r.osservazioni,
            "allergie": r.allergie,
        },
    }


def letto_flat(letto: Letto) -> dict[str, Any]:
    return {
        "id": letto.id,
        "codice": letto.codice,
        "ordine": letto.ordine,
        "piano_id": letto.piano_id,
        "stanza_id": letto.stanza_id,
        "bloccato": letto.bloccato,
        "motivo_blocco": letto.motivo_blocco,
        "bloccato_il": _iso(letto.bloccato_il),
    }


# =========================
# Query: mappa dei piani
# =========================
def lista_piani_flat() -> list[dict]:
    """
    Albero piani -> letti con stato clinico e ricovero attivo.
    I letti di ogni piano sono ordinati per codice (ordinamento naturale).
    """
    with db_session() as s:
        piani = s.scalars(
            select(Piano)
            .options(
                selectinload(Piano.letti).selectinload(Letto.stanza),
                selectinload(Piano.letti).selectinload(Letto.stato_clinico),
                selectinload(Piano.letti).selectinload(Letto.ricoveri).selectinload(Ricovero.paziente),
            )
            .order_by(Piano.nome)
        ).all()

        out = []
        for p in piani:
            letti = []
            for letto in ordina_per_codice(p.letti, lambda x: x.codice):
                d = letto_flat(letto)
                d["stanza"] = {"id": letto.stanza.id, "nome": letto.stanza.nome}
                d["stato_clinico"] = stato_clinico_flat(letto.stato_clinico)
                d["ricoveri"] = [ricovero_flat(r) for r in letto.ricoveri if r.attivo]
                letti.append(d)
            out.append({"id": p.id, "nome": p.nome, "tipo": p.tipo.value, "letti": letti})
        return out


def struttura_flat() -> list[dict]:
    with db_session() as s:
        piani = s.scalars(
            select(Piano).options(selectinload(Piano.stanze).selectinload(Stanza.letti)).order_by(Piano.nome)
        ).all()
        return [
            {
                "id": p.id,
                "nome": p.nome,
                "tipo": p.tipo.value,
                "stanze": [
                    {
                        "id": st.id,
                        "nome": st.nome,
                        "letti": [
                            {"id": l.id, "codice": l.codice, "ordine": l.ordine, "bloccato": l.bloccato}
                            for l in st.letti
                        ],
                    }
                    for st in p.stanze
                ],
            }
            for p in piani
        ]


# =========================
# Stato clinico
# =========================
def _valida_modifiche_cliniche(modifiche: dict[str, Any]) -> dict[str, Any]:
    valori: dict[str, Any] = {}
    for campo, valore in modifiche.items():
        if campo in CAMPI_CLINICI_FLAG:
            if not isinstance(valore, bool):
                raise ErroreValidazione(f"Valore non valido per {campo}.")
            valori[campo] = valore
        elif campo in CAMPI_CLINICI_TESTO:
            if isinstance(valore, (dict, list)):
                raise ErroreValidazione(f"Valore non valido per {campo}.")
            valori[campo] = pulisci_testo(valore)
        else:
            raise ErroreValidazione(f"Campo clinico sconosciuto: {campo}.")
    return valori


def aggiorna_stato_clinico(
    utente_id: str,
    ruolo: Ruolo,
    letto_id: str,
    modifiche: dict[str, Any],
    motivo: str | None = None,
) -> dict[str, Any]:
    """
    Aggiornamento (anche multiplo) dei campi clinici di un letto.
    Lo snapshot 'prima' contiene solo i campi toccati.
    """
    if not modifiche:
        raise ErroreValidazione("Nessuna modifica da applicare.")
    valori = _valida_modifiche_cliniche(modifiche)

    _LOGGER.info("Aggiornamento clinico letto %s, campi %s", letto_id, ", ".join(valori))

    with db_session() as s:
        letto = _get_letto(s, letto_id)
        _verifica_blocco(letto, ruolo)

        stato = letto.stato_clinico
        if stato is None:
            stato = StatoClinico(letto_id=letto.id)
            s.add(stato)
            s.flush()

        prima = {campo: getattr(stato, campo) for campo in valori}
        for campo, valore in valori.items():
            setattr(stato, campo, valore)
        s.flush()

        registra_modifica(
            s, utente_id, "UPDATE_CLINICAL", letto.id, prima, valori,
            pulisci_testo(motivo) or "Aggiornamento clinico", "StatoClinico", str(stato.id),
        )
        return stato_clinico_flat(stato)


# =========================
# Ricovero / dimissione
# =========================
def ricovera_paziente(utente_id: str, ruolo: Ruolo, letto_id: str, dati: dict[str, Any]) -> dict[str, Any]:
    """
    Use case: Ricoverare un paziente in un letto.
    - chiude l'eventuale ricovero attivo sul letto
    - riusa il paziente con lo stesso numero di processo, altrimenti lo crea
    - registra ADMIT_PATIENT nello stesso commit
    """
    nome = pulisci_testo(dati.get("nome"))
    if not nome:
        raise ErroreValidazione("Il nome del paziente è obbligatorio.")
    numero_processo = pulisci_testo(dati.get("numero_processo"))
    sottosistema = pulisci_testo(dati.get("sottosistema"))
    data_nascita = parse_data(dati.get("data_nascita"), "Data di nascita")
    eta = parse_eta(dati.get("eta"))
    entrata = parse_data_ora(dati.get("data_entrata"), "Data di entrata") or datetime.now()
    dimissione = parse_data_ora(dati.get("data_dimissione"), "Data di dimissione")
    if dimissione and dimissione < entrata:
        raise ErroreValidazione("La data di dimissione precede la data di entrata.")

    _LOGGER.info("Ricovero paziente nel letto %s", letto_id)

    with db_session() as s:
        letto = _get_letto(s, letto_id)
        _verifica_blocco(letto, ruolo)

        adesso = datetime.now()
        for precedente in s.scalars(
            select(Ricovero).where(Ricovero.letto_id == letto.id, Ricovero.attivo.is_(True))
        ):
            precedente.attivo = False
            precedente.data_dimissione = adesso

        paziente = None
        if numero_processo:
            paziente = s.scalars(
                select(Paziente).where(Paziente.numero_processo == numero_processo).limit(1)
            ).first()

        if paziente is None:
            paziente = Paziente(
                nome=nome,
                data_nascita=data_nascita,
                numero_processo=numero_processo,
                sottosistema=sottosistema,
            )
            s.add(paziente)
        elif sottosistema:
            paziente.sottosistema = sottosistema

        r = Ricovero(
            letto_id=letto.id,
            paziente=paziente,
            chirurgo=pulisci_testo(dati.get("chirurgo")) or "N/A",
            intervento=pulisci_testo(dati.get("intervento")) or "N/A",
            eta=eta,
            sesso=pulisci_testo(dati.get("sesso")),
            specialita=pulisci_testo(dati.get("specialita")),
            osservazioni=pulisci_testo(dati.get("osservazioni")),
            allergie=pulisci_testo(dati.get("allergie")),
            data_entrata=entrata,
            data_dimissione=dimissione,
            attivo=True,
        )
        s.add(r)
        s.flush()

        registra_modifica(
            s, utente_id, "ADMIT_PATIENT", letto.id, {}, snapshot_ricovero(r),
            pulisci_testo(dati.get("motivo")) or "Ricovero", "Ricovero", r.id,
        )
        return ricovero_flat(r)


def dimetti_paziente(utente_id: str, letto_id: str, motivo: str | None = None) -> dict[str, Any]:
    with db_session() as s:
        letto = _get_letto(s, letto_id)
        r = _ricovero_attivo(s, letto.id)
        if r is None:
            raise NonTrovato("Nessun ricovero attivo.")

        prima = snapshot_ricovero(r)
        r.attivo = False
        r.data_dimissione = datetime.now()
        s.flush()

        registra_modifica(
            s, utente_id, "DISCHARGE", letto.id, prima, snapshot_ricovero(r),
            pulisci_testo(motivo) or "Dimissione", "Ricovero", r.id,
        )
        _LOGGER.info("Dimissione dal letto %s", letto.codice)
        return ricovero_flat(r)


# =========================
# Blocco letto
# =========================
def blocca_sblocca_letto(utente_id: str, letto_id: str, motivo: str | None = None) -> dict[str, Any]:
    with db_session() as s:
        letto = _get_letto(s, letto_id)
        blocca = not letto.bloccato
        prima = {"bloccato": letto.bloccato, "motivo_blocco": letto.motivo_blocco}

        letto.bloccato = blocca
        letto.bloccato_da_id = utente_id
        letto.motivo_blocco = pulisci_testo(motivo) or ("Blocco manuale" if blocca else "Sblocco manuale")
        letto.bloccato_il = datetime.now()
        s.flush()

        registra_modifica(
            s, utente_id, "LOCK" if blocca else "UNLOCK", letto.id, prima,
            {"bloccato": letto.bloccato, "motivo_blocco": letto.motivo_blocco},
            pulisci_testo(motivo) or "Operazione manuale", "Letto", letto.id,
        )
        return letto_flat(letto)


# =========================
# Dati amministrativi
# =========================
def aggiorna_dati_amministrativi(
    utente_id: str,
    ruolo: Ruolo,
    letto_id: str,
    dati: dict[str, Any],
) -> dict[str, Any]:
    """
    Aggiornamento parziale di paziente e ricovero attivo:
    si applicano solo le chiavi presenti in `dati` (None = svuota il campo).
    """
    with db_session() as s:
        letto = _get_letto(s, letto_id)
        _verifica_blocco(letto, ruolo)
        r = _ricovero_attivo(s, letto.id)
        if r is None:
            raise NonTrovato("Nessun ricovero attivo.")

        prima = snapshot_ricovero(r)
        paziente = r.paziente

        # validazioni prima di toccare qualsiasi campo
        eta = parse_eta(dati.get("eta")) if "eta" in dati else None
        data_nascita = parse_data(dati.get("data_nascita"), "Data di nascita") if "data_nascita" in dati else None
        entrata = parse_data_ora(dati.get("data_entrata"), "Data di entrata") if "data_entrata" in dati else None
        dimissione = (
            parse_data_ora(dati.get("data_dimissione"), "Data di dimissione") if "data_dimissione" in dati else None
        )
        if "data_entrata" in dati and entrata is None:
            raise ErroreValidazione("Data di entrata non valida.")
        nuova_entrata = entrata if "data_entrata" in dati else r.data_entrata
        nuova_dimissione = dimissione if "data_dimissione" in dati else r.data_dimissione
        if nuova_dimissione and nuova_dimissione < nuova_entrata:
            raise ErroreValidazione("La data di dimissione precede la data di entrata.")

        if "nome" in dati:
            paziente.nome = pulisci_testo(dati["nome"]) or paziente.nome
        if "numero_processo" in dati:
            paziente.numero_processo = pulisci_testo(dati["numero_processo"])
        if "sottosistema" in dati:
            paziente.sottosistema = pulisci_testo(dati["sottosistema"])
        if "data_nascita" in dati:
            paziente.data_nascita = data_nascita

        if "chirurgo" in dati:
            r.chirurgo = pulisci_testo(dati["chirurgo"]) or "N/A"
        if "intervento" in dati:
            r.intervento = pulisci_testo(dati["intervento"]) or "N/A"
        if "eta" in dati:
            r.eta = eta
        if "sesso" in dati:
            r.sesso = pulisci_testo(dati["sesso"])
        if "data_entrata" in dati:
            r.data_entrata = entrata
        if "data_dimissione" in dati:
            r.data_dimissione = dimissione

        for campo in ("specialita", "osservazioni", "allergie"):
            if campo in dati:
                setattr(r, campo, pulisci_testo(dati[campo]))

        s.flush()
        dopo = snapshot_ricovero(r)

        registra_modifica(
            s, utente_id, "UPDATE_ADMIN", letto.id, prima, dopo,
            pulisci_testo(dati.get("motivo")) or "Aggiornamento amministrativo", "Ricovero", r.id,
        )
        return ricovero_flat(r)


# =========================
# Pulizia letto
# =========================
STATO_CLINICO_VUOTO: dict[str, Any] = {
    **{campo: False for campo in CAMPI_CLINICI_FLAG},
    **{campo: None for campo in CAMPI_CLINICI_TESTO},
}


def libera_letto(utente_id: str, ruolo: Ruolo, letto_id: str, motivo: str | None = None) -> dict[str, Any]:
    """Chiude il ricovero attivo e azzera lo stato clinico, in un'unica transazione."""
    with db_session() as s:
        letto = _get_letto(s, letto_id)
        _verifica_blocco(letto, ruolo, "Letto bloccato. Solo gli amministratori possono liberarlo.")

        r = _ricovero_attivo(s, letto.id)
        prima = {
            "ricovero": snapshot_ricovero(r) if r else None,
            "stato_clinico": stato_clinico_flat(letto.stato_clinico),
        }

        if r:
            r.attivo = False
            r.data_dimissione = datetime.now()

        stato = letto.stato_clinico
        if stato is None:
            stato = StatoClinico(letto_id=letto.id)
            s.add(stato)
        for campo, valore in STATO_CLINICO_VUOTO.items():
            setattr(stato, campo, valore)
        s.flush()

        registra_modifica(
            s, utente_id, "CLEAR_BED", letto.id, prima, {"liberato": True},
            pulisci_testo(motivo) or "Pulizia completa del letto", "Letto", letto.id,
        )
        _LOGGER.info("Letto %s liberato", letto.codice)
        return {"ricovero_chiuso": r is not None, "stato_clinico_azzerato": True}


# =========================
# Struttura: unità, stanze, letti
# =========================
def _elimina_letti(s: Session, letto_ids: list[str]) -> None:
    if not letto_ids:
        return
    s.execute(delete(RegistroAudit).where(RegistroAudit.letto_id.in_(letto_ids)))
    s.execute(delete(VocePiano).where(VocePiano.letto_id.in_(letto_ids)))
    s.execute(delete(Ricovero).where(Ricovero.letto_id.in_(letto_ids)))
    s.execute(delete(StatoClinico).where(StatoClinico.letto_id.in_(letto_ids)))
    s.execute(delete(Letto).where(Letto.id.in_(letto_ids)))


def crea_unita(utente_id: str | None, nome: str, tipo: str | None = None) -> dict[str, Any]:
    nome_unita = pulisci_testo(nome)
    if not nome_unita:
        raise ErroreValidazione("Nome non valido.")
    try:
        tipo_unita = TipoUnita((tipo or "FLOOR").strip().upper())
    except ValueError:
        raise ErroreValidazione("Tipo non valido.") from None

    with db_session() as s:
        if s.scalars(select(Piano).where(Piano.nome == nome_unita)).first():
            raise ErroreValidazione("Esiste già un'unità con questo nome.")
        p = Piano(nome=nome_unita, tipo=tipo_unita)
        s.add(p)
        s.flush()
        registra_modifica(s, utente_id, "CREATE_UNIT", None, None, {"nome": p.nome, "tipo": p.tipo}, None, "Piano", p.id)
        return {"id": p.id, "nome": p.nome, "tipo": p.tipo.value}


def elimina_unita(utente_id: str | None, piano_id: str) -> dict[str, Any]:
    with db_session() as s:
        p = s.get(Piano, piano_id)
        if not p:
            raise NonTrovato("Unità non trovata.")
        _elimina_letti(s, list(s.scalars(select(Letto.id).where(Letto.piano_id == piano_id))))
        s.execute(delete(Stanza).where(Stanza.piano_id == piano_id))
        nome = p.nome
        s.execute(delete(Piano).where(Piano.id == piano_id))
        registra_modifica(s, utente_id, "DELETE_UNIT", None, {"nome": nome}, None, None, "Piano", piano_id)
        _LOGGER.info("Unità %s eliminata", nome)
        return {"eliminato": True}


def crea_stanza(utente_id: str | None, piano_id: str, nome: str) -> dict[str, Any]:
    nome_stanza = pulisci_testo(nome)
    if not nome_stanza:
        raise ErroreValidazione("Nome non valido.")
    with db_session() as s:
        if not s.get(Piano, piano_id):
            raise NonTrovato("Unità non trovata.")
        st = Stanza(piano_id=piano_id, nome=nome_stanza)
        s.add(st)
        s.flush()
        registra_modifica(s, utente_id, "CREATE_ROOM", None, None, {"nome": st.nome}, None, "Stanza", st.id)
        return {"id": st.id, "nome": st.nome, "piano_id": st.piano_id}


def elimina_stanza(utente_id: str | None, stanza_id: str) -> dict[str, Any]:
    with db_session() as s:
        st = s.get(Stanza, stanza_id)
        if not st:
            raise NonTrovato("Stanza non trovata.")
        _elimina_letti(s, list(s.scalars(select(Letto.id).where(Letto.stanza_id == stanza_id))))
        nome = st.nome
        s.execute(delete(Stanza).where(Stanza.id == stanza_id))
        registra_modifica(s, utente_id, "DELETE_ROOM", None, {"nome": nome}, None, None, "Stanza", stanza_id)
        return {"eliminato": True}


def crea_letto(utente_id: str | None, stanza_id: str, codice: str, ordine: int | None = None) -> dict[str, Any]:
    codice_letto = pulisci_testo(codice)
    if not codice_letto:
        raise ErroreValidazione("Codice non valido.")

    with db_session() as s:
        st = s.get(Stanza, stanza_id)
        if not st:
            raise NonTrovato("Stanza non trovata.")
        if s.scalars(select(Letto).where(Letto.codice == codice_letto)).first():
            raise ErroreValidazione("Codice letto già esistente.")

        letto = Letto(
            stanza_id=st.id,
            piano_id=st.piano_id,
            codice=codice_letto,
            ordine=ordine if isinstance(ordine, int) else calcola_ordine(codice_letto),
            bloccato=False,
        )
        s.add(letto)
        s.flush()
        s.add(StatoClinico(letto_id=letto.id))
        registra_modifica(s, utente_id, "CREATE_BED", letto.id, None, letto_flat(letto), None, "Letto", letto.id)
        return letto_flat(letto)


def elimina_letto(utente_id: str | None, letto_id: str) -> dict[str, Any]:
    with db_session() as s:
        letto = _get_letto(s, letto_id)
        codice = letto.codice
        _elimina_letti(s, [letto_id])
        registra_modifica(
            s, utente_id, "DELETE_BED", None, {"codice": codice}, None, None, "Letto", letto_id, codice_letto=codice
        )
        _LOGGER.info("Letto %s eliminato", codice)
        return {"eliminato": True}


# =========================
# Impostazioni
# =========================
def leggi_impostazioni() -> dict[str, Any]:
    with db_session() as s:
        imp = s.get(Impostazione, CHIAVE_NOME_OSPEDALE)
        return {"nome_ospedale": imp.valore if imp else ""}


def imposta_nome_ospedale(valore: str | None) -> dict[str, Any]:
    nome = pulisci_testo(valore)
    if not nome:
        raise ErroreValidazione("Nome dell'ospedale non valido.")
    with db_session() as s:
        imp = s.get(Impostazione, CHIAVE_NOME_OSPEDALE)
        if imp is None:
            s.add(Impostazione(chiave=CHIAVE_NOME_OSPEDALE, valore=nome))
        else:
            imp.valore = nome
        return {"nome_ospedale": nome}
