"""
Pianificazione giornaliera dei letti.

Per ogni giorno il tabellone ha esattamente una riga per letto, scelta con
priorità:
- STORED: voce di pianificazione salvata per (giorno, codice letto);
- PREDICTED: ricovero attivo che copre il giorno, senza voce salvata;
- EMPTY: segnaposto con la sola identità del letto.

Le voci salvate il cui codice non corrisponde più a un letto (orfane)
non vengono perse: sono accodate in fondo, ordinate per codice.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import asdict, dataclass, replace
from datetime import date, datetime, time, timedelta
from typing import Any, Iterable

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from .audit import registra_modifica
from .auth_models import Ruolo
from .db import db_session
from .errors import ErroreValidazione, NonTrovato, OperazioneNegata
from .models import Letto, Piano, Ricovero, VocePiano
from .ordinamento import ordina_per_codice
from .services import parse_data_ora, parse_eta, pulisci_testo, ricovera_paziente

_LOGGER = logging.getLogger(__name__)

MAX_TESTO = 255
MAX_OSSERVAZIONI = 500

CAMPI_VOCE = (
    "nome_paziente",
    "numero_processo",
    "eta",
    "sesso",
    "chirurgo",
    "specialita",
    "intervento",
    "sottosistema",
    "allergie",
    "osservazioni",
    "data_entrata",
    "data_dimissione",
)


class OriginePiano(enum.Enum):
    STORED = "STORED"
    PREDICTED = "PREDICTED"
    EMPTY = "EMPTY"


@dataclass(frozen=True)
class LettoRegistro:
    id: str
    codice: str
    nome_piano: str | None = None


@dataclass(frozen=True)
class RigaPiano:
    id: str
    codice_letto: str
    letto_id: str | None = None
    nome_piano: str | None = None
    nome_paziente: str | None = None
    numero_processo: str | None = None
    eta: int | None = None
    sesso: str | None = None
    chirurgo: str | None = None
    specialita: str | None = None
    intervento: str | None = None
    sottosistema: str | None = None
    allergie: str | None = None
    osservazioni: str | None = None
    data_entrata: datetime | None = None
    data_dimissione: datetime | None = None
    origine: OriginePiano = OriginePiano.EMPTY

    def as_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["origine"] = self.origine.value
        d["data_entrata"] = self.data_entrata.isoformat() if self.data_entrata else None
        d["data_dimissione"] = self.data_dimissione.isoformat() if self.data_dimissione else None
        return d


def riga_vuota(letto: LettoRegistro) -> RigaPiano:
    return RigaPiano(
        id=f"empty-{letto.id}",
        codice_letto=letto.codice,
        letto_id=letto.id,
        nome_piano=letto.nome_piano,
        origine=OriginePiano.EMPTY,
    )


def riconcilia_piano(
    voci: Iterable[RigaPiano],
    letti: Iterable[LettoRegistro],
    previsioni: Iterable[RigaPiano],
) -> list[RigaPiano]:
    """
    Unisce voci salvate, previsioni da ricovero e letti del registro.
    Una previsione su un letto che ha già una voce salvata (o già reclamato
    da un'altra previsione) viene scartata: vince la prima.
    """
    salvate: dict[str, RigaPiano] = {v.codice_letto: v for v in voci}

    previste: dict[str, RigaPiano] = {}
    for p in previsioni:
        if p.codice_letto in salvate or p.codice_letto in previste:
            continue
        previste[p.codice_letto] = p

    righe: list[RigaPiano] = []
    for letto in letti:
        voce = salvate.pop(letto.codice, None)
        if voce is not None:
            righe.append(replace(
                voce,
                origine=OriginePiano.STORED,
                letto_id=voce.letto_id or letto.id,
                nome_piano=voce.nome_piano or letto.nome_piano,
            ))
            continue

        prevista = previste.pop(letto.codice, None)
        if prevista is not None:
            righe.append(replace(
                prevista,
                origine=OriginePiano.PREDICTED,
                codice_letto=letto.codice,
                letto_id=letto.id,
                nome_piano=letto.nome_piano,
            ))
            continue

        righe.append(riga_vuota(letto))

    orfane = [replace(v, origine=OriginePiano.STORED) for v in salvate.values()]
    righe.extend(ordina_per_codice(orfane, lambda r: r.codice_letto))

    residue = [replace(p, origine=OriginePiano.PREDICTED) for p in previste.values()]
    righe.extend(ordina_per_codice(residue, lambda r: r.codice_letto))
    return righe


# =========================
# Conversioni ORM -> righe
# =========================
def parse_giorno(value: Any) -> date:
    """Data del piano: obbligatoria, rifiutata prima di qualsiasi query se malformata."""
    if value is None or not str(value).strip():
        raise ErroreValidazione("Data non valida.")
    dt = parse_data_ora(value, "Data")
    return dt.date()


def _parse_giorno_opzionale(value: Any, etichetta: str) -> datetime | None:
    dt = parse_data_ora(value, etichetta)
    return datetime.combine(dt.date(), time.min) if dt else None


def _intervallo(giorno: date) -> tuple[datetime, datetime]:
    inizio = datetime.combine(giorno, time.min)
    return inizio, inizio + timedelta(days=1)


def _osservazioni_ricovero(r: Ricovero) -> str:
    return r.osservazioni or f"Ricoverato dal {r.data_entrata.date().isoformat()}"


def riga_da_voce(v: VocePiano) -> RigaPiano:
    return RigaPiano(
        id=v.id,
        codice_letto=v.codice_letto,
        letto_id=v.letto_id,
        nome_piano=v.letto.piano.nome if v.letto else None,
        origine=OriginePiano.STORED,
        **{campo: getattr(v, campo) for campo in CAMPI_VOCE},
    )


def riga_da_ricovero(r: Ricovero) -> RigaPiano:
    return RigaPiano(
        id=f"prediction-{r.id}",
        codice_letto=r.letto.codice,
        letto_id=r.letto_id,
        nome_piano=r.letto.piano.nome,
        nome_paziente=r.paziente.nome,
        numero_processo=r.paziente.numero_processo,
        eta=r.eta,
        sesso=r.sesso,
        chirurgo=r.chirurgo,
        specialita=r.specialita,
        intervento=r.intervento,
        sottosistema=r.paziente.sottosistema,
        allergie=r.allergie,
        osservazioni=_osservazioni_ricovero(r),
        data_entrata=r.data_entrata,
        data_dimissione=r.data_dimissione,
        origine=OriginePiano.PREDICTED,
    )


def _valori_da_ricovero(r: Ricovero | None) -> dict[str, Any]:
    if r is None:
        return {campo: None for campo in CAMPI_VOCE}
    return {
        "nome_paziente": r.paziente.nome,
        "numero_processo": r.paziente.numero_processo,
        "eta": r.eta,
        "sesso": r.sesso,
        "chirurgo": r.chirurgo,
        "specialita": r.specialita,
        "intervento": r.intervento,
        "sottosistema": r.paziente.sottosistema,
        "allergie": r.allergie,
        "osservazioni": _osservazioni_ricovero(r),
        "data_entrata": r.data_entrata,
        "data_dimissione": r.data_dimissione,
    }


def campi_voce(v: VocePiano) -> dict[str, Any]:
    return {campo: getattr(v, campo) for campo in CAMPI_VOCE}


def voce_flat(v: VocePiano) -> dict[str, Any]:
    d = {
        "id": v.id,
        "data_piano": v.data_piano.isoformat(),
        "codice_letto": v.codice_letto,
        "letto_id": v.letto_id,
        "creato_da_id": v.creato_da_id,
    }
    for campo, valore in campi_voce(v).items():
        d[campo] = valore.isoformat() if isinstance(valore, datetime) else valore
    return d


def _trova_voce(s: Session, giorno: date, codice: str) -> VocePiano | None:
    return s.scalars(
        select(VocePiano).where(VocePiano.data_piano == giorno, VocePiano.codice_letto == codice)
    ).first()


def _upsert_voce(
    s: Session,
    giorno: date,
    codice: str,
    letto_id: str | None,
    valori: dict[str, Any],
    utente_id: str | None,
) -> VocePiano:
    voce = _trova_voce(s, giorno, codice)
    if voce is None:
        voce = VocePiano(data_piano=giorno, codice_letto=codice)
        s.add(voce)
    voce.letto_id = letto_id
    voce.creato_da_id = utente_id
    for campo, valore in valori.items():
        setattr(voce, campo, valore)
    s.flush()
    return voce


# =========================
# Lettura tabellone
# =========================
def piano_del_giorno(data: Any) -> list[dict[str, Any]]:
    giorno = parse_giorno(data)
    inizio, fine = _intervallo(giorno)

    with db_session() as s:
        voci = s.scalars(
            select(VocePiano)
            .options(joinedload(VocePiano.letto).joinedload(Letto.piano))
            .where(VocePiano.data_piano == giorno)
        ).unique().all()

        letti = s.execute(
            select(Letto.id, Letto.codice, Piano.nome.label("nome_piano"))
            .join(Piano, Piano.id == Letto.piano_id)
            .order_by(Letto.ordine.asc(), Letto.codice.asc())
        ).all()

        ricoveri = s.scalars(
            select(Ricovero)
            .options(joinedload(Ricovero.paziente), joinedload(Ricovero.letto).joinedload(Letto.piano))
            .where(
                Ricovero.attivo.is_(True),
                Ricovero.data_entrata < fine,
                or_(Ricovero.data_dimissione.is_(None), Ricovero.data_dimissione >= inizio),
            )
            .order_by(Ricovero.data_entrata.asc())
        ).unique().all()

        righe = riconcilia_piano(
            [riga_da_voce(v) for v in voci],
            [LettoRegistro(id=r.id, codice=r.codice, nome_piano=r.nome_piano) for r in letti],
            [riga_da_ricovero(r) for r in ricoveri],
        )
        return [r.as_dict() for r in righe]


# =========================
# Operazioni sul piano
# =========================
def genera_piano(utente_id: str, data: Any) -> list[dict[str, Any]]:
    """
    Salva una voce per ogni letto a partire dall'occupazione attuale.
    Rieseguirla senza nuovi ricoveri produce le stesse voci.
    """
    giorno = parse_giorno(data)

    with db_session() as s:
        letti = s.scalars(select(Letto).order_by(Letto.ordine.asc(), Letto.codice.asc())).all()
        attivi = {
            r.letto_id: r
            for r in s.scalars(
                select(Ricovero)
                .options(joinedload(Ricovero.paziente))
                .where(Ricovero.attivo.is_(True))
                .order_by(Ricovero.data_entrata.asc())
            ).unique()
        }

        voci = [
            _upsert_voce(s, giorno, letto.codice, letto.id, _valori_da_ricovero(attivi.get(letto.id)), utente_id)
            for letto in letti
        ]

        registra_modifica(
            s, utente_id, "GENERATE_PLAN", None, None, {"data_piano": giorno, "voci": len(voci)},
            "Piano generato dall'occupazione attuale", "VocePiano", giorno.isoformat(),
        )
        _LOGGER.info("Piano %s generato: %d voci", giorno.isoformat(), len(voci))
        return [voce_flat(v) for v in voci]


def aggiorna_voce(utente_id: str, data: Any, codice_letto: str, dati: dict[str, Any]) -> dict[str, Any]:
    giorno = parse_giorno(data)
    codice = pulisci_testo(codice_letto)
    if not codice:
        raise ErroreValidazione("Codice letto non valido.")

    valori: dict[str, Any] = {
        "nome_paziente": pulisci_testo(dati.get("nome_paziente"), MAX_TESTO),
        "numero_processo": pulisci_testo(dati.get("numero_processo"), MAX_TESTO),
        "eta": parse_eta(dati.get("eta")),
        "sesso": pulisci_testo(dati.get("sesso"), MAX_TESTO),
        "chirurgo": pulisci_testo(dati.get("chirurgo"), MAX_TESTO),
        "specialita": pulisci_testo(dati.get("specialita"), MAX_TESTO),
        "intervento": pulisci_testo(dati.get("intervento"), MAX_TESTO),
        "sottosistema": pulisci_testo(dati.get("sottosistema"), MAX_TESTO),
        "allergie": pulisci_testo(dati.get("allergie"), MAX_TESTO),
        "osservazioni": pulisci_testo(dati.get("osservazioni"), MAX_OSSERVAZIONI),
    }
    if "data_entrata" in dati:
        valori["data_entrata"] = _parse_giorno_opzionale(dati["data_entrata"], "Data di entrata")
    if "data_dimissione" in dati:
        valori["data_dimissione"] = _parse_giorno_opzionale(dati["data_dimissione"], "Data di dimissione")

    with db_session() as s:
        letto = s.scalars(select(Letto).where(Letto.codice == codice)).first()
        esistente = _trova_voce(s, giorno, codice)
        prima = campi_voce(esistente) if esistente else None

        voce = _upsert_voce(s, giorno, codice, letto.id if letto else None, valori, utente_id)

        registra_modifica(
            s, utente_id, "UPDATE_PLAN", letto.id if letto else None, prima, campi_voce(voce),
            pulisci_testo(dati.get("motivo")), "VocePiano", voce.id, codice_letto=codice,
        )
        return voce_flat(voce)


def cancella_voce(utente_id: str, data: Any, codice_letto: str) -> dict[str, Any]:
    codice = pulisci_testo(codice_letto)
    if not codice:
        raise ErroreValidazione("Codice letto non valido.")
    giorno = parse_giorno(data)

    with db_session() as s:
        voce = _trova_voce(s, giorno, codice)
        if voce is None:
            return {"rimossa": False}

        prima = campi_voce(voce)
        letto_id, voce_id = voce.letto_id, voce.id
        s.delete(voce)
        s.flush()
        registra_modifica(
            s, utente_id, "CLEAR_PLAN_ENTRY", letto_id, prima, None, None, "VocePiano", voce_id, codice_letto=codice
        )
        return {"rimossa": True}


def cancella_piano(utente_id: str, data: Any) -> dict[str, Any]:
    giorno = parse_giorno(data)
    with db_session() as s:
        res = s.execute(delete(VocePiano).where(VocePiano.data_piano == giorno))
        rimosse = res.rowcount or 0
        registra_modifica(
            s, utente_id, "CLEAR_PLAN", None, {"data_piano": giorno, "voci": rimosse}, None,
            None, "VocePiano", giorno.isoformat(),
        )
        _LOGGER.info("Piano %s cancellato: %d voci", giorno.isoformat(), rimosse)
        return {"data": giorno.isoformat(), "rimosse": rimosse}


def copia_piano(utente_id: str, data_destinazione: Any, data_origine: Any) -> list[dict[str, Any]]:
    if data_origine is None or not str(data_origine).strip():
        raise ErroreValidazione("Selezionare la data di origine.")
    destinazione = parse_giorno(data_destinazione)
    origine = parse_giorno(data_origine)

    with db_session() as s:
        sorgenti = s.scalars(select(VocePiano).where(VocePiano.data_piano == origine)).all()
        if not sorgenti:
            raise ErroreValidazione("Non esiste pianificazione per la data di origine.")

        copiate = [
            _upsert_voce(s, destinazione, v.codice_letto, v.letto_id, campi_voce(v), utente_id)
            for v in sorgenti
        ]
        registra_modifica(
            s, utente_id, "COPY_PLAN", None, {"data_piano": origine}, {"data_piano": destinazione, "voci": len(copiate)},
            None, "VocePiano", destinazione.isoformat(),
        )
        return [voce_flat(v) for v in copiate]


def importa_voci(utente_id: str, ruolo: Ruolo, data: Any, codici_letto: list[str] | None) -> dict[str, Any]:
    """
    Trasforma le voci salvate in ricoveri reali, una transazione per letto:
    l'errore su un letto non blocca gli altri e finisce nei risultati.
    """
    if not codici_letto:
        raise ErroreValidazione("Selezionare almeno un letto.")
    giorno = parse_giorno(data)

    with db_session() as s:
        voci = {
            v.codice_letto: v
            for v in s.scalars(
                select(VocePiano).where(VocePiano.data_piano == giorno, VocePiano.codice_letto.in_(codici_letto))
            )
        }
        letti = {
            l.codice: l.id
            for l in s.scalars(select(Letto).where(Letto.codice.in_(codici_letto)))
        }

    risultati: list[dict[str, Any]] = []
    for codice in codici_letto:
        voce = voci.get(codice)
        if voce is None:
            risultati.append({"codice_letto": codice, "esito": "errore", "messaggio": "Nessuna pianificazione per questo letto."})
            continue
        letto_id = voce.letto_id or letti.get(codice)
        if letto_id is None:
            risultati.append({"codice_letto": codice, "esito": "errore", "messaggio": "Letto non trovato."})
            continue
        if not voce.nome_paziente:
            risultati.append({"codice_letto": codice, "esito": "errore", "messaggio": "Pianificazione senza nome del paziente."})
            continue

        dati = {
            "nome": voce.nome_paziente,
            "numero_processo": voce.numero_processo,
            "eta": voce.eta,
            "sesso": voce.sesso,
            "chirurgo": voce.chirurgo,
            "intervento": voce.intervento,
            "specialita": voce.specialita,
            "sottosistema": voce.sottosistema,
            "osservazioni": voce.osservazioni,
            "allergie": voce.allergie,
            "data_entrata": voce.data_entrata,
            "data_dimissione": voce.data_dimissione,
            "motivo": f"Importato dalla pianificazione del {giorno.isoformat()}",
        }
        try:
            ricovera_paziente(utente_id, ruolo, letto_id, dati)
        except (ErroreValidazione, NonTrovato, OperazioneNegata) as e:
            risultati.append({"codice_letto": codice, "esito": "errore", "messaggio": str(e)})
            continue
        except SQLAlchemyError:
            _LOGGER.exception("Import pianificazione fallito per il letto %s", codice)
            risultati.append({"codice_letto": codice, "esito": "errore", "messaggio": "Errore durante l'importazione."})
            continue
        risultati.append({"codice_letto": codice, "esito": "ok"})

    return {"data": giorno.isoformat(), "risultati": risultati}
