from __future__ import annotations

import logging
from typing import Any, Callable

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from pydantic import BaseModel, Field

from bedflow.audit import lista_log, storico_letto
from bedflow.auth_models import Ruolo, Utente
from bedflow.auth_security import create_access_token, get_subject
from bedflow.auth_service import (
    autentica,
    cambia_password,
    crea_utente,
    disattiva_utente,
    get_utente_by_id,
    lista_utenti_flat,
    reimposta_password,
    utente_flat,
)
from bedflow.config import CORS_ORIGINS, setup_logging
from bedflow.errors import ErroreValidazione, NonTrovato, OperazioneNegata
from bedflow.pianificazione import (
    aggiorna_voce,
    cancella_piano,
    cancella_voce,
    copia_piano,
    genera_piano,
    importa_voci,
    piano_del_giorno,
)
from bedflow.seed import seed_base
from bedflow.services import (
    aggiorna_dati_amministrativi,
    aggiorna_stato_clinico,
    blocca_sblocca_letto,
    crea_letto,
    crea_stanza,
    crea_unita,
    dimetti_paziente,
    elimina_letto,
    elimina_stanza,
    elimina_unita,
    imposta_nome_ospedale,
    init_db,
    leggi_impostazioni,
    libera_letto,
    lista_piani_flat,
    parse_data,
    ricovera_paziente,
    struttura_flat,
)

setup_logging()
_LOGGER = logging.getLogger(__name__)

# OAuth2 Bearer (Authorization: Bearer <token>)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")

app = FastAPI(title="BedFlow API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Startup

@app.on_event("startup")
def startup() -> None:
    # Crea tabelle (incluse Utente) e seed base (idempotente)
    init_db()
    seed_base()


# Errori di dominio -> HTTP

@app.exception_handler(ErroreValidazione)
async def _errore_validazione(request: Request, exc: ErroreValidazione) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


@app.exception_handler(NonTrovato)
async def _non_trovato(request: Request, exc: NonTrovato) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(OperazioneNegata)
async def _operazione_negata(request: Request, exc: OperazioneNegata) -> JSONResponse:
    _LOGGER.warning("Operazione negata su %s: %s", request.url.path, exc)
    return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"detail": str(exc)})


# Schemi Auth

class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"
    utente: dict[str, Any]


class CambioPasswordIn(BaseModel):
    password_attuale: str
    password_nuova: str


class UtenteCreateIn(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)
    nome_completo: str = Field(..., min_length=1)
    ruolo: str


class ResetPasswordIn(BaseModel):
    password_nuova: str


# Schemi Letti

class ClinicoIn(BaseModel):
    campo: str
    valore: Any = None
    motivo: str | None = None


class ClinicoBulkIn(BaseModel):
    modifiche: dict[str, Any]
    motivo: str | None = None


class MotivoIn(BaseModel):
    motivo: str | None = None


class RicoveroIn(BaseModel):
    nome: str | None = None
    numero_processo: str | None = None
    sottosistema: str | None = None
    data_nascita: str | None = None
    # età: validata nei servizi (400)
    eta: int | str | None = None
    sesso: str | None = None
    chirurgo: str | None = None
    intervento: str | None = None
    specialita: str | None = None
    osservazioni: str | None = None
    allergie: str | None = None
    # date come stringhe ISO: la validazione (400) è nei servizi
    data_entrata: str | None = None
    data_dimissione: str | None = None
    motivo: str | None = None


class DatiAmministrativiIn(RicoveroIn):
    """Aggiornamento parziale: contano solo i campi inviati."""


class UnitaIn(BaseModel):
    nome: str
    tipo: str | None = None


class StanzaIn(BaseModel):
    piano_id: str
    nome: str


class LettoIn(BaseModel):
    codice: str
    ordine: int | None = None


# Schemi Pianificazione

class VocePianoIn(BaseModel):
    nome_paziente: str | None = None
    numero_processo: str | None = None
    eta: int | str | None = None
    sesso: str | None = None
    chirurgo: str | None = None
    specialita: str | None = None
    intervento: str | None = None
    sottosistema: str | None = None
    allergie: str | None = None
    osservazioni: str | None = None
    data_entrata: str | None = None
    data_dimissione: str | None = None
    motivo: str | None = None


class CopiaPianoIn(BaseModel):
    data_origine: str | None = None


class ImportPianoIn(BaseModel):
    codici_letto: list[str] = Field(default_factory=list)


class ImpostazioniIn(BaseModel):
    nome_ospedale: str | None = None


# Dipendenze auth

def get_current_user(token: str = Depends(oauth2_scheme)) -> Utente:
    # protezione extra: elimina spazi / virgolette accidentali
    token = token.strip().strip('"').strip("'")

    user_id = get_subject(token)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token non valido")

    u = get_utente_by_id(user_id)
    if not u or not u.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Utente non valido")
    return u


def richiede_ruoli(*ruoli: Ruolo) -> Callable[..., Utente]:
    def _verifica(user: Utente = Depends(get_current_user)) -> Utente:
        if user.ruolo not in ruoli:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Permessi insufficienti")
        return user
    return _verifica


solo_admin = richiede_ruoli(Ruolo.ADMIN)
coordinamento = richiede_ruoli(Ruolo.COORDINATOR, Ruolo.ADMIN)


# AUTH endpoints

@app.post("/auth/login", response_model=TokenOut)
def login(form: OAuth2PasswordRequestForm = Depends()) -> TokenOut:
    u = autentica(form.username, form.password)
    if not u:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Credenziali non valide")

    token = create_access_token(
        subject=u.id,
        extra={"username": u.username, "role": u.ruolo.value, "nome_completo": u.nome_completo},
    )
    return TokenOut(access_token=token, utente=utente_flat(u))


@app.get("/auth/me")
def me(user: Utente = Depends(get_current_user)) -> dict[str, Any]:
    return utente_flat(user)


@app.patch("/auth/password")
def api_cambia_password(payload: CambioPasswordIn, user: Utente = Depends(get_current_user)) -> dict[str, Any]:
    cambia_password(user.id, payload.password_attuale, payload.password_nuova)
    return {"ok": True}


@app.get("/auth/users")
def api_utenti(user: Utente = Depends(solo_admin)) -> list[dict]:
    return lista_utenti_flat()


@app.post("/auth/users", status_code=status.HTTP_201_CREATED)
def api_crea_utente(payload: UtenteCreateIn, user: Utente = Depends(solo_admin)) -> dict[str, Any]:
    user_id = crea_utente(payload.username, payload.password, payload.nome_completo, payload.ruolo)
    return {"ok": True, "user_id": user_id}


@app.delete("/auth/users/{user_id}")
def api_elimina_utente(user_id: str, user: Utente = Depends(solo_admin)) -> dict[str, Any]:
    disattiva_utente(user_id, user.id)
    return {"ok": True}


@app.patch("/auth/users/{user_id}/password")
def api_reimposta_password(
    user_id: str, payload: ResetPasswordIn, user: Utente = Depends(solo_admin)
) -> dict[str, Any]:
    reimposta_password(user_id, payload.password_nuova)
    return {"ok": True}


# PUBLIC endpoints (no JWT)

@app.get("/settings")
def api_impostazioni() -> dict[str, Any]:
    return leggi_impostazioni()


# LETTI

@app.get("/beds/floors")
def api_piani(user: Utente = Depends(get_current_user)) -> list[dict]:
    return lista_piani_flat()


@app.get("/beds/structure")
def api_struttura(user: Utente = Depends(coordinamento)) -> list[dict]:
    return struttura_flat()


@app.patch("/beds/{letto_id}/clinical")
def api_stato_clinico(letto_id: str, payload: ClinicoIn, user: Utente = Depends(get_current_user)) -> dict[str, Any]:
    return aggiorna_stato_clinico(user.id, user.ruolo, letto_id, {payload.campo: payload.valore}, payload.motivo)


@app.patch("/beds/{letto_id}/clinical/bulk")
def api_stato_clinico_bulk(
    letto_id: str, payload: ClinicoBulkIn, user: Utente = Depends(get_current_user)
) -> dict[str, Any]:
    return aggiorna_stato_clinico(user.id, user.ruolo, letto_id, payload.modifiche, payload.motivo)


@app.post("/beds/{letto_id}/admit")
def api_ricovera(letto_id: str, payload: RicoveroIn, user: Utente = Depends(get_current_user)) -> dict[str, Any]:
    return ricovera_paziente(user.id, user.ruolo, letto_id, payload.model_dump())


@app.post("/beds/{letto_id}/discharge")
def api_dimetti(
    letto_id: str, payload: MotivoIn | None = None, user: Utente = Depends(get_current_user)
) -> dict[str, Any]:
    return dimetti_paziente(user.id, letto_id, payload.motivo if payload else None)


@app.post("/beds/{letto_id}/lock")
def api_blocca(
    letto_id: str, payload: MotivoIn | None = None, user: Utente = Depends(get_current_user)
) -> dict[str, Any]:
    return blocca_sblocca_letto(user.id, letto_id, payload.motivo if payload else None)


@app.patch("/beds/{letto_id}/admin")
def api_dati_amministrativi(
    letto_id: str, payload: DatiAmministrativiIn, user: Utente = Depends(get_current_user)
) -> dict[str, Any]:
    return aggiorna_dati_amministrativi(user.id, user.ruolo, letto_id, payload.model_dump(exclude_unset=True))


@app.post("/beds/{letto_id}/clear")
def api_libera(
    letto_id: str, payload: MotivoIn | None = None, user: Utente = Depends(coordinamento)
) -> dict[str, Any]:
    return libera_letto(user.id, user.ruolo, letto_id, payload.motivo if payload else None)


@app.get("/beds/{letto_id}/history")
def api_storico_letto(letto_id: str, user: Utente = Depends(coordinamento)) -> list[dict]:
    return storico_letto(letto_id)


# Struttura (unità / stanze / letti)

@app.post("/beds/units", status_code=status.HTTP_201_CREATED)
def api_crea_unita(payload: UnitaIn, user: Utente = Depends(coordinamento)) -> dict[str, Any]:
    return crea_unita(user.id, payload.nome, payload.tipo)


@app.delete("/beds/units/{piano_id}")
def api_elimina_unita(piano_id: str, user: Utente = Depends(coordinamento)) -> dict[str, Any]:
    return elimina_unita(user.id, piano_id)


@app.post("/beds/rooms", status_code=status.HTTP_201_CREATED)
def api_crea_stanza(payload: StanzaIn, user: Utente = Depends(coordinamento)) -> dict[str, Any]:
    return crea_stanza(user.id, payload.piano_id, payload.nome)


@app.delete("/beds/rooms/{stanza_id}")
def api_elimina_stanza(stanza_id: str, user: Utente = Depends(coordinamento)) -> dict[str, Any]:
    return elimina_stanza(user.id, stanza_id)


@app.post("/beds/rooms/{stanza_id}/beds", status_code=status.HTTP_201_CREATED)
def api_crea_letto(stanza_id: str, payload: LettoIn, user: Utente = Depends(coordinamento)) -> dict[str, Any]:
    return crea_letto(user.id, stanza_id, payload.codice, payload.ordine)


@app.delete("/beds/{letto_id}")
def api_elimina_letto(letto_id: str, user: Utente = Depends(coordinamento)) -> dict[str, Any]:
    return elimina_letto(user.id, letto_id)


# PIANIFICAZIONE

@app.get("/planning/{data}")
def api_piano(data: str, user: Utente = Depends(get_current_user)) -> list[dict]:
    return piano_del_giorno(data)


@app.post("/planning/{data}/generate")
def api_genera_piano(data: str, user: Utente = Depends(coordinamento)) -> list[dict]:
    return genera_piano(user.id, data)


@app.post("/planning/{data}/copy")
def api_copia_piano(data: str, payload: CopiaPianoIn, user: Utente = Depends(coordinamento)) -> list[dict]:
    return copia_piano(user.id, data, payload.data_origine)


@app.post("/planning/{data}/import")
def api_importa_piano(data: str, payload: ImportPianoIn, user: Utente = Depends(get_current_user)) -> dict[str, Any]:
    return importa_voci(user.id, user.ruolo, data, payload.codici_letto)


@app.patch("/planning/{data}/{codice_letto}")
def api_aggiorna_voce(
    data: str, codice_letto: str, payload: VocePianoIn, user: Utente = Depends(coordinamento)
) -> dict[str, Any]:
    return aggiorna_voce(user.id, data, codice_letto, payload.model_dump(exclude_unset=True))


@app.delete("/planning/{data}/{codice_letto}")
def api_cancella_voce(data: str, codice_letto: str, user: Utente = Depends(coordinamento)) -> dict[str, Any]:
    return cancella_voce(user.id, data, codice_letto)


@app.delete("/planning/{data}")
def api_cancella_piano(data: str, user: Utente = Depends(coordinamento)) -> dict[str, Any]:
    return cancella_piano(user.id, data)


# AUDIT

@app.get("/audit/logs")
def api_audit(
    start_date: str | None = Query(None, alias="startDate"),
    end_date: str | None = Query(None, alias="endDate"),
    bed_code: str | None = Query(None, alias="bedCode"),
    floor: str | None = Query(None),
    patient: str | None = Query(None),
    process_number: str | None = Query(None, alias="processNumber"),
    take: int | None = Query(None),
    user: Utente = Depends(coordinamento),
) -> list[dict]:
    return lista_log(
        data_inizio=parse_data(start_date, "Data iniziale"),
        data_fine=parse_data(end_date, "Data finale"),
        codice_letto=bed_code,
        piano=floor,
        paziente=patient,
        numero_processo=process_number,
        take=take,
    )


# IMPOSTAZIONI

@app.put("/settings")
def api_imposta_impostazioni(payload: ImpostazioniIn, user: Utente = Depends(coordinamento)) -> dict[str, Any]:
    return imposta_nome_ospedale(payload.nome_ospedale)
