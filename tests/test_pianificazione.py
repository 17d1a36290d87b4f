from __future__ import annotations

import pytest

from bedflow.audit import lista_log
from bedflow.auth_models import Ruolo
from bedflow.errors import ErroreValidazione
from bedflow.pianificazione import (
    CAMPI_VOCE,
    LettoRegistro,
    OriginePiano,
    RigaPiano,
    aggiorna_voce,
    cancella_piano,
    cancella_voce,
    copia_piano,
    genera_piano,
    importa_voci,
    piano_del_giorno,
    riconcilia_piano,
)
from bedflow.services import lista_piani_flat, ricovera_paziente

REGISTRO = [
    LettoRegistro(id="l1", codice="F1-R1-B1", nome_piano="Floor 1"),
    LettoRegistro(id="l2", codice="F1-R1-B2", nome_piano="Floor 1"),
    LettoRegistro(id="l3", codice="F1-R2-B1", nome_piano="Floor 1"),
]


def _per_codice(righe: list[dict]) -> dict[str, dict]:
    return {r["codice_letto"]: r for r in righe}


# =========================
# Riconciliazione (pura)
# =========================
def test_one_row_per_bed_in_registry_order():
    righe = riconcilia_piano([], REGISTRO, [])
    assert [r.codice_letto for r in righe] == ["F1-R1-B1", "F1-R1-B2", "F1-R2-B1"]
    assert all(r.origine is OriginePiano.EMPTY for r in righe)
    assert righe[0].id == "empty-l1"
    assert righe[0].nome_piano == "Floor 1"


def test_stored_beats_predicted():
    voce = RigaPiano(id="v1", codice_letto="F1-R1-B2", nome_paziente="Manuale")
    prevista = RigaPiano(id="p1", codice_letto="F1-R1-B2", nome_paziente="Da ricovero")
    righe = riconcilia_piano([voce], REGISTRO, [prevista])

    assert len(righe) == 3
    riga = righe[1]
    assert riga.origine is OriginePiano.STORED
    assert riga.nome_paziente == "Manuale"
    assert riga.letto_id == "l2"


def test_first_prediction_wins():
    prime = RigaPiano(id="p1", codice_letto="F1-R1-B1", nome_paziente="Primo")
    seconda = RigaPiano(id="p2", codice_letto="F1-R1-B1", nome_paziente="Secondo")
    righe = riconcilia_piano([], REGISTRO, [prime, seconda])

    assert len(righe) == 3
    assert righe[0].origine is OriginePiano.PREDICTED
    assert righe[0].nome_paziente == "Primo"


def test_orphans_and_leftover_predictions_appended_sorted():
    orfane = [
        RigaPiano(id="o2", codice_letto="X-B10"),
        RigaPiano(id="o1", codice_letto="X-B2"),
    ]
    residua = RigaPiano(id="p9", codice_letto="Y-1", nome_paziente="Fuori registro")
    righe = riconcilia_piano(orfane, REGISTRO, [residua])

    assert [r.codice_letto for r in righe[3:]] == ["X-B2", "X-B10", "Y-1"]
    assert [r.origine for r in righe[3:]] == [OriginePiano.STORED, OriginePiano.STORED, OriginePiano.PREDICTED]


def test_row_as_dict():
    d = riconcilia_piano([], REGISTRO[:1], [])[0].as_dict()
    assert d["origine"] == "EMPTY"
    assert d["data_entrata"] is None


# =========================
# Tabellone su DB
# =========================
def test_prediction_from_spanning_admission(admin_id, letti):
    ricovera_paziente(
        admin_id, Ruolo.ADMIN, letti["F1-R1-B1"],
        {"nome": "Maria Rossi", "numero_processo": "P-1", "data_entrata": "2026-03-01T09:30:00"},
    )

    righe = _per_codice(piano_del_giorno("2026-03-05"))
    assert len(righe) == 4
    riga = righe["F1-R1-B1"]
    assert riga["origine"] == "PREDICTED"
    assert riga["nome_paziente"] == "Maria Rossi"
    assert riga["osservazioni"] == "Ricoverato dal 2026-03-01"
    assert righe["F1-R1-B2"]["origine"] == "EMPTY"

    # il giorno prima dell'ingresso il letto è vuoto
    assert _per_codice(piano_del_giorno("2026-02-28"))["F1-R1-B1"]["origine"] == "EMPTY"


def test_manual_edit_then_clear(admin_id, letti):
    ricovera_paziente(
        admin_id, Ruolo.ADMIN, letti["F1-R1-B1"], {"nome": "Maria Rossi", "data_entrata": "2026-03-01"}
    )
    aggiorna_voce(admin_id, "2026-03-05", "F1-R1-B1", {"nome_paziente": "  Mario Bianchi ", "eta": 70})

    riga = _per_codice(piano_del_giorno("2026-03-05"))["F1-R1-B1"]
    assert riga["origine"] == "STORED"
    assert riga["nome_paziente"] == "Mario Bianchi"
    assert riga["eta"] == 70

    aggiorna_voce(admin_id, "2026-03-05", "F1-R1-B2", {"nome_paziente": "Temporaneo"})
    assert cancella_voce(admin_id, "2026-03-05", "F1-R1-B2") == {"rimossa": True}
    assert cancella_voce(admin_id, "2026-03-05", "F1-R1-B2") == {"rimossa": False}
    assert _per_codice(piano_del_giorno("2026-03-05"))["F1-R1-B2"]["origine"] == "EMPTY"


def test_update_entry_validation(admin_id, letti):
    with pytest.raises(ErroreValidazione):
        aggiorna_voce(admin_id, "2026-03-05", "F1-R1-B1", {"eta": 131})
    with pytest.raises(ErroreValidazione):
        aggiorna_voce(admin_id, "2026-03-05", "F1-R1-B1", {"data_entrata": "ieri"})

    voce = aggiorna_voce(
        admin_id, "2026-03-05", "F1-R1-B1",
        {"osservazioni": "x" * 600, "chirurgo": "", "data_entrata": "2026-03-04T15:00:00"},
    )
    assert len(voce["osservazioni"]) == 500
    assert voce["chirurgo"] is None
    assert voce["data_entrata"] == "2026-03-04T00:00:00"


def test_malformed_date_rejected(seeded):
    for data in ("2026-13-45", "domani", ""):
        with pytest.raises(ErroreValidazione):
            piano_del_giorno(data)


def test_orphan_entry_kept(admin_id, letti):
    aggiorna_voce(admin_id, "2026-03-05", "X-99", {"nome_paziente": "Letto rimosso"})

    righe = piano_del_giorno("2026-03-05")
    assert len(righe) == 5
    assert righe[-1]["codice_letto"] == "X-99"
    assert righe[-1]["origine"] == "STORED"
    assert righe[-1]["letto_id"] is None


def test_copy_round_trip(admin_id, letti):
    aggiorna_voce(admin_id, "2026-03-05", "F1-R1-B1", {"nome_paziente": "Ana", "eta": 40, "sesso": "F"})
    aggiorna_voce(admin_id, "2026-03-05", "F1-R2-B1", {"nome_paziente": "Bruno", "allergie": "Lattice"})

    copiate = copia_piano(admin_id, "2026-03-06", "2026-03-05")
    assert {v["data_piano"] for v in copiate} == {"2026-03-06"}

    campi = ("codice_letto", "origine") + CAMPI_VOCE
    a = [{k: r[k] for k in campi} for r in piano_del_giorno("2026-03-05")]
    b = [{k: r[k] for k in campi} for r in piano_del_giorno("2026-03-06")]
    assert a == b


def test_copy_requires_source(admin_id, letti):
    with pytest.raises(ErroreValidazione):
        copia_piano(admin_id, "2026-03-06", None)
    with pytest.raises(ErroreValidazione):
        copia_piano(admin_id, "2026-03-06", "2026-01-01")


def test_generate_is_idempotent(admin_id, letti):
    ricovera_paziente(admin_id, Ruolo.ADMIN, letti["F1-R1-B2"], {"nome": "Carla Neri", "numero_processo": "P-7"})

    prima = genera_piano(admin_id, "2026-03-05")
    seconda = genera_piano(admin_id, "2026-03-05")
    assert prima == seconda
    assert len(prima) == 4

    righe = _per_codice(piano_del_giorno("2026-03-05"))
    assert all(r["origine"] == "STORED" for r in righe.values())
    assert righe["F1-R1-B2"]["nome_paziente"] == "Carla Neri"
    assert righe["F1-R1-B1"]["nome_paziente"] is None


def test_clear_plan(admin_id, letti):
    genera_piano(admin_id, "2026-03-05")
    assert cancella_piano(admin_id, "2026-03-05") == {"data": "2026-03-05", "rimosse": 4}
    assert all(r["origine"] == "EMPTY" for r in piano_del_giorno("2026-03-05"))


def test_import_creates_admissions(admin_id, letti):
    aggiorna_voce(
        admin_id, "2026-03-05", "F1-R1-B2",
        {"nome_paziente": "Dario Gialli", "numero_processo": "P-9", "data_entrata": "2026-03-05"},
    )
    aggiorna_voce(admin_id, "2026-03-05", "F1-R2-B1", {"sesso": "M"})

    esito = importa_voci(admin_id, Ruolo.NURSE, "2026-03-05", ["F1-R1-B2", "F1-R2-B1", "SVC-A-1"])
    per_letto = {r["codice_letto"]: r for r in esito["risultati"]}
    assert per_letto["F1-R1-B2"]["esito"] == "ok"
    assert per_letto["F1-R2-B1"]["esito"] == "errore"
    assert per_letto["SVC-A-1"]["esito"] == "errore"

    letti_flat = {l["codice"]: l for p in lista_piani_flat() for l in p["letti"]}
    ricoveri = letti_flat["F1-R1-B2"]["ricoveri"]
    assert len(ricoveri) == 1
    assert ricoveri[0]["paziente"]["nome"] == "Dario Gialli"


def test_import_requires_codes(admin_id):
    with pytest.raises(ErroreValidazione):
        importa_voci(admin_id, Ruolo.ADMIN, "2026-03-05", [])


def test_planning_mutations_are_audited(admin_id, letti):
    aggiorna_voce(admin_id, "2026-03-05", "F1-R1-B1", {"nome_paziente": "Ana"})
    cancella_voce(admin_id, "2026-03-05", "F1-R1-B1")
    genera_piano(admin_id, "2026-03-06")

    azioni = [l["azione"] for l in lista_log()]
    assert azioni.count("UPDATE_PLAN") == 1
    assert azioni.count("CLEAR_PLAN_ENTRY") == 1
    assert azioni.count("GENERATE_PLAN") == 1
