from __future__ import annotations

import pytest
from sqlalchemy import select

from bedflow import pianificazione, services
from bedflow.audit import lista_log, storico_letto
from bedflow.auth_models import Ruolo
from bedflow.db import db_session
from bedflow.errors import ErroreValidazione, NonTrovato, OperazioneNegata
from bedflow.models import Letto, Ricovero, VocePiano
from bedflow.pianificazione import aggiorna_voce, piano_del_giorno
from bedflow.services import (
    aggiorna_dati_amministrativi,
    aggiorna_stato_clinico,
    blocca_sblocca_letto,
    crea_letto,
    crea_stanza,
    crea_unita,
    dimetti_paziente,
    elimina_letto,
    elimina_unita,
    imposta_nome_ospedale,
    leggi_impostazioni,
    libera_letto,
    lista_piani_flat,
    ricovera_paziente,
    struttura_flat,
)


def _letti_flat() -> dict[str, dict]:
    return {l["codice"]: l for p in lista_piani_flat() for l in p["letti"]}


# =========================
# Ricovero / dimissione
# =========================
def test_admit_and_discharge(admin_id, letti):
    r = ricovera_paziente(
        admin_id, Ruolo.NURSE, letti["F1-R1-B1"],
        {"nome": " Maria Rossi ", "numero_processo": "P-1", "eta": "54", "allergie": "Penicillina"},
    )
    assert r["paziente"]["nome"] == "Maria Rossi"
    assert r["eta"] == 54
    assert r["chirurgo"] == "N/A"
    assert r["meta"]["allergie"] == "Penicillina"
    assert r["attivo"] is True

    d = dimetti_paziente(admin_id, letti["F1-R1-B1"], "Guarita")
    assert d["attivo"] is False
    assert d["data_dimissione"] is not None
    assert _letti_flat()["F1-R1-B1"]["ricoveri"] == []

    with pytest.raises(NonTrovato):
        dimetti_paziente(admin_id, letti["F1-R1-B1"])

    azioni = [l["azione"] for l in storico_letto(letti["F1-R1-B1"])]
    assert azioni == ["DISCHARGE", "ADMIT_PATIENT"]


def test_admit_validation(admin_id, letti):
    with pytest.raises(ErroreValidazione):
        ricovera_paziente(admin_id, Ruolo.ADMIN, letti["F1-R1-B1"], {"nome": "  "})
    with pytest.raises(ErroreValidazione):
        ricovera_paziente(admin_id, Ruolo.ADMIN, letti["F1-R1-B1"], {"nome": "Ana", "eta": 131})
    with pytest.raises(ErroreValidazione):
        ricovera_paziente(admin_id, Ruolo.ADMIN, letti["F1-R1-B1"], {"nome": "Ana", "data_entrata": "31/12/2026"})
    with pytest.raises(ErroreValidazione):
        ricovera_paziente(
            admin_id, Ruolo.ADMIN, letti["F1-R1-B1"],
            {"nome": "Ana", "data_entrata": "2026-03-05", "data_dimissione": "2026-03-01"},
        )
    with pytest.raises(NonTrovato):
        ricovera_paziente(admin_id, Ruolo.ADMIN, "nessuno", {"nome": "Ana"})


def test_readmission_replaces_active_and_reuses_patient(admin_id, letti):
    primo = ricovera_paziente(admin_id, Ruolo.ADMIN, letti["F1-R1-B1"], {"nome": "Ana", "numero_processo": "P-1"})
    secondo = ricovera_paziente(admin_id, Ruolo.ADMIN, letti["F1-R1-B2"], {"nome": "Ana", "numero_processo": "P-1"})
    assert primo["paziente"]["id"] == secondo["paziente"]["id"]

    ricovera_paziente(admin_id, Ruolo.ADMIN, letti["F1-R1-B1"], {"nome": "Bea"})
    with db_session() as s:
        attivi = s.scalars(
            select(Ricovero).where(Ricovero.letto_id == letti["F1-R1-B1"], Ricovero.attivo.is_(True))
        ).all()
        assert len(attivi) == 1


# =========================
# Blocco e stato clinico
# =========================
def test_lock_blocks_non_admin(admin_id, letti):
    letto = blocca_sblocca_letto(admin_id, letti["F1-R1-B1"], "Manutenzione")
    assert letto["bloccato"] is True
    assert letto["motivo_blocco"] == "Manutenzione"

    with pytest.raises(OperazioneNegata):
        aggiorna_stato_clinico(admin_id, Ruolo.NURSE, letti["F1-R1-B1"], {"cvp_presente": True})
    with pytest.raises(OperazioneNegata):
        ricovera_paziente(admin_id, Ruolo.COORDINATOR, letti["F1-R1-B1"], {"nome": "Ana"})

    stato = aggiorna_stato_clinico(admin_id, Ruolo.ADMIN, letti["F1-R1-B1"], {"cvp_presente": True})
    assert stato["cvp_presente"] is True

    assert blocca_sblocca_letto(admin_id, letti["F1-R1-B1"])["bloccato"] is False
    azioni = [l["azione"] for l in storico_letto(letti["F1-R1-B1"])]
    assert azioni.count("LOCK") == 1
    assert azioni.count("UNLOCK") == 1


def test_clinical_update_validation(admin_id, letti):
    with pytest.raises(ErroreValidazione):
        aggiorna_stato_clinico(admin_id, Ruolo.NURSE, letti["F1-R1-B1"], {})
    with pytest.raises(ErroreValidazione):
        aggiorna_stato_clinico(admin_id, Ruolo.NURSE, letti["F1-R1-B1"], {"pressione": "120/80"})
    with pytest.raises(ErroreValidazione):
        aggiorna_stato_clinico(admin_id, Ruolo.NURSE, letti["F1-R1-B1"], {"cvp_presente": "si"})


def test_clinical_bulk_update_audits_touched_keys(admin_id, letti):
    stato = aggiorna_stato_clinico(
        admin_id, Ruolo.NURSE, letti["F1-R1-B1"],
        {"drenaggi_presenti": True, "drenaggi_sede": "  addome  "},
        "Giro visita",
    )
    assert stato["drenaggi_sede"] == "addome"

    log = storico_letto(letti["F1-R1-B1"])[0]
    assert log["motivo"] == "Giro visita"
    assert log["stato_prima"] == {"drenaggi_presenti": False, "drenaggi_sede": None}
    assert set(log["diff"]) == {"drenaggi_presenti", "drenaggi_sede"}


# =========================
# Dati amministrativi / pulizia
# =========================
def test_admin_update_is_partial(admin_id, letti):
    ricovera_paziente(
        admin_id, Ruolo.ADMIN, letti["F1-R1-B1"],
        {"nome": "Ana", "numero_processo": "P-1", "sesso": "F", "chirurgo": "Dr. House"},
    )
    r = aggiorna_dati_amministrativi(admin_id, Ruolo.NURSE, letti["F1-R1-B1"], {"specialita": "Ortopedia", "eta": 33})

    assert r["meta"]["specialita"] == "Ortopedia"
    assert r["eta"] == 33
    assert r["sesso"] == "F"
    assert r["chirurgo"] == "Dr. House"
    assert r["paziente"]["nome"] == "Ana"

    log = storico_letto(letti["F1-R1-B1"])[0]
    assert log["azione"] == "UPDATE_ADMIN"
    assert set(log["diff"]) == {"ricovero", "meta"}


def test_admin_update_requires_admission(admin_id, letti):
    with pytest.raises(NonTrovato):
        aggiorna_dati_amministrativi(admin_id, Ruolo.ADMIN, letti["F1-R1-B1"], {"sesso": "M"})


def test_admin_update_rejects_discharge_before_entry(admin_id, letti):
    ricovera_paziente(admin_id, Ruolo.ADMIN, letti["F1-R1-B1"], {"nome": "Ana", "data_entrata": "2026-03-05"})

    # dimissione nuova contro entrata salvata
    with pytest.raises(ErroreValidazione):
        aggiorna_dati_amministrativi(admin_id, Ruolo.ADMIN, letti["F1-R1-B1"], {"data_dimissione": "2026-03-01"})
    # entrata nuova contro dimissione salvata
    aggiorna_dati_amministrativi(admin_id, Ruolo.ADMIN, letti["F1-R1-B1"], {"data_dimissione": "2026-03-10"})
    with pytest.raises(ErroreValidazione):
        aggiorna_dati_amministrativi(admin_id, Ruolo.ADMIN, letti["F1-R1-B1"], {"data_entrata": "2026-03-12"})

    riga = next(r for r in piano_del_giorno("2026-03-05") if r["codice_letto"] == "F1-R1-B1")
    assert riga["origine"] == "PREDICTED"
    assert riga["data_dimissione"].startswith("2026-03-10")


# =========================
# Atomicità modifica + audit
# =========================
def _audit_rotto(*args, **kwargs):
    raise RuntimeError("scrittura audit fallita")


def test_failed_audit_rolls_back_bed_change(monkeypatch, admin_id, letti):
    monkeypatch.setattr(services, "registra_modifica", _audit_rotto)

    with pytest.raises(RuntimeError):
        blocca_sblocca_letto(admin_id, letti["F1-R1-B1"], "Manutenzione")

    with db_session() as s:
        assert s.get(Letto, letti["F1-R1-B1"]).bloccato is False
    assert lista_log() == []


def test_failed_audit_rolls_back_planning_change(monkeypatch, admin_id, letti):
    monkeypatch.setattr(pianificazione, "registra_modifica", _audit_rotto)

    with pytest.raises(RuntimeError):
        aggiorna_voce(admin_id, "2026-03-05", "F1-R1-B1", {"nome_paziente": "Ana"})

    with db_session() as s:
        assert s.scalars(select(VocePiano)).first() is None
    assert lista_log() == []
    assert all(r["origine"] == "EMPTY" for r in piano_del_giorno("2026-03-05"))


def test_clear_bed(admin_id, letti):
    ricovera_paziente(admin_id, Ruolo.ADMIN, letti["F1-R1-B1"], {"nome": "Ana"})
    aggiorna_stato_clinico(admin_id, Ruolo.ADMIN, letti["F1-R1-B1"], {"cvp_presente": True, "diuresi_note": "ok"})

    assert libera_letto(admin_id, Ruolo.COORDINATOR, letti["F1-R1-B1"]) == {
        "ricovero_chiuso": True,
        "stato_clinico_azzerato": True,
    }
    letto = _letti_flat()["F1-R1-B1"]
    assert letto["ricoveri"] == []
    assert letto["stato_clinico"]["cvp_presente"] is False
    assert letto["stato_clinico"]["diuresi_note"] is None


# =========================
# Struttura
# =========================
def test_floors_sorted_naturally(admin_id, letti):
    stanza = struttura_flat()[0]["stanze"][0]["id"]
    crea_letto(admin_id, stanza, "F1-R1-B10")

    floor1 = next(p for p in lista_piani_flat() if p["nome"] == "Floor 1")
    assert [l["codice"] for l in floor1["letti"]] == ["F1-R1-B1", "F1-R1-B2", "F1-R1-B10", "F1-R2-B1"]


def test_structure_crud(admin_id, letti):
    unita = crea_unita(admin_id, "Floor 2")
    assert unita["tipo"] == "FLOOR"
    with pytest.raises(ErroreValidazione):
        crea_unita(admin_id, "Floor 2")
    with pytest.raises(ErroreValidazione):
        crea_unita(admin_id, "Floor 3", "REPARTO")

    stanza = crea_stanza(admin_id, unita["id"], "Room 9")
    letto = crea_letto(admin_id, stanza["id"], "F2-R9-B1")
    assert letto["ordine"] == 20901
    with pytest.raises(ErroreValidazione):
        crea_letto(admin_id, stanza["id"], "F2-R9-B1")
    assert crea_letto(admin_id, stanza["id"], "F2-R9-B2", ordine=5)["ordine"] == 5

    ricovera_paziente(admin_id, Ruolo.ADMIN, letto["id"], {"nome": "Ana"})
    aggiorna_voce(admin_id, "2026-03-05", "F2-R9-B1", {"nome_paziente": "Ana"})

    assert elimina_unita(admin_id, unita["id"]) == {"eliminato": True}
    with db_session() as s:
        assert s.scalars(select(Letto).where(Letto.codice.like("F2-%"))).first() is None
        assert s.scalars(select(Ricovero).where(Ricovero.letto_id == letto["id"])).first() is None
    assert "Floor 2" not in {p["nome"] for p in struttura_flat()}

    with pytest.raises(NonTrovato):
        elimina_unita(admin_id, unita["id"])


def test_delete_bed(admin_id, letti):
    assert elimina_letto(admin_id, letti["F1-R2-B1"]) == {"eliminato": True}
    assert "F1-R2-B1" not in _letti_flat()
    with pytest.raises(NonTrovato):
        elimina_letto(admin_id, letti["F1-R2-B1"])


# =========================
# Impostazioni
# =========================
def test_settings(seeded):
    assert leggi_impostazioni() == {"nome_ospedale": "Hospital Demo"}
    assert imposta_nome_ospedale("  Ospedale Civile ") == {"nome_ospedale": "Ospedale Civile"}
    assert leggi_impostazioni() == {"nome_ospedale": "Ospedale Civile"}
    with pytest.raises(ErroreValidazione):
        imposta_nome_ospedale("   ")
