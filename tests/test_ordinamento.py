from __future__ import annotations

import itertools

from bedflow.ordinamento import (
    PESO_QP,
    calcola_ordine,
    chiave_codice_letto,
    confronta_codici_letto,
    ordina_per_codice,
)

CODICI = [
    "F1-R1-B10", "F1-R1-B2", "F1-R1-B1", "3.QP", "3.9", "3.Z", "3.A",
    "F1", "F1-R1", "1.A", "1.1", "f1-r1-b1", "SVC-A-1", "2.QP", "", "10.1",
]


def test_numeric_aware_segments():
    assert confronta_codici_letto("F1-R1-B2", "F1-R1-B10") < 0
    assert confronta_codici_letto("F1-R1-B10", "F1-R1-B2") > 0


def test_qp_after_digits_and_letters():
    assert confronta_codici_letto("3.QP", "3.9") > 0
    assert confronta_codici_letto("3.Z", "3.QP") < 0


def test_missing_segment_sorts_first():
    assert confronta_codici_letto("F1", "F1-R1") < 0
    assert confronta_codici_letto("", "1") < 0


def test_digit_segment_before_alpha_segment():
    assert confronta_codici_letto("1.1", "1.A") < 0
    assert confronta_codici_letto("2.1", "10.1") < 0


def test_case_insensitive():
    assert confronta_codici_letto("f1-r1-b1", "F1-R1-B1") == 0


def test_separators_are_equivalent():
    assert chiave_codice_letto("3.A") == chiave_codice_letto("3-A")
    assert chiave_codice_letto("3..A") == chiave_codice_letto("3.A")


def test_strict_weak_ordering():
    for a in CODICI:
        assert confronta_codici_letto(a, a) == 0
    for a, b in itertools.product(CODICI, repeat=2):
        assert confronta_codici_letto(a, b) == -confronta_codici_letto(b, a)
    for a, b, c in itertools.product(CODICI, repeat=3):
        if confronta_codici_letto(a, b) < 0 and confronta_codici_letto(b, c) < 0:
            assert confronta_codici_letto(a, c) < 0


def test_ordina_per_codice():
    letti = [{"codice": c} for c in ["F1-R1-B10", "F1-R2-B1", "F1-R1-B2", "F1-R1-B1"]]
    ordinati = [l["codice"] for l in ordina_per_codice(letti, lambda l: l["codice"])]
    assert ordinati == ["F1-R1-B1", "F1-R1-B2", "F1-R1-B10", "F1-R2-B1"]


def test_calcola_ordine():
    assert calcola_ordine("F1-R1-B2") == 10102
    assert calcola_ordine("3.QP") == 3 * 10000 + PESO_QP
    assert calcola_ordine("3.12") == 312


def test_calcola_ordine_fallback_to_timestamp():
    assert calcola_ordine("ABC") > 1_600_000_000
    assert calcola_ordine(None) > 1_600_000_000
    # oltre il massimo intero a 32 bit
    assert calcola_ordine("99-99-99-99-99") > 1_600_000_000
