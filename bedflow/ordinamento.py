"""
Ordinamento naturale dei codici letto ("F1-R1-B2" prima di "F1-R1-B10").

Il codice viene diviso su '.' e '-' (segmenti vuoti scartati) e confrontato
segmento per segmento:
- un segmento mancante viene prima (codice più corto prima);
- due segmenti numerici si confrontano come interi;
- un segmento numerico viene prima di uno alfabetico;
- tra segmenti alfabetici pesa la prima lettera (senza maiuscole/minuscole),
  con il token "QP" sempre dopo qualsiasi lettera; a parità di peso si
  confronta il testo tenendo conto dei numeri interni.
"""
from __future__ import annotations

import re
import time
from functools import cmp_to_key
from typing import Callable, Iterable, TypeVar

T = TypeVar("T")

TOKEN_QP = "QP"
PESO_QP = 9999

_SEPARATORI = re.compile(r"[.\-]")
_CIFRE = re.compile(r"[0-9]+")
_BLOCCHI = re.compile(r"[0-9]+|[^0-9]+")

MAX_ORDINE = 2147483647


def segmenti_codice(codice: str | None) -> list[str]:
    return [s for s in _SEPARATORI.split(codice or "") if s]


def _chiave_segmento(segmento: str) -> tuple:
    if _CIFRE.fullmatch(segmento):
        return (0, int(segmento), 0, ())

    testo = segmento.upper()
    peso = PESO_QP if testo == TOKEN_QP else ord(testo[0])
    blocchi = tuple(
        (0, int(b), "") if b.isascii() and b.isdigit() else (1, 0, b)
        for b in _BLOCCHI.findall(testo)
    )
    return (1, 0, peso, blocchi)


def chiave_codice_letto(codice: str | None) -> tuple:
    """Chiave di ordinamento: le tuple più corte vengono prima a parità di prefisso."""
    return tuple(_chiave_segmento(s) for s in segmenti_codice(codice))


def confronta_codici_letto(a: str | None, b: str | None) -> int:
    """Comparatore classico: negativo, zero o positivo."""
    ka, kb = chiave_codice_letto(a), chiave_codice_letto(b)
    if ka < kb:
        return -1
    if ka > kb:
        return 1
    return 0


def ordina_per_codice(elementi: Iterable[T], codice: Callable[[T], str | None]) -> list[T]:
    return sorted(elementi, key=cmp_to_key(lambda x, y: confronta_codici_letto(codice(x), codice(y))))


def _limita_ordine(valore: int, fallback: int) -> int:
    if valore <= 0 or valore > MAX_ORDINE:
        return fallback
    return valore


def calcola_ordine(codice: str | None) -> int:
    """
    Indice intero persistito sul letto quando non viene passato esplicitamente.
    I letti QP finiscono in fondo al proprio piano (piano * 10000 + 9999).
    """
    fallback = int(time.time())
    if not codice:
        return fallback

    if TOKEN_QP in codice:
        piano = codice.split(".")[0]
        numero = int(piano) if _CIFRE.fullmatch(piano) else 0
        return _limita_ordine(numero * 10000 + 9999, fallback)

    cifre = _CIFRE.findall(codice)
    if not cifre:
        return fallback
    return _limita_ordine(int("".join(c.zfill(2) for c in cifre)), fallback)
