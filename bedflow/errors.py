"""Errori di dominio, tradotti in risposte HTTP da api_main."""
from __future__ import annotations


class ErroreValidazione(ValueError):
    """Input non valido: rifiutato prima di qualsiasi modifica (400)."""


class NonTrovato(LookupError):
    """Letto, stanza, unità o ricovero inesistente (404)."""


class OperazioneNegata(PermissionError):
    """Operazione non consentita al ruolo corrente, es. letto bloccato (403)."""
