"""
Backend BedFlow: occupazione dei letti e pianificazione giornaliera.

Struttura:
- config.py         : variabili d'ambiente (.env) e logging
- db.py             : engine e sessioni SQLAlchemy
- models.py         : modelli ORM (piani, stanze, letti, ricoveri, piano, audit)
- ordinamento.py    : ordinamento naturale dei codici letto
- services.py       : logica di dominio dei letti (ricoveri, stato clinico, struttura)
- pianificazione.py : tabellone giornaliero e operazioni sul piano
- audit.py          : diff e registro delle modifiche
- auth_*.py         : utenti, password e JWT
- api_main.py       : API FastAPI
- seed.py           : dati iniziali (utenti demo, struttura)
- cli.py            : comandi di amministrazione
"""
