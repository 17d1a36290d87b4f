from __future__ import annotations

import argparse
from datetime import date

from bedflow.auth_service import crea_utente, lista_utenti_flat
from bedflow.config import HOST, PORT, setup_logging
from bedflow.errors import ErroreValidazione
from bedflow.pianificazione import piano_del_giorno
from bedflow.seed import seed_base
from bedflow.services import init_db, lista_piani_flat, struttura_flat


def cmd_init(args: argparse.Namespace) -> None:
    init_db()
    seed_base()
    print("DB inizializzato e seed completato.")


def cmd_list(args: argparse.Namespace) -> None:
    if args.entity == "piani":
        for p in struttura_flat():
            n_letti = sum(len(st["letti"]) for st in p["stanze"])
            print(f"{p['id']} | {p['nome']} ({p['tipo']}) | {len(p['stanze'])} stanze, {n_letti} letti")
    elif args.entity == "letti":
        for p in lista_piani_flat():
            for l in p["letti"]:
                ricovero = l["ricoveri"][0] if l["ricoveri"] else None
                occupante = ricovero["paziente"]["nome"] if ricovero else "-"
                stato = "bloccato" if l["bloccato"] else "libero" if not ricovero else "occupato"
                print(f"{l['id']} | {p['nome']} | {l['codice']} | {stato} | {occupante}")
    elif args.entity == "utenti":
        for u in lista_utenti_flat():
            print(f"{u['id']} | {u['username']} | {u['nome_completo']} | {u['ruolo']}")


def cmd_add_user(args: argparse.Namespace) -> None:
    user_id = crea_utente(args.username, args.password, args.nome_completo, args.ruolo)
    print(f"Utente creato: {user_id}")


def cmd_plan(args: argparse.Namespace) -> None:
    """Stampa il tabellone di pianificazione di un giorno (default: oggi)."""
    giorno = args.data or date.today().isoformat()
    righe = piano_del_giorno(giorno)
    print(f"Pianificazione {giorno}")
    for r in righe:
        paziente = r["nome_paziente"] or "-"
        print(f"{r['codice_letto']:<14} | {r['origine']:<9} | {r['nome_piano'] or '-':<12} | {paziente}")


def cmd_serve(args: argparse.Namespace) -> None:
    import uvicorn

    uvicorn.run("bedflow.api_main:app", host=args.host, port=args.port, reload=args.reload)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="bedflow", description="CLI BedFlow (occupazione e pianificazione letti)")
    sub = p.add_subparsers(required=True)

    p_init = sub.add_parser("init", help="Crea DB e carica seed")
    p_init.set_defaults(func=cmd_init)

    p_list = sub.add_parser("list", help="Lista entità")
    p_list.add_argument("entity", choices=["piani", "letti", "utenti"])
    p_list.set_defaults(func=cmd_list)

    p_user = sub.add_parser("add-user", help="Crea utente applicativo")
    p_user.add_argument("--username", required=True)
    p_user.add_argument("--password", required=True)
    p_user.add_argument("--nome-completo", required=True)
    p_user.add_argument("--ruolo", default="NURSE", choices=["NURSE", "COORDINATOR", "ADMIN"])
    p_user.set_defaults(func=cmd_add_user)

    p_plan = sub.add_parser("plan", help="Stampa il tabellone di un giorno")
    p_plan.add_argument("--data", default=None, help="Data ISO es: 2026-01-14")
    p_plan.set_defaults(func=cmd_plan)

    p_serve = sub.add_parser("serve", help="Avvia l'API HTTP")
    p_serve.add_argument("--host", default=HOST)
    p_serve.add_argument("--port", type=int, default=PORT)
    p_serve.add_argument("--reload", action="store_true")
    p_serve.set_defaults(func=cmd_serve)

    return p


def main() -> None:
    setup_logging()
    parser = build_parser()
    args = parser.parse_args()
    init_db()  # garantisce tabelle
    try:
        args.func(args)
    except ErroreValidazione as e:
        parser.exit(2, f"Errore: {e}\n")


if __name__ == "__main__":
    main()
