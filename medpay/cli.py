"""
Interactive terminal client for MedPay.
Restores the stored session, signs in when needed and opens screens through
the Route Guard.
"""

import getpass
from typing import Callable, Dict

import pandas as pd

from medpay.api.app import init_backend
from medpay.config import MAX_PREVIEW_ROWS
from medpay.guard import GuardAction, RouteGuard
from medpay.rbac import build_policy
from medpay.reports import build_billing_report, build_dashboard
from medpay.repository import Repository
from medpay.session import SessionStore
from medpay.storage import JsonFileStorage


def _print_rows(rows) -> None:
    if not rows:
        print("(no rows)")
        return
    df = pd.DataFrame(rows)
    nested = [c for c in df.columns if df[c].map(lambda v: isinstance(v, (dict, list))).any()]
    print(df.drop(columns=nested).head(MAX_PREVIEW_ROWS).to_string(index=False))


def _print_summary(summary: dict) -> None:
    for key, value in summary.items():
        if isinstance(value, list):
            print(f"\n{key}:")
            _print_rows(value)
        else:
            print(f"{key}: {value}")


def screen_renderers(repo: Repository) -> Dict[str, Callable[[], None]]:
    return {
        "/dashboard": lambda: _print_summary(build_dashboard(repo.list_billing_entries())),
        "/lancamentos": lambda: _print_rows(repo.list_billing_entries()),
        "/procedimentos": lambda: _print_rows(repo.list_procedures()),
        "/relatorios": lambda: _print_summary(build_billing_report(repo.list_billing_entries())),
        "/configuracoes": lambda: _print_rows(repo.list_settings()),
        "/empresas": lambda: _print_rows(repo.list_companies()),
        "/medicos": lambda: _print_rows(repo.list_physicians()),
        "/pagamentos": lambda: _print_rows(repo.list_payments()),
        "/usuarios": lambda: _print_rows(repo.list_profiles()),
    }


def open_screen(path: str, store: SessionStore, guard: RouteGuard, backend) -> None:
    decision = guard.check(path, store.snapshot)
    if decision.action is GuardAction.NOT_FOUND:
        print(f"[guard] No such screen: {path}")
        return
    if decision.action is GuardAction.WAIT:
        print("[guard] Session still loading.")
        return
    if decision.action is GuardAction.REDIRECT:
        print(f"[guard] {path} -> {decision.path}")
        decision = guard.check(decision.path, store.snapshot)
        if not decision.allowed:
            return

    snap = store.snapshot
    policy = build_policy(snap.identity, snap.company_grants)
    repo = Repository(backend.client(snap.identity.access_token), policy, user_id=snap.identity.id)
    print(f"\n[{decision.route.title}]")
    try:
        screen_renderers(repo)[decision.route.path]()
    except Exception as e:
        print("\n[ERROR] Could not load screen data.")
        print("Details:", e)


def login(store: SessionStore) -> bool:
    while store.snapshot.identity is None:
        try:
            email = input("Email (or 'quit'): ").strip()
        except (EOFError, KeyboardInterrupt):
            print("\nExiting.")
            return False
        if not email or email.lower() in {"quit", "exit"}:
            print("Goodbye.")
            return False
        password = getpass.getpass("Senha: ")
        result = store.sign_in(email, password)
        if not result.ok:
            print(f"\n[ERROR] {result.error.message}")
            if result.error.retryable:
                print("You can try again.")
    return True


def main():
    print("=== MedPay: Sistema de Repasse (terminal) ===\n")

    backend = init_backend()
    store = SessionStore(backend, JsonFileStorage())
    guard = RouteGuard()

    store.restore_session()
    if store.snapshot.identity is not None:
        print(f"[session] Restored session for {store.snapshot.identity.email}")

    if not login(store):
        return

    identity = store.snapshot.identity
    policy = build_policy(identity, store.snapshot.company_grants)
    print(f"\n[auth] Logged in as: {identity.display_name} (role={policy.role or 'undefined'})")
    print(f"[auth] Policy: {policy.notes}")

    # ── REPL ─────────────────────────────────────────────────────────
    while True:
        menu = "  ".join(r.path for r in guard.visible_routes(store.snapshot))
        try:
            cmd = input(f"\nScreens: {menu}\nOpen (or 'logout' / 'quit'): ").strip()
        except (EOFError, KeyboardInterrupt):
            print("\nExiting.")
            break

        if not cmd:
            continue
        if cmd.lower() in {"quit", "exit"}:
            print("Goodbye.")
            break
        if cmd.lower() == "logout":
            store.sign_out()
            print("[auth] Signed out.")
            if not login(store):
                break
            continue

        open_screen(cmd if cmd.startswith("/") else "/" + cmd, store, guard, backend)


if __name__ == "__main__":
    main()
