"""
Flask route handlers: auth endpoints and the guarded screens.
"""

import os
import sys
from datetime import date, datetime, timedelta

from flask import g, jsonify, redirect, request

from medpay.api.auth import (
    cleanup_expired_sessions,
    generate_token,
    new_session_id,
    new_store,
    register_session,
    resolve_session,
    sessions,
    token_required,
)
from medpay.config import COMPANY_NOT_FOUND, LOGIN_PATH, TOKEN_COOKIE, TOKEN_EXPIRY_HOURS
from medpay.errors import AccessDenied, AuthError, AuthErrorKind
from medpay.guard import GuardAction, RouteGuard
from medpay.models import Role, SessionSnapshot
from medpay.rbac import build_policy, company_display_name, is_admin
from medpay.reports import build_billing_report, build_dashboard
from medpay.repository import Repository

AUTH_ERROR_STATUS = {
    AuthErrorKind.INVALID_CREDENTIALS: 401,
    AuthErrorKind.EMAIL_NOT_CONFIRMED: 401,
    AuthErrorKind.EMAIL_ALREADY_REGISTERED: 409,
    AuthErrorKind.RATE_LIMITED: 429,
    AuthErrorKind.NETWORK_UNAVAILABLE: 503,
    AuthErrorKind.UNEXPECTED: 500,
}


def _auth_error_response(error: AuthError):
    return jsonify({
        "success": False,
        "error": error.message,
        "kind": error.kind.value,
        "retryable": error.retryable,
    }), AUTH_ERROR_STATUS[error.kind]


def _date_arg(name: str):
    value = request.args.get(name)
    return date.fromisoformat(value) if value else None


def _is_id_list(value) -> bool:
    return isinstance(value, list) and all(isinstance(v, str) and v for v in value)


def _policy_dict(policy):
    allowed = policy.allowed_company_ids
    return {
        "role": policy.role,
        "unrestricted": policy.is_unrestricted,
        "allowed_company_ids": None if policy.is_unrestricted else sorted(allowed),
        "notes": policy.notes,
    }


def register_routes(app, backend, guard: RouteGuard = None):
    """Register all routes on the Flask *app*."""
    guard = guard or RouteGuard()

    def context():
        snap = g.store.snapshot
        policy = build_policy(snap.identity, snap.company_grants)
        repo = Repository(backend.client(snap.identity.access_token), policy, user_id=snap.identity.id)
        return snap, policy, repo

    def screen(name, snap, **data):
        return jsonify({
            "screen": name,
            "user": snap.identity.public_dict(),
            "menu": [{"path": r.path, "title": r.title} for r in guard.visible_routes(snap)],
            **data,
        })

    def with_company_names(rows, snap):
        for row in rows:
            override = company_display_name(snap.identity, snap.company_grants, row.get("empresa_id"))
            row["empresa_nome"] = override or (row.get("empresas") or {}).get("nome")
        return rows

    # ── Route guard ──────────────────────────────────────────────────

    @app.before_request
    def apply_route_guard():
        path = request.path
        if path.startswith("/api/") or path == "/health":
            return None
        if guard.match(path) is None and path not in ("/", LOGIN_PATH):
            return None

        data = resolve_session()
        snapshot = data["store"].snapshot if data else SessionSnapshot()
        decision = guard.check(path, snapshot)

        if decision.action is GuardAction.WAIT:
            return jsonify({"status": "loading"}), 503
        if decision.action is GuardAction.REDIRECT:
            print(f"[guard] {request.method} {path} -> {decision.path}")
            return redirect(decision.path)
        if decision.action is GuardAction.NOT_FOUND:
            return None

        g.session_data = data
        g.store = data["store"] if data else None
        return None

    # ── Health / info ────────────────────────────────────────────────

    @app.route("/health", methods=["GET"])
    def health():
        cleanup_expired_sessions(app.config["MEDPAY_STORAGE"])
        return jsonify({
            "status": "healthy",
            "service": "MedPay API",
            "active_sessions": len(sessions),
        }), 200

    @app.route("/", methods=["GET"])
    def index():
        # Always redirected by the guard.
        return redirect(LOGIN_PATH)

    @app.route(LOGIN_PATH, methods=["GET"])
    def login_screen():
        return jsonify({"screen": "login", "endpoint": "/api/auth/login"})

    # ── Auth ─────────────────────────────────────────────────────────

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        if not request.is_json:
            return jsonify({"error": "Content-Type must be application/json"}), 400

        data = request.get_json(silent=True) or {}
        email = (data.get("email") or "").strip()
        password = data.get("password") or ""
        if not email or not password:
            return jsonify({"error": "email and password are required"}), 400

        session_id = new_session_id()
        store = new_store(session_id)
        store.restore_session()
        result = store.sign_in(email, password)
        if not result.ok:
            return _auth_error_response(result.error)

        register_session(session_id, store)
        token = generate_token(result.identity, session_id)
        snap = store.snapshot
        policy = build_policy(snap.identity, snap.company_grants)

        resp = jsonify({
            "success": True,
            "token": token,
            "user": snap.identity.public_dict(),
            "company_grants": [grant.to_dict() for grant in snap.company_grants],
            "policy": _policy_dict(policy),
            "expires_at": (datetime.utcnow() + timedelta(hours=TOKEN_EXPIRY_HOURS)).isoformat(),
        })
        resp.set_cookie(
            TOKEN_COOKIE, token, httponly=True, samesite="Lax",
            max_age=TOKEN_EXPIRY_HOURS * 3600,
        )
        return resp, 200

    @app.route("/api/auth/logout", methods=["POST"])
    @token_required
    def logout():
        g.store.sign_out()
        sessions.pop(g.session_data["session_id"], None)
        resp = jsonify({"success": True, "message": "Logged out successfully"})
        resp.delete_cookie(TOKEN_COOKIE)
        return resp, 200

    @app.route("/api/user/profile", methods=["GET"])
    @token_required
    def get_profile():
        snap = g.store.snapshot
        policy = build_policy(snap.identity, snap.company_grants)
        return jsonify({
            "success": True,
            "user": snap.identity.public_dict(),
            "company_grants": [grant.to_dict() for grant in snap.company_grants],
            "policy": _policy_dict(policy),
            "session": {
                "created_at": g.session_data["created_at"].isoformat(),
                "last_activity": g.session_data["last_activity"].isoformat(),
            },
        }), 200

    @app.route("/api/user/profile", methods=["PATCH"])
    @token_required
    def update_profile():
        fields = request.get_json(silent=True) or {}
        try:
            g.store.update_profile(**fields)
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        return jsonify({"success": True, "user": g.store.snapshot.identity.public_dict()}), 200

    @app.route("/api/sessions", methods=["GET"])
    def get_sessions_info():
        if os.getenv("FLASK_ENV") != "development":
            return jsonify({"error": "Not available in production"}), 403

        sessions_info = []
        for data in sessions.values():
            identity = data["store"].snapshot.identity
            sessions_info.append({
                "user_id": identity.id if identity else None,
                "email": identity.email if identity else None,
                "role": identity.role.value if identity and identity.role else None,
                "created_at": data["created_at"].isoformat(),
                "last_activity": data["last_activity"].isoformat(),
            })
        return jsonify({"active_sessions": len(sessions), "sessions": sessions_info}), 200

    # ── Screens: any authenticated user ──────────────────────────────

    @app.route("/dashboard", methods=["GET"])
    def dashboard():
        snap, policy, repo = context()
        return screen("dashboard", snap, data=build_dashboard(repo.list_billing_entries()))

    @app.route("/lancamentos", methods=["GET"])
    def list_billing_entries():
        snap, policy, repo = context()
        try:
            rows = repo.list_billing_entries(
                company_id=request.args.get("empresa_id"),
                date_from=_date_arg("de"),
                date_to=_date_arg("ate"),
            )
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        return screen("lancamentos", snap, data=with_company_names(rows, snap))

    @app.route("/lancamentos", methods=["POST"])
    def create_billing_entry():
        snap, policy, repo = context()
        body = request.get_json(silent=True) or {}
        try:
            entry = repo.create_billing_entry(
                company_id=body.get("empresa_id") or snap.identity.home_company_id,
                physician_id=body["medico_id"],
                entry_date=body.get("data_lancamento") or date.today().isoformat(),
                items=body.get("itens") or [],
                notes=body.get("observacoes"),
            )
        except (KeyError, ValueError) as e:
            return jsonify({"error": f"Invalid billing entry: {e}"}), 400
        return jsonify({"success": True, "data": entry}), 201

    @app.route("/lancamentos/<entry_id>", methods=["DELETE"])
    def delete_billing_entry(entry_id):
        snap, policy, repo = context()
        repo.delete_billing_entry(entry_id)
        return jsonify({"success": True}), 200

    @app.route("/lancamentos/<entry_id>", methods=["PUT"])
    def update_billing_entry(entry_id):
        snap, policy, repo = context()
        body = request.get_json(silent=True) or {}
        try:
            entry = repo.update_billing_entry(
                entry_id,
                physician_id=body["medico_id"],
                entry_date=body.get("data_lancamento") or date.today().isoformat(),
                items=body.get("itens") or [],
                notes=body.get("observacoes"),
                company_id=body.get("empresa_id"),
            )
        except (KeyError, ValueError) as e:
            return jsonify({"error": f"Invalid billing entry: {e}"}), 400
        return jsonify({"success": True, "data": entry}), 200

    @app.route("/procedimentos", methods=["GET"])
    def list_procedures():
        snap, policy, repo = context()
        rows = repo.list_procedures(
            company_id=request.args.get("empresa_id"),
            status=request.args.get("status"),
        )
        return screen("procedimentos", snap, data=with_company_names(rows, snap))

    @app.route("/procedimentos", methods=["POST"])
    def create_procedure():
        snap, policy, repo = context()
        body = request.get_json(silent=True) or {}
        try:
            row = repo.create_procedure(body)
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        return jsonify({"success": True, "data": row}), 201

    @app.route("/procedimentos/<procedure_id>", methods=["PUT"])
    def update_procedure(procedure_id):
        snap, policy, repo = context()
        try:
            row = repo.update_procedure(procedure_id, request.get_json(silent=True) or {})
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        return jsonify({"success": True, "data": row}), 200

    @app.route("/procedimentos/<procedure_id>", methods=["DELETE"])
    def delete_procedure(procedure_id):
        snap, policy, repo = context()
        repo.delete_procedure(procedure_id)
        return jsonify({"success": True}), 200

    @app.route("/relatorios", methods=["GET"])
    def reports():
        snap, policy, repo = context()
        try:
            rows = repo.list_billing_entries(date_from=_date_arg("de"), date_to=_date_arg("ate"))
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        return screen("relatorios", snap, data=build_billing_report(rows))

    @app.route("/configuracoes", methods=["GET"])
    def list_settings():
        snap, policy, repo = context()
        return screen("configuracoes", snap, data=repo.list_settings(), editable=is_admin(snap.identity))

    @app.route("/configuracoes/<key>", methods=["PUT"])
    def update_setting(key):
        snap, policy, repo = context()
        if not is_admin(snap.identity):
            return redirect(guard.landing_path)
        body = request.get_json(silent=True) or {}
        if "valor" not in body:
            return jsonify({"error": "valor is required"}), 400
        row = repo.upsert_setting(key, body["valor"], body.get("descricao"), body.get("tipo", "string"))
        return jsonify({"success": True, "data": row}), 200

    # ── Screens: admin only (the guard redirects everyone else) ──────

    @app.route("/empresas", methods=["GET"])
    def list_companies():
        snap, policy, repo = context()
        return screen("empresas", snap, data=repo.list_companies(status=request.args.get("status")))

    @app.route("/empresas", methods=["POST"])
    def create_company():
        snap, policy, repo = context()
        return jsonify({"success": True, "data": repo.create_company(request.get_json(silent=True) or {})}), 201

    @app.route("/empresas/<company_id>", methods=["PUT"])
    def update_company(company_id):
        snap, policy, repo = context()
        row = repo.update_company(company_id, request.get_json(silent=True) or {})
        return jsonify({"success": True, "data": row}), 200

    @app.route("/empresas/<company_id>", methods=["DELETE"])
    def delete_company(company_id):
        snap, policy, repo = context()
        repo.delete_company(company_id)
        return jsonify({"success": True}), 200

    @app.route("/medicos", methods=["GET"])
    def list_physicians():
        snap, policy, repo = context()
        rows = repo.list_physicians(
            company_id=request.args.get("empresa_id"),
            status=request.args.get("status"),
        )
        return screen("medicos", snap, data=rows)

    @app.route("/medicos", methods=["POST"])
    def create_physician():
        snap, policy, repo = context()
        return jsonify({"success": True, "data": repo.create_physician(request.get_json(silent=True) or {})}), 201

    @app.route("/pagamentos", methods=["GET"])
    def list_payments():
        snap, policy, repo = context()
        rows = repo.list_payments(
            company_id=request.args.get("empresa_id"),
            status=request.args.get("status"),
        )
        return screen("pagamentos", snap, data=rows)

    @app.route("/pagamentos", methods=["POST"])
    def create_payment():
        snap, policy, repo = context()
        try:
            row = repo.create_payment(request.get_json(silent=True) or {})
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        return jsonify({"success": True, "data": row}), 201

    @app.route("/usuarios", methods=["GET"])
    def list_users():
        snap, policy, repo = context()
        return screen("usuarios", snap, data=repo.list_profiles())

    @app.route("/usuarios", methods=["POST"])
    def create_user():
        body = request.get_json(silent=True) or {}
        role = Role.parse(body.get("role") or Role.USUARIO.value)
        missing = [k for k in ("email", "password", "nome") if not body.get(k)]
        if missing or role is None:
            return jsonify({"error": f"Invalid user: missing {', '.join(missing) or 'valid role'}"}), 400
        company_ids = body.get("empresas")
        if company_ids is None:
            company_ids = []
        if not _is_id_list(company_ids):
            return jsonify({"error": "Invalid user: empresas must be a list of company ids"}), 400
        try:
            user_id = backend.create_user(
                email=body["email"],
                password=body["password"],
                display_name=body["nome"],
                role=role,
                phone=body.get("telefone"),
                company_ids=company_ids,
            )
        except AuthError as e:
            return _auth_error_response(e)
        return jsonify({"success": True, "user_id": user_id}), 201

    @app.route("/usuarios/<user_id>", methods=["PUT"])
    def update_user(user_id):
        body = request.get_json(silent=True) or {}
        company_ids = body.get("empresas")
        if company_ids is not None and not _is_id_list(company_ids):
            return jsonify({"error": "Invalid user: empresas must be a list of company ids"}), 400
        fields = {k: v for k, v in body.items() if k != "empresas"}
        try:
            backend.update_user(user_id, fields, company_ids=company_ids)
        except ValueError as e:
            return jsonify({"error": f"Invalid user: {e}"}), 400
        return jsonify({"success": True, "user_id": user_id}), 200

    @app.route("/usuarios/<user_id>", methods=["DELETE"])
    def delete_user(user_id):
        if user_id == g.store.snapshot.identity.id:
            return jsonify({"error": "You cannot delete your own user"}), 400
        try:
            backend.delete_user(user_id)
        except AuthError as e:
            return _auth_error_response(e)
        return jsonify({"success": True}), 200

    # ── Error handlers ───────────────────────────────────────────────

    @app.errorhandler(AccessDenied)
    def access_denied(e):
        # Same answer as a missing record: do not reveal foreign companies.
        return jsonify({"error": COMPANY_NOT_FOUND}), 404

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Endpoint not found", "message": str(e)}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "Method not allowed", "message": str(e)}), 405

    @app.errorhandler(500)
    def internal_error(e):
        print(f"[ERROR] Unhandled error: {e}", file=sys.stderr)
        return jsonify({"error": "Internal server error", "message": str(e)}), 500
