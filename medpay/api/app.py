"""
Flask application factory and server entry-point.
"""

import os
import sys
import traceback

from flask import Flask
from flask_cors import CORS

from medpay.api.routes import register_routes
from medpay.backend import SupabaseBackend, init_client_factory
from medpay.config import SESSION_STORAGE, TOKEN_EXPIRY_HOURS
from medpay.storage import build_storage


def init_backend() -> SupabaseBackend:
    """Build the Supabase backend; user creation is enabled when a service-role key is set."""
    admin_factory = None
    if os.getenv("SUPABASE_SERVICE_ROLE_KEY"):
        admin_factory = init_client_factory("SUPABASE_SERVICE_ROLE_KEY")
    else:
        print("[init] SUPABASE_SERVICE_ROLE_KEY not set: user creation disabled")
    return SupabaseBackend(init_client_factory(), admin_client_factory=admin_factory)


def create_app(backend=None, storage=None):
    """Build and return a fully configured Flask application."""
    app = Flask(__name__)
    CORS(app, supports_credentials=True)

    # ── Initialise shared resources ──────────────────────────────────
    try:
        if backend is None:
            print("[init] Initializing Supabase backend...")
            backend = init_backend()
        if storage is None:
            print(f"[init] Session storage: {SESSION_STORAGE}")
            storage = build_storage(SESSION_STORAGE)
    except Exception as e:
        print(f"[FATAL] Failed to initialize: {e}", file=sys.stderr)
        traceback.print_exc()
        sys.exit(1)

    app.config["MEDPAY_BACKEND"] = backend
    app.config["MEDPAY_STORAGE"] = storage

    # ── Register routes ──────────────────────────────────────────────
    register_routes(app, backend)

    return app


def main():
    """Run the development server."""
    print("=" * 60)
    print("MedPay – Access-Controlled Billing API")
    print("=" * 60)

    app = create_app()

    host = os.getenv("API_HOST", "0.0.0.0")
    port = int(os.getenv("API_PORT", "8000"))
    debug = os.getenv("FLASK_ENV") == "development"

    print(f"\n[server] Starting Flask API on {host}:{port}")
    print(f"[server] Debug mode: {debug}")
    print(f"[server] Session expiry: {TOKEN_EXPIRY_HOURS} hours")
    print("\nEndpoints:")
    print(f"  - POST http://{host}:{port}/api/auth/login")
    print(f"  - POST http://{host}:{port}/api/auth/logout")
    print(f"  - GET  http://{host}:{port}/api/user/profile")
    print(f"  - GET  http://{host}:{port}/dashboard")
    print(f"  - GET  http://{host}:{port}/health")
    print("\n" + "=" * 60)

    app.run(host=host, port=port, debug=debug, threaded=True)


if __name__ == "__main__":
    main()
