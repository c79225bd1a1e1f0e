"""
JWT session tokens and the per-session Session Store registry for the Flask API.
"""

import uuid
from datetime import datetime, timedelta
from functools import wraps
from typing import Any, Dict, Optional

import jwt
from flask import current_app, g, jsonify, request

from medpay.config import SECRET_KEY, SESSION_STORAGE_KEY, TOKEN_COOKIE, TOKEN_EXPIRY_HOURS
from medpay.models import Identity
from medpay.session import SessionStore

# In-process registry of live sessions, rebuilt from durable storage on demand.
# Structure: {session_id: {"store": SessionStore, "created_at": datetime, "last_activity": datetime}}
sessions: Dict[str, Dict[str, Any]] = {}


def new_session_id() -> str:
    return uuid.uuid4().hex


def session_key(session_id: str) -> str:
    return f"{SESSION_STORAGE_KEY}.{session_id}"


def generate_token(identity: Identity, session_id: str) -> str:
    """Generate a JWT token for a signed-in identity."""
    payload = {
        "sub": identity.id,
        "sid": session_id,
        "role": identity.role.value if identity.role else None,
        "display_name": identity.display_name,
        "iat": datetime.utcnow(),
        "exp": datetime.utcnow() + timedelta(hours=TOKEN_EXPIRY_HOURS),
    }
    return jwt.encode(payload, SECRET_KEY, algorithm="HS256")


def verify_token(token: str) -> Optional[Dict[str, Any]]:
    """Verify a JWT token and return the decoded payload (or None)."""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def extract_token() -> Optional[str]:
    """Bearer header, then cookie, then JSON body, then query string."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        if token:
            return token
    token = request.cookies.get(TOKEN_COOKIE)
    if not token and request.is_json:
        body = request.get_json(silent=True) or {}
        token = body.get("token") if isinstance(body, dict) else None
    if not token:
        token = request.args.get("token")
    return token or None


def register_session(session_id: str, store: SessionStore) -> None:
    now = datetime.utcnow()
    sessions[session_id] = {"store": store, "created_at": now, "last_activity": now}


def new_store(session_id: str) -> SessionStore:
    return SessionStore(
        current_app.config["MEDPAY_BACKEND"],
        current_app.config["MEDPAY_STORAGE"],
        storage_key=session_key(session_id),
    )


def resolve_session() -> Optional[Dict[str, Any]]:
    """
    Session data for the request's token, or None when signed out.
    A token whose session is not in the registry (e.g. after a restart) is
    restored from durable storage.
    """
    token = extract_token()
    if not token:
        return None
    payload = verify_token(token)
    if not payload or not payload.get("sid"):
        return None

    session_id = payload["sid"]
    data = sessions.get(session_id)
    if data is None:
        store = new_store(session_id)
        store.restore_session()
        if store.snapshot.identity is None:
            return None
        register_session(session_id, store)
        data = sessions[session_id]

    if data["store"].snapshot.identity is None:
        sessions.pop(session_id, None)
        return None

    data["last_activity"] = datetime.utcnow()
    data["session_id"] = session_id
    data["token"] = token
    return data


def token_required(f):
    """Decorator that protects JSON API endpoints with JWT authentication."""
    @wraps(f)
    def decorated(*args, **kwargs):
        data = resolve_session()
        if data is None:
            return jsonify({"error": "Invalid or expired token"}), 401
        g.session_data = data
        g.store = data["store"]
        return f(*args, **kwargs)

    return decorated


def cleanup_expired_sessions(storage=None) -> int:
    """
    Drop sessions idle beyond TOKEN_EXPIRY_HOURS from the registry and from
    storage, then purge stored snapshots whose session is no longer in the
    registry (e.g. after a restart) once they outlive the storage TTL.
    """
    now = datetime.utcnow()
    # Request threads may add or drop sessions while this runs.
    expired = [
        sid for sid, data in list(sessions.items())
        if (now - data["last_activity"]).total_seconds() > TOKEN_EXPIRY_HOURS * 3600
    ]
    for sid in expired:
        data = sessions.pop(sid, None)
        if data is None:
            continue
        store = data["store"]
        store.storage.clear(store.storage_key)

    purged = storage.purge_expired() if storage is not None else 0
    if expired or purged:
        print(f"[cleanup] Removed {len(expired)} expired sessions, {purged} stale stored snapshots")
    return len(expired) + purged
