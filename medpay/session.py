"""
Session Store – the single owner of "who is signed in".

One store per browser session (API) or per process (terminal client).
Consumers read `snapshot` or subscribe to changes; only the store mutates it.
"""

import sys
import traceback
from typing import Callable, List, Optional

from medpay.config import SESSION_STORAGE_KEY
from medpay.errors import AuthError, AuthErrorKind, ProfileFetchFailed, RestoreSessionInvalid
from medpay.models import AuthSession, Identity, SessionSnapshot, SignInResult

Listener = Callable[[SessionSnapshot], None]


class SessionStore:
    def __init__(self, backend, storage, storage_key: str = SESSION_STORAGE_KEY):
        self.backend = backend
        self.storage = storage
        self.storage_key = storage_key
        # Loading until restore_session() has run once.
        self._snapshot = SessionSnapshot(is_loading=True)
        self._listeners: List[Listener] = []

    @property
    def snapshot(self) -> SessionSnapshot:
        return self._snapshot

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set(self, snapshot: SessionSnapshot) -> None:
        self._snapshot = snapshot
        for listener in list(self._listeners):
            listener(snapshot)

    def _persist(self) -> None:
        self.storage.save(self.storage_key, self._snapshot.to_dict())

    def _load_identity(self, auth: AuthSession) -> SessionSnapshot:
        """Build the signed-in snapshot; a failed profile load leaves role undefined."""
        try:
            profile = self.backend.fetch_profile(auth.user_id, auth.access_token, email=auth.email)
            grants = self.backend.fetch_company_grants(auth.user_id, auth.access_token)
        except ProfileFetchFailed as e:
            print(f"[WARN] Profile unavailable for {auth.email}: {e}", file=sys.stderr)
            identity = Identity(
                id=auth.user_id,
                display_name=auth.email,
                email=auth.email,
                role=None,
                access_token=auth.access_token,
                refresh_token=auth.refresh_token,
            )
            return SessionSnapshot(identity=identity)

        identity = Identity(
            id=auth.user_id,
            display_name=profile.display_name or auth.email,
            email=profile.email or auth.email,
            role=profile.role,
            home_company_id=profile.home_company_id,
            access_token=auth.access_token,
            refresh_token=auth.refresh_token,
            active=profile.active,
        )
        return SessionSnapshot(identity=identity, company_grants=tuple(grants))

    # ── Lifecycle ────────────────────────────────────────────────────

    def sign_in(self, email: str, password: str) -> SignInResult:
        email = (email or "").strip().lower()
        if not email or not password:
            return SignInResult(ok=False, error=AuthError(AuthErrorKind.INVALID_CREDENTIALS, "missing email or password"))

        try:
            auth = self.backend.sign_in(email, password)
        except AuthError as e:
            print(f"[auth] Sign in declined for {email}: {e.kind.value}", file=sys.stderr)
            return SignInResult(ok=False, error=e)
        except Exception as e:
            print(f"[ERROR] Sign in error for {email}: {e}", file=sys.stderr)
            traceback.print_exc()
            return SignInResult(ok=False, error=AuthError(AuthErrorKind.UNEXPECTED, str(e)))

        try:
            snapshot = self._load_identity(auth)
        except Exception as e:
            print(f"[ERROR] Could not load identity for {email}: {e}", file=sys.stderr)
            traceback.print_exc()
            return SignInResult(ok=False, error=AuthError(AuthErrorKind.UNEXPECTED, str(e)))

        self._set(snapshot)
        self._persist()
        identity = self._snapshot.identity
        print(f"[auth] Signed in: {identity.email} (role={identity.role.value if identity.role else 'undefined'})")
        return SignInResult(ok=True, identity=identity)

    def sign_out(self) -> None:
        identity = self._snapshot.identity
        if identity is not None:
            try:
                self.backend.sign_out(identity.access_token, identity.refresh_token)
            except Exception as e:
                print(f"[WARN] Backend sign out failed for {identity.email}: {e}", file=sys.stderr)
        self.storage.clear(self.storage_key)
        self._set(SessionSnapshot())

    def restore_session(self) -> None:
        """Rebuild the session from durable storage. Never raises."""
        self._set(SessionSnapshot(is_loading=True))
        restored = SessionSnapshot()
        try:
            stored = self.storage.load(self.storage_key)
            previous = SessionSnapshot.from_dict(stored).identity if stored else None
            if previous is not None:
                auth = self.backend.validate_session(previous.access_token, previous.refresh_token)
                restored = self._load_identity(auth)
                self.storage.save(self.storage_key, restored.to_dict())
        except RestoreSessionInvalid as e:
            print(f"[session] Stored session rejected, clearing it: {e}")
            self.storage.clear(self.storage_key)
        except AuthError as e:
            # Keep what is stored so a later restore can still succeed.
            print(f"[WARN] Could not restore session ({e.kind.value}); starting signed out.", file=sys.stderr)
        except Exception as e:
            print(f"[ERROR] Session restore failed: {e}", file=sys.stderr)
            traceback.print_exc()
            restored = SessionSnapshot()
        self._set(restored)

    def refresh_profile(self) -> None:
        identity = self._snapshot.identity
        if identity is None:
            return
        auth = AuthSession(
            user_id=identity.id,
            email=identity.email,
            access_token=identity.access_token,
            refresh_token=identity.refresh_token,
        )
        self._set(self._load_identity(auth))
        self._persist()

    def update_profile(self, **fields) -> None:
        """Update the signed-in user's own name, email or phone, then refetch."""
        identity = self._snapshot.identity
        if identity is None:
            raise RuntimeError("Not signed in.")
        self.backend.update_profile(identity.id, fields, identity.access_token)
        self.refresh_profile()
