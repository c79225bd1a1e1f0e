"""
Supabase client wrapper: the auth backend and the profile / grant store.

Every call builds a fresh client from the factory so that one user's tokens
never leak into another user's queries when the API serves several sessions.
"""

import sys
from typing import Callable, Iterable, List, Optional

import httpx
from supabase import AuthApiError, AuthRetryableError, Client, PostgrestAPIError, create_client

from medpay.config import (
    BOOTSTRAP_ADMIN_EMAIL,
    GRANTS_TABLE,
    PROFILES_TABLE,
    get_env,
)
from medpay.errors import AuthError, AuthErrorKind, ProfileFetchFailed, RestoreSessionInvalid
from medpay.models import AuthSession, CompanyGrant, Profile, Role

PROFILE_EDITABLE_FIELDS = {"nome", "email", "telefone"}
ADMIN_EDITABLE_FIELDS = PROFILE_EDITABLE_FIELDS | {"role"}


def classify_auth_error(message: str, status: Optional[int] = None, code: Optional[str] = None) -> AuthErrorKind:
    """Map an auth backend error (message / HTTP status / error code) to an AuthErrorKind."""
    text = (message or "").lower()
    code = (code or "").lower()

    if "invalid login credentials" in text or code == "invalid_credentials":
        return AuthErrorKind.INVALID_CREDENTIALS
    if "email not confirmed" in text or code == "email_not_confirmed":
        return AuthErrorKind.EMAIL_NOT_CONFIRMED
    if (
        "already registered" in text
        or "already been registered" in text
        or code in {"email_exists", "user_already_exists"}
    ):
        return AuthErrorKind.EMAIL_ALREADY_REGISTERED
    if status == 429 or "too many requests" in text or "rate limit" in text:
        return AuthErrorKind.RATE_LIMITED
    if status is not None and (status == 0 or status >= 502):
        return AuthErrorKind.NETWORK_UNAVAILABLE
    return AuthErrorKind.UNEXPECTED


def _auth_error_from(exc: AuthApiError) -> AuthError:
    kind = classify_auth_error(
        getattr(exc, "message", str(exc)),
        getattr(exc, "status", None),
        getattr(exc, "code", None),
    )
    return AuthError(kind, str(exc))


def init_client_factory(key_env: str = "SUPABASE_KEY") -> Callable[[], Client]:
    """Return a factory building Supabase clients with the key named by *key_env*."""
    url = get_env("SUPABASE_URL")
    key = get_env(key_env)

    def factory() -> Client:
        return create_client(url, key)

    return factory


class SupabaseBackend:
    def __init__(
        self,
        client_factory: Callable[[], Client],
        admin_client_factory: Optional[Callable[[], Client]] = None,
        bootstrap_admin_email: str = BOOTSTRAP_ADMIN_EMAIL,
    ):
        self.client_factory = client_factory
        self.admin_client_factory = admin_client_factory
        self.bootstrap_admin_email = (bootstrap_admin_email or "").lower()

    def client(self, access_token: Optional[str] = None) -> Client:
        """A fresh client; with *access_token* its table queries run as that user."""
        client = self.client_factory()
        if access_token:
            client.postgrest.auth(access_token)
        return client

    # ── Auth ─────────────────────────────────────────────────────────

    def sign_in(self, email: str, password: str) -> AuthSession:
        client = self.client()
        try:
            resp = client.auth.sign_in_with_password({"email": email, "password": password})
        except AuthRetryableError as e:
            raise AuthError(AuthErrorKind.NETWORK_UNAVAILABLE, str(e)) from e
        except AuthApiError as e:
            raise _auth_error_from(e) from e
        except httpx.TransportError as e:
            raise AuthError(AuthErrorKind.NETWORK_UNAVAILABLE, str(e)) from e

        if not resp.user or not resp.session:
            raise AuthError(AuthErrorKind.INVALID_CREDENTIALS, "no session returned")
        return AuthSession(
            user_id=str(resp.user.id),
            email=resp.user.email or email,
            access_token=resp.session.access_token,
            refresh_token=resp.session.refresh_token,
        )

    def sign_out(self, access_token: Optional[str], refresh_token: Optional[str]) -> None:
        if not access_token or not refresh_token:
            return
        client = self.client()
        client.auth.set_session(access_token, refresh_token)
        client.auth.sign_out()

    def validate_session(self, access_token: Optional[str], refresh_token: Optional[str]) -> AuthSession:
        """
        Check stored tokens against the backend.
        An expired access token is exchanged using the refresh token.
        Raises RestoreSessionInvalid when neither works, AuthError on network failure.
        """
        client = self.client()
        if access_token:
            try:
                resp = client.auth.get_user(access_token)
            except AuthRetryableError as e:
                raise AuthError(AuthErrorKind.NETWORK_UNAVAILABLE, str(e)) from e
            except AuthApiError:
                resp = None
            except httpx.TransportError as e:
                raise AuthError(AuthErrorKind.NETWORK_UNAVAILABLE, str(e)) from e
            if resp and resp.user:
                return AuthSession(
                    user_id=str(resp.user.id),
                    email=resp.user.email or "",
                    access_token=access_token,
                    refresh_token=refresh_token,
                )

        if not refresh_token:
            raise RestoreSessionInvalid("Stored access token rejected and no refresh token available")
        try:
            resp = client.auth.refresh_session(refresh_token)
        except AuthRetryableError as e:
            raise AuthError(AuthErrorKind.NETWORK_UNAVAILABLE, str(e)) from e
        except AuthApiError as e:
            raise RestoreSessionInvalid(str(e)) from e
        except httpx.TransportError as e:
            raise AuthError(AuthErrorKind.NETWORK_UNAVAILABLE, str(e)) from e
        if not resp.user or not resp.session:
            raise RestoreSessionInvalid("Refresh returned no session")
        return AuthSession(
            user_id=str(resp.user.id),
            email=resp.user.email or "",
            access_token=resp.session.access_token,
            refresh_token=resp.session.refresh_token,
        )

    def create_user(
        self,
        email: str,
        password: str,
        display_name: str,
        role: Role,
        phone: Optional[str] = None,
        company_ids: Iterable[str] = (),
    ) -> str:
        """Create an auth user with its profile and company grants; returns the new user id."""
        admin = self._admin_client()
        email = email.strip().lower()
        try:
            resp = admin.auth.admin.create_user(
                {"email": email, "password": password, "email_confirm": True}
            )
        except AuthRetryableError as e:
            raise AuthError(AuthErrorKind.NETWORK_UNAVAILABLE, str(e)) from e
        except AuthApiError as e:
            raise _auth_error_from(e) from e

        user_id = str(resp.user.id)
        admin.table(PROFILES_TABLE).insert({
            "user_id": user_id,
            "nome": display_name,
            "email": email,
            "telefone": phone,
            "role": role.value,
        }).execute()

        rows = [{"user_id": user_id, "empresa_id": cid} for cid in company_ids]
        if rows:
            admin.table(GRANTS_TABLE).insert(rows).execute()
        print(f"[auth] Created user {email} (role={role.value}, companies={len(rows)})")
        return user_id

    def _admin_client(self) -> Client:
        if self.admin_client_factory is None:
            raise RuntimeError("User management needs SUPABASE_SERVICE_ROLE_KEY.")
        return self.admin_client_factory()

    def update_user(self, user_id: str, fields: dict, company_ids: Optional[Iterable[str]] = None) -> None:
        """
        Admin edit of another user's profile (name, email, phone, role).
        When *company_ids* is given the user's grants are replaced by it.
        """
        unknown = set(fields) - ADMIN_EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Profile fields not editable: {', '.join(sorted(unknown))}")
        fields = dict(fields)
        if "role" in fields:
            role = Role.parse(fields["role"])
            if role is None:
                raise ValueError(f"Unsupported role '{fields['role']}'")
            fields["role"] = role.value

        admin = self._admin_client()
        if fields:
            admin.table(PROFILES_TABLE).update(fields).eq("user_id", user_id).execute()
        grants = "kept"
        if company_ids is not None:
            admin.table(GRANTS_TABLE).delete().eq("user_id", user_id).execute()
            rows = [{"user_id": user_id, "empresa_id": cid} for cid in company_ids]
            if rows:
                admin.table(GRANTS_TABLE).insert(rows).execute()
            grants = len(rows)
        print(f"[auth] Updated user {user_id} (fields={sorted(fields)}, companies={grants})")

    def delete_user(self, user_id: str) -> None:
        """Delete the auth user; its profile and grants go with it by cascade."""
        admin = self._admin_client()
        try:
            admin.auth.admin.delete_user(user_id)
        except AuthRetryableError as e:
            raise AuthError(AuthErrorKind.NETWORK_UNAVAILABLE, str(e)) from e
        except AuthApiError as e:
            raise _auth_error_from(e) from e
        print(f"[auth] Deleted user {user_id}")

    # ── Profiles & grants ────────────────────────────────────────────

    def fetch_profile(self, user_id: str, access_token: Optional[str] = None, email: Optional[str] = None) -> Profile:
        client = self.client(access_token)
        try:
            resp = (
                client.table(PROFILES_TABLE)
                .select("*")
                .eq("user_id", user_id)
                .limit(1)
                .execute()
            )
        except (PostgrestAPIError, httpx.HTTPError) as e:
            raise ProfileFetchFailed(f"Could not load profile for user {user_id}: {e}") from e

        rows = resp.data or []
        if not rows:
            if email and self.bootstrap_admin_email and email.lower() == self.bootstrap_admin_email:
                return self._bootstrap_admin_profile(client, user_id, email)
            raise ProfileFetchFailed(f"Profile not found for user {user_id}")

        row = rows[0]
        role = Role.parse(row.get("role"))
        if role is None:
            raise ProfileFetchFailed(f"Unsupported role '{row.get('role')}' for user {user_id}")
        return Profile(
            user_id=str(row["user_id"]),
            display_name=str(row.get("nome") or ""),
            email=str(row.get("email") or email or ""),
            role=role,
            home_company_id=row.get("empresa_id"),
            phone=row.get("telefone"),
            active=row.get("ativo"),
        )

    def _bootstrap_admin_profile(self, client: Client, user_id: str, email: str) -> Profile:
        print(f"[auth] Creating admin profile for {email}", file=sys.stderr)
        try:
            client.table(PROFILES_TABLE).insert({
                "user_id": user_id,
                "nome": "Administrador",
                "email": email,
                "role": Role.ADMIN.value,
            }).execute()
        except (PostgrestAPIError, httpx.HTTPError) as e:
            raise ProfileFetchFailed(f"Could not create admin profile for {email}: {e}") from e
        return Profile(user_id=user_id, display_name="Administrador", email=email, role=Role.ADMIN)

    def fetch_company_grants(self, user_id: str, access_token: Optional[str] = None) -> List[CompanyGrant]:
        client = self.client(access_token)
        try:
            resp = (
                client.table(GRANTS_TABLE)
                .select("empresa_id, empresas(nome)")
                .eq("user_id", user_id)
                .execute()
            )
        except (PostgrestAPIError, httpx.HTTPError) as e:
            raise ProfileFetchFailed(f"Could not load company grants for user {user_id}: {e}") from e

        grants = []
        for row in resp.data or []:
            if row.get("empresa_id") is None:
                continue
            company = row.get("empresas") or {}
            grants.append(CompanyGrant(
                user_id=user_id,
                company_id=str(row["empresa_id"]),
                company_name=company.get("nome"),
            ))
        return grants

    def update_profile(self, user_id: str, fields: dict, access_token: Optional[str] = None) -> None:
        unknown = set(fields) - PROFILE_EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Profile fields not editable: {', '.join(sorted(unknown))}")
        client = self.client(access_token)
        client.table(PROFILES_TABLE).update(fields).eq("user_id", user_id).execute()
