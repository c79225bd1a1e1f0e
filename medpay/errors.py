"""
Error types shared by the session, backend and repository layers.
"""

from enum import Enum


class AuthErrorKind(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    EMAIL_NOT_CONFIRMED = "email_not_confirmed"
    EMAIL_ALREADY_REGISTERED = "email_already_registered"
    RATE_LIMITED = "rate_limited"
    NETWORK_UNAVAILABLE = "network_unavailable"
    UNEXPECTED = "unexpected"


# Messages shown to the end user.
AUTH_MESSAGES = {
    AuthErrorKind.INVALID_CREDENTIALS: "Email ou senha incorretos.",
    AuthErrorKind.EMAIL_NOT_CONFIRMED: "Por favor, confirme seu email antes de fazer login.",
    AuthErrorKind.EMAIL_ALREADY_REGISTERED: "Este email já está cadastrado.",
    AuthErrorKind.RATE_LIMITED: "Muitas tentativas de login. Aguarde alguns minutos.",
    AuthErrorKind.NETWORK_UNAVAILABLE: "Não foi possível conectar ao servidor. Tente novamente.",
    AuthErrorKind.UNEXPECTED: "Erro inesperado. Tente novamente.",
}

RETRYABLE_KINDS = {AuthErrorKind.NETWORK_UNAVAILABLE, AuthErrorKind.RATE_LIMITED}


class AuthError(Exception):
    def __init__(self, kind: AuthErrorKind, details: str = ""):
        self.kind = kind
        self.details = details
        super().__init__(f"{kind.value}: {details}" if details else kind.value)

    @property
    def message(self) -> str:
        return AUTH_MESSAGES[self.kind]

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


class ProfileFetchFailed(Exception):
    """Role or grants could not be loaded for an authenticated user."""


class RestoreSessionInvalid(Exception):
    """Stored credentials were rejected by the backend."""


class AccessDenied(Exception):
    def __init__(self, company_id):
        self.company_id = company_id
        super().__init__(f"No access to company {company_id!r}")
