"""
Domain dataclasses used across the application.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple, Union

from medpay.errors import AuthError


class Role(str, Enum):
    ADMIN = "admin"
    USUARIO = "usuario"
    MEDICO = "medico"

    @classmethod
    def parse(cls, value) -> Optional["Role"]:
        """Map a backend role string to a Role; anything unknown is None."""
        if value is None:
            return None
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


class _Unrestricted:
    """Marker for "every company". Never equal to a set of ids."""

    def __repr__(self):
        return "UNRESTRICTED"


UNRESTRICTED = _Unrestricted()

AllowedCompanies = Union[_Unrestricted, FrozenSet[str]]


@dataclass(frozen=True)
class CompanyGrant:
    """A non-admin identity's access to one company."""
    user_id: str
    company_id: str
    company_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "company_id": self.company_id,
            "company_name": self.company_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CompanyGrant":
        return cls(
            user_id=str(data["user_id"]),
            company_id=str(data["company_id"]),
            company_name=data.get("company_name"),
        )


@dataclass(frozen=True)
class Identity:
    """The authenticated actor. role is None when the profile could not be loaded."""
    id: str
    display_name: str
    email: str
    role: Optional[Role]
    home_company_id: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    active: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "email": self.email,
            "role": self.role.value if self.role else None,
            "home_company_id": self.home_company_id,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "active": self.active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Identity":
        return cls(
            id=str(data["id"]),
            display_name=str(data.get("display_name") or ""),
            email=str(data.get("email") or ""),
            role=Role.parse(data.get("role")),
            home_company_id=data.get("home_company_id"),
            access_token=data.get("access_token"),
            refresh_token=data.get("refresh_token"),
            active=data.get("active"),
        )

    def public_dict(self) -> Dict[str, Any]:
        """Same as to_dict() without the backend tokens."""
        data = self.to_dict()
        data.pop("access_token")
        data.pop("refresh_token")
        return data


@dataclass(frozen=True)
class AuthSession:
    """Tokens handed out by the auth backend for one signed-in user."""
    user_id: str
    email: str
    access_token: str
    refresh_token: Optional[str] = None


@dataclass(frozen=True)
class Profile:
    user_id: str
    display_name: str
    email: str
    role: Optional[Role]
    home_company_id: Optional[str] = None
    phone: Optional[str] = None
    active: Optional[bool] = None


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only view of the Session Store handed to every consumer."""
    identity: Optional[Identity] = None
    company_grants: Tuple[CompanyGrant, ...] = ()
    is_loading: bool = False

    @property
    def is_authenticated(self) -> bool:
        return self.identity is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity": self.identity.to_dict() if self.identity else None,
            "company_grants": [g.to_dict() for g in self.company_grants],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionSnapshot":
        identity = data.get("identity")
        return cls(
            identity=Identity.from_dict(identity) if identity else None,
            company_grants=tuple(
                CompanyGrant.from_dict(g) for g in data.get("company_grants") or []
            ),
        )


@dataclass(frozen=True)
class SignInResult:
    ok: bool
    identity: Optional[Identity] = None
    error: Optional[AuthError] = None


@dataclass
class Policy:
    """Query-layer view of what one identity may read and write."""
    role: Optional[str]
    allowed_company_ids: AllowedCompanies
    required_filter_column: Optional[str]
    notes: str

    @property
    def is_unrestricted(self) -> bool:
        return self.allowed_company_ids is UNRESTRICTED

    def permits(self, company_id) -> bool:
        if self.is_unrestricted:
            return True
        if company_id is None:
            return False
        return str(company_id) in self.allowed_company_ids
