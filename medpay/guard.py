"""
Route Guard – decides, for a path and a session snapshot, whether to render,
redirect or wait.

Unauthorized roles are silently redirected to the landing screen, never
shown a 403, so they do not learn that an admin route exists.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from medpay.config import LANDING_PATH, LOGIN_PATH
from medpay.models import SessionSnapshot
from medpay.rbac import is_admin


class GuardState(str, Enum):
    LOADING = "loading"
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"


class GuardAction(str, Enum):
    RENDER = "render"
    REDIRECT = "redirect"
    WAIT = "wait"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class Route:
    path: str
    title: str
    admin_only: bool = False


@dataclass(frozen=True)
class GuardDecision:
    action: GuardAction
    path: str
    route: Optional[Route] = None

    @property
    def allowed(self) -> bool:
        return self.action is GuardAction.RENDER


ROUTES: Tuple[Route, ...] = (
    Route("/dashboard", "Dashboard"),
    Route("/lancamentos", "Lançamentos"),
    Route("/medicos", "Médicos", admin_only=True),
    Route("/empresas", "Empresas", admin_only=True),
    Route("/procedimentos", "Procedimentos"),
    Route("/relatorios", "Relatórios"),
    Route("/pagamentos", "Pagamentos", admin_only=True),
    Route("/usuarios", "Usuários", admin_only=True),
    Route("/configuracoes", "Configurações"),
)


def guard_state(snapshot: SessionSnapshot) -> GuardState:
    if snapshot.is_loading:
        return GuardState.LOADING
    if snapshot.identity is None:
        return GuardState.UNAUTHENTICATED
    return GuardState.AUTHENTICATED


def _first_segment(path: str) -> str:
    head = (path or "/").split("?", 1)[0].strip("/").split("/", 1)[0]
    return "/" + head


class RouteGuard:
    def __init__(
        self,
        routes: Iterable[Route] = ROUTES,
        login_path: str = LOGIN_PATH,
        landing_path: str = LANDING_PATH,
    ):
        self.routes = {r.path: r for r in routes}
        self.login_path = login_path
        self.landing_path = landing_path

    def match(self, path: str) -> Optional[Route]:
        return self.routes.get(_first_segment(path))

    def check(self, path: str, snapshot: SessionSnapshot) -> GuardDecision:
        state = guard_state(snapshot)
        if state is GuardState.LOADING:
            return GuardDecision(GuardAction.WAIT, path)

        authenticated = state is GuardState.AUTHENTICATED
        segment = _first_segment(path)

        if segment == self.login_path:
            if authenticated:
                return GuardDecision(GuardAction.REDIRECT, self.landing_path)
            return GuardDecision(GuardAction.RENDER, self.login_path)

        if segment == "/":
            target = self.landing_path if authenticated else self.login_path
            return GuardDecision(GuardAction.REDIRECT, target)

        route = self.match(path)
        if route is None:
            return GuardDecision(GuardAction.NOT_FOUND, path)
        if not authenticated:
            return GuardDecision(GuardAction.REDIRECT, self.login_path)
        if route.admin_only and not is_admin(snapshot.identity):
            return GuardDecision(GuardAction.REDIRECT, self.landing_path)
        return GuardDecision(GuardAction.RENDER, path, route)

    def visible_routes(self, snapshot: SessionSnapshot) -> List[Route]:
        """Menu entries the current identity can open."""
        if guard_state(snapshot) is not GuardState.AUTHENTICATED:
            return []
        admin = is_admin(snapshot.identity)
        return [r for r in self.routes.values() if admin or not r.admin_only]
