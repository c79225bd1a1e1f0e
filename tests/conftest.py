"""
Shared fakes: an in-memory Supabase client and an in-memory backend.
"""

import copy
import itertools
from dataclasses import replace

import pytest

from medpay.backend import ADMIN_EDITABLE_FIELDS, PROFILE_EDITABLE_FIELDS
from medpay.errors import AuthError, AuthErrorKind, ProfileFetchFailed, RestoreSessionInvalid
from medpay.models import AuthSession, CompanyGrant, Profile, Role
from medpay.storage import MemoryStorage


# ── Fake Supabase client ─────────────────────────────────────────────

class FakeResponse:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    """Mimic the PostgREST query builder: chained filters then .execute()."""

    _ids = itertools.count(1)

    def __init__(self, client, table):
        self.client = client
        self.table = table
        self.op = "select"
        self.columns = "*"
        self.payload = None
        self.on_conflict = None
        self.filters = []
        self.order_by = None
        self.max_rows = None

    def select(self, columns="*"):
        self.columns = columns
        return self

    def insert(self, payload):
        self.op, self.payload = "insert", payload
        return self

    def update(self, payload):
        self.op, self.payload = "update", payload
        return self

    def upsert(self, payload, on_conflict=None):
        self.op, self.payload, self.on_conflict = "upsert", payload, on_conflict
        return self

    def delete(self):
        self.op = "delete"
        return self

    def eq(self, column, value):
        self.filters.append(("eq", column, value))
        return self

    def in_(self, column, values):
        self.filters.append(("in", column, list(values)))
        return self

    def gte(self, column, value):
        self.filters.append(("gte", column, value))
        return self

    def lte(self, column, value):
        self.filters.append(("lte", column, value))
        return self

    def order(self, column, desc=False):
        self.order_by = (column, desc)
        return self

    def limit(self, n):
        self.max_rows = n
        return self

    def _matches(self, row):
        for op, column, value in self.filters:
            current = row.get(column)
            if op == "eq" and current != value:
                return False
            if op == "in" and current not in value:
                return False
            if op == "gte" and (current is None or str(current) < str(value)):
                return False
            if op == "lte" and (current is None or str(current) > str(value)):
                return False
        return True

    def execute(self):
        self.client.executed.append(self)
        rows = self.client.tables.setdefault(self.table, [])

        if self.op == "select":
            out = [copy.deepcopy(r) for r in rows if self._matches(r)]
            if self.order_by:
                column, desc = self.order_by
                out.sort(key=lambda r: str(r.get(column) or ""), reverse=desc)
            if self.max_rows is not None:
                out = out[: self.max_rows]
            return FakeResponse(out)

        if self.op in ("insert", "upsert"):
            items = self.payload if isinstance(self.payload, list) else [self.payload]
            inserted = []
            for item in items:
                item = dict(item)
                if self.op == "upsert" and self.on_conflict:
                    existing = [r for r in rows if r.get(self.on_conflict) == item.get(self.on_conflict)]
                    if existing:
                        existing[0].update(item)
                        inserted.append(copy.deepcopy(existing[0]))
                        continue
                item.setdefault("id", f"{self.table}-{next(self._ids)}")
                rows.append(item)
                inserted.append(copy.deepcopy(item))
            return FakeResponse(inserted)

        if self.op == "update":
            updated = []
            for r in rows:
                if self._matches(r):
                    r.update(self.payload)
                    updated.append(copy.deepcopy(r))
            return FakeResponse(updated)

        if self.op == "delete":
            kept = [r for r in rows if not self._matches(r)]
            removed = [r for r in rows if self._matches(r)]
            self.client.tables[self.table] = kept
            return FakeResponse(removed)

        raise AssertionError(f"unsupported op {self.op}")


class FakePostgrest:
    def __init__(self):
        self.tokens = []

    def auth(self, token):
        self.tokens.append(token)


class FakeClient:
    def __init__(self, tables=None):
        self.tables = tables or {}
        self.executed = []
        self.postgrest = FakePostgrest()

    def table(self, name):
        return FakeQuery(self, name)

    def queries_on(self, table):
        return [q for q in self.executed if q.table == table]


def seed_tables():
    return {
        "empresas": [
            {"id": "emp-a", "nome": "Clínica Alfa", "status": "ativa"},
            {"id": "emp-b", "nome": "Clínica Beta", "status": "ativa"},
            {"id": "emp-c", "nome": "Clínica Gama", "status": "inativa"},
        ],
        "medicos": [
            {"id": "med-1", "nome": "Dra. Ana Souza", "crm": "1234", "empresa_id": "emp-a", "status": "ativa"},
            {"id": "med-2", "nome": "Dr. Bruno Lima", "crm": "5678", "empresa_id": "emp-b", "status": "ativa"},
        ],
        "procedimentos": [
            {"id": "proc-1", "nome": "Consulta", "valor": 150.0, "empresa_id": "emp-a", "status": "ativo"},
            {"id": "proc-2", "nome": "Exame", "valor": 80.0, "empresa_id": "emp-b", "status": "ativo"},
            {"id": "proc-3", "nome": "Retorno", "valor": 50.0, "empresa_id": "emp-a", "status": "inativo"},
        ],
        "lancamentos": [
            {
                "id": "lan-1", "empresa_id": "emp-a", "medico_id": "med-1",
                "data_lancamento": "2024-01-10", "valor_total": 350.0,
                "medicos": {"nome": "Dra. Ana Souza"}, "empresas": {"nome": "Clínica Alfa"},
                "lancamento_itens": [
                    {"quantidade": 2, "valor_unitario": 150.0, "valor_total": 300.0, "procedimentos": {"nome": "Consulta"}},
                    {"quantidade": 1, "valor_unitario": 50.0, "valor_total": 50.0, "procedimentos": {"nome": "Retorno"}},
                ],
            },
            {
                "id": "lan-2", "empresa_id": "emp-b", "medico_id": "med-2",
                "data_lancamento": "2024-02-05", "valor_total": 80.0,
                "medicos": {"nome": "Dr. Bruno Lima"}, "empresas": {"nome": "Clínica Beta"},
                "lancamento_itens": [
                    {"quantidade": 1, "valor_unitario": 80.0, "valor_total": 80.0, "procedimentos": {"nome": "Exame"}},
                ],
            },
        ],
        "lancamento_itens": [
            {"id": "item-1", "lancamento_id": "lan-1", "procedimento_id": "proc-1", "quantidade": 2},
            {"id": "item-2", "lancamento_id": "lan-1", "procedimento_id": "proc-3", "quantidade": 1},
            {"id": "item-3", "lancamento_id": "lan-2", "procedimento_id": "proc-2", "quantidade": 1},
        ],
        "pagamentos": [
            {"id": "pag-1", "empresa_id": "emp-a", "medico_id": "med-1", "lancamento_id": "lan-1",
             "valor": 350.0, "status": "pendente", "data_vencimento": "2024-02-10"},
            {"id": "pag-2", "empresa_id": "emp-b", "medico_id": "med-2", "lancamento_id": "lan-2",
             "valor": 80.0, "status": "pago", "data_vencimento": "2024-03-05"},
        ],
        "profiles": [
            {"user_id": "u-admin", "nome": "Administrador", "email": "admin@medpay.com", "role": "admin"},
            {"user_id": "u-ana", "nome": "Ana Paula", "email": "ana@alfa.com", "role": "usuario", "empresa_id": "emp-a"},
        ],
        "configuracoes": [
            {"id": "cfg-1", "chave": "sistema_nome_empresa", "valor": "MedPay", "tipo": "string"},
        ],
    }


# ── Fake backend (auth + profile/grant store) ────────────────────────

class FakeBackend:
    def __init__(self, db):
        self.db = db
        self.network_down = False
        self.profiles_down = False
        self.revoked = set()
        self.calls = []
        self.users = {
            "admin@medpay.com": ("admin123", "u-admin"),
            "ana@alfa.com": ("senha123", "u-ana"),
            "medico@beta.com": ("senha123", "u-med"),
            "semperfil@medpay.com": ("senha123", "u-orphan"),
        }
        self.profiles = {
            "u-admin": Profile("u-admin", "Administrador", "admin@medpay.com", Role.ADMIN),
            "u-ana": Profile("u-ana", "Ana Paula", "ana@alfa.com", Role.USUARIO, home_company_id="emp-a"),
            "u-med": Profile("u-med", "Dr. Bruno Lima", "medico@beta.com", Role.MEDICO),
        }
        self.grants = {
            "u-admin": [CompanyGrant("u-admin", "emp-b", "Clínica Beta")],
            "u-ana": [CompanyGrant("u-ana", "emp-a", "Clínica Alfa")],
            "u-med": [],
        }

    def _email(self, user_id):
        for email, (_pw, uid) in self.users.items():
            if uid == user_id:
                return email
        return ""

    def sign_in(self, email, password):
        self.calls.append(("sign_in", email))
        if self.network_down:
            raise AuthError(AuthErrorKind.NETWORK_UNAVAILABLE, "connection refused")
        stored = self.users.get(email)
        if stored is None or stored[0] != password:
            raise AuthError(AuthErrorKind.INVALID_CREDENTIALS, "Invalid login credentials")
        uid = stored[1]
        return AuthSession(uid, email, f"access-{uid}", f"refresh-{uid}")

    def sign_out(self, access_token, refresh_token):
        self.calls.append(("sign_out", access_token))

    def validate_session(self, access_token, refresh_token):
        self.calls.append(("validate_session", access_token))
        if self.network_down:
            raise AuthError(AuthErrorKind.NETWORK_UNAVAILABLE, "connection refused")
        if not access_token or access_token in self.revoked:
            raise RestoreSessionInvalid("token revoked")
        uid = access_token[len("access-"):]
        return AuthSession(uid, self._email(uid), access_token, refresh_token)

    def fetch_profile(self, user_id, access_token=None, email=None):
        if self.profiles_down or user_id not in self.profiles:
            raise ProfileFetchFailed(f"Profile not found for user {user_id}")
        return self.profiles[user_id]

    def fetch_company_grants(self, user_id, access_token=None):
        if self.profiles_down:
            raise ProfileFetchFailed("grants unavailable")
        return list(self.grants.get(user_id, []))

    def update_profile(self, user_id, fields, access_token=None):
        unknown = set(fields) - PROFILE_EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Profile fields not editable: {', '.join(sorted(unknown))}")
        profile = self.profiles[user_id]
        self.profiles[user_id] = replace(
            profile,
            display_name=fields.get("nome", profile.display_name),
            email=fields.get("email", profile.email),
            phone=fields.get("telefone", profile.phone),
        )

    def client(self, access_token=None):
        if access_token:
            self.db.postgrest.auth(access_token)
        return self.db

    def create_user(self, email, password, display_name, role, phone=None, company_ids=()):
        email = email.strip().lower()
        if email in self.users:
            raise AuthError(AuthErrorKind.EMAIL_ALREADY_REGISTERED, "User already registered")
        uid = f"u-{len(self.users) + 1}"
        self.users[email] = (password, uid)
        self.profiles[uid] = Profile(uid, display_name, email, role, phone=phone)
        self.grants[uid] = [CompanyGrant(uid, cid) for cid in company_ids]
        return uid

    def update_user(self, user_id, fields, company_ids=None):
        unknown = set(fields) - ADMIN_EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Profile fields not editable: {', '.join(sorted(unknown))}")
        role = None
        if "role" in fields:
            role = Role.parse(fields["role"])
            if role is None:
                raise ValueError(f"Unsupported role '{fields['role']}'")
        profile = self.profiles[user_id]
        self.profiles[user_id] = replace(
            profile,
            display_name=fields.get("nome", profile.display_name),
            email=fields.get("email", profile.email),
            phone=fields.get("telefone", profile.phone),
            role=role or profile.role,
        )
        if company_ids is not None:
            self.grants[user_id] = [CompanyGrant(user_id, cid) for cid in company_ids]

    def delete_user(self, user_id):
        email = self._email(user_id)
        if not email:
            raise AuthError(AuthErrorKind.UNEXPECTED, "User not found")
        del self.users[email]
        self.profiles.pop(user_id, None)
        self.grants.pop(user_id, None)


# ── Fixtures ─────────────────────────────────────────────────────────

@pytest.fixture
def db():
    return FakeClient(seed_tables())


@pytest.fixture
def backend(db):
    return FakeBackend(db)


@pytest.fixture
def storage():
    return MemoryStorage()
