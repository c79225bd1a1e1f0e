"""
Company-scoped reads and writes against the Supabase tables.

Every query goes through the caller's Policy: admins are never filtered,
everyone else is filtered to their granted companies, and an identity with no
grants gets empty results without a query being sent.

Edits and deletes check the company the row belongs to now and, when the
payload moves it, the company it is moved to.
"""

from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Optional

from medpay.config import COMPANY_COLUMN
from medpay.errors import AccessDenied
from medpay.models import Policy

BILLING_ENTRY_SELECT = (
    "*, "
    "lancamento_itens(quantidade, valor_unitario, valor_total, procedimentos(nome)), "
    "medicos(nome), "
    "empresas(nome)"
)

PAYMENT_STATUSES = {"pendente", "pago", "cancelado"}

Row = Dict[str, Any]


def _iso(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def _number(value, cast: Callable, field: str, default=None):
    """Convert a request value; None counts as missing."""
    if value is None:
        if default is None:
            raise ValueError(f"{field} is required")
        return default
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise ValueError(f"{field} must be a number") from None


def _build_lines(items) -> List[Row]:
    if not isinstance(items, list) or not items:
        raise ValueError("A billing entry needs at least one item")

    lines = []
    for item in items:
        if not isinstance(item, dict):
            raise ValueError("Each item must be an object")
        quantity = _number(item.get("quantidade"), int, "quantidade", default=1)
        unit = round(_number(item.get("valor_unitario"), float, "valor_unitario"), 2)
        if quantity <= 0 or unit < 0:
            raise ValueError("quantidade must be positive and valor_unitario not negative")
        if not item.get("procedimento_id"):
            raise ValueError("procedimento_id is required")
        lines.append({
            "procedimento_id": str(item["procedimento_id"]),
            "quantidade": quantity,
            "valor_unitario": unit,
            "valor_total": round(quantity * unit, 2),
        })
    return lines


def _price(data: Row) -> float:
    price = _number(data.get("valor"), float, "valor", default=0.0)
    if price < 0:
        raise ValueError("valor must not be negative")
    return price


class Repository:
    def __init__(self, client, policy: Policy, user_id: Optional[str] = None):
        self.client = client
        self.policy = policy
        self.user_id = user_id

    # ── Scoping helpers ──────────────────────────────────────────────

    def _sees_anything(self) -> bool:
        return self.policy.is_unrestricted or bool(self.policy.allowed_company_ids)

    def _scoped(self, query, column: str = COMPANY_COLUMN, company_id=None):
        if company_id is not None:
            query = query.eq(column, str(company_id))
        if self.policy.is_unrestricted:
            return query
        return query.in_(column, sorted(self.policy.allowed_company_ids))

    def _readable(self, company_id=None) -> bool:
        if not self._sees_anything():
            return False
        return company_id is None or self.policy.permits(company_id)

    def _require(self, company_id) -> None:
        if not self.policy.permits(company_id):
            raise AccessDenied(company_id)

    def _require_admin(self) -> None:
        if not self.policy.is_unrestricted:
            raise AccessDenied(None)

    def _select(self, table: str, columns: str = "*", company_column: str = COMPANY_COLUMN,
                company_id=None, **filters) -> List[Row]:
        if not self._readable(company_id):
            return []
        query = self.client.table(table).select(columns)
        for column, value in filters.items():
            if value is not None:
                query = query.eq(column, value)
        return self._scoped(query, company_column, company_id).execute().data or []

    def _owned_row(self, table: str, row_id: str) -> Row:
        """The row's id and company, after checking the caller may touch it."""
        rows = (
            self.client.table(table)
            .select(f"id, {COMPANY_COLUMN}")
            .eq("id", str(row_id))
            .execute()
            .data
            or []
        )
        # A missing row and a foreign one look the same to the caller.
        if not rows:
            raise AccessDenied(None)
        self._require(rows[0].get(COMPANY_COLUMN))
        return rows[0]

    def _update(self, table: str, row_id: str, payload: Row) -> Row:
        rows = self.client.table(table).update(payload).eq("id", str(row_id)).execute().data or []
        if not rows:
            raise AccessDenied(None)
        return rows[0]

    def _delete(self, table: str, row_id: str) -> None:
        rows = self.client.table(table).delete().eq("id", str(row_id)).execute().data or []
        if not rows:
            raise AccessDenied(None)

    # ── Companies (empresas) ─────────────────────────────────────────

    def list_companies(self, status: Optional[str] = None) -> List[Row]:
        return self._select("empresas", company_column="id", status=status)

    def create_company(self, data: Row) -> Row:
        self._require_admin()
        payload = {**data, "status": data.get("status", "ativa")}
        return self.client.table("empresas").insert(payload).execute().data[0]

    def update_company(self, company_id: str, data: Row) -> Row:
        self._require_admin()
        payload = {k: v for k, v in data.items() if k != "id"}
        return self._update("empresas", company_id, payload)

    def delete_company(self, company_id: str) -> None:
        self._require_admin()
        self._delete("empresas", company_id)

    # ── Physicians (medicos) ─────────────────────────────────────────

    def list_physicians(self, company_id=None, status: Optional[str] = None) -> List[Row]:
        return self._select("medicos", company_id=company_id, status=status)

    def create_physician(self, data: Row) -> Row:
        self._require(data.get(COMPANY_COLUMN))
        payload = {**data, "status": data.get("status", "ativa")}
        return self.client.table("medicos").insert(payload).execute().data[0]

    # ── Procedures (procedimentos) ───────────────────────────────────

    def list_procedures(self, company_id=None, status: Optional[str] = None) -> List[Row]:
        return self._select("procedimentos", company_id=company_id, status=status)

    def create_procedure(self, data: Row) -> Row:
        self._require(data.get(COMPANY_COLUMN))
        payload = {**data, "valor": _price(data), "status": data.get("status", "ativo")}
        return self.client.table("procedimentos").insert(payload).execute().data[0]

    def update_procedure(self, procedure_id: str, data: Row) -> Row:
        self._owned_row("procedimentos", procedure_id)
        if COMPANY_COLUMN in data:
            self._require(data[COMPANY_COLUMN])
        payload = {k: v for k, v in data.items() if k != "id"}
        if "valor" in data:
            payload["valor"] = _price(data)
        return self._update("procedimentos", procedure_id, payload)

    def delete_procedure(self, procedure_id: str) -> None:
        self._owned_row("procedimentos", procedure_id)
        self._delete("procedimentos", procedure_id)

    # ── Billing entries (lancamentos) ────────────────────────────────

    def list_billing_entries(self, company_id=None, date_from=None, date_to=None) -> List[Row]:
        if not self._readable(company_id):
            return []
        query = self.client.table("lancamentos").select(BILLING_ENTRY_SELECT)
        if date_from is not None:
            query = query.gte("data_lancamento", _iso(date_from))
        if date_to is not None:
            query = query.lte("data_lancamento", _iso(date_to))
        query = self._scoped(query, company_id=company_id)
        return query.order("data_lancamento", desc=True).execute().data or []

    def _check_belongs(self, table: str, ids: Iterable[str], company_id: str, label: str) -> None:
        ids = sorted({str(i) for i in ids})
        rows = (
            self.client.table(table)
            .select(f"id, {COMPANY_COLUMN}")
            .in_("id", ids)
            .execute()
            .data
            or []
        )
        found = {str(r["id"]): r.get(COMPANY_COLUMN) for r in rows}
        for item_id in ids:
            if item_id not in found or str(found[item_id]) != str(company_id):
                raise ValueError(f"{label} {item_id} does not belong to company {company_id}")

    def _entry_payload(self, company_id, physician_id, entry_date, lines, notes) -> Row:
        self._check_belongs("medicos", [physician_id], company_id, "Physician")
        self._check_belongs("procedimentos", [line["procedimento_id"] for line in lines], company_id, "Procedure")
        return {
            COMPANY_COLUMN: str(company_id),
            "medico_id": str(physician_id),
            "data_lancamento": _iso(entry_date),
            "observacoes": notes,
            "valor_total": round(sum(line["valor_total"] for line in lines), 2),
        }

    def _insert_lines(self, entry: Row, lines: List[Row]) -> Row:
        for line in lines:
            line["lancamento_id"] = entry["id"]
        self.client.table("lancamento_itens").insert(lines).execute()
        entry["lancamento_itens"] = lines
        return entry

    def create_billing_entry(
        self,
        company_id: str,
        physician_id: str,
        entry_date,
        items: List[Row],
        notes: Optional[str] = None,
    ) -> Row:
        """Insert a billing entry and its line items; totals are computed here."""
        self._require(company_id)
        lines = _build_lines(items)
        payload = self._entry_payload(company_id, physician_id, entry_date, lines, notes)
        payload["created_by"] = self.user_id
        entry = self.client.table("lancamentos").insert(payload).execute().data[0]
        return self._insert_lines(entry, lines)

    def update_billing_entry(
        self,
        entry_id: str,
        physician_id: str,
        entry_date,
        items: List[Row],
        notes: Optional[str] = None,
        company_id: Optional[str] = None,
    ) -> Row:
        """Rewrite an entry and replace all of its line items."""
        current = self._owned_row("lancamentos", entry_id)
        target = company_id if company_id is not None else current.get(COMPANY_COLUMN)
        self._require(target)
        lines = _build_lines(items)
        payload = self._entry_payload(target, physician_id, entry_date, lines, notes)

        entry = self._update("lancamentos", entry_id, payload)
        self.client.table("lancamento_itens").delete().eq("lancamento_id", str(entry_id)).execute()
        return self._insert_lines(entry, lines)

    def delete_billing_entry(self, entry_id: str) -> None:
        self._owned_row("lancamentos", entry_id)
        self.client.table("lancamento_itens").delete().eq("lancamento_id", str(entry_id)).execute()
        self._delete("lancamentos", entry_id)

    # ── Payments (pagamentos) ────────────────────────────────────────

    def list_payments(self, company_id=None, status: Optional[str] = None) -> List[Row]:
        return self._select("pagamentos", company_id=company_id, status=status)

    def create_payment(self, data: Row) -> Row:
        self._require(data.get(COMPANY_COLUMN))
        status = data.get("status", "pendente")
        if status not in PAYMENT_STATUSES:
            raise ValueError(f"Unknown payment status '{status}'")
        return self.client.table("pagamentos").insert({**data, "status": status}).execute().data[0]

    # ── Users & settings (admin screens) ─────────────────────────────

    def list_profiles(self) -> List[Row]:
        if not self.policy.is_unrestricted:
            return []
        return self.client.table("profiles").select("*").order("nome").execute().data or []

    def list_settings(self) -> List[Row]:
        return self.client.table("configuracoes").select("*").order("chave").execute().data or []

    def upsert_setting(self, key: str, value: str, description: Optional[str] = None, kind: str = "string") -> Row:
        self._require_admin()
        payload = {"chave": key, "valor": str(value), "descricao": description, "tipo": kind}
        return self.client.table("configuracoes").upsert(payload, on_conflict="chave").execute().data[0]
