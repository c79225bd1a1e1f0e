"""
Report and dashboard aggregations over billing entries.

Input rows are billing entries as returned by Repository.list_billing_entries,
i.e. with embedded `lancamento_itens`, `medicos` and `empresas`. The caller is
responsible for scoping them; nothing here filters by company.
"""

from typing import Any, Dict, List

import pandas as pd

from medpay.config import REPORT_TOP_N


# ── Frames ───────────────────────────────────────────────────────────

def entries_frame(entries: List[Dict[str, Any]]) -> pd.DataFrame:
    """One row per billing entry."""
    rows = []
    for e in entries:
        items = e.get("lancamento_itens") or []
        rows.append({
            "id": e.get("id"),
            "empresa_id": e.get("empresa_id"),
            "empresa": (e.get("empresas") or {}).get("nome"),
            "medico": (e.get("medicos") or {}).get("nome"),
            "data_lancamento": e.get("data_lancamento"),
            "valor_total": float(e.get("valor_total") or 0),
            "itens": len(items),
        })
    df = pd.DataFrame(rows, columns=[
        "id", "empresa_id", "empresa", "medico", "data_lancamento", "valor_total", "itens",
    ])
    df["data_lancamento"] = pd.to_datetime(df["data_lancamento"], errors="coerce")
    return df


def items_frame(entries: List[Dict[str, Any]]) -> pd.DataFrame:
    """One row per line item, carrying its entry's date."""
    rows = []
    for e in entries:
        for item in e.get("lancamento_itens") or []:
            rows.append({
                "lancamento_id": e.get("id"),
                "data_lancamento": e.get("data_lancamento"),
                "procedimento": (item.get("procedimentos") or {}).get("nome"),
                "quantidade": int(item.get("quantidade") or 0),
                "valor_total": float(item.get("valor_total") or 0),
            })
    df = pd.DataFrame(rows, columns=[
        "lancamento_id", "data_lancamento", "procedimento", "quantidade", "valor_total",
    ])
    df["data_lancamento"] = pd.to_datetime(df["data_lancamento"], errors="coerce")
    return df


# ── Report screen ────────────────────────────────────────────────────

def build_billing_report(entries: List[Dict[str, Any]], top_n: int = REPORT_TOP_N) -> Dict[str, Any]:
    """
    Totals plus the most active physicians (by procedure count) and the most
    performed procedures (by quantity).
    """
    df = entries_frame(entries)
    items = items_frame(entries)

    report: Dict[str, Any] = {
        "total_procedimentos": int(df["itens"].sum()) if not df.empty else 0,
        "total_valor": round(float(df["valor_total"].sum()), 2) if not df.empty else 0.0,
        "medicos_mais_ativos": [],
        "procedimentos_mais_realizados": [],
    }

    by_physician = df.dropna(subset=["medico"])
    if not by_physician.empty:
        stats = (
            by_physician.groupby("medico", sort=False)
            .agg(procedimentos=("itens", "sum"), valor=("valor_total", "sum"))
            .sort_values("procedimentos", ascending=False, kind="stable")
            .head(top_n)
            .reset_index()
        )
        report["medicos_mais_ativos"] = [
            {"nome": r.medico, "procedimentos": int(r.procedimentos), "valor": round(float(r.valor), 2)}
            for r in stats.itertuples()
        ]

    by_procedure = items.dropna(subset=["procedimento"])
    if not by_procedure.empty:
        stats = (
            by_procedure.groupby("procedimento", sort=False)
            .agg(quantidade=("quantidade", "sum"), valor=("valor_total", "sum"))
            .sort_values("quantidade", ascending=False, kind="stable")
            .head(top_n)
            .reset_index()
        )
        report["procedimentos_mais_realizados"] = [
            {"nome": r.procedimento, "quantidade": int(r.quantidade), "valor": round(float(r.valor), 2)}
            for r in stats.itertuples()
        ]

    return report


# ── Dashboard screen ─────────────────────────────────────────────────

def build_dashboard(entries: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Summary cards, a monthly series and a per-procedure breakdown."""
    df = entries_frame(entries)
    items = items_frame(entries)

    if df.empty:
        return {
            "lancamentos": 0,
            "total_valor": 0.0,
            "total_procedimentos": 0,
            "medicos_ativos": 0,
            "mensal": [],
            "por_procedimento": [],
        }

    monthly = []
    dated = df.dropna(subset=["data_lancamento"])
    if not dated.empty:
        months = dated.groupby(dated["data_lancamento"].dt.to_period("M").rename("mes")).agg(
            procedimentos=("itens", "sum"), receita=("valor_total", "sum"),
        )
        monthly = [
            {"mes": str(period), "procedimentos": int(row.procedimentos), "receita": round(float(row.receita), 2)}
            for period, row in months.iterrows()
        ]

    breakdown = []
    if not items.empty:
        per_proc = (
            items.dropna(subset=["procedimento"])
            .groupby("procedimento")
            .agg(quantidade=("quantidade", "sum"), receita=("valor_total", "sum"))
            .sort_values("receita", ascending=False)
        )
        breakdown = [
            {"nome": name, "quantidade": int(row.quantidade), "receita": round(float(row.receita), 2)}
            for name, row in per_proc.iterrows()
        ]

    return {
        "lancamentos": int(len(df)),
        "total_valor": round(float(df["valor_total"].sum()), 2),
        "total_procedimentos": int(df["itens"].sum()),
        "medicos_ativos": int(df["medico"].dropna().nunique()),
        "mensal": monthly,
        "por_procedimento": breakdown,
    }
