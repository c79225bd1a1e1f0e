"""
Unit tests for report and dashboard aggregation.
"""

from medpay.reports import build_billing_report, build_dashboard, entries_frame, items_frame


def entry(entry_id, physician, day, items):
    return {
        "id": entry_id,
        "empresa_id": "emp-a",
        "data_lancamento": day,
        "valor_total": sum(i["valor_total"] for i in items),
        "medicos": {"nome": physician} if physician else None,
        "empresas": {"nome": "Clínica Alfa"},
        "lancamento_itens": items,
    }


def item(name, quantity, total):
    return {"quantidade": quantity, "valor_total": total, "procedimentos": {"nome": name}}


ENTRIES = [
    entry("l1", "Dra. Ana", "2024-01-10", [item("Consulta", 2, 300.0), item("Retorno", 1, 50.0)]),
    entry("l2", "Dr. Bruno", "2024-01-20", [item("Exame", 1, 80.0)]),
    entry("l3", "Dra. Ana", "2024-02-03", [item("Consulta", 1, 150.0)]),
]


# ── Tests: frames ────────────────────────────────────────────────────

def test_entries_frame_columns_and_dates():
    df = entries_frame(ENTRIES)
    assert list(df["id"]) == ["l1", "l2", "l3"]
    assert list(df["itens"]) == [2, 1, 1]
    assert str(df["data_lancamento"].dtype).startswith("datetime64")


def test_items_frame_one_row_per_item():
    df = items_frame(ENTRIES)
    assert len(df) == 4
    assert df["quantidade"].sum() == 5


def test_frames_empty_input():
    assert entries_frame([]).empty
    assert items_frame([]).empty


# ── Tests: build_billing_report ──────────────────────────────────────

def test_billing_report_totals():
    report = build_billing_report(ENTRIES)
    assert report["total_procedimentos"] == 4
    assert report["total_valor"] == 580.0


def test_billing_report_most_active_physicians():
    report = build_billing_report(ENTRIES)
    first = report["medicos_mais_ativos"][0]
    assert first == {"nome": "Dra. Ana", "procedimentos": 3, "valor": 500.0}
    assert [m["nome"] for m in report["medicos_mais_ativos"]] == ["Dra. Ana", "Dr. Bruno"]


def test_billing_report_most_performed_procedures():
    report = build_billing_report(ENTRIES)
    top = report["procedimentos_mais_realizados"]
    assert top[0] == {"nome": "Consulta", "quantidade": 3, "valor": 450.0}
    assert {p["nome"] for p in top} == {"Consulta", "Retorno", "Exame"}


def test_billing_report_top_n():
    report = build_billing_report(ENTRIES, top_n=1)
    assert len(report["medicos_mais_ativos"]) == 1
    assert len(report["procedimentos_mais_realizados"]) == 1


def test_billing_report_skips_entries_without_physician():
    report = build_billing_report([entry("l9", None, "2024-01-01", [item("Exame", 1, 80.0)])])
    assert report["medicos_mais_ativos"] == []
    assert report["total_procedimentos"] == 1


def test_billing_report_empty():
    assert build_billing_report([]) == {
        "total_procedimentos": 0,
        "total_valor": 0.0,
        "medicos_mais_ativos": [],
        "procedimentos_mais_realizados": [],
    }


# ── Tests: build_dashboard ───────────────────────────────────────────

def test_dashboard_cards():
    dash = build_dashboard(ENTRIES)
    assert dash["lancamentos"] == 3
    assert dash["total_valor"] == 580.0
    assert dash["total_procedimentos"] == 4
    assert dash["medicos_ativos"] == 2


def test_dashboard_monthly_series():
    dash = build_dashboard(ENTRIES)
    assert dash["mensal"] == [
        {"mes": "2024-01", "procedimentos": 3, "receita": 430.0},
        {"mes": "2024-02", "procedimentos": 1, "receita": 150.0},
    ]


def test_dashboard_breakdown_sorted_by_revenue():
    dash = build_dashboard(ENTRIES)
    assert [p["nome"] for p in dash["por_procedimento"]] == ["Consulta", "Exame", "Retorno"]


def test_dashboard_empty():
    dash = build_dashboard([])
    assert dash["lancamentos"] == 0
    assert dash["mensal"] == []
    assert dash["por_procedimento"] == []
