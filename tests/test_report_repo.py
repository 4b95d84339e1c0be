"""Tests for gridbot.repos — SQLite report storage."""

import pytest

from gridbot.repos.db import get_connection, init_db
from gridbot.repos.report_repo import ReportRepo


@pytest.fixture()
def repo(tmp_path):
    db_path = str(tmp_path / "data" / "test.db")
    init_db(db_path)
    return ReportRepo(db_path)


def _transaction(order_id, symbol="BTCUSDT", side="BUY"):
    return {
        "time": 1_700_000_000_000,
        "order_id": order_id,
        "symbol": symbol,
        "side": side,
        "price": 49_000.0,
        "quantity": 0.1,
        "commission": 4.9,
        "grid_level_index": 3,
        "mode": "paper",
    }


def test_init_db_creates_tables(tmp_path):
    db_path = str(tmp_path / "nested" / "gridbot.db")
    init_db(db_path)
    init_db(db_path)  # second run is a no-op
    conn = get_connection(db_path)
    try:
        names = {
            row["name"]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }
    finally:
        conn.close()
    assert {"transactions", "status_reports", "final_reports"} <= names


def test_transactions_newest_first(repo):
    repo.log_transaction(_transaction(1))
    repo.log_transaction(_transaction("ex-42", side="SELL"))

    rows = repo.get_transactions()
    assert [r["order_id"] for r in rows] == ["ex-42", "1"]
    assert rows[0]["side"] == "SELL"
    assert rows[1]["grid_level_index"] == 3


def test_transactions_filtered_by_symbol(repo):
    repo.log_transaction(_transaction(1, symbol="BTCUSDT"))
    repo.log_transaction(_transaction(2, symbol="ETHUSDT"))
    assert [r["symbol"] for r in repo.get_transactions(symbol="ETHUSDT")] == ["ETHUSDT"]
    assert len(repo.get_transactions(limit=1)) == 1


def test_status_report_round_trip(repo):
    assert repo.get_latest_status() is None
    report = {
        "time": "2025-01-01T00:00:00+00:00",
        "mode": "paper",
        "balances": {"USDT": 10_000.0},
        "open_orders": [],
        "performance": {"equity": 10_000.0, "total_trades": 0},
    }
    repo.save_status_report(report)
    assert repo.get_latest_status() == report


def test_final_reports(repo):
    for trades in (1, 2):
        repo.save_final_report({
            "mode": "backtest",
            "start_time": None,
            "end_time": "2025-01-01T00:00:00+00:00",
            "total_trades": trades,
            "total_profit": 1.5 * trades,
            "final_equity": 10_000.0 + trades,
        })
    reports = repo.get_final_reports()
    assert [r["total_trades"] for r in reports] == [2, 1]
