"""Report repository — SQLite sink for transactions, status and final reports."""

import json
from datetime import datetime, timezone
from typing import Optional

from gridbot.repos.db import get_connection


class ReportRepo:
    """Data access layer for the report tables.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    # ── Write ────────────────────────────────────────────────────────────

    def log_transaction(self, entry: dict) -> None:
        """Append one filled order to the transaction log."""
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                """
                INSERT INTO transactions
                    (mode, order_id, symbol, side, price, quantity,
                     commission, grid_level_index, executed_at, logged_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.get("mode", "paper"),
                    str(entry["order_id"]),
                    entry["symbol"],
                    entry["side"],
                    entry["price"],
                    entry["quantity"],
                    entry.get("commission", 0.0),
                    entry.get("grid_level_index"),
                    entry.get("time"),
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def save_status_report(self, report: dict) -> None:
        performance = report.get("performance", {})
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                """
                INSERT INTO status_reports
                    (mode, reported_at, equity, total_trades, payload)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    report.get("mode", "paper"),
                    report.get("time") or datetime.now(timezone.utc).isoformat(),
                    performance.get("equity"),
                    performance.get("total_trades"),
                    json.dumps(report),
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def save_final_report(self, report: dict) -> None:
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                """
                INSERT INTO final_reports
                    (mode, start_time, end_time, total_trades,
                     total_profit, final_equity, payload)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    report.get("mode", "paper"),
                    report.get("start_time"),
                    report.get("end_time"),
                    report["total_trades"],
                    report["total_profit"],
                    report.get("final_equity"),
                    json.dumps(report),
                ),
            )
            conn.commit()
        finally:
            conn.close()

    # ── Read ─────────────────────────────────────────────────────────────

    def get_transactions(
        self,
        limit: int = 50,
        symbol: Optional[str] = None,
    ) -> list[dict]:
        """Return recent transactions, newest first."""
        conn = get_connection(self._db_path)
        try:
            if symbol:
                rows = conn.execute(
                    "SELECT * FROM transactions WHERE symbol = ? ORDER BY id DESC LIMIT ?",
                    (symbol, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM transactions ORDER BY id DESC LIMIT ?",
                    (limit,),
                ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    def get_latest_status(self) -> Optional[dict]:
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT payload FROM status_reports ORDER BY id DESC LIMIT 1"
            ).fetchone()
            return json.loads(row["payload"]) if row else None
        finally:
            conn.close()

    def get_final_reports(self, limit: int = 10) -> list[dict]:
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                "SELECT payload FROM final_reports ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
            return [json.loads(row["payload"]) for row in rows]
        finally:
            conn.close()
