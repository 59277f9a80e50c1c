from __future__ import annotations

import json
import sqlite3
import threading
import time
from typing import Any, Dict, List, Optional


class AuditLog:
    """
    Optional SQLite audit log of pipeline outcomes.

    This is OFF unless a database path is given (`AUDIT_DB_PATH`).
    Only outcomes are stored: chain, operation, final state, transaction hash and
    a summary. Digests and public keys may appear in the summary; secrets never do.
    """

    def __init__(self, db_path: str = "") -> None:
        self._path = (db_path or "").strip()
        self._lock = threading.Lock()
        self._conn: Optional[sqlite3.Connection] = None

    def enabled(self) -> bool:
        return bool(self._path)

    def append(
        self,
        *,
        ts_ms: int,
        run_id: str,
        chain: str,
        state: str,
        ok: bool,
        operation: str | None = None,
        error_code: str | None = None,
        tx_hash: str | None = None,
        summary: Dict[str, Any] | None = None,
    ) -> None:
        conn = self._get_conn()
        if conn is None:
            return
        payload = json.dumps(summary or {}, sort_keys=True, default=str)
        with self._lock:
            conn.execute(
                """
                INSERT INTO pipeline_events(
                    ts_ms, run_id, chain, operation, state, ok, error_code, tx_hash, summary_json
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    int(ts_ms),
                    str(run_id),
                    str(chain),
                    operation,
                    str(state),
                    1 if ok else 0,
                    error_code,
                    tx_hash,
                    payload,
                ),
            )
            conn.commit()

    def recent(self, limit: int = 50) -> List[Dict[str, Any]]:
        conn = self._get_conn()
        if conn is None:
            return []
        with self._lock:
            rows = conn.execute(
                """
                SELECT ts_ms, run_id, chain, operation, state, ok, error_code, tx_hash, summary_json
                FROM pipeline_events ORDER BY id DESC LIMIT ?
                """,
                (int(limit),),
            ).fetchall()
        out: List[Dict[str, Any]] = []
        for ts, run_id, chain, op, state, ok, code, tx_hash, summary in rows:
            out.append(
                {
                    "ts_ms": ts,
                    "run_id": run_id,
                    "chain": chain,
                    "operation": op,
                    "state": state,
                    "ok": bool(ok),
                    "error_code": code,
                    "tx_hash": tx_hash,
                    "summary": json.loads(summary),
                }
            )
        return out

    def _get_conn(self) -> Optional[sqlite3.Connection]:
        if not self._path:
            return None
        with self._lock:
            if self._conn is None:
                self._conn = sqlite3.connect(self._path, check_same_thread=False)
                self._conn.execute("PRAGMA journal_mode=WAL;")
                self._conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS pipeline_events(
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        ts_ms INTEGER NOT NULL,
                        run_id TEXT NOT NULL,
                        chain TEXT NOT NULL,
                        operation TEXT,
                        state TEXT NOT NULL,
                        ok INTEGER NOT NULL,
                        error_code TEXT,
                        tx_hash TEXT,
                        summary_json TEXT NOT NULL
                    )
                    """
                )
                self._conn.commit()
            return self._conn


def now_ms() -> int:
    return int(time.time() * 1000)
