# services/database/txlog.py
from __future__ import annotations

import json
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

DDL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS tx_log(
  id TEXT PRIMARY KEY,
  flow TEXT NOT NULL,
  signature TEXT,
  relayer TEXT,
  status TEXT NOT NULL,
  created_at TEXT NOT NULL,
  details TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS tx_log_flow ON tx_log(flow, created_at);
"""


def _now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class TransactionRecord(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    flow: str = Field(..., description="deposit | withdraw | internal_transfer | external_transfer | create_authorization | settle_authorization | register_identity")
    signature: Optional[str] = Field(None, description="Ledger transaction signature, if submitted.")
    relayer: Optional[str] = Field(None, description="Relayer mode used for submission.")
    status: str = Field("confirmed", description="confirmed | failed")
    created_at: str = Field(default_factory=_now)
    details: Dict[str, Any] = Field(default_factory=dict)


class TransactionLog:
    """Append-only record of finished flows in a sqlite `tx_log` table."""

    def __init__(self, path: Path | str = ":memory:"):
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._cx = sqlite3.connect(self.path, check_same_thread=False)
        self._cx.executescript(DDL)

    def close(self) -> None:
        self._cx.close()

    def append(self, record: TransactionRecord) -> str:
        blob = json.dumps(record.details, separators=(",", ":"), default=str)
        with self._cx:
            if self._cx.execute("SELECT 1 FROM tx_log WHERE id=?", (record.id,)).fetchone():
                return record.id
            self._cx.execute(
                "INSERT INTO tx_log(id,flow,signature,relayer,status,created_at,details) VALUES(?,?,?,?,?,?,?)",
                (record.id, record.flow, record.signature, record.relayer, record.status, record.created_at, blob),
            )
        return record.id

    def records(self, flow: Optional[str] = None) -> List[TransactionRecord]:
        sql = "SELECT id,flow,signature,relayer,status,created_at,details FROM tx_log"
        args: tuple = ()
        if flow:
            sql += " WHERE flow=?"
            args = (flow,)
        sql += " ORDER BY created_at ASC, rowid ASC"
        rows = self._cx.execute(sql, args).fetchall()
        return [
            TransactionRecord(
                id=r[0], flow=r[1], signature=r[2], relayer=r[3], status=r[4],
                created_at=r[5], details=json.loads(r[6]),
            )
            for r in rows
        ]


__all__ = ["TransactionRecord", "TransactionLog"]
