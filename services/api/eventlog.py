from __future__ import annotations

import json
import os
import sqlite3
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from services.api.logging_config import get_logger

logger = get_logger("api.eventlog")

DATA_DIR = Path(os.getenv("DATA_DIR", str(Path(__file__).resolve().parents[2] / "data")))
DB_PATH = Path(os.getenv("POOL_EVENTS_DB", str(DATA_DIR / "pool_events.db")))

# Amounts are wei and can exceed SQLite's 64-bit INTEGER, so they are stored as TEXT.
DDL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS tx_log(
  id TEXT PRIMARY KEY,
  kind TEXT NOT NULL,
  ts TEXT NOT NULL,
  payload TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pools(
  pool_id TEXT PRIMARY KEY,
  creator TEXT NOT NULL,
  entry_fee TEXT NOT NULL,
  player_count INTEGER NOT NULL DEFAULT 0,
  pick_nova INTEGER NOT NULL DEFAULT 0,
  pick_pulse INTEGER NOT NULL DEFAULT 0,
  pick_flux INTEGER NOT NULL DEFAULT 0,
  status TEXT NOT NULL,
  winning_choice INTEGER,
  paid_out TEXT NOT NULL DEFAULT '0',
  updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS claims(
  pool_id TEXT NOT NULL,
  participant TEXT NOT NULL,
  kind TEXT NOT NULL,
  amount TEXT NOT NULL,
  claimed_at TEXT NOT NULL,
  PRIMARY KEY (pool_id, participant)
);

CREATE TABLE IF NOT EXISTS metrics(
  epoch INTEGER PRIMARY KEY,
  entries_count INTEGER NOT NULL DEFAULT 0,
  claims_count INTEGER NOT NULL DEFAULT 0,
  updated_at TEXT NOT NULL
);
"""

_PICK_COLUMNS = ("pick_nova", "pick_pulse", "pick_flux")


# ---------- storage ----------
def _conn(db_path: Optional[Path] = None) -> sqlite3.Connection:
    p = Path(db_path or DB_PATH)
    p.parent.mkdir(parents=True, exist_ok=True)
    return sqlite3.connect(p)


def _init(db_path: Optional[Path] = None) -> None:
    with _conn(db_path) as cx:
        cx.executescript(DDL)


def _now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _epoch() -> int:
    """Minute-bucket epoch for metrics."""
    return int(time.time() // 60)


def _natural_id(kind: str, payload: Dict[str, Any]) -> str:
    """Ids that make re-appending the same engine event a no-op."""
    pid = payload.get("pool_id", "")
    if kind in ("PoolCreated", "PoolSettled", "PoolCancelled"):
        return f"{kind}:{pid}"
    if kind in ("EntryPlaced", "PrizeClaimed", "RefundClaimed"):
        return f"{kind}:{pid}:{payload.get('participant', '')}"
    if kind == "SettlementRequested":
        return f"{kind}:{payload.get('request_id', '')}"
    return str(uuid.uuid4())


# ---------- projection ----------
def _touch_metrics(cx: sqlite3.Connection, epoch: int) -> None:
    now = _now()
    cx.execute(
        "INSERT OR IGNORE INTO metrics(epoch,entries_count,claims_count,updated_at) VALUES(?,?,?,?)",
        (epoch, 0, 0, now),
    )
    cx.execute("UPDATE metrics SET updated_at=? WHERE epoch=?", (now, epoch))


def _add_paid_out(cx: sqlite3.Connection, pool_id: str, amount: int, ts: str) -> None:
    row = cx.execute("SELECT paid_out FROM pools WHERE pool_id=?", (pool_id,)).fetchone()
    if row is None:
        return
    cx.execute(
        "UPDATE pools SET paid_out=?, updated_at=? WHERE pool_id=?",
        (str(int(row[0]) + int(amount)), ts, pool_id),
    )


def apply_event_row(cx: sqlite3.Connection, kind: str, payload: Dict[str, Any]) -> None:
    ts = payload.get("ts") or _now()

    if kind == "PoolCreated":
        cx.execute(
            "INSERT OR REPLACE INTO pools(pool_id,creator,entry_fee,status,updated_at) VALUES(?,?,?,?,?)",
            (payload["pool_id"], payload["creator"], str(int(payload["entry_fee"])), "open", ts),
        )
        return

    if kind == "EntryPlaced":
        col = _PICK_COLUMNS[int(payload["choice"])]
        cx.execute(
            f"UPDATE pools SET player_count = player_count + 1, {col} = {col} + 1, updated_at=? WHERE pool_id=?",
            (ts, payload["pool_id"]),
        )
        epoch = int(payload.get("epoch", _epoch()))
        _touch_metrics(cx, epoch)
        cx.execute("UPDATE metrics SET entries_count = entries_count + 1 WHERE epoch=?", (epoch,))
        return

    if kind == "SettlementRequested":
        cx.execute(
            "UPDATE pools SET status='settling', updated_at=? WHERE pool_id=?", (ts, payload["pool_id"])
        )
        return

    if kind == "PoolSettled":
        status = "push" if payload.get("push") else "settled"
        cx.execute(
            "UPDATE pools SET status=?, winning_choice=?, updated_at=? WHERE pool_id=?",
            (status, payload.get("winning_choice"), ts, payload["pool_id"]),
        )
        return

    if kind == "PoolCancelled":
        cx.execute(
            "UPDATE pools SET status='cancelled', updated_at=? WHERE pool_id=?", (ts, payload["pool_id"])
        )
        return

    if kind in ("PrizeClaimed", "RefundClaimed"):
        cx.execute(
            "INSERT OR IGNORE INTO claims(pool_id,participant,kind,amount,claimed_at) VALUES(?,?,?,?,?)",
            (
                payload["pool_id"],
                payload["participant"],
                "prize" if kind == "PrizeClaimed" else "refund",
                str(int(payload["amount"])),
                ts,
            ),
        )
        _add_paid_out(cx, payload["pool_id"], int(payload["amount"]), ts)
        epoch = int(payload.get("epoch", _epoch()))
        _touch_metrics(cx, epoch)
        cx.execute("UPDATE metrics SET claims_count = claims_count + 1 WHERE epoch=?", (epoch,))
        return

    if kind == "TreasuryWithdrawn":
        return

    raise ValueError(f"Unknown event kind: {kind}")


# ---------- public ----------
def append_event(kind: str, db_path: Optional[Path] = None, **payload) -> str:
    _init(db_path)
    event_id = payload.get("event_id") or _natural_id(kind, payload)
    ts = payload.get("ts") or _now()
    row = {"event_id": event_id, "kind": kind, "ts": ts, "epoch": payload.get("epoch", _epoch()), **payload}
    blob = json.dumps(row, separators=(",", ":"), default=str)
    with _conn(db_path) as cx:
        if cx.execute("SELECT 1 FROM tx_log WHERE id=?", (event_id,)).fetchone():
            return event_id
        cx.execute("INSERT INTO tx_log(id,kind,ts,payload) VALUES(?,?,?,?)", (event_id, kind, ts, blob))
        apply_event_row(cx, kind, row)
    return event_id


def sink(db_path: Optional[Path] = None):
    """Engine event sink writing into the log at `db_path`."""
    def _sink(kind: str, payload: Dict[str, Any]) -> None:
        append_event(kind, db_path=db_path, **payload)
    return _sink


def replay(db_path: Optional[Path] = None) -> int:
    """Drop the projection and rebuild it from tx_log in insertion order."""
    _init(db_path)
    with _conn(db_path) as cx:
        cx.execute("DELETE FROM pools")
        cx.execute("DELETE FROM claims")
        cx.execute("DELETE FROM metrics")
        rows: Iterable[Tuple[str, str]] = cx.execute(
            "SELECT kind, payload FROM tx_log ORDER BY rowid ASC"
        ).fetchall()
        n = 0
        for kind, payload in rows:
            apply_event_row(cx, kind, json.loads(payload))
            n += 1
    logger.info(f"replayed {n} events")
    return n


def recent_events(limit: int = 100, pool_id: Optional[str] = None, db_path: Optional[Path] = None) -> List[dict]:
    _init(db_path)
    with _conn(db_path) as cx:
        if pool_id:
            rows = cx.execute(
                "SELECT payload FROM tx_log WHERE json_extract(payload, '$.pool_id') = ? "
                "ORDER BY rowid DESC LIMIT ?",
                (pool_id, int(limit)),
            ).fetchall()
        else:
            rows = cx.execute(
                "SELECT payload FROM tx_log ORDER BY rowid DESC LIMIT ?", (int(limit),)
            ).fetchall()
    return [json.loads(r[0]) for r in rows]


def pool_summary(pool_id: str, db_path: Optional[Path] = None) -> Optional[dict]:
    _init(db_path)
    with _conn(db_path) as cx:
        cx.row_factory = sqlite3.Row
        row = cx.execute("SELECT * FROM pools WHERE pool_id=?", (pool_id,)).fetchone()
    return dict(row) if row else None


def metrics_all(db_path: Optional[Path] = None) -> List[Tuple[int, int, int, str]]:
    _init(db_path)
    with _conn(db_path) as cx:
        return cx.execute(
            "SELECT epoch, entries_count, claims_count, updated_at FROM metrics ORDER BY epoch"
        ).fetchall()


__all__ = [
    "DB_PATH",
    "apply_event_row",
    "append_event",
    "sink",
    "replay",
    "recent_events",
    "pool_summary",
    "metrics_all",
]
