import json
import sqlite3
import time
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .chain import decimal_to_str
from .models import (
    DevTransferStats,
    Deployment,
    HolderSnapshot,
    ScanCheckpoint,
    VOLUME_WINDOWS,
    VolumeSnapshot,
    holder_history,
    volume_history,
)

_DECIMAL_FIELDS = {"initial_buy_amount", "market_cap", "dev_sold_amount"}
_PLAIN_FIELDS = {
    "token_name",
    "deployer_address",
    "block_number",
    "created_at",
    "ens_name",
    "holder_count",
    "last_holder_check_at",
    "last_transfer_check_at",
}
_BOOL_FIELDS = {"dev_sold", "is_pruned"}
_JSON_FIELDS = {"links", "farcaster_data"}
_VOLUME_COLUMNS = {name: f"volume_{name}" for name in VOLUME_WINDOWS}


def _dec(value: Optional[str]) -> Decimal:
    if value is None or value == "":
        return Decimal(0)
    return Decimal(value)


class Storage:
    def __init__(self, db_path: str):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(db_path)
        self.conn.row_factory = sqlite3.Row
        self._init_schema()

    def close(self) -> None:
        self.conn.close()

    def _init_schema(self) -> None:
        cur = self.conn.cursor()
        cur.executescript(
            """
            PRAGMA journal_mode=WAL;
            PRAGMA synchronous=NORMAL;

            CREATE TABLE IF NOT EXISTS deployments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tx_hash TEXT NOT NULL UNIQUE,
                token_address TEXT,
                token_name TEXT NOT NULL DEFAULT 'Unknown',
                block_number INTEGER NOT NULL,
                created_at INTEGER NOT NULL,
                deployer_address TEXT NOT NULL,
                ens_name TEXT,
                initial_buy_amount TEXT NOT NULL DEFAULT '0',
                holder_count INTEGER NOT NULL DEFAULT 0,
                holder_history TEXT NOT NULL DEFAULT '[]',
                last_holder_check_at INTEGER,
                volume_1h TEXT NOT NULL DEFAULT '0',
                volume_6h TEXT NOT NULL DEFAULT '0',
                volume_24h TEXT NOT NULL DEFAULT '0',
                volume_7d TEXT NOT NULL DEFAULT '0',
                volume_history TEXT NOT NULL DEFAULT '[]',
                market_cap TEXT NOT NULL DEFAULT '0',
                dev_sold INTEGER NOT NULL DEFAULT 0,
                dev_sold_amount TEXT NOT NULL DEFAULT '0',
                dev_transfer_count INTEGER NOT NULL DEFAULT 0,
                dev_transferred_out TEXT NOT NULL DEFAULT '0',
                dev_transferred_in TEXT NOT NULL DEFAULT '0',
                last_transfer_check_at INTEGER,
                is_pruned INTEGER NOT NULL DEFAULT 0,
                links TEXT NOT NULL DEFAULT '{}',
                farcaster_data TEXT,
                inserted_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_deployments_token_address
                ON deployments(token_address) WHERE token_address IS NOT NULL;
            CREATE INDEX IF NOT EXISTS idx_deployments_created_at
                ON deployments(created_at DESC);
            CREATE INDEX IF NOT EXISTS idx_deployments_deployer
                ON deployments(deployer_address);

            CREATE TABLE IF NOT EXISTS system_state (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at INTEGER NOT NULL
            );
            """
        )
        self.conn.commit()

    def get_state(self, key: str) -> Optional[str]:
        cur = self.conn.execute("SELECT value FROM system_state WHERE key = ?", (key,))
        row = cur.fetchone()
        return row["value"] if row else None

    def set_state(self, key: str, value: str, commit: bool = True) -> None:
        now = int(time.time())
        self.conn.execute(
            """
            INSERT INTO system_state(key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (key, value, now),
        )
        if commit:
            self.conn.commit()

    def save_checkpoint(self, state: ScanCheckpoint) -> None:
        with self.conn:
            if state.last_scanned_block is not None:
                self.set_state("last_scanned_block", str(state.last_scanned_block), commit=False)
            self.set_state(
                "catch_up_mode_active", "1" if state.catch_up_mode_active else "0", commit=False
            )

    def load_checkpoint(self) -> ScanCheckpoint:
        last_raw = self.get_state("last_scanned_block")
        catch_up_raw = self.get_state("catch_up_mode_active")
        return ScanCheckpoint(
            last_scanned_block=int(last_raw) if last_raw else None,
            catch_up_mode_active=catch_up_raw != "0",
        )

    def upsert_deployment(self, dep: Deployment) -> bool:
        """Insert the record once; a second record with the same tx hash or token address is ignored."""
        now = int(time.time())
        cur = self.conn.execute(
            """
            INSERT OR IGNORE INTO deployments(
                tx_hash, token_address, token_name, block_number, created_at,
                deployer_address, ens_name, initial_buy_amount, holder_count,
                holder_history, last_holder_check_at, volume_1h, volume_6h,
                volume_24h, volume_7d, volume_history, market_cap, dev_sold,
                dev_sold_amount, dev_transfer_count, dev_transferred_out,
                dev_transferred_in, last_transfer_check_at, is_pruned, links,
                farcaster_data, inserted_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                dep.tx_hash.lower(),
                dep.token_address,
                dep.token_name,
                dep.block_number,
                dep.created_at,
                dep.deployer_address,
                dep.ens_name,
                decimal_to_str(dep.initial_buy_amount),
                dep.holder_count,
                self._history_json(dep.holder_history),
                dep.last_holder_check_at,
                decimal_to_str(dep.volume_by_window.get("1h", Decimal(0))),
                decimal_to_str(dep.volume_by_window.get("6h", Decimal(0))),
                decimal_to_str(dep.volume_by_window.get("24h", Decimal(0))),
                decimal_to_str(dep.volume_by_window.get("7d", Decimal(0))),
                self._history_json(dep.volume_history),
                decimal_to_str(dep.market_cap),
                int(dep.dev_sold),
                decimal_to_str(dep.dev_sold_amount),
                dep.dev_transfer_stats.transfer_count,
                decimal_to_str(dep.dev_transfer_stats.transferred_out),
                decimal_to_str(dep.dev_transfer_stats.transferred_in),
                dep.last_transfer_check_at,
                int(dep.is_pruned),
                json.dumps(dep.links),
                json.dumps(dep.farcaster_data) if dep.farcaster_data is not None else None,
                now,
                now,
            ),
        )
        self.conn.commit()
        return cur.rowcount == 1

    def has_deployment(
        self, tx_hash: Optional[str] = None, token_address: Optional[str] = None
    ) -> bool:
        if tx_hash:
            row = self.conn.execute(
                "SELECT 1 FROM deployments WHERE tx_hash = ?", (tx_hash.lower(),)
            ).fetchone()
            if row:
                return True
        if token_address:
            row = self.conn.execute(
                "SELECT 1 FROM deployments WHERE token_address = ?", (token_address.lower(),)
            ).fetchone()
            if row:
                return True
        return False

    def get_deployment(self, tx_hash: str) -> Optional[Deployment]:
        row = self.conn.execute(
            "SELECT * FROM deployments WHERE tx_hash = ?", (tx_hash.lower(),)
        ).fetchone()
        return self._row_to_deployment(row) if row else None

    def get_all_deployments(self) -> List[Deployment]:
        rows = self.conn.execute(
            """
            SELECT *
            FROM deployments
            ORDER BY created_at DESC, block_number DESC, id DESC
            """
        ).fetchall()
        return [self._row_to_deployment(r) for r in rows]

    def get_latest_deployment(self) -> Optional[Deployment]:
        row = self.conn.execute(
            """
            SELECT *
            FROM deployments
            ORDER BY created_at DESC, block_number DESC, id DESC
            LIMIT 1
            """
        ).fetchone()
        return self._row_to_deployment(row) if row else None

    def count_deployments(self) -> int:
        row = self.conn.execute("SELECT COUNT(*) AS c FROM deployments").fetchone()
        return int(row["c"] if row else 0)

    def update_deployment_fields(self, tx_hash: str, fields: Dict[str, Any]) -> bool:
        if not fields:
            return False
        assignments: List[str] = []
        params: List[Any] = []
        for name, value in fields.items():
            for column, sql, param in self._field_columns(name, value):
                assignments.append(f"{column} = {sql}")
                params.append(param)
        assignments.append("updated_at = ?")
        params.append(int(time.time()))
        params.append(tx_hash.lower())
        cur = self.conn.execute(
            f"UPDATE deployments SET {', '.join(assignments)} WHERE tx_hash = ?",
            params,
        )
        self.conn.commit()
        return cur.rowcount == 1

    def _field_columns(self, name: str, value: Any) -> List[Tuple[str, str, Any]]:
        if name == "token_address":
            # settable only while unresolved
            return [("token_address", "COALESCE(token_address, ?)", value)]
        if name in _PLAIN_FIELDS:
            return [(name, "?", value)]
        if name in _DECIMAL_FIELDS:
            return [(name, "?", decimal_to_str(Decimal(value)))]
        if name in _BOOL_FIELDS:
            return [(name, "?", int(bool(value)))]
        if name in _JSON_FIELDS:
            return [(name, "?", json.dumps(value) if value is not None else None)]
        if name in ("holder_history", "volume_history"):
            return [(name, "?", self._history_json(value))]
        if name == "volume_by_window":
            out = []
            for window, amount in value.items():
                column = _VOLUME_COLUMNS.get(window)
                if column is None:
                    raise ValueError(f"unknown volume window: {window}")
                out.append((column, "?", decimal_to_str(Decimal(amount))))
            return out
        if name == "dev_transfer_stats":
            return [
                ("dev_transfer_count", "?", value.transfer_count),
                ("dev_transferred_out", "?", decimal_to_str(value.transferred_out)),
                ("dev_transferred_in", "?", decimal_to_str(value.transferred_in)),
            ]
        raise ValueError(f"unknown deployment field: {name}")

    @staticmethod
    def _history_json(history: Any) -> str:
        out = []
        for item in history:
            if isinstance(item, HolderSnapshot):
                out.append({"count": item.count, "timestamp": item.observed_at})
            elif isinstance(item, VolumeSnapshot):
                out.append({"volume": decimal_to_str(item.volume), "timestamp": item.observed_at})
            else:
                raise ValueError(f"unsupported history entry: {item!r}")
        return json.dumps(out)

    @staticmethod
    def _row_to_deployment(row: sqlite3.Row) -> Deployment:
        holders = [
            HolderSnapshot(count=int(x["count"]), observed_at=int(x["timestamp"]))
            for x in json.loads(row["holder_history"] or "[]")
        ]
        volumes = [
            VolumeSnapshot(volume=_dec(x["volume"]), observed_at=int(x["timestamp"]))
            for x in json.loads(row["volume_history"] or "[]")
        ]
        farcaster_raw = row["farcaster_data"]
        return Deployment(
            tx_hash=row["tx_hash"],
            token_address=row["token_address"],
            token_name=row["token_name"],
            block_number=int(row["block_number"]),
            created_at=int(row["created_at"]),
            deployer_address=row["deployer_address"],
            ens_name=row["ens_name"],
            initial_buy_amount=_dec(row["initial_buy_amount"]),
            holder_count=int(row["holder_count"]),
            holder_history=holder_history(holders),
            last_holder_check_at=row["last_holder_check_at"],
            volume_by_window={
                name: _dec(row[column]) for name, column in _VOLUME_COLUMNS.items()
            },
            volume_history=volume_history(volumes),
            market_cap=_dec(row["market_cap"]),
            dev_sold=bool(row["dev_sold"]),
            dev_sold_amount=_dec(row["dev_sold_amount"]),
            dev_transfer_stats=DevTransferStats(
                transfer_count=int(row["dev_transfer_count"]),
                transferred_out=_dec(row["dev_transferred_out"]),
                transferred_in=_dec(row["dev_transferred_in"]),
            ),
            last_transfer_check_at=row["last_transfer_check_at"],
            is_pruned=bool(row["is_pruned"]),
            links=json.loads(row["links"] or "{}"),
            farcaster_data=json.loads(farcaster_raw) if farcaster_raw else None,
        )
