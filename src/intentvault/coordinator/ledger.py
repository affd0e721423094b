"""
Idempotency ledger for settlements.

One record per (user, nonce), persisted as an append-only, hash-chained
JSONL log: every status transition appends a full record snapshot. The
in-memory index is rebuilt from the log on startup, so a restarted
coordinator knows which intents were reserved, finalized or failed.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from intentvault.protocol.enums import IntentStatus
from intentvault.utils.timestamps import now_iso, now_ms

logger = logging.getLogger(__name__)

LEDGER_VERSION = "1.0"


@dataclass(frozen=True)
class IntentRecord:
    user: str
    nonce: int
    intent_hash: str
    status: IntentStatus
    amount: int = 0
    input_mint: Optional[str] = None
    output_mint: Optional[str] = None
    reserve_tx: Optional[str] = None
    swap_tx: Optional[str] = None
    output_tx: Optional[str] = None
    refund_tx: Optional[str] = None
    amount_out: Optional[int] = None
    error: Optional[str] = None
    updated_at: int = 0

    @property
    def key(self) -> Tuple[str, int]:
        return (self.user, self.nonce)

    def transition(self, status: IntentStatus, **changes: Any) -> "IntentRecord":
        return replace(self, status=status, updated_at=now_ms(), **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user": self.user,
            "nonce": self.nonce,
            "intentHash": self.intent_hash,
            "status": self.status.value,
            "amount": self.amount,
            "inputMint": self.input_mint,
            "outputMint": self.output_mint,
            "reserveTx": self.reserve_tx,
            "swapTx": self.swap_tx,
            "outputTx": self.output_tx,
            "refundTx": self.refund_tx,
            "amountOut": self.amount_out,
            "error": self.error,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IntentRecord":
        return cls(
            user=data["user"],
            nonce=int(data["nonce"]),
            intent_hash=data["intentHash"],
            status=IntentStatus(data["status"]),
            amount=int(data.get("amount") or 0),
            input_mint=data.get("inputMint"),
            output_mint=data.get("outputMint"),
            reserve_tx=data.get("reserveTx"),
            swap_tx=data.get("swapTx"),
            output_tx=data.get("outputTx"),
            refund_tx=data.get("refundTx"),
            amount_out=data.get("amountOut"),
            error=data.get("error"),
            updated_at=int(data.get("updatedAt") or 0),
        )


def _entry_hash(entry: Dict[str, Any]) -> str:
    data = json.dumps(entry, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(data).hexdigest()


class IntentLedger:
    """
    ``path=None`` keeps the ledger in memory only (tests, ephemeral dev runs).
    """

    def __init__(self, path: Optional[str] = None, *, sync: bool = True) -> None:
        self._path = Path(path) if path else None
        self._sync = sync
        self._lock = threading.Lock()
        self._seq = 0
        self._last_hash: Optional[str] = None
        self._records: Dict[Tuple[str, int], IntentRecord] = {}

        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._resume_from_existing()

    def _resume_from_existing(self) -> None:
        if not self._path.exists():
            return
        valid_bytes = 0
        ends_with_newline = True
        with open(self._path, "rb") as f:
            for raw in f:
                if raw.strip():
                    try:
                        entry = json.loads(raw)
                    except ValueError:
                        logger.warning("Truncating corrupted ledger tail after seq=%s", self._seq)
                        break
                    self._seq = entry.get("seq", self._seq)
                    self._last_hash = entry.get("entry_hash")
                    record = IntentRecord.from_dict(entry["record"])
                    self._records[record.key] = record
                valid_bytes += len(raw)
                ends_with_newline = raw.endswith(b"\n")

        # appends must start on a fresh line after a torn write
        with open(self._path, "r+b") as f:
            f.truncate(valid_bytes)
            if not ends_with_newline:
                f.seek(0, os.SEEK_END)
                f.write(b"\n")
        if self._records:
            logger.info("Ledger resumed with %d intent records", len(self._records))

    def _read_entries(self) -> List[Dict[str, Any]]:
        entries: List[Dict[str, Any]] = []
        if self._path is None or not self._path.exists():
            return entries
        with open(self._path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.warning("Stopping at corrupted ledger entry after %d entries", len(entries))
                    break
        return entries

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------
    def get(self, user: str, nonce: int) -> Optional[IntentRecord]:
        with self._lock:
            return self._records.get((user, nonce))

    def records(self) -> List[IntentRecord]:
        with self._lock:
            return list(self._records.values())

    def put(self, record: IntentRecord) -> IntentRecord:
        """Persist a record snapshot and make it the current state of its key."""
        with self._lock:
            self._seq += 1
            entry = {
                "seq": self._seq,
                "entry_type": f"intent.{record.status.value}",
                "timestamp_iso": now_iso(),
                "record": record.to_dict(),
                "prev_hash": self._last_hash,
                "version": LEDGER_VERSION,
            }
            entry["entry_hash"] = _entry_hash(entry)

            if self._path is not None:
                line = json.dumps(entry, ensure_ascii=False, sort_keys=True) + "\n"
                with open(self._path, "a", encoding="utf-8") as f:
                    f.write(line)
                    f.flush()
                    if self._sync:
                        os.fsync(f.fileno())

            self._last_hash = entry["entry_hash"]
            self._records[record.key] = record
            logger.debug("Ledger %s user=%s nonce=%d", entry["entry_type"], record.user[:16], record.nonce)
            return record

    def verify_integrity(self) -> Tuple[bool, Optional[str]]:
        """(True, None) if the on-disk hash chain is intact, else (False, reason)."""
        prev_hash = None
        for entry in self._read_entries():
            if entry.get("prev_hash") != prev_hash:
                return False, f"Hash chain broken at seq={entry.get('seq')}"
            stored = entry.pop("entry_hash", None)
            if stored != _entry_hash(entry):
                return False, f"Entry hash mismatch at seq={entry.get('seq')}"
            prev_hash = stored
        return True, None
