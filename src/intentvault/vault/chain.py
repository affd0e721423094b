"""
In-process host chain.

Models the parts of the settlement chain the vault relies on:

- accounts with plaintext lamport balances and program-owned data
- signed transactions (Ed25519 over the canonical transaction message)
- per-transaction atomicity: every account and lamport mutation of a
  transaction is rolled back when any instruction fails
- transactions touching the same writable accounts are serialized through
  per-account locks taken in sorted order; disjoint transactions run in parallel
"""

from __future__ import annotations

import copy
import hashlib
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from intentvault.protocol.errors import ChainError, SettlementError
from intentvault.security.signing import Keypair, verify_signature
from intentvault.utils.json import canonical_json
from intentvault.utils.timestamps import now_ms

logger = logging.getLogger(__name__)

SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"


@dataclass(frozen=True)
class AccountMeta:
    address: str
    is_signer: bool = False
    is_writable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"address": self.address, "isSigner": self.is_signer, "isWritable": self.is_writable}


@dataclass(frozen=True)
class Instruction:
    program_id: str
    name: str
    accounts: List[AccountMeta]
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "programId": self.program_id,
            "name": self.name,
            "accounts": [a.to_dict() for a in self.accounts],
            "data": self.data,
        }


def system_transfer(source: str, destination: str, lamports: int) -> Instruction:
    return Instruction(
        program_id=SYSTEM_PROGRAM_ID,
        name="transfer",
        accounts=[
            AccountMeta(source, is_signer=True, is_writable=True),
            AccountMeta(destination, is_writable=True),
        ],
        data={"lamports": lamports},
    )


class Transaction:
    def __init__(self, instructions: Iterable[Instruction], fee_payer: str):
        self.instructions = list(instructions)
        self.fee_payer = fee_payer
        self.recent_nonce = os.urandom(16).hex()
        self.signatures: Dict[str, str] = {}

    def message(self) -> bytes:
        return canonical_json({
            "feePayer": self.fee_payer,
            "recentNonce": self.recent_nonce,
            "instructions": [ix.to_dict() for ix in self.instructions],
        })

    @property
    def tx_id(self) -> str:
        return hashlib.sha256(self.message()).hexdigest()

    def sign(self, *keypairs: Keypair) -> "Transaction":
        message = self.message()
        for kp in keypairs:
            self.signatures[kp.address] = kp.sign(message).hex()
        return self

    def required_signers(self) -> List[str]:
        signers = {self.fee_payer}
        for ix in self.instructions:
            signers.update(a.address for a in ix.accounts if a.is_signer)
        return sorted(signers)


class Program(Protocol):
    program_id: str

    def process(self, ctx: "InstructionContext", ix: Instruction) -> None:
        ...


class InstructionContext:
    """
    View of the chain handed to a program while it processes one instruction.
    Only accounts declared by the instruction are reachable.
    """

    def __init__(self, chain: "LocalChain", ix: Instruction, signers: Iterable[str]):
        self._chain = chain
        self._ix = ix
        self._declared = {a.address: a for a in ix.accounts}
        self.signers = frozenset(signers)
        self.program_id = ix.program_id
        self.now_ms = chain.now_ms()

    def account(self, index: int) -> AccountMeta:
        try:
            return self._ix.accounts[index]
        except IndexError:
            raise ChainError(f"Instruction {self._ix.name} is missing account #{index}")

    def _check(self, address: str, writable: bool = False) -> None:
        meta = self._declared.get(address)
        if meta is None:
            raise ChainError(f"Account {address[:16]} not declared by instruction")
        if writable and not meta.is_writable:
            raise ChainError(f"Account {address[:16]} is not writable")

    def is_signer(self, address: str) -> bool:
        return address in self.signers and self._declared.get(address, AccountMeta("")).is_signer

    def get_data(self, address: str) -> Any:
        self._check(address)
        return self._chain._data.get(address)

    def set_data(self, address: str, data: Any) -> None:
        self._check(address, writable=True)
        owner = self._chain._owners.get(address)
        if owner is not None and owner != self.program_id:
            raise ChainError(f"Account {address[:16]} is owned by another program")
        self._chain._owners[address] = self.program_id
        self._chain._data[address] = data

    def lamports(self, address: str) -> int:
        self._check(address)
        return self._chain._lamports.get(address, 0)

    def transfer(self, source: str, destination: str, amount: int) -> None:
        self._check(source, writable=True)
        self._check(destination, writable=True)
        if amount < 0:
            raise ChainError("Transfer amount must be non-negative")
        owner = self._chain._owners.get(source)
        if source not in self.signers and owner != self.program_id:
            raise ChainError(f"Account {source[:16]} did not authorize the debit")
        balance = self._chain._lamports.get(source, 0)
        if balance < amount:
            raise ChainError(
                f"Insufficient lamports in {source[:16]}: has {balance}, needs {amount}"
            )
        self._chain._lamports[source] = balance - amount
        self._chain._lamports[destination] = self._chain._lamports.get(destination, 0) + amount


class _SystemProgram:
    program_id = SYSTEM_PROGRAM_ID

    def process(self, ctx: InstructionContext, ix: Instruction) -> None:
        if ix.name != "transfer":
            raise ChainError(f"Unknown system instruction {ix.name!r}")
        ctx.transfer(ctx.account(0).address, ctx.account(1).address, int(ix.data["lamports"]))


class LocalChain:
    def __init__(self, clock: Callable[[], int] = now_ms):
        self._clock = clock
        self._data: Dict[str, Any] = {}
        self._owners: Dict[str, str] = {}
        self._lamports: Dict[str, int] = {}
        self._programs: Dict[str, Program] = {SYSTEM_PROGRAM_ID: _SystemProgram()}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._log: List[Dict[str, Any]] = []

    def now_ms(self) -> int:
        return self._clock()

    # --- programs & funding ---------------------------------------------

    def register_program(self, program: Program) -> None:
        self._programs[program.program_id] = program

    def airdrop(self, address: str, lamports: int) -> None:
        with self._account_locks([address]):
            self._lamports[address] = self._lamports.get(address, 0) + lamports

    # --- reads -------------------------------------------------------------

    def get_balance(self, address: str) -> int:
        return self._lamports.get(address, 0)

    def get_account_data(self, address: str) -> Any:
        """Snapshot copy of the account data, or None."""
        data = self._data.get(address)
        return copy.deepcopy(data) if data is not None else None

    def total_lamports(self) -> int:
        return sum(self._lamports.values())

    # --- writes ------------------------------------------------------------

    def _lock_for(self, address: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(address)
            if lock is None:
                lock = self._locks[address] = threading.Lock()
            return lock

    class _Locked:
        def __init__(self, locks: List[threading.Lock]):
            self._locks = locks

        def __enter__(self):
            for lock in self._locks:
                lock.acquire()

        def __exit__(self, *exc):
            for lock in reversed(self._locks):
                lock.release()

    def _account_locks(self, addresses: Iterable[str]) -> "LocalChain._Locked":
        return LocalChain._Locked([self._lock_for(a) for a in sorted(set(addresses))])

    def _verify_signatures(self, tx: Transaction) -> None:
        message = tx.message()
        for signer in tx.required_signers():
            sig = tx.signatures.get(signer)
            if sig is None:
                raise ChainError(f"Missing signature for {signer[:16]}", tx_id=tx.tx_id)
            if not verify_signature(signer, message, sig):
                raise ChainError(f"Invalid transaction signature for {signer[:16]}", tx_id=tx.tx_id)

    def send_transaction(self, tx: Transaction) -> str:
        """
        Execute all instructions of ``tx`` atomically. Returns the tx id.

        Program errors derived from SettlementError propagate unchanged
        (with the tx id attached where the error carries one); anything
        else is reported as ChainError.
        """
        tx_id = tx.tx_id
        self._verify_signatures(tx)

        touched = {tx.fee_payer}
        for ix in tx.instructions:
            touched.update(a.address for a in ix.accounts)

        with self._account_locks(touched):
            data_snapshot = {a: copy.deepcopy(self._data[a]) for a in touched if a in self._data}
            owner_snapshot = {a: self._owners[a] for a in touched if a in self._owners}
            lamport_snapshot = {a: self._lamports[a] for a in touched if a in self._lamports}
            signers = set(tx.required_signers())

            try:
                for ix in tx.instructions:
                    program = self._programs.get(ix.program_id)
                    if program is None:
                        raise ChainError(f"Unknown program {ix.program_id}")
                    program.process(InstructionContext(self, ix, signers), ix)
            except Exception as e:
                self._restore(touched, data_snapshot, owner_snapshot, lamport_snapshot)
                logger.info("Transaction %s rolled back: %s", tx_id[:16], e)
                self._log.append({"txId": tx_id, "ok": False, "error": str(e)})
                if isinstance(e, SettlementError):
                    if hasattr(e, "tx_id") and getattr(e, "tx_id") is None:
                        e.tx_id = tx_id
                    raise
                raise ChainError(f"Transaction failed: {e}", tx_id=tx_id) from e

        self._log.append({"txId": tx_id, "ok": True, "error": None})
        logger.debug("Transaction %s committed (%d instructions)", tx_id[:16], len(tx.instructions))
        return tx_id

    def _restore(
        self,
        touched: Iterable[str],
        data: Dict[str, Any],
        owners: Dict[str, str],
        lamports: Dict[str, int],
    ) -> None:
        for address in touched:
            if address in data:
                self._data[address] = data[address]
            else:
                self._data.pop(address, None)
            if address in owners:
                self._owners[address] = owners[address]
            else:
                self._owners.pop(address, None)
            if address in lamports:
                self._lamports[address] = lamports[address]
            else:
                self._lamports.pop(address, None)

    def transfer(self, source: Keypair, destination: str, lamports: int) -> str:
        tx = Transaction([system_transfer(source.address, destination, lamports)], fee_payer=source.address)
        return self.send_transaction(tx.sign(source))

    def find_transaction(self, tx_id: str) -> Optional[Dict[str, Any]]:
        for entry in self._log:
            if entry["txId"] == tx_id:
                return dict(entry)
        return None
