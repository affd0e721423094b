"""
Swap engine boundary.

Routing and AMM math are external; the coordinator only needs "execute a
swap funded from the execution account" and "deliver the output to the user".
SimulatedSwapEngine is the in-process binding used by the dev server and tests.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import hashlib
import logging
import os
import threading
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional, Protocol, Tuple

from intentvault.protocol.errors import SettlementError, SwapError, SwapPending
from intentvault.protocol.models import SwapParams
from intentvault.security.signing import Keypair
from intentvault.vault.chain import LocalChain
from intentvault.vault.accounts import derive_address

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SwapResult:
    tx_id: str
    amount_in: int
    amount_out: int
    output_mint: str
    route: str = "simulated"


class SwapEngine(Protocol):
    async def execute(self, execution: Keypair, swap: SwapParams, reference: str) -> SwapResult:
        ...

    async def reconcile(self, reference: str, timeout: float) -> Optional[SwapResult]:
        """
        Outcome of an earlier ``execute`` for ``reference`` that the caller stopped
        waiting for: the result if it committed, None if it never did. Raises
        SwapPending when it is still in flight after ``timeout`` seconds.
        """
        ...

    async def transfer_output(self, execution: Keypair, user: str, result: SwapResult) -> str:
        ...


class SimulatedSwapEngine:
    """
    Pays ``amount_in`` lamports from the execution account into a pool address
    on the local chain and credits ``amount_in * price`` of the output mint.
    ``fail_next`` makes the next swap raise SwapError.

    The pool transfer keeps running when the caller stops waiting for it. Its
    outcome stays available to ``reconcile`` under the swap reference.
    """

    def __init__(self, chain: LocalChain, *, price: Decimal = Decimal("1"), delay: float = 0.0):
        self.chain = chain
        self.price = Decimal(price)
        self.delay = delay
        self.fail_next = False
        self._outputs: Dict[Tuple[str, str], int] = {}
        self._swaps: Dict[str, concurrent.futures.Future] = {}
        self._lock = threading.Lock()

    @staticmethod
    def pool_address(swap: SwapParams) -> str:
        return swap.pool_id or derive_address("simulated-amm", swap.input_mint, swap.output_mint)

    async def execute(self, execution: Keypair, swap: SwapParams, reference: str) -> SwapResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_next:
            self.fail_next = False
            raise SwapError("Simulated swap failure")

        amount_out = int(Decimal(swap.amount_in) * self.price * (1 - Decimal(str(swap.slippage)) / 2))
        if amount_out <= 0:
            raise SwapError("Swap output rounds to zero")

        future: concurrent.futures.Future = concurrent.futures.Future()
        with self._lock:
            self._swaps[reference] = future
        try:
            result = await asyncio.to_thread(self._pool_transfer, execution, swap, amount_out, future)
        except Exception:
            self._forget(reference)
            raise
        self._forget(reference)
        logger.info("Simulated swap %s -> %s: in=%d out=%d", swap.input_mint, swap.output_mint, swap.amount_in, amount_out)
        return result

    def _pool_transfer(
        self, execution: Keypair, swap: SwapParams, amount_out: int, future: concurrent.futures.Future
    ) -> SwapResult:
        try:
            tx_id = self.chain.transfer(execution, self.pool_address(swap), swap.amount_in)
        except Exception as e:
            future.set_exception(e)
            raise
        result = SwapResult(tx_id=tx_id, amount_in=swap.amount_in, amount_out=amount_out, output_mint=swap.output_mint)
        future.set_result(result)
        return result

    async def reconcile(self, reference: str, timeout: float) -> Optional[SwapResult]:
        with self._lock:
            future = self._swaps.get(reference)
        if future is None:
            return None
        try:
            result = await asyncio.wait_for(asyncio.shield(asyncio.wrap_future(future)), timeout=timeout)
        except asyncio.TimeoutError:
            raise SwapPending(f"Swap {reference[:18]} still in flight after {timeout}s")
        except SettlementError as e:
            logger.info("Swap %s never committed: %s", reference[:18], e)
            result = None
        self._forget(reference)
        return result

    def _forget(self, reference: str) -> None:
        with self._lock:
            self._swaps.pop(reference, None)

    async def transfer_output(self, execution: Keypair, user: str, result: SwapResult) -> str:
        with self._lock:
            key = (user, result.output_mint)
            self._outputs[key] = self._outputs.get(key, 0) + result.amount_out
        return hashlib.sha256(result.tx_id.encode("ascii") + os.urandom(8)).hexdigest()

    def output_balance(self, user: str, mint: str) -> int:
        with self._lock:
            return self._outputs.get((user, mint), 0)
