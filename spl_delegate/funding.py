# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Funding verification for freshly provisioned wallets.

Balances are polled with a bounded number of attempts. A zero balance counts
as "not funded yet" and is retried, as is a failed query. When the attempts
run out the balance is reported as zero, and the aggregate check afterwards
fails with an :class:`InsufficientFundsError` naming every under-funded
wallet at once.

Between the first balance report and the final check the workflow waits for
an operator to fund the wallets. Where that signal comes from is pluggable:
a line on the console, a file appearing, an ``asyncio.Event`` set by other
code, or nothing at all.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
import tempfile
import threading
import unittest
import unittest.mock
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, TextIO

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.core import RPCException
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from typing_extensions import Protocol

from .ledger import Ledger
from .token_client import LAMPORTS_PER_SOL

# Failures worth another balance query: transport errors (including rate
# limits that outlasted the client's backoff) and JSON-RPC error replies.
TRANSIENT_ERRORS = (SolanaRpcException, RPCException)


def lamports_to_sol(lamports: int) -> Decimal:
    return Decimal(lamports) / LAMPORTS_PER_SOL


def format_sol(lamports: int) -> str:
    return f"{lamports_to_sol(lamports).normalize():f}"


def sol_to_lamports(sol: Decimal) -> int:
    lamports = Decimal(sol) * LAMPORTS_PER_SOL
    if lamports != lamports.to_integral_value():
        raise ValueError(f"{sol} SOL is not a whole number of lamports")
    return int(lamports)


@dataclass
class WalletBalance:
    name: str
    address: Pubkey
    lamports: int

    def __str__(self) -> str:
        return f"{self.name} ({self.address}): {format_sol(self.lamports)} SOL"


class InsufficientFundsError(Exception):
    """One or more wallets hold less than the required minimum"""

    violations: List[WalletBalance]
    minimum: int

    def __init__(self, violations: List[WalletBalance], minimum: int):
        listing = ", ".join(str(violation) for violation in violations)
        super().__init__(
            f"Insufficient funds, {format_sol(minimum)} SOL required: {listing}"
        )
        self.violations = violations
        self.minimum = minimum


async def get_balance_with_retry(
    ledger: Ledger, address: Pubkey, attempts: int, delay: float
) -> int:
    """
    Poll the balance of ``address`` until it is non-zero.

    :param attempts: Maximum number of queries, at least 1
    :param delay: Seconds to wait between queries
    :return: The first non-zero balance seen, or 0 once attempts run out
    """
    for attempt in range(1, attempts + 1):
        try:
            balance = await ledger.get_balance(address)
            if balance > 0:
                return balance
            logging.info(f"{address} has no balance yet ({attempt}/{attempts})")
        except TRANSIENT_ERRORS as e:
            logging.warning(
                f"Balance query for {address} failed ({attempt}/{attempts}): {e}"
            )
        if attempt < attempts:
            await asyncio.sleep(delay)
    return 0


async def check_balances(
    ledger: Ledger, wallets: List[Keypair], attempts: int, delay: float
) -> List[WalletBalance]:
    """Poll every wallet concurrently and return the balances in wallet order."""
    balances = await asyncio.gather(
        *[
            get_balance_with_retry(ledger, wallet.pubkey(), attempts, delay)
            for wallet in wallets
        ]
    )
    return [
        WalletBalance(f"W{index}", wallet.pubkey(), lamports)
        for (index, (wallet, lamports)) in enumerate(zip(wallets, balances), start=1)
    ]


def verify_balances(balances: List[WalletBalance], minimum: int):
    """
    :raises InsufficientFundsError: Listing every wallet below ``minimum``
    """
    violations = [balance for balance in balances if balance.lamports < minimum]
    if violations:
        raise InsufficientFundsError(violations, minimum)


class Confirmation(Protocol):
    async def wait(self, prompt: str):
        """Return once the operator signals that funding is done."""
        ...


CONSOLE_READER_NAME = "console-confirmation"


class ConsoleConfirmation:
    """
    Waits for one line on an input stream (stdin by default).

    The read runs on a daemon thread. Cancelling the wait returns at once and
    a read still pending does not hold up interpreter shutdown.
    """

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream

    async def wait(self, prompt: str):
        print(f"{prompt}\nPress Enter to continue...")
        stream = self.stream or sys.stdin
        loop = asyncio.get_running_loop()
        line: asyncio.Future = loop.create_future()

        def read():
            try:
                result = stream.readline()
            except (OSError, ValueError) as e:
                loop.call_soon_threadsafe(_settle, line, None, e)
            else:
                loop.call_soon_threadsafe(_settle, line, result, None)

        threading.Thread(target=read, name=CONSOLE_READER_NAME, daemon=True).start()
        await line


def _settle(
    future: asyncio.Future, result: Optional[str], error: Optional[BaseException]
):
    if future.done():
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(result)


class FileConfirmation:
    """Waits until a file exists at ``path``, checking every ``poll_interval`` seconds."""

    def __init__(self, path: str, poll_interval: float = 1.0):
        self.path = path
        self.poll_interval = poll_interval

    async def wait(self, prompt: str):
        print(f"{prompt} (waiting for {self.path} to appear)")
        while not os.path.exists(self.path):
            await asyncio.sleep(self.poll_interval)


class EventConfirmation:
    """Waits until an ``asyncio.Event`` is set."""

    def __init__(self, event: asyncio.Event):
        self.event = event

    async def wait(self, prompt: str):
        print(prompt)
        await self.event.wait()


class ImmediateConfirmation:
    """Does not wait, for unattended runs against pre-funded wallets."""

    async def wait(self, prompt: str):
        print(prompt)


async def verify_funding(
    ledger: Ledger,
    wallets: List[Keypair],
    minimum: int,
    attempts: int,
    delay: float,
    confirmation: Confirmation,
) -> List[WalletBalance]:
    """
    Report balances, wait for the operator, then require ``minimum`` lamports
    in every wallet.
    """
    print("\n=== Checking balances ===")
    for balance in await check_balances(ledger, wallets, attempts, delay):
        print(balance)

    listing = "\n".join(
        f"  W{index}: {wallet.pubkey()}"
        for (index, wallet) in enumerate(wallets, start=1)
    )
    await confirmation.wait(
        f"\nFund each wallet with at least {format_sol(minimum)} SOL:\n"
        f"{listing}"
    )

    balances = await check_balances(ledger, wallets, attempts, delay)
    verify_balances(balances, minimum)
    print("All wallets are funded")
    return balances


class Test(unittest.IsolatedAsyncioTestCase):
    async def test_stops_once_balance_is_seen(self):
        ledger = unittest.mock.Mock()
        ledger.get_balance = unittest.mock.AsyncMock(side_effect=[0, 5, 7])
        balance = await get_balance_with_retry(ledger, Pubkey.default(), 5, 0)
        self.assertEqual(balance, 5)
        self.assertEqual(ledger.get_balance.await_count, 2)

    async def test_transient_errors_are_retried(self):
        ledger = unittest.mock.Mock()
        ledger.get_balance = unittest.mock.AsyncMock(
            side_effect=[
                SolanaRpcException(httpx.ConnectError("down"), AsyncClient.get_balance),
                RPCException("Node is behind"),
                9,
            ]
        )
        with self.assertLogs(level="WARNING") as logs:
            balance = await get_balance_with_retry(ledger, Pubkey.default(), 3, 0)
        self.assertEqual(balance, 9)
        self.assertEqual(len(logs.records), 2)

    async def test_exhausted_retries_report_zero(self):
        ledger = unittest.mock.Mock()
        ledger.get_balance = unittest.mock.AsyncMock(
            side_effect=RPCException("getBalance: unavailable")
        )
        with self.assertLogs(level="WARNING"):
            balance = await get_balance_with_retry(ledger, Pubkey.default(), 2, 0)
        self.assertEqual(balance, 0)
        self.assertEqual(ledger.get_balance.await_count, 2)

    async def test_unexpected_errors_propagate(self):
        ledger = unittest.mock.Mock()
        ledger.get_balance = unittest.mock.AsyncMock(side_effect=KeyError("value"))
        with self.assertRaises(KeyError):
            await get_balance_with_retry(ledger, Pubkey.default(), 2, 0)

    def test_every_violation_is_reported(self):
        keys = [Pubkey(bytes([i] * 32)) for i in range(1, 5)]
        balances = [
            WalletBalance("W1", keys[0], 0),
            WalletBalance("W2", keys[1], LAMPORTS_PER_SOL),
            WalletBalance("W3", keys[2], 199_999_999),
            WalletBalance("W4", keys[3], 200_000_000),
        ]
        with self.assertRaises(InsufficientFundsError) as cm:
            verify_balances(balances, 200_000_000)
        self.assertEqual([v.name for v in cm.exception.violations], ["W1", "W3"])
        self.assertIn(str(keys[0]), str(cm.exception))
        self.assertIn(str(keys[2]), str(cm.exception))

        verify_balances(balances[1:2] + balances[3:], 200_000_000)

    def test_sol_conversions(self):
        self.assertEqual(sol_to_lamports(Decimal("0.2")), 200_000_000)
        self.assertEqual(lamports_to_sol(1_500_000_000), Decimal("1.5"))
        with self.assertRaises(ValueError):
            sol_to_lamports(Decimal("0.0000000001"))

    async def test_verify_funding_waits_for_confirmation(self):
        wallets = [Keypair(), Keypair()]
        funded = {wallet.pubkey(): 0 for wallet in wallets}

        async def get_balance(address):
            return funded[address]

        ledger = unittest.mock.Mock()
        ledger.get_balance = get_balance
        event = asyncio.Event()

        async def operator():
            for wallet in wallets:
                funded[wallet.pubkey()] = LAMPORTS_PER_SOL
            event.set()

        with unittest.mock.patch("builtins.print"):
            waiting = asyncio.ensure_future(
                verify_funding(
                    ledger, wallets, 200_000_000, 1, 0, EventConfirmation(event)
                )
            )
            await asyncio.sleep(0.01)
            self.assertFalse(waiting.done())
            await operator()
            balances = await waiting
        self.assertEqual([b.lamports for b in balances], [LAMPORTS_PER_SOL] * 2)

    async def test_verify_funding_fails_for_unfunded(self):
        wallets = [Keypair(), Keypair()]
        ledger = unittest.mock.Mock()
        ledger.get_balance = unittest.mock.AsyncMock(return_value=0)
        with unittest.mock.patch("builtins.print"):
            with self.assertRaises(InsufficientFundsError) as cm:
                await verify_funding(
                    ledger, wallets, 1, 1, 0, ImmediateConfirmation()
                )
        self.assertEqual(len(cm.exception.violations), 2)

    async def test_file_confirmation(self):
        with tempfile.TemporaryDirectory() as directory:
            path = os.path.join(directory, "funded")
            confirmation = FileConfirmation(path, poll_interval=0.001)
            with unittest.mock.patch("builtins.print"):
                waiting = asyncio.ensure_future(confirmation.wait("Fund"))
                await asyncio.sleep(0.01)
                self.assertFalse(waiting.done())
                open(path, "w").close()
                await asyncio.wait_for(waiting, 1)

    async def test_console_confirmation_reads_one_line(self):
        stream = unittest.mock.Mock()
        stream.readline.return_value = "\n"
        with unittest.mock.patch("builtins.print"):
            await ConsoleConfirmation(stream).wait("Press Enter")
        stream.readline.assert_called_once_with()

    async def test_console_confirmation_can_be_cancelled(self):
        (read_fd, write_fd) = os.pipe()
        stream = os.fdopen(read_fd)
        writer = os.fdopen(write_fd, "w")
        with unittest.mock.patch("builtins.print"):
            waiting = asyncio.ensure_future(ConsoleConfirmation(stream).wait("Fund"))
            await asyncio.sleep(0.05)
            self.assertFalse(waiting.done())
            waiting.cancel()
            # Returns although nothing was typed and stdin stays open.
            with self.assertRaises(asyncio.CancelledError):
                await asyncio.wait_for(waiting, 1)

        readers = [
            thread
            for thread in threading.enumerate()
            if thread.name == CONSOLE_READER_NAME
        ]
        self.assertTrue(readers)
        self.assertTrue(all(thread.daemon for thread in readers))

        writer.write("\n")
        writer.close()
        for thread in readers:
            thread.join(1)
        stream.close()

    async def test_console_read_errors_propagate(self):
        stream = unittest.mock.Mock()
        stream.readline.side_effect = ValueError("I/O operation on closed file")
        with unittest.mock.patch("builtins.print"):
            with self.assertRaises(ValueError):
                await ConsoleConfirmation(stream).wait("Press Enter")
