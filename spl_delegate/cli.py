# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Command-line entry point for the token delegation demo.

The ``run`` command goes through the whole workflow: provision wallets from
the key file, optionally request an airdrop, wait for the operator to fund
the wallets, then create tokens and holding accounts and run the direct and
delegated transfers. ``wallets`` only provisions and prints the wallets.

With four or more wallets the standard four-wallet plan runs; with two or
three, the two-wallet owner/delegate plan runs on the first two.

Examples:
    Against devnet, waiting for Enter after funding::

        python -m spl_delegate.cli run --rpc-url https://api.devnet.solana.com

    Unattended, with airdropped funds::

        python -m spl_delegate.cli run --airdrop 1 --confirm none

    Without a network, against the in-memory ledger::

        python -m spl_delegate.cli run --dry-run --confirm none

Environment Variables:
    SOLANA_RPC_URL: Default for ``--rpc-url``
    SOLANA_KEYSTORE: Default for ``--keystore``
    SOLANA_COMMITMENT: Default for ``--commitment``
    LOG_LEVEL: Default for ``--log-level``

Exit status is 0 on success and 1 if any step fails.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
import tempfile
import unittest
import unittest.mock
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from .delegation import DelegationConfig, DelegationPlan, DelegationReport, run_delegation
from .fake_ledger import FakeLedger
from .funding import (
    Confirmation,
    ConsoleConfirmation,
    FileConfirmation,
    ImmediateConfirmation,
    InsufficientFundsError,
    format_sol,
    sol_to_lamports,
    verify_funding,
)
from .keystore import ConfigurationError, KeyStore, provision_wallets
from .ledger import Ledger
from .token_client import (
    COMMITMENT_LEVELS,
    TOKEN_2022_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    ClientConfig,
    TokenClient,
    TransactionError,
)

DEFAULT_RPC_URL = "https://api.devnet.solana.com"

TOKEN_PROGRAMS = {"token-2022": TOKEN_2022_PROGRAM_ID, "token": TOKEN_PROGRAM_ID}


async def run_demo(
    ledger: Ledger,
    store: KeyStore,
    config: DelegationConfig,
    confirmation: Confirmation,
    airdrop_lamports: int = 0,
) -> DelegationReport:
    """Provision, fund, then run the delegation plan against ``ledger``."""
    print("=== Provisioning wallets ===")
    (wallets, generated) = provision_wallets(store, config.wallet_count)
    for index, wallet in enumerate(wallets, start=1):
        print(f"W{index}: {wallet.pubkey()}")
    if generated:
        print(f"Saved {len(wallets)} new wallets to {store.path}")
    else:
        print(f"Loaded {len(wallets)} wallets from {store.path}")

    if airdrop_lamports > 0:
        print(f"\n=== Requesting {format_sol(airdrop_lamports)} SOL airdrops ===")
        signatures = await asyncio.gather(
            *[
                ledger.request_airdrop(wallet.pubkey(), airdrop_lamports)
                for wallet in wallets
            ]
        )
        for index, signature in enumerate(signatures, start=1):
            print(f"W{index}: {signature}")

    await verify_funding(
        ledger,
        wallets,
        sol_to_lamports(config.min_sol),
        config.balance_attempts,
        config.balance_retry_delay,
        confirmation,
    )

    if len(wallets) >= 4:
        plan = DelegationPlan.standard(wallets)
    else:
        plan = DelegationPlan.single(wallets[0], wallets[1])
    return await run_delegation(ledger, plan, config)


def confirmation_source(indata: str) -> Confirmation:
    """Parse ``console``, ``none`` or ``file:PATH``."""
    if indata == "console":
        return ConsoleConfirmation()
    if indata == "none":
        return ImmediateConfirmation()
    if indata.startswith("file:") and len(indata) > len("file:"):
        return FileConfirmation(indata[len("file:") :])
    raise argparse.ArgumentTypeError(
        f"Invalid confirmation source {indata!r}, expected console, none or file:PATH"
    )


def sol_amount(indata: str) -> Decimal:
    """A non-negative SOL amount that is a whole number of lamports."""
    try:
        amount = Decimal(indata)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"Invalid SOL amount: {indata}")
    if not amount.is_finite() or amount < 0:
        raise argparse.ArgumentTypeError(
            f"SOL amount must be a non-negative number: {indata}"
        )
    try:
        sol_to_lamports(amount)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))
    return amount


def log_level(indata: str) -> str:
    level = indata.upper()
    # getLevelName maps known names to their number.
    if not isinstance(logging.getLevelName(level), int):
        raise argparse.ArgumentTypeError(f"Unknown log level: {indata}")
    return level


def wallet_count(indata: str) -> int:
    count = int(indata)
    if count < 2:
        raise argparse.ArgumentTypeError("At least 2 wallets are required")
    return count


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Token delegation demo")
    parser.add_argument(
        "command",
        type=str,
        help="The command to execute",
        choices=["run", "wallets"],
    )
    parser.add_argument(
        "--rpc-url",
        help="JSON-RPC endpoint of the ledger node",
        default=os.getenv("SOLANA_RPC_URL", DEFAULT_RPC_URL),
    )
    parser.add_argument(
        "--keystore",
        help="KEY=VALUE file holding the wallet keys",
        default=os.getenv("SOLANA_KEYSTORE", ".env"),
    )
    parser.add_argument(
        "--wallets",
        help="Number of wallets to provision",
        type=wallet_count,
        default=DelegationConfig.wallet_count,
    )
    parser.add_argument(
        "--min-sol",
        help="Minimum SOL every wallet must hold before tokens are created",
        type=sol_amount,
        default=DelegationConfig.min_sol,
    )
    parser.add_argument(
        "--airdrop",
        help="Request this many SOL from the faucet for every wallet first",
        type=sol_amount,
        default=Decimal(0),
    )
    parser.add_argument(
        "--confirm",
        help="How the operator signals that funding is done: console, none or file:PATH",
        type=confirmation_source,
        default="console",
    )
    parser.add_argument(
        "--commitment",
        help="Commitment level for reads and confirmations",
        choices=COMMITMENT_LEVELS,
        default=os.getenv("SOLANA_COMMITMENT", "confirmed"),
    )
    parser.add_argument(
        "--token-program",
        help="Token program that owns the mints",
        choices=sorted(TOKEN_PROGRAMS),
        default="token-2022",
    )
    parser.add_argument(
        "--dry-run",
        help="Use an in-memory ledger instead of the network",
        action="store_true",
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        type=log_level,
        default=os.getenv("LOG_LEVEL", "WARNING"),
    )
    return parser


async def main(args: List[str]) -> int:
    parsed_args = build_parser().parse_args(args)
    logging.basicConfig(
        level=parsed_args.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = DelegationConfig(
        wallet_count=parsed_args.wallets, min_sol=parsed_args.min_sol
    )
    store = KeyStore(parsed_args.keystore)

    if parsed_args.command == "wallets":
        try:
            (wallets, _) = provision_wallets(store, config.wallet_count)
        except ConfigurationError as e:
            logging.error(f"Unable to provision wallets: {e}")
            return 1
        for index, wallet in enumerate(wallets, start=1):
            print(f"W{index}: {wallet.pubkey()}")
        return 0

    program_id = TOKEN_PROGRAMS[parsed_args.token_program]
    airdrop = sol_to_lamports(parsed_args.airdrop)
    client: Optional[TokenClient] = None
    if parsed_args.dry_run:
        ledger: Ledger = FakeLedger(program_id)
        # Nobody can fund an in-memory ledger by hand.
        airdrop = max(airdrop, sol_to_lamports(config.min_sol))
    else:
        client = TokenClient(
            parsed_args.rpc_url,
            ClientConfig(commitment=parsed_args.commitment),
            program_id,
        )
        ledger = client

    try:
        await run_demo(ledger, store, config, parsed_args.confirm, airdrop)
    except Exception as e:
        logging.error(f"Delegation demo failed: {e}")
        if isinstance(e, TransactionError) and e.get_logs():
            logging.error("Ledger logs:\n" + "\n".join(e.get_logs()))
        return 1
    finally:
        if client is not None:
            await client.close()
    return 0


def run():
    sys.exit(asyncio.run(main(sys.argv[1:])))


class Test(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.directory = tempfile.TemporaryDirectory()
        self.addCleanup(self.directory.cleanup)
        self.keystore = os.path.join(self.directory.name, ".env")
        printer = unittest.mock.patch("builtins.print")
        printer.start()
        self.addCleanup(printer.stop)

    async def test_dry_run(self):
        status = await main(
            ["run", "--dry-run", "--confirm", "none", "--keystore", self.keystore]
        )
        self.assertEqual(status, 0)
        self.assertEqual(len(KeyStore(self.keystore).load_wallets(4) or []), 4)

    async def test_run_demo_two_wallets(self):
        ledger = FakeLedger()
        config = DelegationConfig(wallet_count=2, balance_retry_delay=0)
        report = await run_demo(
            ledger,
            KeyStore(self.keystore),
            config,
            ImmediateConfirmation(),
            sol_to_lamports(Decimal(1)),
        )
        self.assertIsNotNone(report)
        self.assertEqual(len(report.mints), 1)
        self.assertEqual(report.holdings[("token", "delegate")].amount, 200_000_000)

    async def test_failures_exit_with_status_1(self):
        with open(self.keystore, "w") as file:
            for index in (1, 2):
                file.write(f"W{index}_PUBLIC_KEY=invalid\nW{index}_SECRET_KEY=invalid\n")
        args = ["--confirm", "none", "--keystore", self.keystore, "--wallets", "2"]
        with self.assertLogs(level="ERROR"):
            self.assertEqual(await main(["run", "--dry-run"] + args), 1)
        with self.assertLogs(level="ERROR"):
            self.assertEqual(await main(["wallets"] + args), 1)

    async def test_ledger_logs_are_reported(self):
        config = ["--confirm", "none", "--keystore", self.keystore, "--wallets", "2"]
        error = TransactionError("rejected", None, ["Program log: Error: nope"])
        with unittest.mock.patch(
            f"{__name__}.run_demo", side_effect=error
        ), self.assertLogs(level="ERROR") as logs:
            self.assertEqual(await main(["run", "--dry-run"] + config), 1)
        self.assertTrue(any("Program log: Error: nope" in line for line in logs.output))

    async def test_unfunded_wallets_fail(self):
        config = DelegationConfig(wallet_count=2, balance_retry_delay=0)
        with self.assertLogs(level="INFO"):
            with self.assertRaises(InsufficientFundsError) as cm:
                await run_demo(
                    FakeLedger(), KeyStore(self.keystore), config, ImmediateConfirmation()
                )
        self.assertEqual(len(cm.exception.violations), 2)

    def test_argument_parsing(self):
        parsed = build_parser().parse_args(["run", "--confirm", "file:/tmp/funded"])
        self.assertIsInstance(parsed.confirm, FileConfirmation)
        self.assertEqual(parsed.confirm.path, "/tmp/funded")
        self.assertIsInstance(build_parser().parse_args(["run"]).confirm, ConsoleConfirmation)
        self.assertEqual(build_parser().parse_args(["run"]).wallets, 4)
        with self.assertRaises(argparse.ArgumentTypeError):
            confirmation_source("webhook")
        with self.assertRaises(argparse.ArgumentTypeError):
            wallet_count("1")
        with self.assertRaises(argparse.ArgumentTypeError):
            sol_amount("lots")
        with self.assertRaises(argparse.ArgumentTypeError):
            sol_amount("0.0000000001")
        with self.assertRaises(argparse.ArgumentTypeError):
            sol_amount("-1")
        with self.assertRaises(argparse.ArgumentTypeError):
            sol_amount("Infinity")
        with self.assertRaises(argparse.ArgumentTypeError):
            log_level("chatty")
        self.assertEqual(log_level("debug"), "DEBUG")
        self.assertEqual(sol_amount("0.2"), Decimal("0.2"))

    async def test_invalid_options_are_usage_errors(self):
        for option in (["--log-level", "chatty"], ["--airdrop", "0.0000000001"]):
            with self.assertRaises(SystemExit) as cm, unittest.mock.patch(
                "sys.stderr"
            ):
                await main(["run", "--dry-run", "--keystore", self.keystore] + option)
            self.assertEqual(cm.exception.code, 2)
        self.assertFalse(os.path.exists(self.keystore))


if __name__ == "__main__":
    run()
