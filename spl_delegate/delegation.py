# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Token provisioning and the delegated transfer choreography.

A :class:`DelegationPlan` names the wallets, the tokens each wallet mints,
which direct transfers happen, and which holding accounts are approved for a
delegate. :func:`run_delegation` executes it in phases against a ledger:

1. create every mint,
2. create every holding account the later phases touch,
3. mint the initial supply to each mint owner,
4. send the direct transfers,
5. approve the delegates,
6. let each delegate move part of its allowance into its own holding account.

Each phase fans its transactions out concurrently and waits for all of them.
The first failure aborts the run; transactions already sent in the same
phase may still land on the ledger and are not rolled back.

All amounts in :class:`DelegationConfig` are display units. They are scaled
to integer base units with :func:`to_base_units` before reaching the ledger.

Examples:
    The two-wallet scenario::

        plan = DelegationPlan.single(owner, delegate)
        report = await run_delegation(token_client, plan, DelegationConfig())
        account = report.holdings[("token", "owner")]
        assert account.delegated_amount == to_base_units(300, 6)
"""

from __future__ import annotations

import asyncio
import unittest
import unittest.mock
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Tuple, Union

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from .fake_ledger import FakeLedger
from .ledger import Ledger
from .token_client import TokenAccount, TransactionError

Amount = Union[int, str, Decimal]


def to_base_units(amount: Amount, decimals: int) -> int:
    """
    Scale a display amount to the ledger's integer representation.

    :raises ValueError: If the amount is negative or finer than ``decimals``
        allows
    """
    scaled = Decimal(amount).scaleb(decimals)
    if scaled < 0:
        raise ValueError(f"Amount must not be negative: {amount}")
    if scaled != scaled.to_integral_value():
        raise ValueError(f"{amount} has more than {decimals} decimal places")
    return int(scaled)


def from_base_units(amount: int, decimals: int) -> Decimal:
    return Decimal(amount).scaleb(-decimals)


def format_units(amount: int, decimals: int) -> str:
    return f"{from_base_units(amount, decimals).normalize():f}"


@dataclass
class DelegationConfig:
    """Workflow parameters; every token amount is in display units."""

    wallet_count: int = 4
    min_sol: Decimal = Decimal("0.2")
    balance_attempts: int = 2
    balance_retry_delay: float = 3.0
    decimals: int = 6
    supply: Decimal = Decimal(1000)
    direct_transfer: Decimal = Decimal(200)
    delegate_allowance: Decimal = Decimal(500)
    delegated_transfer: Decimal = Decimal(200)


@dataclass
class MintSpec:
    name: str
    owner: str
    label: str


@dataclass
class TransferSpec:
    mint: str
    sender: str
    recipient: str


@dataclass
class ApprovalSpec:
    mint: str
    owner: str
    delegate: str


class PlanError(Exception):
    """A plan refers to a wallet or mint it does not define"""


@dataclass
class DelegationPlan:
    wallets: Dict[str, Keypair]
    mints: List[MintSpec]
    transfers: List[TransferSpec] = field(default_factory=list)
    approvals: List[ApprovalSpec] = field(default_factory=list)

    def __post_init__(self):
        mint_names = [mint.name for mint in self.mints]
        if len(set(mint_names)) != len(mint_names):
            raise PlanError("Mint names must be unique")
        for mint in self.mints:
            self._require_wallet(mint.owner)
        for transfer in self.transfers:
            self._require_mint(transfer.mint)
            self._require_wallet(transfer.sender)
            self._require_wallet(transfer.recipient)
        for approval in self.approvals:
            self._require_mint(approval.mint)
            self._require_wallet(approval.owner)
            self._require_wallet(approval.delegate)

    @staticmethod
    def standard(wallets: List[Keypair]) -> DelegationPlan:
        """
        Four wallets: W1 mints one token, W2 mints two, W3 mints one. W1 and
        W2 each send part of their first token to W3. W4 is approved as the
        delegate on every minted account and on both accounts W3 received,
        then draws from all six.
        """
        if len(wallets) < 4:
            raise PlanError(f"The standard plan needs 4 wallets, found {len(wallets)}")
        named = {f"W{index}": wallet for (index, wallet) in enumerate(wallets[:4], start=1)}
        mints = [
            MintSpec("token1", "W1", "W1's token"),
            MintSpec("token2a", "W2", "W2's Token A"),
            MintSpec("token2b", "W2", "W2's Token B"),
            MintSpec("token3", "W3", "W3's token"),
        ]
        transfers = [
            TransferSpec("token1", "W1", "W3"),
            TransferSpec("token2a", "W2", "W3"),
        ]
        approvals = [ApprovalSpec(mint.name, mint.owner, "W4") for mint in mints] + [
            ApprovalSpec("token1", "W3", "W4"),
            ApprovalSpec("token2a", "W3", "W4"),
        ]
        return DelegationPlan(named, mints, transfers, approvals)

    @staticmethod
    def single(owner: Keypair, delegate: Keypair) -> DelegationPlan:
        """One owner mints one token and approves one delegate."""
        return DelegationPlan(
            {"owner": owner, "delegate": delegate},
            [MintSpec("token", "owner", "owner's token")],
            [],
            [ApprovalSpec("token", "owner", "delegate")],
        )

    def mint(self, name: str) -> MintSpec:
        return next(mint for mint in self.mints if mint.name == name)

    def holdings(self) -> List[Tuple[str, str]]:
        """Every (mint, holder) pair that needs a holding account, in first-use order."""
        pairs = [(mint.name, mint.owner) for mint in self.mints]
        pairs += [(t.mint, t.recipient) for t in self.transfers]
        pairs += [(a.mint, a.owner) for a in self.approvals]
        pairs += [(a.mint, a.delegate) for a in self.approvals]
        return list(dict.fromkeys(pairs))

    def _require_wallet(self, name: str):
        if name not in self.wallets:
            raise PlanError(f"Unknown wallet: {name}")

    def _require_mint(self, name: str):
        if not any(mint.name == name for mint in self.mints):
            raise PlanError(f"Unknown mint: {name}")


@dataclass
class DelegationReport:
    mints: Dict[str, Pubkey] = field(default_factory=dict)
    accounts: Dict[Tuple[str, str], Pubkey] = field(default_factory=dict)
    signatures: Dict[str, List[str]] = field(default_factory=dict)
    holdings: Dict[Tuple[str, str], TokenAccount] = field(default_factory=dict)


async def create_mints(
    ledger: Ledger, plan: DelegationPlan, decimals: int
) -> Dict[str, Pubkey]:
    print("\n=== Creating tokens ===")
    addresses = await asyncio.gather(
        *[
            ledger.create_mint(
                plan.wallets[mint.owner],
                plan.wallets[mint.owner].pubkey(),
                decimals,
                None,
            )
            for mint in plan.mints
        ]
    )
    mints = {}
    for mint, address in zip(plan.mints, addresses):
        print(f"- {mint.label}: {address}")
        mints[mint.name] = address
    return mints


async def create_holding_accounts(
    ledger: Ledger, plan: DelegationPlan, mints: Dict[str, Pubkey]
) -> Dict[Tuple[str, str], Pubkey]:
    """Get or create every holding account the plan needs; the mint owner pays."""
    print("\n=== Creating token accounts ===")
    pairs = plan.holdings()
    accounts = await asyncio.gather(
        *[
            ledger.get_or_create_associated_token_account(
                plan.wallets[plan.mint(mint).owner],
                mints[mint],
                plan.wallets[holder].pubkey(),
            )
            for (mint, holder) in pairs
        ]
    )
    addresses = {}
    for (mint, holder), account in zip(pairs, accounts):
        print(f"- {holder}'s account for {mints[mint]}: {account.address}")
        addresses[(mint, holder)] = account.address
    return addresses


async def mint_supply(
    ledger: Ledger,
    plan: DelegationPlan,
    mints: Dict[str, Pubkey],
    accounts: Dict[Tuple[str, str], Pubkey],
    amount: int,
    decimals: int,
) -> List[str]:
    print("\n=== Minting initial supply ===")
    signatures = await asyncio.gather(
        *[
            ledger.mint_to(
                plan.wallets[mint.owner],
                mints[mint.name],
                accounts[(mint.name, mint.owner)],
                plan.wallets[mint.owner],
                amount,
            )
            for mint in plan.mints
        ]
    )
    display = format_units(amount, decimals)
    for mint, signature in zip(plan.mints, signatures):
        print(
            f"- Minted {display} of {mint.label} ({mints[mint.name]}) to {mint.owner}. "
            f"Tx: {signature}"
        )
    return list(signatures)


async def direct_transfers(
    ledger: Ledger,
    plan: DelegationPlan,
    accounts: Dict[Tuple[str, str], Pubkey],
    amount: int,
    decimals: int,
) -> List[str]:
    print("\n=== Direct transfers ===")
    signatures = await asyncio.gather(
        *[
            ledger.transfer(
                plan.wallets[transfer.sender],
                accounts[(transfer.mint, transfer.sender)],
                accounts[(transfer.mint, transfer.recipient)],
                amount,
            )
            for transfer in plan.transfers
        ]
    )
    display = format_units(amount, decimals)
    for transfer, signature in zip(plan.transfers, signatures):
        print(
            f"- {transfer.sender} sent {display} of {plan.mint(transfer.mint).label} "
            f"to {transfer.recipient}. Tx: {signature}"
        )
    return list(signatures)


async def approve_delegate(
    ledger: Ledger,
    plan: DelegationPlan,
    accounts: Dict[Tuple[str, str], Pubkey],
    amount: int,
    decimals: int,
) -> List[str]:
    print("\n=== Approving delegates ===")
    signatures = await asyncio.gather(
        *[
            ledger.approve(
                plan.wallets[approval.owner],
                accounts[(approval.mint, approval.owner)],
                plan.wallets[approval.delegate].pubkey(),
                amount,
            )
            for approval in plan.approvals
        ]
    )
    display = format_units(amount, decimals)
    for approval, signature in zip(plan.approvals, signatures):
        print(
            f"- {approval.owner} approved {approval.delegate} for {display} of "
            f"{plan.mint(approval.mint).label}. Tx: {signature}"
        )
    return list(signatures)


async def delegated_transfers(
    ledger: Ledger,
    plan: DelegationPlan,
    accounts: Dict[Tuple[str, str], Pubkey],
    amount: int,
    decimals: int,
) -> List[str]:
    """Each delegate moves ``amount`` from every approved account into its own."""
    print("\n=== Delegated transfers ===")
    signatures = await asyncio.gather(
        *[
            ledger.transfer(
                plan.wallets[approval.delegate],
                accounts[(approval.mint, approval.owner)],
                accounts[(approval.mint, approval.delegate)],
                amount,
            )
            for approval in plan.approvals
        ]
    )
    display = format_units(amount, decimals)
    for approval, signature in zip(plan.approvals, signatures):
        print(
            f"- {approval.delegate} moved {display} of {plan.mint(approval.mint).label} "
            f"out of {approval.owner}'s account. Tx: {signature}"
        )
    return list(signatures)


async def run_delegation(
    ledger: Ledger, plan: DelegationPlan, config: DelegationConfig
) -> DelegationReport:
    """Run every phase of ``plan`` in order and read back the final holdings."""
    decimals = config.decimals
    report = DelegationReport()
    report.mints = await create_mints(ledger, plan, decimals)
    report.accounts = await create_holding_accounts(ledger, plan, report.mints)
    report.signatures["mint"] = await mint_supply(
        ledger,
        plan,
        report.mints,
        report.accounts,
        to_base_units(config.supply, decimals),
        decimals,
    )
    report.signatures["transfer"] = await direct_transfers(
        ledger,
        plan,
        report.accounts,
        to_base_units(config.direct_transfer, decimals),
        decimals,
    )
    report.signatures["approve"] = await approve_delegate(
        ledger,
        plan,
        report.accounts,
        to_base_units(config.delegate_allowance, decimals),
        decimals,
    )
    report.signatures["delegated_transfer"] = await delegated_transfers(
        ledger,
        plan,
        report.accounts,
        to_base_units(config.delegated_transfer, decimals),
        decimals,
    )

    pairs = list(report.accounts)
    holdings = await asyncio.gather(
        *[ledger.get_token_account(report.accounts[pair]) for pair in pairs]
    )
    report.holdings = dict(zip(pairs, holdings))

    print("\n=== Final balances ===")
    for (mint, holder), account in report.holdings.items():
        line = f"- {holder}: {format_units(account.amount, decimals)} of {plan.mint(mint).label}"
        if account.delegate is not None:
            line += (
                f" (delegate may still move "
                f"{format_units(account.delegated_amount, decimals)})"
            )
        print(line)
    return report


class Test(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.ledger = FakeLedger()
        self.wallets = [Keypair() for _ in range(4)]
        printer = unittest.mock.patch("builtins.print")
        printer.start()
        self.addCleanup(printer.stop)

    def test_base_units(self):
        self.assertEqual(to_base_units(1000, 6), 1_000_000_000)
        self.assertEqual(to_base_units("0.000001", 6), 1)
        self.assertEqual(to_base_units(Decimal("12.5"), 9), 12_500_000_000)
        self.assertEqual(to_base_units(7, 0), 7)
        with self.assertRaises(ValueError):
            to_base_units("0.0000001", 6)
        with self.assertRaises(ValueError):
            to_base_units(-1, 6)
        self.assertEqual(from_base_units(300_000_000, 6), Decimal(300))
        self.assertEqual(from_base_units(1, 6), Decimal("0.000001"))
        self.assertEqual(format_units(1_000_000_000, 6), "1000")
        self.assertEqual(format_units(0, 6), "0")
        self.assertEqual(format_units(1_500_000, 6), "1.5")

    async def test_two_wallet_scenario(self):
        (owner, delegate) = self.wallets[:2]
        report = await run_delegation(
            self.ledger, DelegationPlan.single(owner, delegate), DelegationConfig()
        )

        source = report.holdings[("token", "owner")]
        target = report.holdings[("token", "delegate")]
        self.assertEqual(source.amount, to_base_units(800, 6))
        self.assertEqual(source.delegated_amount, to_base_units(300, 6))
        self.assertEqual(source.delegate, delegate.pubkey())
        self.assertEqual(target.amount, to_base_units(200, 6))
        self.assertEqual(report.signatures["transfer"], [])
        self.assertEqual(len(report.signatures["delegated_transfer"]), 1)

    async def test_four_wallet_scenario(self):
        plan = DelegationPlan.standard(self.wallets)
        report = await run_delegation(self.ledger, plan, DelegationConfig())

        self.assertEqual(len(report.mints), 4)
        self.assertEqual(len(report.accounts), 10)
        self.assertEqual(len(report.signatures["approve"]), 6)

        holdings = report.holdings
        self.assertEqual(holdings[("token1", "W4")].amount, to_base_units(400, 6))
        self.assertEqual(holdings[("token1", "W1")].amount, to_base_units(600, 6))
        self.assertEqual(holdings[("token1", "W3")].amount, 0)
        self.assertEqual(
            holdings[("token1", "W1")].delegated_amount, to_base_units(300, 6)
        )
        self.assertEqual(
            holdings[("token1", "W3")].delegated_amount, to_base_units(300, 6)
        )
        self.assertEqual(holdings[("token2b", "W4")].amount, to_base_units(200, 6))
        self.assertEqual(holdings[("token3", "W3")].amount, to_base_units(800, 6))

    async def test_allowance_cannot_be_exceeded(self):
        (owner, delegate) = self.wallets[:2]
        config = DelegationConfig(delegated_transfer=Decimal(501))
        with self.assertRaises(TransactionError) as cm:
            await run_delegation(
                self.ledger, DelegationPlan.single(owner, delegate), config
            )
        self.assertIn("Program log: Error: insufficient funds", cm.exception.get_logs())

        config = DelegationConfig(delegated_transfer=Decimal(500))
        report = await run_delegation(
            FakeLedger(), DelegationPlan.single(owner, delegate), config
        )
        self.assertIsNone(report.holdings[("token", "owner")].delegate)

    async def test_holding_accounts_are_idempotent(self):
        plan = DelegationPlan.standard(self.wallets)
        mints = await create_mints(self.ledger, plan, 6)
        first = await create_holding_accounts(self.ledger, plan, mints)
        created = self.ledger.account_creations
        second = await create_holding_accounts(self.ledger, plan, mints)
        self.assertEqual(first, second)
        self.assertEqual(self.ledger.account_creations, created)

    async def test_first_failure_aborts_phase(self):
        plan = DelegationPlan.standard(self.wallets)
        create_mint = self.ledger.create_mint
        calls = []

        async def flaky_create_mint(payer, authority, decimals, freeze_authority=None):
            calls.append(payer)
            if len(calls) == 2:
                raise TransactionError("Blockhash not found")
            return await create_mint(payer, authority, decimals, freeze_authority)

        self.ledger.create_mint = flaky_create_mint
        with self.assertRaises(TransactionError):
            await run_delegation(self.ledger, plan, DelegationConfig())
        self.assertEqual(self.ledger.account_creations, 0)

    def test_plan_validation(self):
        (owner, delegate) = self.wallets[:2]
        wallets = {"owner": owner, "delegate": delegate}
        mints = [MintSpec("token", "owner", "owner's token")]
        with self.assertRaises(PlanError):
            DelegationPlan(wallets, mints, [TransferSpec("token", "owner", "nobody")])
        with self.assertRaises(PlanError):
            DelegationPlan(wallets, mints, [], [ApprovalSpec("other", "owner", "delegate")])
        with self.assertRaises(PlanError):
            DelegationPlan(wallets, mints + mints)
        with self.assertRaises(PlanError):
            DelegationPlan.standard(self.wallets[:3])

    def test_standard_holdings(self):
        plan = DelegationPlan.standard(self.wallets)
        holdings = plan.holdings()
        self.assertEqual(len(holdings), 10)
        self.assertEqual(holdings[:4], [(m.name, m.owner) for m in plan.mints])
        self.assertIn(("token1", "W3"), holdings)
        self.assertIn(("token2a", "W3"), holdings)
        self.assertNotIn(("token3", "W1"), holdings)

