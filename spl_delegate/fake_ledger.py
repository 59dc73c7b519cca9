# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
An in-memory ledger that enforces the token program's rules.

``FakeLedger`` implements :class:`spl_delegate.ledger.Ledger` without a node:
native balances, mints and holding accounts live in dictionaries, and every
operation checks what the on-chain token program checks (authority and owner
signatures, balances, delegate allowances). Rejections raise the same
:class:`~spl_delegate.token_client.TransactionError` a live node produces,
with program-style log lines attached.

Holding account addresses are derived exactly as on chain, so addresses
printed by a dry run match the ones a live run would use for the same wallets
and mints.

Examples:
    Dry-running the workflow::

        ledger = FakeLedger()
        for wallet in wallets:
            ledger.set_balance(wallet.pubkey(), LAMPORTS_PER_SOL)
        report = await run_delegation(ledger, DelegationPlan.standard(wallets))
"""

from __future__ import annotations

import asyncio
import dataclasses
import unittest
from typing import Dict, List, NoReturn, Optional

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from .token_client import (
    TOKEN_2022_PROGRAM_ID,
    AccountNotFound,
    AccountState,
    Mint,
    TokenAccount,
    TransactionError,
    get_associated_token_address,
)

# Custom error codes of the token program.
INSUFFICIENT_FUNDS = 0x1
INVALID_MINT = 0x2
MINT_MISMATCH = 0x3
OWNER_MISMATCH = 0x4
ACCOUNT_FROZEN = 0x11


class FakeLedger:
    """In-memory implementation of the ledger collaborator."""

    program_id: Pubkey
    balances: Dict[Pubkey, int]
    mints: Dict[Pubkey, Mint]
    accounts: Dict[Pubkey, TokenAccount]
    signatures: List[str]
    account_creations: int

    def __init__(self, program_id: Pubkey = TOKEN_2022_PROGRAM_ID):
        self.program_id = program_id
        self.balances = {}
        self.mints = {}
        self.accounts = {}
        self.signatures = []
        self.account_creations = 0

    def set_balance(self, pubkey: Pubkey, lamports: int):
        self.balances[pubkey] = lamports

    async def get_balance(self, pubkey: Pubkey) -> int:
        await asyncio.sleep(0)
        return self.balances.get(pubkey, 0)

    async def request_airdrop(self, pubkey: Pubkey, lamports: int) -> str:
        await asyncio.sleep(0)
        self.balances[pubkey] = self.balances.get(pubkey, 0) + lamports
        return self._record(None)

    async def get_mint(self, address: Pubkey) -> Mint:
        await asyncio.sleep(0)
        mint = self.mints.get(address)
        if mint is None:
            raise AccountNotFound(f"{address}", address)
        return dataclasses.replace(mint)

    async def get_token_account(self, address: Pubkey) -> TokenAccount:
        await asyncio.sleep(0)
        account = self.accounts.get(address)
        if account is None:
            raise AccountNotFound(f"{address}", address)
        return dataclasses.replace(account)

    async def create_mint(
        self,
        payer: Keypair,
        mint_authority: Pubkey,
        decimals: int,
        freeze_authority: Optional[Pubkey] = None,
    ) -> Pubkey:
        await asyncio.sleep(0)
        address = Keypair().pubkey()
        self.mints[address] = Mint(
            address=address,
            mint_authority=mint_authority,
            supply=0,
            decimals=decimals,
            is_initialized=True,
            freeze_authority=freeze_authority,
        )
        self._record(payer)
        return address

    async def get_or_create_associated_token_account(
        self, payer: Keypair, mint: Pubkey, owner: Pubkey
    ) -> TokenAccount:
        await asyncio.sleep(0)
        if not owner.is_on_curve():
            raise ValueError(f"Owner {owner} is not a wallet address")
        address = get_associated_token_address(owner, mint, self.program_id)
        if address not in self.accounts:
            if mint not in self.mints:
                self._reject("InitializeAccount3", INVALID_MINT, "Invalid Mint")
            self.accounts[address] = TokenAccount(
                address=address,
                mint=mint,
                owner=owner,
                amount=0,
                delegate=None,
                state=AccountState.INITIALIZED,
                is_native=None,
                delegated_amount=0,
                close_authority=None,
            )
            self.account_creations += 1
            self._record(payer)
        return dataclasses.replace(self.accounts[address])

    async def mint_to(
        self,
        payer: Keypair,
        mint: Pubkey,
        destination: Pubkey,
        authority: Keypair,
        amount: int,
    ) -> str:
        await asyncio.sleep(0)
        instruction = "MintTo"
        state = self.mints.get(mint)
        if state is None:
            self._reject(instruction, INVALID_MINT, "Invalid Mint")
        account = self._account(instruction, destination)
        if account.mint != mint:
            self._reject(instruction, MINT_MISMATCH, "Account not associated with this Mint")
        if state.mint_authority != authority.pubkey():
            self._reject(instruction, OWNER_MISMATCH, "owner does not match")
        state.supply += amount
        account.amount += amount
        return self._record(payer)

    async def approve(
        self, owner: Keypair, source: Pubkey, delegate: Pubkey, amount: int
    ) -> str:
        await asyncio.sleep(0)
        instruction = "Approve"
        account = self._account(instruction, source)
        if account.owner != owner.pubkey():
            self._reject(instruction, OWNER_MISMATCH, "owner does not match")
        if account.state == AccountState.FROZEN:
            self._reject(instruction, ACCOUNT_FROZEN, "Account is frozen")
        # A new approval replaces any previous delegate and allowance.
        account.delegate = delegate
        account.delegated_amount = amount
        return self._record(owner)

    async def transfer(
        self,
        authority: Keypair,
        source: Pubkey,
        destination: Pubkey,
        amount: int,
    ) -> str:
        await asyncio.sleep(0)
        instruction = "Transfer"
        source_account = self._account(instruction, source)
        destination_account = self._account(instruction, destination)
        if source_account.mint != destination_account.mint:
            self._reject(instruction, MINT_MISMATCH, "Account not associated with this Mint")
        if AccountState.FROZEN in (source_account.state, destination_account.state):
            self._reject(instruction, ACCOUNT_FROZEN, "Account is frozen")
        if source_account.amount < amount:
            self._reject(instruction, INSUFFICIENT_FUNDS, "insufficient funds")

        signer = authority.pubkey()
        if signer == source_account.delegate:
            if source_account.delegated_amount < amount:
                self._reject(instruction, INSUFFICIENT_FUNDS, "insufficient funds")
            source_account.delegated_amount -= amount
            if source_account.delegated_amount == 0:
                source_account.delegate = None
        elif signer != source_account.owner:
            self._reject(instruction, OWNER_MISMATCH, "owner does not match")

        source_account.amount -= amount
        destination_account.amount += amount
        return self._record(authority)

    def _account(self, instruction: str, address: Pubkey) -> TokenAccount:
        account = self.accounts.get(address)
        if account is None:
            self._reject(instruction, None, "Invalid account data for instruction")
        return account

    def _reject(
        self, instruction: str, code: Optional[int], message: str
    ) -> NoReturn:
        program = str(self.program_id)
        failure = (
            f"custom program error: {code:#x}"
            if code is not None
            else "invalid account data for instruction"
        )
        logs = [
            f"Program {program} invoke [1]",
            f"Program log: Instruction: {instruction}",
            f"Program log: Error: {message}",
            f"Program {program} failed: {failure}",
        ]
        raise TransactionError(
            f"Transaction simulation failed: Error processing Instruction 0: {failure}",
            None,
            logs,
        )

    def _record(self, signer: Optional[Keypair]) -> str:
        nonce = len(self.signatures).to_bytes(8, "little")
        signature = str((signer or Keypair()).sign_message(nonce))
        self.signatures.append(signature)
        return signature


class Test(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.ledger = FakeLedger()
        self.owner = Keypair()
        self.delegate = Keypair()
        self.mint = await self.ledger.create_mint(
            self.owner, self.owner.pubkey(), 6
        )
        self.source = await self.ledger.get_or_create_associated_token_account(
            self.owner, self.mint, self.owner.pubkey()
        )
        self.target = await self.ledger.get_or_create_associated_token_account(
            self.owner, self.mint, self.delegate.pubkey()
        )
        await self.ledger.mint_to(
            self.owner, self.mint, self.source.address, self.owner, 1000
        )

    async def test_holding_accounts_use_derived_addresses(self):
        self.assertEqual(
            self.source.address,
            get_associated_token_address(self.owner.pubkey(), self.mint),
        )
        again = await self.ledger.get_or_create_associated_token_account(
            self.owner, self.mint, self.owner.pubkey()
        )
        self.assertEqual(again.address, self.source.address)
        self.assertEqual(self.ledger.account_creations, 2)

    async def test_mint_requires_authority(self):
        with self.assertRaises(TransactionError) as cm:
            await self.ledger.mint_to(
                self.delegate, self.mint, self.source.address, self.delegate, 1
            )
        self.assertIn("Program log: Error: owner does not match", cm.exception.get_logs())
        self.assertEqual((await self.ledger.get_mint(self.mint)).supply, 1000)

    async def test_delegate_allowance(self):
        await self.ledger.approve(
            self.owner, self.source.address, self.delegate.pubkey(), 500
        )
        await self.ledger.transfer(
            self.delegate, self.source.address, self.target.address, 200
        )
        source = await self.ledger.get_token_account(self.source.address)
        self.assertEqual(source.amount, 800)
        self.assertEqual(source.delegated_amount, 300)
        self.assertEqual(source.delegate, self.delegate.pubkey())

        with self.assertRaises(TransactionError) as cm:
            await self.ledger.transfer(
                self.delegate, self.source.address, self.target.address, 301
            )
        self.assertIn("Program log: Error: insufficient funds", cm.exception.get_logs())

        await self.ledger.transfer(
            self.delegate, self.source.address, self.target.address, 300
        )
        source = await self.ledger.get_token_account(self.source.address)
        self.assertIsNone(source.delegate)
        self.assertEqual(source.delegated_amount, 0)

    async def test_approve_replaces_allowance(self):
        await self.ledger.approve(
            self.owner, self.source.address, self.delegate.pubkey(), 500
        )
        await self.ledger.approve(
            self.owner, self.source.address, self.delegate.pubkey(), 50
        )
        source = await self.ledger.get_token_account(self.source.address)
        self.assertEqual(source.delegated_amount, 50)

    async def test_unauthorized_transfer(self):
        stranger = Keypair()
        with self.assertRaises(TransactionError):
            await self.ledger.transfer(
                stranger, self.source.address, self.target.address, 1
            )
        with self.assertRaises(TransactionError):
            await self.ledger.approve(
                stranger, self.source.address, stranger.pubkey(), 1
            )

    async def test_owner_transfer_needs_balance(self):
        with self.assertRaises(TransactionError):
            await self.ledger.transfer(
                self.owner, self.source.address, self.target.address, 1001
            )
        await self.ledger.transfer(
            self.owner, self.source.address, self.target.address, 1000
        )
        target = await self.ledger.get_token_account(self.target.address)
        self.assertEqual(target.amount, 1000)

    async def test_missing_accounts(self):
        with self.assertRaises(AccountNotFound):
            await self.ledger.get_token_account(Pubkey(bytes([7] * 32)))
        with self.assertRaises(AccountNotFound):
            await self.ledger.get_mint(Pubkey(bytes([7] * 32)))
        with self.assertRaises(TransactionError):
            await self.ledger.get_or_create_associated_token_account(
                self.owner, Pubkey(bytes([7] * 32)), self.owner.pubkey()
            )
