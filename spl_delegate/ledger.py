# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
The ledger collaborator interface used by the delegation workflow.

Every stateful step of the workflow goes through one object implementing this
protocol. :class:`spl_delegate.token_client.TokenClient` implements it against
a live node; :class:`spl_delegate.fake_ledger.FakeLedger` implements it in
memory for tests and dry runs.

Examples:
    Writing a step that works against either implementation::

        async def fund_and_mint(ledger: Ledger, owner: Keypair) -> Pubkey:
            mint = await ledger.create_mint(owner, owner.pubkey(), 6)
            account = await ledger.get_or_create_associated_token_account(
                owner, mint, owner.pubkey()
            )
            await ledger.mint_to(owner, mint, account.address, owner, 10**9)
            return mint

Note:
    This is a Protocol (structural typing). Implementations do not inherit
    from it, they only need the methods.
"""

from __future__ import annotations

from typing import Optional

from solders.keypair import Keypair
from solders.pubkey import Pubkey
from typing_extensions import Protocol

from .token_client import Mint, TokenAccount


class Ledger(Protocol):
    async def get_balance(self, pubkey: Pubkey) -> int:
        """Native balance of ``pubkey`` in lamports."""
        ...

    async def request_airdrop(self, pubkey: Pubkey, lamports: int) -> str:
        ...

    async def create_mint(
        self,
        payer: Keypair,
        mint_authority: Pubkey,
        decimals: int,
        freeze_authority: Optional[Pubkey] = None,
    ) -> Pubkey:
        """Create a new token type and return its mint address."""
        ...

    async def get_or_create_associated_token_account(
        self, payer: Keypair, mint: Pubkey, owner: Pubkey
    ) -> TokenAccount:
        """Return the holding account of ``owner`` for ``mint``, creating it
        only when absent."""
        ...

    async def get_token_account(self, address: Pubkey) -> TokenAccount:
        ...

    async def get_mint(self, address: Pubkey) -> Mint:
        ...

    async def mint_to(
        self,
        payer: Keypair,
        mint: Pubkey,
        destination: Pubkey,
        authority: Keypair,
        amount: int,
    ) -> str:
        ...

    async def approve(
        self, owner: Keypair, source: Pubkey, delegate: Pubkey, amount: int
    ) -> str:
        ...

    async def transfer(
        self,
        authority: Keypair,
        source: Pubkey,
        destination: Pubkey,
        amount: int,
    ) -> str:
        """Signed by the account owner or by its approved delegate."""
        ...
