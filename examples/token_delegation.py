# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Token delegation walkthrough: an owner lets a delegate spend part of its tokens.

The example uses two fresh wallets. Alice creates a token with 6 decimals and
mints 1000 of it to herself, then approves Bob to move up to 500. Bob, signing
alone, transfers 200 of Alice's tokens into his own account. Afterwards Alice
holds 800, Bob holds 200, and Bob may still move 300.

Both wallets are funded from the devnet faucet, so no key file is needed.

Examples:
    Run the walkthrough::

        python -m examples.token_delegation

    Expected output::

        === Addresses ===
        Alice: 7Qv...
        Bob: 9hN...

        === Token ===
        Mint: 4sB...
        Alice's account: Fz2...
        Bob's account: 2Lk...

        === After delegated transfer ===
        Alice: 800 (Bob may still move 300)
        Bob: 200
"""

import asyncio

from solders.keypair import Keypair

from spl_delegate.delegation import format_units, to_base_units
from spl_delegate.funding import sol_to_lamports
from spl_delegate.token_client import ClientConfig, TokenClient

from .common import AIRDROP_SOL, COMMITMENT, RPC_URL

DECIMALS = 6


async def main():
    # :!:>section_1
    token_client = TokenClient(RPC_URL, ClientConfig(commitment=COMMITMENT))  # <:!:section_1

    alice = Keypair()
    bob = Keypair()

    print("\n=== Addresses ===")
    print(f"Alice: {alice.pubkey()}")
    print(f"Bob: {bob.pubkey()}")

    # :!:>section_2
    lamports = sol_to_lamports(AIRDROP_SOL)
    await asyncio.gather(
        token_client.request_airdrop(alice.pubkey(), lamports),
        token_client.request_airdrop(bob.pubkey(), lamports),
    )  # <:!:section_2

    # :!:>section_3
    mint = await token_client.create_mint(alice, alice.pubkey(), DECIMALS)
    [alice_account, bob_account] = await asyncio.gather(
        token_client.get_or_create_associated_token_account(
            alice, mint, alice.pubkey()
        ),
        token_client.get_or_create_associated_token_account(
            alice, mint, bob.pubkey()
        ),
    )  # <:!:section_3

    print("\n=== Token ===")
    print(f"Mint: {mint}")
    print(f"Alice's account: {alice_account.address}")
    print(f"Bob's account: {bob_account.address}")

    # :!:>section_4
    await token_client.mint_to(
        alice, mint, alice_account.address, alice, to_base_units(1000, DECIMALS)
    )
    await token_client.approve(
        alice,
        alice_account.address,
        bob.pubkey(),
        to_base_units(500, DECIMALS),
    )
    # Only Bob signs: the approval is his authority.
    txn_hash = await token_client.transfer(
        bob, alice_account.address, bob_account.address, to_base_units(200, DECIMALS)
    )  # <:!:section_4
    print(f"\nDelegated transfer: {txn_hash}")

    alice_state = await token_client.get_token_account(alice_account.address)
    bob_state = await token_client.get_token_account(bob_account.address)

    print("\n=== After delegated transfer ===")
    print(
        f"Alice: {format_units(alice_state.amount, DECIMALS)} "
        f"(Bob may still move {format_units(alice_state.delegated_amount, DECIMALS)})"
    )
    print(f"Bob: {format_units(bob_state.amount, DECIMALS)}")

    await token_client.close()


if __name__ == "__main__":
    asyncio.run(main())
