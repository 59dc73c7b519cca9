# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Token delegation on Solana-compatible ledgers.

This package runs a delegated-transfer workflow end to end: it provisions
wallets from a key file, checks they are funded, creates fungible tokens and
their holding accounts, and then lets a delegate move tokens out of other
wallets' accounts within an approved allowance.

Keys, addresses, transactions and RPC come from ``solders`` and solana-py;
this package only sequences the calls.

Modules:
- **token_client**: the ledger collaborator over solana-py, account layouts, errors
- **ledger**: the collaborator protocol shared by the client and the fake
- **fake_ledger**: in-memory ledger with the token program's rules
- **keystore**: wallet provisioning from a ``KEY=VALUE`` file
- **funding**: retried balance checks and the operator funding checkpoint
- **delegation**: the mint, transfer, approve and delegated transfer phases
- **cli**: the ``run`` and ``wallets`` commands

Quick Start:
    Running the two-wallet scenario against devnet::

        from solders.keypair import Keypair
        from spl_delegate.delegation import DelegationConfig, DelegationPlan, run_delegation
        from spl_delegate.token_client import TokenClient

        async def main(owner: Keypair, delegate: Keypair):
            token_client = TokenClient("https://api.devnet.solana.com")
            report = await run_delegation(
                token_client,
                DelegationPlan.single(owner, delegate),
                DelegationConfig(),
            )
            await token_client.close()
            return report
"""
