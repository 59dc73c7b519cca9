# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Common configuration for the examples.

Every setting can be overridden with an environment variable, and all of them
default to devnet so the examples are safe to run as they are.

Environment Variables:
    SOLANA_RPC_URL: JSON-RPC endpoint of the node
    SOLANA_KEYSTORE: Key file the examples read wallets from and write them to
    SOLANA_COMMITMENT: Commitment level for reads and confirmations
    AIRDROP_SOL: SOL requested from the faucet for every new wallet

Examples:
    Switching to a local validator::

        import os
        os.environ["SOLANA_RPC_URL"] = "http://127.0.0.1:8899"

        from examples.common import RPC_URL
"""

import os
from decimal import Decimal

# :!:>section_1
RPC_URL = os.getenv("SOLANA_RPC_URL", "https://api.devnet.solana.com")

KEYSTORE_PATH = os.getenv("SOLANA_KEYSTORE", ".env")

COMMITMENT = os.getenv("SOLANA_COMMITMENT", "confirmed")

# Devnet faucets cap single requests, keep this small.
AIRDROP_SOL = Decimal(os.getenv("AIRDROP_SOL", "1"))
# <:!:section_1
