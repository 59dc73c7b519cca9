# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Fungible token operations: mints, holding accounts, minting, approvals and
transfers.

This module is the ledger collaborator of the delegation workflow. It is a
thin layer over solana-py: instructions come from ``spl.token.instructions``
and ``solders.system_program``, account data is decoded with the token
program layouts, and transactions are signed with ``solders`` and submitted
through one shared :class:`solana.rpc.async_api.AsyncClient`.

Key concepts:
- **Mint**: a token type. Created with a decimal precision, a mint authority
  and an optional freeze authority.
- **Associated token account**: the canonical holding account of one wallet
  for one mint, at an address derived from (owner, token program, mint).
- **Delegate**: a wallet approved to move up to ``delegated_amount`` out of a
  holding account with its own signature. A new approval replaces the old one.

Examples:
    Creating a token and a holding account::

        token_client = TokenClient(RPC_URL)
        mint = await token_client.create_mint(owner, owner.pubkey(), 6)
        account = await token_client.get_or_create_associated_token_account(
            owner, mint, owner.pubkey()
        )

    Delegating and spending an allowance::

        await token_client.approve(owner, account.address, delegate.pubkey(), 500)
        await token_client.transfer(delegate, account.address, target, 200)
"""

from __future__ import annotations

import asyncio
import logging
import unittest
import unittest.mock
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import httpx
import spl.token.instructions as spl_token
from nacl.signing import VerifyKey
from solana.constants import LAMPORTS_PER_SOL
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.core import (
    RPCException,
    TransactionExpiredBlockheightExceededError,
    UnconfirmedTxError,
)
from solana.rpc.models import TxOpts
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.system_program import CreateAccountParams, create_account
from solders.transaction import Transaction
from spl.token._layouts import ACCOUNT_LAYOUT, MINT_LAYOUT
from spl.token.constants import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    TOKEN_2022_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
)

from .metadata import Metadata

__all__ = [
    "ASSOCIATED_TOKEN_PROGRAM_ID",
    "COMMITMENT_LEVELS",
    "LAMPORTS_PER_SOL",
    "TOKEN_2022_PROGRAM_ID",
    "TOKEN_PROGRAM_ID",
    "AccountNotFound",
    "AccountState",
    "ClientConfig",
    "InvalidAccountOwner",
    "Mint",
    "TokenAccount",
    "TokenClient",
    "TransactionError",
    "TransactionTimeout",
    "get_associated_token_address",
]

COMMITMENT_LEVELS = ["processed", "confirmed", "finalized"]

T = TypeVar("T")


@dataclass
class ClientConfig:
    """Common configuration for clients, particularly for submitting transactions"""

    commitment: str = "confirmed"
    timeout: float = 30.0
    rate_limit_retries: int = 5
    rate_limit_backoff: float = 0.5


class AccountNotFound(Exception):
    """Nothing exists at the requested address"""

    account: Pubkey

    def __init__(self, message: str, account: Pubkey):
        super().__init__(message)
        self.account = account


class InvalidAccountOwner(Exception):
    """The account exists but is not owned by the expected token program"""

    def __init__(self, address: Pubkey, owner: Pubkey):
        super().__init__(f"Account {address} is owned by {owner}")
        self.address = address


class TransactionError(Exception):
    """The ledger rejected a transaction.

    ``logs`` holds the program logs of the failed simulation when the node
    returned them.
    """

    signature: Optional[str]
    logs: Optional[List[str]]

    def __init__(
        self,
        message: str,
        signature: Optional[str] = None,
        logs: Optional[List[str]] = None,
    ):
        super().__init__(message)
        self.signature = signature
        self.logs = logs

    def get_logs(self) -> List[str]:
        return list(self.logs or [])


class TransactionTimeout(TransactionError):
    """The transaction did not reach the configured commitment in time"""


class AccountState(IntEnum):
    UNINITIALIZED = 0
    INITIALIZED = 1
    FROZEN = 2


def _coption(tag: int, value: bytes) -> Optional[Pubkey]:
    return Pubkey(value) if tag else None


@dataclass
class Mint:
    """Decoded state of a mint account (the first 82 bytes of its data)."""

    address: Pubkey
    mint_authority: Optional[Pubkey]
    supply: int
    decimals: int
    is_initialized: bool
    freeze_authority: Optional[Pubkey]

    LENGTH = MINT_LAYOUT.sizeof()

    @staticmethod
    def parse(address: Pubkey, data: bytes) -> Mint:
        if len(data) < Mint.LENGTH:
            raise ValueError(f"Mint {address} has only {len(data)} bytes of data")
        decoded = MINT_LAYOUT.parse(data[: Mint.LENGTH])
        return Mint(
            address=address,
            mint_authority=_coption(
                decoded.mint_authority_option, decoded.mint_authority
            ),
            supply=decoded.supply,
            decimals=decoded.decimals,
            is_initialized=bool(decoded.is_initialized),
            freeze_authority=_coption(
                decoded.freeze_authority_option, decoded.freeze_authority
            ),
        )


@dataclass
class TokenAccount:
    """Decoded state of a holding account (the first 165 bytes of its data).

    Token-2022 accounts may carry extensions after the base layout; they are
    ignored here.
    """

    address: Pubkey
    mint: Pubkey
    owner: Pubkey
    amount: int
    delegate: Optional[Pubkey]
    state: AccountState
    is_native: Optional[int]
    delegated_amount: int
    close_authority: Optional[Pubkey]

    LENGTH = ACCOUNT_LAYOUT.sizeof()

    @staticmethod
    def parse(address: Pubkey, data: bytes) -> TokenAccount:
        if len(data) < TokenAccount.LENGTH:
            raise ValueError(
                f"Token account {address} has only {len(data)} bytes of data"
            )
        decoded = ACCOUNT_LAYOUT.parse(data[: TokenAccount.LENGTH])
        return TokenAccount(
            address=address,
            mint=Pubkey(decoded.mint),
            owner=Pubkey(decoded.owner),
            amount=decoded.amount,
            delegate=_coption(decoded.delegate_option, decoded.delegate),
            state=AccountState(decoded.state),
            is_native=decoded.is_native if decoded.is_native_option else None,
            delegated_amount=decoded.delegated_amount,
            close_authority=_coption(
                decoded.close_authority_option, decoded.close_authority
            ),
        )

    def to_bytes(self) -> bytes:
        empty = bytes(Pubkey.default())
        return ACCOUNT_LAYOUT.build(
            dict(
                mint=bytes(self.mint),
                owner=bytes(self.owner),
                amount=self.amount,
                delegate_option=int(self.delegate is not None),
                delegate=bytes(self.delegate) if self.delegate else empty,
                state=int(self.state),
                is_native_option=int(self.is_native is not None),
                is_native=self.is_native or 0,
                delegated_amount=self.delegated_amount,
                close_authority_option=int(self.close_authority is not None),
                close_authority=(
                    bytes(self.close_authority) if self.close_authority else empty
                ),
            )
        )


def get_associated_token_address(
    owner: Pubkey, mint: Pubkey, program_id: Pubkey = TOKEN_2022_PROGRAM_ID
) -> Pubkey:
    """Derive the associated holding account of ``owner`` for ``mint``."""
    (address, _) = Pubkey.find_program_address(
        [bytes(owner), bytes(program_id), bytes(mint)], ASSOCIATED_TOKEN_PROGRAM_ID
    )
    return address


def _is_rate_limited(error: SolanaRpcException) -> bool:
    cause = error.__cause__
    return (
        isinstance(cause, httpx.HTTPStatusError)
        and cause.response.status_code == 429
    )


class TokenClient:
    """Token operations over a shared solana-py ``AsyncClient``."""

    client: AsyncClient
    client_config: ClientConfig
    program_id: Pubkey

    def __init__(
        self,
        rpc_url: str,
        client_config: ClientConfig = ClientConfig(),
        program_id: Pubkey = TOKEN_2022_PROGRAM_ID,
    ):
        self.client_config = client_config
        self.program_id = program_id
        self.client = AsyncClient(
            rpc_url,
            self.commitment,
            timeout=client_config.timeout,
            extra_headers={Metadata.CLIENT_HEADER: Metadata.get_client_header_val()},
        )

    @property
    def commitment(self) -> Commitment:
        return Commitment(self.client_config.commitment)

    async def close(self):
        await self.client.close()

    async def get_balance(self, pubkey: Pubkey) -> int:
        resp = await self._call(self.client.get_balance, pubkey, self.commitment)
        return resp.value

    async def request_airdrop(self, pubkey: Pubkey, lamports: int) -> str:
        resp = await self._call(
            self.client.request_airdrop, pubkey, lamports, self.commitment
        )
        await self._call(self.client.confirm_transaction, resp.value, self.commitment)
        return str(resp.value)

    async def get_mint(self, address: Pubkey) -> Mint:
        data = await self._owned_account_data(address)
        return Mint.parse(address, data)

    async def get_token_account(self, address: Pubkey) -> TokenAccount:
        """
        Read a holding account.

        :raises AccountNotFound: If nothing exists at ``address``
        :raises InvalidAccountOwner: If the account is not a token account of
            this client's token program
        """
        data = await self._owned_account_data(address)
        return TokenAccount.parse(address, data)

    async def create_mint(
        self,
        payer: Keypair,
        mint_authority: Pubkey,
        decimals: int,
        freeze_authority: Optional[Pubkey] = None,
        keypair: Optional[Keypair] = None,
    ) -> Pubkey:
        """
        Create and initialize a new mint in a single transaction.

        :param payer: Pays rent and fees, signs
        :param keypair: Address of the new mint; generated when omitted
        :return: The mint address
        """
        mint = keypair or Keypair()
        resp = await self._call(
            self.client.get_minimum_balance_for_rent_exemption,
            Mint.LENGTH,
            self.commitment,
        )
        instructions = [
            create_account(
                CreateAccountParams(
                    from_pubkey=payer.pubkey(),
                    to_pubkey=mint.pubkey(),
                    lamports=resp.value,
                    space=Mint.LENGTH,
                    owner=self.program_id,
                )
            ),
            spl_token.initialize_mint(
                spl_token.InitializeMintParams(
                    decimals=decimals,
                    program_id=self.program_id,
                    mint=mint.pubkey(),
                    mint_authority=mint_authority,
                    freeze_authority=freeze_authority,
                )
            ),
        ]
        await self.send_and_confirm_transaction(instructions, [payer, mint])
        return mint.pubkey()

    async def get_or_create_associated_token_account(
        self, payer: Keypair, mint: Pubkey, owner: Pubkey
    ) -> TokenAccount:
        """
        Return the associated holding account of ``owner`` for ``mint``,
        creating it first if it does not exist.

        Nothing is submitted when the account already exists.
        """
        if not owner.is_on_curve():
            raise ValueError(f"Owner {owner} is not a wallet address")
        address = get_associated_token_address(owner, mint, self.program_id)
        try:
            return await self.get_token_account(address)
        except AccountNotFound:
            pass

        instruction = spl_token.create_idempotent_associated_token_account(
            payer.pubkey(), owner, mint, self.program_id
        )
        await self.send_and_confirm_transaction([instruction], [payer])
        return await self.get_token_account(address)

    async def mint_to(
        self,
        payer: Keypair,
        mint: Pubkey,
        destination: Pubkey,
        authority: Keypair,
        amount: int,
    ) -> str:
        instruction = spl_token.mint_to(
            spl_token.MintToParams(
                program_id=self.program_id,
                mint=mint,
                dest=destination,
                mint_authority=authority.pubkey(),
                amount=amount,
            )
        )
        return await self.send_and_confirm_transaction(
            [instruction], [payer, authority]
        )

    async def approve(
        self, owner: Keypair, source: Pubkey, delegate: Pubkey, amount: int
    ) -> str:
        """Allow ``delegate`` to move up to ``amount`` base units out of ``source``."""
        instruction = spl_token.approve(
            spl_token.ApproveParams(
                program_id=self.program_id,
                source=source,
                delegate=delegate,
                owner=owner.pubkey(),
                amount=amount,
            )
        )
        return await self.send_and_confirm_transaction([instruction], [owner])

    async def transfer(
        self,
        authority: Keypair,
        source: Pubkey,
        destination: Pubkey,
        amount: int,
    ) -> str:
        """Move ``amount`` base units; ``authority`` is the owner or its delegate."""
        instruction = spl_token.transfer(
            spl_token.TransferParams(
                program_id=self.program_id,
                source=source,
                dest=destination,
                owner=authority.pubkey(),
                amount=amount,
            )
        )
        return await self.send_and_confirm_transaction(
            [instruction], [authority]
        )

    async def send_and_confirm_transaction(
        self, instructions: List[Instruction], signers: List[Keypair]
    ) -> str:
        """
        Sign with every signer, the first one paying fees, then submit and
        wait for the configured commitment.

        :return: The transaction signature
        :raises TransactionError: If the node rejects the transaction
        :raises TransactionTimeout: If it is not confirmed before its blockhash
            expires
        """
        unique: Dict[Pubkey, Keypair] = {}
        for signer in signers:
            unique.setdefault(signer.pubkey(), signer)
        blockhash = await self._call(self.client.get_latest_blockhash, self.commitment)
        transaction = Transaction.new_signed_with_payer(
            instructions,
            signers[0].pubkey(),
            list(unique.values()),
            blockhash.value.blockhash,
        )
        signature = str(transaction.signatures[0])
        opts = TxOpts(
            preflight_commitment=self.commitment,
            last_valid_block_height=blockhash.value.last_valid_block_height,
        )
        try:
            await self._call(self.client.send_raw_transaction, bytes(transaction), opts)
        except RPCException as e:
            error = e.args[0] if e.args else e
            data = getattr(error, "data", None)
            raise TransactionError(
                f"Transaction {signature} rejected: {getattr(error, 'message', error)}",
                signature,
                getattr(data, "logs", None),
            ) from e
        except (UnconfirmedTxError, TransactionExpiredBlockheightExceededError) as e:
            raise TransactionTimeout(
                f"Transaction {signature} was not confirmed: {e}", signature
            ) from e
        return signature

    async def _call(self, method: Callable[..., Awaitable[T]], *args: Any) -> T:
        """Invoke an RPC method, backing off while the node rate limits us."""
        backoff = self.client_config.rate_limit_backoff
        for attempt in range(self.client_config.rate_limit_retries + 1):
            try:
                return await method(*args)
            except SolanaRpcException as e:
                if (
                    not _is_rate_limited(e)
                    or attempt == self.client_config.rate_limit_retries
                ):
                    raise
            logging.warning(
                f"Rate limited by the node, retrying in {backoff:.1f}s "
                f"({attempt + 1}/{self.client_config.rate_limit_retries})"
            )
            await asyncio.sleep(backoff)
            backoff *= 2
        raise AssertionError("unreachable")

    async def _owned_account_data(self, address: Pubkey) -> bytes:
        resp = await self._call(
            self.client.get_account_info, address, self.commitment, "base64"
        )
        if resp.value is None:
            raise AccountNotFound(f"{address}", address)
        if resp.value.owner != self.program_id:
            raise InvalidAccountOwner(address, resp.value.owner)
        return bytes(resp.value.data)


class Test(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.token_client = TokenClient(
            "http://localhost:8899", ClientConfig(rate_limit_backoff=0)
        )
        self.sent: List[Transaction] = []
        self.blockhash = Hash.new_unique()

        async def send_raw_transaction(raw, opts):
            transaction = Transaction.from_bytes(raw)
            self.sent.append(transaction)
            return unittest.mock.Mock(value=transaction.signatures[0])

        async def get_latest_blockhash(commitment):
            return unittest.mock.Mock(
                value=unittest.mock.Mock(
                    blockhash=self.blockhash, last_valid_block_height=1_000
                )
            )

        client = self.token_client.client
        for (name, side_effect) in [
            ("send_raw_transaction", send_raw_transaction),
            ("get_latest_blockhash", get_latest_blockhash),
        ]:
            patcher = unittest.mock.patch.object(client, name, side_effect=side_effect)
            patcher.start()
            self.addCleanup(patcher.stop)

    async def asyncTearDown(self):
        await self.token_client.close()

    def signers(self, transaction: Transaction) -> List[Pubkey]:
        """The signing keys of a submitted transaction, after checking every
        signature against the message."""
        message = transaction.message
        keys = message.account_keys[: message.header.num_required_signatures]
        for key, signature in zip(keys, transaction.signatures):
            VerifyKey(bytes(key)).verify(bytes(message), bytes(signature))
        return list(keys)

    def instructions(self, transaction: Transaction):
        """(program id, data) for every instruction of a submitted transaction."""
        message = transaction.message
        return [
            (message.account_keys[ix.program_id_index], bytes(ix.data))
            for ix in message.instructions
        ]

    async def test_create_mint(self):
        payer = Keypair()
        mint = Keypair()
        with unittest.mock.patch.object(
            self.token_client.client,
            "get_minimum_balance_for_rent_exemption",
            return_value=unittest.mock.Mock(value=1_461_600),
        ):
            address = await self.token_client.create_mint(
                payer, payer.pubkey(), 6, keypair=mint
            )

        self.assertEqual(address, mint.pubkey())
        [transaction] = self.sent
        self.assertEqual(self.signers(transaction), [payer.pubkey(), mint.pubkey()])
        self.assertEqual(transaction.message.recent_blockhash, self.blockhash)
        [(system, create), (token, initialize)] = self.instructions(transaction)
        self.assertEqual(system, SYSTEM_PROGRAM_ID)
        self.assertEqual(
            create,
            bytes(4)
            + (1_461_600).to_bytes(8, "little")
            + (82).to_bytes(8, "little")
            + bytes(TOKEN_2022_PROGRAM_ID),
        )
        self.assertEqual(token, TOKEN_2022_PROGRAM_ID)
        # InitializeMint, 6 decimals, the authority and no freeze authority.
        self.assertEqual(initialize[:2], bytes([0, 6]))
        self.assertEqual(initialize[2:34], bytes(payer.pubkey()))
        self.assertEqual(initialize[34], 0)

    async def test_mint_to(self):
        owner = Keypair()
        (mint, destination) = (Keypair().pubkey(), Keypair().pubkey())
        signature = await self.token_client.mint_to(
            owner, mint, destination, owner, 1_000_000_000
        )

        [transaction] = self.sent
        self.assertEqual(signature, str(transaction.signatures[0]))
        self.assertEqual(self.signers(transaction), [owner.pubkey()])
        self.assertEqual(
            self.instructions(transaction),
            [(TOKEN_2022_PROGRAM_ID, bytes.fromhex("07" "00ca9a3b00000000"))],
        )

    async def test_approve_is_signed_by_the_owner(self):
        owner = Keypair()
        delegate = Keypair()
        source = Keypair().pubkey()
        await self.token_client.approve(owner, source, delegate.pubkey(), 500_000_000)

        [transaction] = self.sent
        self.assertEqual(self.signers(transaction), [owner.pubkey()])
        self.assertIn(delegate.pubkey(), transaction.message.account_keys)
        self.assertEqual(
            self.instructions(transaction),
            [(TOKEN_2022_PROGRAM_ID, bytes.fromhex("04" "0065cd1d00000000"))],
        )

    async def test_delegated_transfer_is_signed_by_the_delegate_alone(self):
        owner = Keypair()
        delegate = Keypair()
        source = get_associated_token_address(owner.pubkey(), Keypair().pubkey())
        destination = Keypair().pubkey()
        await self.token_client.transfer(delegate, source, destination, 200_000_000)

        [transaction] = self.sent
        self.assertEqual(self.signers(transaction), [delegate.pubkey()])
        self.assertNotIn(owner.pubkey(), transaction.message.account_keys)
        self.assertEqual(
            self.instructions(transaction),
            [(TOKEN_2022_PROGRAM_ID, bytes.fromhex("03" "00c2eb0b00000000"))],
        )

    async def test_legacy_token_program(self):
        legacy = TokenClient(
            "http://localhost:8899", ClientConfig(), TOKEN_PROGRAM_ID
        )
        owner = Keypair()
        with unittest.mock.patch.object(
            legacy,
            "send_and_confirm_transaction",
            return_value="sig",
        ) as send:
            await legacy.transfer(owner, Keypair().pubkey(), Keypair().pubkey(), 1)
        [instruction] = send.call_args[0][0]
        self.assertEqual(instruction.program_id, TOKEN_PROGRAM_ID)
        await legacy.close()

    async def test_rejections_carry_program_logs(self):
        failure = unittest.mock.Mock(
            message="Transaction simulation failed: Error processing Instruction 0",
            data=unittest.mock.Mock(
                logs=["Program log: Error: insufficient funds"]
            ),
        )
        with unittest.mock.patch.object(
            self.token_client.client,
            "send_raw_transaction",
            side_effect=RPCException(failure),
        ):
            with self.assertRaises(TransactionError) as cm:
                await self.token_client.transfer(
                    Keypair(), Keypair().pubkey(), Keypair().pubkey(), 1
                )
        self.assertEqual(
            cm.exception.get_logs(), ["Program log: Error: insufficient funds"]
        )
        self.assertIsNotNone(cm.exception.signature)

    async def test_rate_limits_are_retried(self):
        request = httpx.Request("POST", "http://localhost:8899")
        too_many = httpx.HTTPStatusError(
            "Too Many Requests",
            request=request,
            response=httpx.Response(429, request=request),
        )
        unavailable = httpx.HTTPStatusError(
            "Service Unavailable",
            request=request,
            response=httpx.Response(503, request=request),
        )

        def wrapped(error: Exception) -> SolanaRpcException:
            try:
                raise SolanaRpcException(error, AsyncClient.get_balance) from error
            except SolanaRpcException as e:
                return e

        balance = unittest.mock.AsyncMock(
            side_effect=[wrapped(too_many), unittest.mock.Mock(value=42)]
        )
        with unittest.mock.patch.object(
            self.token_client.client, "get_balance", balance
        ), self.assertLogs(level="WARNING"):
            self.assertEqual(await self.token_client.get_balance(Keypair().pubkey()), 42)

        balance = unittest.mock.AsyncMock(side_effect=wrapped(unavailable))
        with unittest.mock.patch.object(
            self.token_client.client, "get_balance", balance
        ):
            with self.assertRaises(SolanaRpcException):
                await self.token_client.get_balance(Keypair().pubkey())
        self.assertEqual(balance.await_count, 1)

    def test_token_account_layout(self):
        account = TokenAccount(
            address=Pubkey(bytes([9] * 32)),
            mint=Pubkey(bytes([1] * 32)),
            owner=Pubkey(bytes([2] * 32)),
            amount=800_000_000,
            delegate=Pubkey(bytes([4] * 32)),
            state=AccountState.INITIALIZED,
            is_native=None,
            delegated_amount=300_000_000,
            close_authority=None,
        )
        data = account.to_bytes()
        self.assertEqual(len(data), 165)
        # Token-2022 extension bytes after the base layout are ignored.
        parsed = TokenAccount.parse(account.address, data + bytes([2, 7, 0, 0, 0]))
        self.assertEqual(parsed, account)

        with self.assertRaises(ValueError):
            TokenAccount.parse(account.address, data[:100])

    def test_mint_layout(self):
        authority = Pubkey(bytes([1] * 32))
        data = MINT_LAYOUT.build(
            dict(
                mint_authority_option=1,
                mint_authority=bytes(authority),
                supply=1_000_000_000,
                decimals=6,
                is_initialized=1,
                freeze_authority_option=0,
                freeze_authority=bytes(32),
            )
        )
        self.assertEqual(len(data), 82)
        mint = Mint.parse(Pubkey(bytes([9] * 32)), data)
        self.assertEqual(mint.mint_authority, authority)
        self.assertEqual(mint.supply, 1_000_000_000)
        self.assertEqual(mint.decimals, 6)
        self.assertTrue(mint.is_initialized)
        self.assertIsNone(mint.freeze_authority)

    def test_associated_address_depends_on_owner_mint_and_program(self):
        owner = Keypair().pubkey()
        mint = Keypair().pubkey()
        address = get_associated_token_address(owner, mint)
        self.assertFalse(address.is_on_curve())
        self.assertEqual(address, get_associated_token_address(owner, mint))
        self.assertEqual(
            address, spl_token.get_associated_token_address(owner, mint, TOKEN_2022_PROGRAM_ID)
        )
        self.assertNotEqual(
            address, get_associated_token_address(owner, mint, TOKEN_PROGRAM_ID)
        )
        self.assertNotEqual(
            address, get_associated_token_address(Keypair().pubkey(), mint)
        )

    async def test_get_or_create_is_idempotent(self):
        payer = Keypair()
        mint = Keypair().pubkey()
        address = get_associated_token_address(payer.pubkey(), mint)
        account = TokenAccount(
            address=address,
            mint=mint,
            owner=payer.pubkey(),
            amount=0,
            delegate=None,
            state=AccountState.INITIALIZED,
            is_native=None,
            delegated_amount=0,
            close_authority=None,
        )
        stored = unittest.mock.Mock(
            owner=TOKEN_2022_PROGRAM_ID, lamports=2_074_080, data=account.to_bytes()
        )
        accounts: Dict[Pubkey, Any] = {}

        async def get_account_info(pubkey, commitment, encoding):
            return unittest.mock.Mock(value=accounts.get(pubkey))

        async def send_and_confirm_transaction(instructions, signers):
            accounts[address] = stored
            return "sig"

        with unittest.mock.patch.object(
            self.token_client.client, "get_account_info", side_effect=get_account_info
        ), unittest.mock.patch.object(
            self.token_client,
            "send_and_confirm_transaction",
            side_effect=send_and_confirm_transaction,
        ) as send:
            first = await self.token_client.get_or_create_associated_token_account(
                payer, mint, payer.pubkey()
            )
            second = await self.token_client.get_or_create_associated_token_account(
                payer, mint, payer.pubkey()
            )

        self.assertEqual(first.address, address)
        self.assertEqual(second.address, address)
        self.assertEqual(send.call_count, 1)
        sent_instruction = send.call_args[0][0][0]
        self.assertEqual(sent_instruction.program_id, ASSOCIATED_TOKEN_PROGRAM_ID)
        self.assertEqual(bytes(sent_instruction.data), b"\x01")
        self.assertEqual(send.call_args[0][1], [payer])

        with self.assertRaises(ValueError):
            await self.token_client.get_or_create_associated_token_account(
                payer, mint, address
            )

    async def test_wrong_owner_program(self):
        info = unittest.mock.Mock(owner=SYSTEM_PROGRAM_ID, lamports=1, data=b"")
        with unittest.mock.patch.object(
            self.token_client.client,
            "get_account_info",
            return_value=unittest.mock.Mock(value=info),
        ):
            with self.assertRaises(InvalidAccountOwner):
                await self.token_client.get_token_account(Pubkey(bytes([5] * 32)))
        with unittest.mock.patch.object(
            self.token_client.client,
            "get_account_info",
            return_value=unittest.mock.Mock(value=None),
        ):
            with self.assertRaises(AccountNotFound):
                await self.token_client.get_mint(Pubkey(bytes([5] * 32)))
