# Copyright © Aptos Foundation
# SPDX-License-Identifier: Apache-2.0

"""
Wallet provisioning backed by a ``KEY=VALUE`` key file.

Each wallet is stored as two entries keyed by its 1-based index::

    W1_PUBLIC_KEY=<base58 address>
    W1_SECRET_KEY=<base64 of the 64-byte secret key>

Provisioning either loads every requested wallet from the file or, when any
entry is missing, generates a complete fresh set and writes it back before
returning. A partial set is never mixed with new keys. Entries that are
present but malformed are a configuration error, not a reason to regenerate.

Examples:
    Provisioning four wallets::

        store = KeyStore(".env")
        wallets, generated = provision_wallets(store, 4)
        if generated:
            print(f"Saved new wallets to {store.path}")
"""

import base64
import os
import tempfile
import unittest
from typing import Dict, List, Optional, Tuple

from dotenv import dotenv_values
from solders.keypair import Keypair
from solders.pubkey import Pubkey


class ConfigurationError(Exception):
    """Persisted key material is missing, malformed or inconsistent"""


def public_key_name(index: int) -> str:
    return f"W{index}_PUBLIC_KEY"


def secret_key_name(index: int) -> str:
    return f"W{index}_SECRET_KEY"


def encode_secret_key(wallet: Keypair) -> str:
    return base64.b64encode(bytes(wallet)).decode()


def decode_secret_key(value: str) -> Keypair:
    """
    Restore a wallet from the base64 form of its 64-byte secret key.

    :raises ValueError: If the value is not base64 of 64 bytes, or its trailing
        public key does not belong to its seed
    """
    secret = base64.b64decode(value, validate=True)
    if len(secret) != 64:
        raise ValueError(f"Expected 64 bytes, found {len(secret)}")
    wallet = Keypair.from_seed(secret[:32])
    if bytes(wallet) != secret:
        raise ValueError("The public key half does not match the seed")
    return wallet


class KeyStore:
    """A dotenv file holding wallet keys."""

    path: str

    def __init__(self, path: str = ".env"):
        self.path = path

    def read(self) -> Dict[str, str]:
        """All entries of the file, or an empty dict if it does not exist."""
        if not os.path.exists(self.path):
            return {}
        return {
            key: value
            for (key, value) in dotenv_values(self.path, interpolate=False).items()
            if value is not None
        }

    def load_wallets(self, count: int) -> Optional[List[Keypair]]:
        """
        Load wallets 1..count.

        :return: The wallets, or None if any entry is absent or empty
        :raises ConfigurationError: If an entry is present but cannot be parsed,
            or a public key does not belong to its secret key
        """
        values = self.read()
        names = [
            name
            for index in range(1, count + 1)
            for name in (public_key_name(index), secret_key_name(index))
        ]
        if not all(values.get(name) for name in names):
            return None
        return [
            self._parse_wallet(index, values) for index in range(1, count + 1)
        ]

    def save_wallets(self, wallets: List[Keypair]):
        """
        Rewrite the file with ``wallets`` as W1..Wn.

        Entries that do not describe a wallet are kept; previous wallet entries
        are dropped.
        """
        kept = {
            key: value
            for (key, value) in self.read().items()
            if not _is_wallet_entry(key)
        }
        lines = [f"{key}={_quote(value)}" for (key, value) in kept.items()]
        for index, wallet in enumerate(wallets, start=1):
            lines.append(f"{public_key_name(index)}={wallet.pubkey()}")
            lines.append(f"{secret_key_name(index)}={encode_secret_key(wallet)}")

        with open(self.path, "w", encoding="utf-8") as file:
            file.write("\n".join(lines) + "\n")

    def _parse_wallet(self, index: int, values: Dict[str, str]) -> Keypair:
        try:
            public_key = Pubkey.from_string(values[public_key_name(index)])
        except ValueError as e:
            raise ConfigurationError(
                f"{public_key_name(index)} in {self.path} is not a valid public key"
            ) from e
        try:
            wallet = decode_secret_key(values[secret_key_name(index)])
        except ValueError as e:
            raise ConfigurationError(
                f"{secret_key_name(index)} in {self.path} is not a valid secret key"
            ) from e
        if wallet.pubkey() != public_key:
            raise ConfigurationError(
                f"{public_key_name(index)} in {self.path} does not match "
                f"{secret_key_name(index)}"
            )
        return wallet


def provision_wallets(store: KeyStore, count: int) -> Tuple[List[Keypair], bool]:
    """
    Load ``count`` wallets from ``store``, or generate and persist a new set.

    :return: The wallets and whether they were freshly generated
    """
    if count < 1:
        raise ValueError("At least one wallet is required")
    wallets = store.load_wallets(count)
    if wallets is not None:
        return (wallets, False)

    wallets = [Keypair() for _ in range(count)]
    store.save_wallets(wallets)
    return (wallets, True)


def _is_wallet_entry(key: str) -> bool:
    if not key.startswith("W"):
        return False
    index, _, suffix = key[1:].partition("_")
    return index.isdigit() and suffix in ("PUBLIC_KEY", "SECRET_KEY")


def _quote(value: str) -> str:
    if value and all(c.isalnum() or c in "+/=_-.:" for c in value):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


class Test(unittest.TestCase):
    def setUp(self):
        self.directory = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.directory.name, ".env")
        self.store = KeyStore(self.path)

    def tearDown(self):
        self.directory.cleanup()

    def test_generate_then_load(self):
        (generated, fresh) = provision_wallets(self.store, 4)
        self.assertTrue(fresh)
        self.assertEqual(len(generated), 4)

        (loaded, fresh) = provision_wallets(self.store, 4)
        self.assertFalse(fresh)
        self.assertEqual([w.pubkey() for w in loaded], [w.pubkey() for w in generated])
        self.assertEqual([bytes(w) for w in loaded], [bytes(w) for w in generated])

    def test_load_path_has_no_side_effects(self):
        provision_wallets(self.store, 2)
        mtime = os.stat(self.path).st_mtime_ns
        with open(self.path, encoding="utf-8") as file:
            before = file.read()
        provision_wallets(self.store, 2)
        with open(self.path, encoding="utf-8") as file:
            self.assertEqual(file.read(), before)
        self.assertEqual(os.stat(self.path).st_mtime_ns, mtime)

    def test_partial_set_regenerates_everything(self):
        (original, _) = provision_wallets(self.store, 3)
        values = self.store.read()
        del values[secret_key_name(2)]
        with open(self.path, "w", encoding="utf-8") as file:
            file.write("".join(f"{k}={v}\n" for (k, v) in values.items()))

        (wallets, fresh) = provision_wallets(self.store, 3)
        self.assertTrue(fresh)
        for old, new in zip(original, wallets):
            self.assertNotEqual(old.pubkey(), new.pubkey())
        self.assertEqual(
            [bytes(w) for w in self.store.load_wallets(3) or []],
            [bytes(w) for w in wallets],
        )

    def test_unrelated_entries_survive(self):
        with open(self.path, "w", encoding="utf-8") as file:
            file.write("SOLANA_RPC_URL=http://localhost:8899\nW9_PUBLIC_KEY=stale\n")
        provision_wallets(self.store, 1)
        values = self.store.read()
        self.assertEqual(values["SOLANA_RPC_URL"], "http://localhost:8899")
        self.assertNotIn("W9_PUBLIC_KEY", values)
        self.assertIn(public_key_name(1), values)

    def test_references_are_kept_verbatim(self):
        with open(self.path, "w", encoding="utf-8") as file:
            file.write("BASE=/srv\nDATA_DIR=${BASE}/data\n")
        provision_wallets(self.store, 1)
        with open(self.path, encoding="utf-8") as file:
            self.assertIn('DATA_DIR="${BASE}/data"\n', file.read())
        self.assertEqual(self.store.read()["DATA_DIR"], "${BASE}/data")
        # Tools that expand references still see the same value.
        self.assertEqual(dotenv_values(self.path)["DATA_DIR"], "/srv/data")

    def test_malformed_entries(self):
        wallet = Keypair()
        other = Keypair()
        secret = encode_secret_key(wallet)
        tampered = base64.b64encode(wallet.secret() + bytes(other.pubkey())).decode()
        cases = [
            (str(wallet.pubkey()), "not base64!"),
            (str(wallet.pubkey()), base64.b64encode(wallet.secret()).decode()),
            (str(wallet.pubkey()), tampered),
            ("0OIl", secret),
            (str(other.pubkey()), secret),
        ]
        for public_key, secret_key in cases:
            with open(self.path, "w", encoding="utf-8") as file:
                file.write(f"W1_PUBLIC_KEY={public_key}\nW1_SECRET_KEY={secret_key}\n")
            with self.assertRaises(ConfigurationError):
                provision_wallets(self.store, 1)

    def test_missing_file(self):
        self.assertIsNone(self.store.load_wallets(1))
        self.assertEqual(self.store.read(), {})
