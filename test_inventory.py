"""Test wallet inventory loading and validation."""

import json
import tempfile
from pathlib import Path
from unittest import TestCase

from xrpl.wallet import Wallet

from bundler.constants import Provenance, Role
from bundler.errors import AssetMismatchError, InventoryError, PreflightError
from bundler.inventory import load_inventory, parse_inventory


class TestInventory(TestCase):
    @classmethod
    def setUpClass(cls):
        cls.issuer = Wallet.create()
        cls.designated = Wallet.create()
        cls.wallets = [Wallet.create() for _ in range(3)]

    def data(self, **kw):
        data = {
            "asset": {"currency": "BND", "issuer": self.issuer.address},
            "designated": {"seed": self.designated.seed, "address": self.designated.address,
                           "provenance": "auto-created", "amount": 0.5},
            "wallets": [{"seed": w.seed, "address": w.address} for w in self.wallets],
        }
        data.update(kw)
        return data

    def test_parse(self):
        inv = parse_inventory(self.data(amounts=[0.4, 0.2, 0.1], issuer_seed=self.issuer.seed))

        self.assertEqual(inv.asset.currency, "BND")
        self.assertEqual(inv.designated.address, self.designated.address)
        self.assertEqual(inv.designated.role, Role.DESIGNATED_LAST)
        self.assertEqual(inv.designated.provenance, Provenance.AUTO_CREATED)
        self.assertEqual(inv.designated_amount, 0.5)
        self.assertEqual([a.address for a in inv.wallets], [w.address for w in self.wallets])
        self.assertTrue(all(a.role == Role.ORDINARY for a in inv.wallets))
        self.assertEqual(inv.amounts, [0.4, 0.2, 0.1])
        self.assertEqual(inv.issuer.address, self.issuer.address)
        self.assertTrue(inv.summary()["issuer_key"])

    def test_bare_seed_entries(self):
        inv = parse_inventory(self.data(designated=self.designated.seed, wallets=[w.seed for w in self.wallets]))
        self.assertEqual(inv.designated.provenance, Provenance.SUPPLIED)
        self.assertIsNone(inv.designated_amount)
        self.assertEqual(len(inv.wallets), 3)
        self.assertIsNone(inv.issuer)
        self.assertEqual(inv.amounts, [])

    def test_address_must_match_seed(self):
        wallets = [{"seed": self.wallets[0].seed, "address": self.wallets[1].address}]
        with self.assertRaises(InventoryError) as cm:
            parse_inventory(self.data(wallets=wallets))
        self.assertIn("wallets[0]", str(cm.exception))

    def test_bad_seed(self):
        with self.assertRaises(InventoryError):
            parse_inventory(self.data(wallets=["not-a-seed"]))

    def test_issuer_key_must_match_asset(self):
        with self.assertRaises(AssetMismatchError) as cm:
            parse_inventory(self.data(issuer_seed=self.wallets[0].seed))
        self.assertIsInstance(cm.exception, PreflightError)

    def test_designated_required(self):
        data = self.data()
        del data["designated"]
        with self.assertRaises(InventoryError):
            parse_inventory(data)

    def test_designated_amount_must_be_positive(self):
        for amount in (-0.5, 0, "lots"):
            designated = {"seed": self.designated.seed, "amount": amount}
            with self.subTest(amount=amount), self.assertRaises(InventoryError) as cm:
                parse_inventory(self.data(designated=designated))
            self.assertIn("positive", str(cm.exception))

    def test_asset_required(self):
        with self.assertRaises(InventoryError):
            parse_inventory(self.data(asset={"currency": "BND"}))

    def test_duplicates_skipped_with_amounts_aligned(self):
        w = self.wallets
        wallets = [w[0].seed, w[1].seed, w[0].seed, self.designated.seed, w[2].seed]
        inv = parse_inventory(self.data(wallets=wallets, amounts=[1, 2, 3, 4, 5]))
        self.assertEqual([a.address for a in inv.wallets], [w[0].address, w[1].address, w[2].address])
        self.assertEqual(inv.amounts, [1.0, 2.0, 5.0])

    def test_unknown_provenance(self):
        designated = {"seed": self.designated.seed, "provenance": "borrowed"}
        with self.assertRaises(InventoryError):
            parse_inventory(self.data(designated=designated))


class TestLoadInventory(TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name) / "inventory.json"

    def tearDown(self):
        self.tmp.cleanup()

    def test_missing_file(self):
        with self.assertRaises(InventoryError):
            load_inventory(self.path)

    def test_invalid_json(self):
        self.path.write_text("{not json")
        with self.assertRaises(InventoryError):
            load_inventory(self.path)

    def test_round_trip_from_disk(self):
        issuer, designated = Wallet.create(), Wallet.create()
        self.path.write_text(json.dumps({
            "asset": {"currency": "BND", "issuer": issuer.address},
            "designated": designated.seed,
            "wallets": [],
        }))
        inv = load_inventory(str(self.path))
        self.assertEqual(inv.designated.address, designated.address)
        self.assertEqual(inv.wallets, [])
