"""Test grouping of launch instructions into transaction units."""

import math
from unittest import IsolatedAsyncioTestCase, TestCase

from bundler.config import BudgetPair, BudgetSettings, DEFAULT_BUDGETS
from bundler.constants import InstructionKind, UnitKind
from bundler.models import Instruction, LookupTable
from bundler.packer import TransactionPacker, chunked, unit_signers
from ledger_fakes import ASSET, FakeLedger, fast_gateway, make_account, make_accounts, make_designated


class TestHelpers(TestCase):
    def test_chunked(self):
        self.assertEqual(chunked([1, 2, 3, 4, 5], 2), [[1, 2], [3, 4], [5]])
        self.assertEqual(chunked([], 4), [])

    def test_unit_signers_distinct_in_order(self):
        a, b = make_accounts(2)
        instructions = [Instruction(a, 1), Instruction(None, 5, InstructionKind.BUDGET_LIMIT),
                        Instruction(b, 2), Instruction(a, 3)]
        self.assertEqual(unit_signers(instructions), [a, b])


class TestTransactionPacker(IsolatedAsyncioTestCase):
    def setUp(self):
        self.ledger = FakeLedger(market=False)
        self.issuer = make_account("Issuer")
        self.designated = make_designated()

    def packer(self, **kw):
        return TransactionPacker(ledger=self.ledger, gateway=fast_gateway(), asset=ASSET, **kw)

    def buys(self, accounts):
        return [(a, self.ledger.buy_instructions(a, ASSET, 0.3)) for a in accounts]

    def creation(self):
        return self.ledger.creation_instructions(self.issuer, ASSET)

    def designated_buy(self):
        return self.designated, self.ledger.buy_instructions(self.designated, ASSET, 0.5)

    async def test_unit_order(self):
        ordinary = make_accounts(5)
        plan = await self.packer().pack(self.creation(), self.designated_buy(), self.buys(ordinary))

        self.assertEqual([u.kind for u in plan],
                         [UnitKind.CREATION, UnitKind.DESIGNATED, UnitKind.ORDINARY, UnitKind.ORDINARY])
        self.assertEqual(plan.units[0].signers, [self.issuer])
        self.assertEqual(plan.units[1].signers, [self.designated])
        self.assertEqual(plan.units[2].signers, ordinary[:4])
        self.assertEqual(plan.units[3].signers, ordinary[4:])
        self.assertEqual(plan.summary()["signers"], [1, 1, 4, 1])

    async def test_ordinary_unit_count_and_capacity(self):
        for m in range(0, 14):
            ordinary = make_accounts(m)
            plan = await self.packer().pack(None, self.designated_buy(), self.buys(ordinary))
            units = [u for u in plan if u.kind == UnitKind.ORDINARY]
            with self.subTest(m=m):
                self.assertEqual(len(units), math.ceil(m / 4))
                self.assertTrue(all(1 <= len(u.signers) <= 4 for u in plan))
                packed = [s for u in units for s in u.signers]
                self.assertEqual(packed, ordinary)

    async def test_creation_skipped_when_market_exists(self):
        self.ledger.market = True
        plan = await self.packer().pack(self.creation(), self.designated_buy(), self.buys(make_accounts(2)))
        self.assertEqual([u.kind for u in plan], [UnitKind.DESIGNATED, UnitKind.ORDINARY])

    async def test_budget_pair_leads_every_unit(self):
        budgets = BudgetSettings({**DEFAULT_BUDGETS, UnitKind.ORDINARY: BudgetPair(limit=900, price=30)})
        plan = await self.packer(budgets=budgets).pack(
            self.creation(), self.designated_buy(), self.buys(make_accounts(3))
        )
        for unit in plan:
            expected = budgets.for_kind(unit.kind)
            with self.subTest(kind=unit.kind):
                self.assertEqual(unit.instructions[0].kind, InstructionKind.BUDGET_LIMIT)
                self.assertEqual(unit.instructions[1].kind, InstructionKind.BUDGET_PRICE)
                self.assertEqual(unit.budget(InstructionKind.BUDGET_LIMIT), expected.limit)
                self.assertEqual(unit.budget(InstructionKind.BUDGET_PRICE), expected.price)
                self.assertFalse(any(i.is_budget for i in unit.instructions[2:]))
        self.assertEqual(plan.units[-1].budget(InstructionKind.BUDGET_PRICE), 30)

    async def test_actions_keep_account_order(self):
        ordinary = make_accounts(3)
        plan = await self.packer().pack(None, None, self.buys(ordinary))
        signers = [i.signer for i in plan.units[0].actions]
        self.assertEqual(signers, [ordinary[0]] * 2 + [ordinary[1]] * 2 + [ordinary[2]] * 2)
        self.assertEqual(plan.units[0].payer, ordinary[0])

    async def test_accounts_without_instructions_are_skipped(self):
        a, b = make_accounts(2)
        ordinary = [(a, []), (b, self.ledger.buy_instructions(b, ASSET, 0.3))]
        plan = await self.packer().pack(None, None, ordinary)
        self.assertEqual(len(plan), 1)
        self.assertEqual(plan.units[0].signers, [b])

    async def test_designated_never_packed_with_ordinary(self):
        ordinary = [*self.buys(make_accounts(2)), (self.designated, self.ledger.buy_instructions(self.designated, ASSET, 1))]
        plan = await self.packer().pack(None, self.designated_buy(), ordinary)
        for unit in plan:
            if unit.kind == UnitKind.ORDINARY:
                self.assertNotIn(self.designated, unit.signers)

    async def test_lookup_table_attached(self):
        table = LookupTable(key="ABCD", entry={"LedgerEntryType": "DirectoryNode"})
        self.ledger.lookup_tables["ABCD"] = table
        plan = await self.packer(lookup_table_key="ABCD").pack(None, self.designated_buy(), self.buys(make_accounts(2)))
        self.assertTrue(all(u.lookup_table is table for u in plan))

    async def test_missing_lookup_table_falls_back(self):
        plan = await self.packer(lookup_table_key="MISSING").pack(None, self.designated_buy(), [])
        self.assertEqual(len(plan), 1)
        self.assertIsNone(plan.units[0].lookup_table)

    async def test_unreachable_lookup_table_falls_back(self):
        self.ledger.lookup_error = True
        plan = await self.packer(lookup_table_key="ABCD").pack(None, self.designated_buy(), [])
        self.assertIsNone(plan.units[0].lookup_table)

    async def test_no_lookup_table_key_skips_resolution(self):
        await self.packer().pack(None, self.designated_buy(), [])
        self.assertEqual(self.ledger.count("resolve_lookup_table"), 0)

    async def test_capacity_validation(self):
        with self.assertRaises(ValueError):
            self.packer(capacity=0)

    async def test_smaller_capacity(self):
        plan = await self.packer(capacity=2).pack(None, None, self.buys(make_accounts(5)))
        self.assertEqual([len(u.signers) for u in plan], [2, 2, 1])
