"""Test config layering and the typed settings built from it."""

import tempfile
from pathlib import Path
from unittest import TestCase

from bundler.config import (
    GENESIS_SEED,
    BudgetSettings,
    StageSettings,
    WorkerSettings,
    allocation_amounts,
    deep_update,
    load_config,
    submission_mode,
)
from bundler.constants import FeeLevel, OrderingMode, StageName, SubmissionMode, UnitKind


class TestLoadConfig(TestCase):
    def test_package_defaults(self):
        conf = load_config(env={})
        self.assertEqual(conf["ledger"]["max_calls_per_second"], 45)
        self.assertEqual(conf["worker"]["ordering"], "barrier")
        self.assertEqual(conf["funding"]["seed"], GENESIS_SEED)
        self.assertEqual(len(conf["relay"]["urls"]), 2)

    def test_environment_overrides(self):
        conf = load_config(env={
            "RPC_URL": "http://rippled:5005",
            "RELAY_URLS": "https://a.test/bundles, https://b.test/bundles",
            "BUNDLER_SWAP_AMOUNTS": "[0.5, 0.4, \"x\"]",
            "STAGE1_PERCENTAGE": "20",
            "SUBMISSION_MODE": "sequential",
            "FUNDING_SEED": "sEdFunding",
        })
        self.assertEqual(conf["ledger"]["rpc_url"], "http://rippled:5005")
        self.assertEqual(conf["relay"]["urls"], ["https://a.test/bundles", "https://b.test/bundles"])
        self.assertEqual(allocation_amounts(conf), [0.5, 0.4, None])
        self.assertEqual(StageSettings.from_cfg(conf).stage1_percentage, 20.0)
        self.assertEqual(submission_mode(conf), SubmissionMode.SEQUENTIAL)
        self.assertEqual(conf["funding"]["seed"], "sEdFunding")

    def test_empty_environment_values_ignored(self):
        conf = load_config(env={"RPC_URL": ""})
        self.assertEqual(conf["ledger"]["rpc_url"], "http://localhost:5005")

    def test_malformed_list_ignored(self):
        conf = load_config(env={"BUNDLER_SWAP_AMOUNTS": "[0.5,"})
        self.assertEqual(conf["allocation"]["amounts"], [])

    def test_override_file_merges(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "local.toml"
            path.write_text('[worker]\nordering = "delay"\n\n[budget.ordinary]\nprice = 7000\n')
            conf = load_config(path, env={})
        self.assertEqual(conf["worker"]["ordering"], "delay")
        self.assertEqual(conf["worker"]["max_attempts"], 500)
        self.assertEqual(conf["budget"]["ordinary"], {"limit": 500_000, "price": 7000})

    def test_override_file_from_environment(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "local.toml"
            path.write_text('[stages]\nstage2_percentage = 10\n')
            conf = load_config(env={"BUNDLER_CONFIG": str(path)})
        self.assertEqual(conf["stages"]["stage2_percentage"], 10)

    def test_missing_override_file(self):
        conf = load_config("/nonexistent/bundler.toml", env={})
        self.assertEqual(conf["ledger"]["horizon"], 20)

    def test_deep_update(self):
        base = {"a": {"b": 1, "c": 2}, "d": 3}
        deep_update(base, {"a": {"b": 10}, "e": 5})
        self.assertEqual(base, {"a": {"b": 10, "c": 2}, "d": 3, "e": 5})


class TestStageSettings(TestCase):
    def test_defaults(self):
        s = StageSettings.from_cfg(load_config(env={}))
        self.assertEqual((s.stage1_percentage, s.stage2_percentage, s.stage3_percentage), (30, 30, 40))
        self.assertEqual(s.stage(StageName.STAGE2).threshold, 10)

    def test_invalid_values_fall_back(self):
        s = StageSettings.from_cfg({"stages": {"stage1_percentage": "abc", "stage2_percentage": -5,
                                               "stage3_threshold": "nan"}})
        self.assertEqual(s.stage1_percentage, 30)
        self.assertEqual(s.stage2_percentage, 30)
        self.assertEqual(s.thresholds[StageName.STAGE3], 20)

    def test_percentages_over_hundred_revert(self):
        s = StageSettings.from_cfg({"stages": {"stage1_percentage": 70, "stage2_percentage": 50}})
        self.assertEqual((s.stage1_percentage, s.stage2_percentage), (30, 30))

    def test_custom_split(self):
        s = StageSettings.from_cfg({"stages": {"stage1_percentage": 50, "stage2_percentage": 25}})
        self.assertEqual(s.stage(StageName.STAGE3).percentage, 25)


class TestWorkerAndBudgetSettings(TestCase):
    def test_worker_from_cfg(self):
        w = WorkerSettings.from_cfg({"worker": {"ordering": "delay", "fee_level": "high", "max_attempts": 40}})
        self.assertEqual(w.ordering, OrderingMode.DELAY)
        self.assertEqual(w.fee_level, FeeLevel.HIGH)
        self.assertEqual(w.max_attempts, 40)

    def test_worker_unknown_values(self):
        w = WorkerSettings.from_cfg({"worker": {"ordering": "random", "fee_level": "ultra", "max_attempts": 0}})
        self.assertEqual(w.ordering, OrderingMode.BARRIER)
        self.assertEqual(w.fee_level, FeeLevel.MEDIUM)
        self.assertEqual(w.max_attempts, 1)

    def test_budgets(self):
        b = BudgetSettings.from_cfg({"budget": {"creation": {"limit": 9_000_000}}})
        self.assertEqual(b.for_kind(UnitKind.CREATION).limit, 9_000_000)
        self.assertEqual(b.for_kind(UnitKind.CREATION).price, 2_000_000)
        self.assertEqual(b.for_kind(UnitKind.ORDINARY).price, 5_000)

    def test_submission_mode(self):
        self.assertEqual(submission_mode({"launch": {"mode": "SEQUENTIAL"}}), SubmissionMode.SEQUENTIAL)
        self.assertEqual(submission_mode({"launch": {"mode": "carrier-pigeon"}}), SubmissionMode.RELAY)
        self.assertEqual(submission_mode({}), SubmissionMode.RELAY)
