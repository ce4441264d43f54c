"""Test the command line entry point."""

import io
import json
import tempfile
from contextlib import redirect_stdout
from pathlib import Path
from unittest import TestCase
from unittest.mock import patch

from bundler.__main__ import EXIT_FATAL, EXIT_OK, main, parse_args
from bundler.constants import SubmissionMode
from bundler.errors import InventoryError
from bundler.models import BundlePlan, GatherSummary, LaunchResult, StageSummary, SubmissionResult


class StubOrchestrator:
    def __init__(self, ok=True):
        self.ok = ok
        self.calls = []

    async def run_stage(self, stage, *, wait_for_threshold=None):
        self.calls.append(("sell", stage, wait_for_threshold))
        return StageSummary(stage=stage, tasks=[], succeeded=0, failed=2, duration=1.0)

    async def launch(self, mode=None):
        self.calls.append(("launch", mode))
        return LaunchResult(funding=None, plan=BundlePlan(),
                            submission=SubmissionResult(ok=self.ok, mode=SubmissionMode.SEQUENTIAL))

    async def gather(self, *, new_only=False):
        self.calls.append(("gather", new_only))
        return GatherSummary(destination="rFunder", results=[], duration=0.5, new_only=new_only)

    async def bundle_status(self, bundle_id):
        return None


class TestCli(TestCase):
    def test_parse_args(self):
        args = parse_args(["-i", "inv.json", "sell", "stage2", "--wait-threshold"])
        self.assertEqual((args.command, args.stage, args.wait_threshold, args.inventory),
                         ("sell", "stage2", True, "inv.json"))
        self.assertIsNone(parse_args(["sell", "all"]).wait_threshold)
        self.assertFalse(parse_args(["sell", "all", "--no-wait-threshold"]).wait_threshold)
        with self.assertRaises(SystemExit):
            parse_args(["sell", "stage4"])

    def run_main(self, argv, orch=None, error=None):
        out = io.StringIO()
        with patch("bundler.orchestrator.from_config", return_value=orch, side_effect=error) as build, \
                redirect_stdout(out):
            code = main(argv)
        return code, out.getvalue(), build

    def test_sell_failures_are_not_fatal(self):
        orch = StubOrchestrator()
        code, out, _ = self.run_main(["sell", "stage1"], orch)
        self.assertEqual(code, EXIT_OK)
        self.assertEqual(json.loads(out)["failed"], 2)
        self.assertEqual(orch.calls, [("sell", "stage1", None)])

    def test_launch_exit_codes(self):
        code, out, _ = self.run_main(["launch", "--mode", "sequential"], StubOrchestrator())
        self.assertEqual(code, EXIT_OK)
        self.assertTrue(json.loads(out)["ok"])
        code, _, _ = self.run_main(["launch"], StubOrchestrator(ok=False))
        self.assertEqual(code, EXIT_FATAL)

    def test_gather(self):
        orch = StubOrchestrator()
        code, out, _ = self.run_main(["gather", "--new-only"], orch)
        self.assertEqual(code, EXIT_OK)
        self.assertEqual(json.loads(out)["destination"], "rFunder")
        self.assertEqual(orch.calls, [("gather", True)])
        self.assertFalse(parse_args(["gather"]).new_only)

    def test_preflight_failure_exits_nonzero(self):
        code, _, _ = self.run_main(["sell", "all"], error=InventoryError("inventory file not found"))
        self.assertEqual(code, EXIT_FATAL)

    def test_inventory_path_passed_through(self):
        _, _, build = self.run_main(["-i", "wallets.json", "bundle-status", "b-1"], StubOrchestrator())
        self.assertEqual(build.call_args.args[1], "wallets.json")

    def test_serve_uses_command_line_config(self):
        from bundler.app import app

        with tempfile.TemporaryDirectory() as tmp:
            override = Path(tmp) / "override.toml"
            override.write_text('[ledger]\nrpc_url = "http://override:5005"\n')
            try:
                with patch("bundler.__main__.uvicorn.run") as serve:
                    code = main(["-c", str(override), "-i", "wallets.json", "serve", "--port", "9100"])
                self.assertEqual(code, EXIT_OK)
                self.assertIs(serve.call_args.args[0], app)
                self.assertEqual(serve.call_args.kwargs["port"], 9100)
                self.assertEqual(app.state.conf["ledger"]["rpc_url"], "http://override:5005")
                self.assertEqual(app.state.conf["inventory"]["path"], "wallets.json")
            finally:
                app.state.conf = None
