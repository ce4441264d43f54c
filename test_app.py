"""Test the HTTP API with a stub orchestrator."""

from unittest import TestCase
from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

from bundler.app import app
from bundler.config import load_config
from bundler.constants import StageName, SubmissionMode
from bundler.errors import InsufficientFundingBalance, RelayError
from bundler.models import BundlePlan, GatherSummary, LaunchResult, StageSummary, SubmissionResult


class StubOrchestrator:
    def __init__(self):
        self.stage_calls = []
        self.launch_calls = []
        self.gather_calls = []
        self.launch_outcome = LaunchResult(
            funding=None, plan=BundlePlan(), submission=SubmissionResult(ok=True, mode=SubmissionMode.RELAY,
                                                                         identifier="bundle-9"),
        )
        self.statuses = {}

    async def run_stage(self, stage, *, wait_for_threshold=None):
        self.stage_calls.append((stage, wait_for_threshold))
        return StageSummary(stage=stage, tasks=[], succeeded=0, failed=0, duration=0.1)

    async def launch(self, mode=None):
        self.launch_calls.append(mode)
        if isinstance(self.launch_outcome, Exception):
            raise self.launch_outcome
        return self.launch_outcome

    async def gather(self, *, new_only=False):
        self.gather_calls.append(new_only)
        return GatherSummary(destination="rFunder", results=[], duration=0.2, new_only=new_only)

    async def bundle_status(self, bundle_id):
        return self.statuses.get(bundle_id)

    def snapshot(self):
        return {"asset": "BND.rIssuer", "accounts": 0}


class TestApi(TestCase):
    def setUp(self):
        self.orch = StubOrchestrator()
        app.state.orchestrator = self.orch
        app.state.run_lock = None
        self.client = TestClient(app)

    def tearDown(self):
        app.state.orchestrator = None
        app.state.conf = None

    def test_startup_builds_from_serve_config(self):
        conf = load_config(env={})
        conf["ledger"]["rpc_url"] = "http://override:5005"
        app.state.orchestrator = None
        app.state.conf = conf
        with patch("bundler.app._probe_rippled", new=AsyncMock()) as probe, \
                patch("bundler.app.from_config", return_value=self.orch) as build:
            with TestClient(app) as client:
                self.assertEqual(client.get("/state/summary").json()["asset"], "BND.rIssuer")
        probe.assert_awaited_once_with("http://override:5005")
        build.assert_called_once_with(conf)

    def test_health(self):
        self.assertEqual(self.client.get("/health").json(), {"status": "ok"})

    def test_state_summary(self):
        self.assertEqual(self.client.get("/state/summary").json()["accounts"], 0)

    def test_sell_stage(self):
        r = self.client.post("/sell/stage1")
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["stage"], "stage1")
        self.assertEqual(self.orch.stage_calls, [(StageName.STAGE1, None)])

    def test_sell_with_threshold_wait(self):
        self.client.post("/sell/all", json={"wait_for_threshold": True})
        self.assertEqual(self.orch.stage_calls, [(StageName.ALL, True)])

    def test_unknown_stage(self):
        self.assertEqual(self.client.post("/sell/stage9").status_code, 422)
        self.assertEqual(self.orch.stage_calls, [])

    def test_launch(self):
        r = self.client.post("/launch", json={"mode": "relay"})
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["identifier"], "bundle-9")
        self.assertEqual(self.orch.launch_calls, [SubmissionMode.RELAY])

    def test_launch_preflight_failure(self):
        self.orch.launch_outcome = InsufficientFundingBalance(funding_balance=0.1, shortfall=0.35, margin=0.01)
        r = self.client.post("/launch")
        self.assertEqual(r.status_code, 409)
        self.assertIn("funding account", r.json()["detail"])

    def test_launch_submission_failure(self):
        self.orch.launch_outcome = LaunchResult(
            funding=None, plan=BundlePlan(),
            submission=SubmissionResult(ok=False, mode=SubmissionMode.RELAY, error="RelayError: rejected"),
        )
        r = self.client.post("/launch")
        self.assertEqual(r.status_code, 502)
        self.assertEqual(r.json()["detail"]["error"], "RelayError: rejected")

    def test_launch_network_error(self):
        self.orch.launch_outcome = RelayError("unreachable")
        self.assertEqual(self.client.post("/launch").status_code, 502)

    def test_gather(self):
        r = self.client.post("/gather", json={"new_only": True})
        self.assertEqual(r.status_code, 200)
        self.assertTrue(r.json()["new_only"])
        self.client.post("/gather")
        self.assertEqual(self.orch.gather_calls, [True, False])

    def test_bundle_status(self):
        self.orch.statuses["b-1"] = {"bundle_id": "b-1", "confirmation_status": "confirmed"}
        self.assertEqual(self.client.get("/bundle/b-1").json()["confirmation_status"], "confirmed")
        self.assertEqual(self.client.get("/bundle/b-2").status_code, 404)

    def test_not_initialized(self):
        app.state.orchestrator = None
        self.assertEqual(self.client.get("/state/summary").status_code, 503)
