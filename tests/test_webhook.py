import asyncio
import unittest
from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

from fakes import build_pipeline
from tweetgate.autonomy.models import ActionKind
from tweetgate.autonomy.webhook import create_webhook_app


def _payload(approval_id, approved=True, **extra):
    data = {"approval_id": approval_id, "approved": approved}
    data.update(extra)
    return {"type": "approval_response", "data": data}


class ApprovalWebhookTests(unittest.TestCase):
    def setUp(self) -> None:
        self.p = build_pipeline(dry_run=True)
        self.client = TestClient(create_webhook_app(self.p.manager))
        self.request = asyncio.run(self.p.manager.enqueue(ActionKind.POST, "from the webhook", None, {}))

    def test_health(self) -> None:
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ok"})

    def test_approval_executes_and_reports_success(self) -> None:
        resp = self.client.post("/webhook/approval", json=_payload(self.request.id, modified_content="edited"))

        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["success"])
        self.assertIn(self.request.id, body["message"])
        self.assertEqual(body["status"], "sent")
        record = self.p.store.record(self.request.id)
        self.assertEqual(record["status"], "sent")
        self.assertEqual(record["modified_content"], "edited")

    def test_string_booleans_are_accepted(self) -> None:
        resp = self.client.post("/webhook/approval", json=_payload(self.request.id, approved="false", reason="meh"))

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "rejected")
        self.assertEqual(self.p.store.record(self.request.id)["reason"], "meh")

    def test_repeated_delivery_is_a_noop(self) -> None:
        self.client.post("/webhook/approval", json=_payload(self.request.id))
        resp = self.client.post("/webhook/approval", json=_payload(self.request.id))

        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["success"])
        self.assertFalse(resp.json()["changed"])

    def test_invalid_json_is_rejected(self) -> None:
        resp = self.client.post(
            "/webhook/approval",
            content="{not json",
            headers={"content-type": "application/json"},
        )

        self.assertEqual(resp.status_code, 400)
        self.assertFalse(resp.json()["success"])

    def test_schema_errors_are_reported(self) -> None:
        cases = [
            {"type": "approval_response", "data": {"approved": True}},
            {"type": "something_else", "data": {"approval_id": self.request.id, "approved": True}},
            _payload(self.request.id, approved="maybe"),
            _payload("   "),
            ["not", "an", "object"],
        ]
        for body in cases:
            with self.subTest(body=body):
                resp = self.client.post("/webhook/approval", json=body)
                self.assertEqual(resp.status_code, 400)
                self.assertFalse(resp.json()["success"])
                self.assertTrue(resp.json()["details"])
        self.assertEqual(self.p.store.record(self.request.id)["status"], "pending")

    def test_missing_approval_id_is_named_in_details(self) -> None:
        resp = self.client.post("/webhook/approval", json={"type": "approval_response", "data": {"approved": True}})

        self.assertTrue(any(d.startswith("data.approval_id") for d in resp.json()["details"]))

    def test_unknown_id_returns_404(self) -> None:
        resp = self.client.post("/webhook/approval", json=_payload("nonexistent-id"))

        self.assertEqual(resp.status_code, 404)
        self.assertFalse(resp.json()["success"])

    def test_internal_error_returns_500(self) -> None:
        with patch.object(self.p.manager, "handle_decision", new=AsyncMock(side_effect=RuntimeError("kaput"))):
            resp = self.client.post("/webhook/approval", json=_payload(self.request.id))

        self.assertEqual(resp.status_code, 500)
        self.assertFalse(resp.json()["success"])
        self.assertIn("kaput", resp.json()["message"])


if __name__ == "__main__":
    unittest.main()
