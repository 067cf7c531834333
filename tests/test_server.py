"""HTTP surface tests against an orchestrator with fake providers."""
import json
import tempfile
import unittest

from fastapi.testclient import TestClient

from sightline.config import Config
from sightline.orchestrator import Orchestrator
from sightline.providers.base import ProviderResult
from sightline.server import app


class FakeVision:
    def annotate(self, image_url=None, image_base64=None, features=None, timeout=30.0):
        return ProviderResult(provider="fake_vision", ok=True, data={"labels": []}, duration_ms=2)


class FakeAnalysis:
    def analyze(self, image_url, prompt_context, timeout=60.0):
        text = json.dumps({"summary": {"overallScore": 64}, "insights": [{"title": "Dense layout"}]})
        return ProviderResult(provider="fake_analysis", ok=True, text=text, duration_ms=2)


class TestServer(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        config = Config(
            {
                "data_dir": self.tmp.name,
                "dispatch": {"mode": "direct", "webhook_secret": "s3cret"},
                "optimizer": {
                    "models": {
                        "vision": [{"id": "vision", "provider": "fake_vision"}],
                        "analysis": [{"id": "analysis", "provider": "fake_analysis"}],
                    }
                },
                "stages": {"retry_backoff_ms": 0},
                "limits": {"jobs_per_minute": 2, "blocked_users": ["mallory"]},
            }
        )
        self.orchestrator = Orchestrator(
            config,
            providers={"fake_vision": FakeVision(), "fake_analysis": FakeAnalysis()},
            sleep=lambda _: None,
        )
        app.state.orchestrator = self.orchestrator
        self.client = TestClient(app)

    def tearDown(self):
        app.state.orchestrator = None
        self.tmp.cleanup()

    def _submit(self, user="u1", **body):
        payload = {"imageId": "img-1", "imageUrl": "https://x/1.png", **body}
        return self.client.post("/api/jobs", json=payload, headers={"x-user-id": user})

    def test_health(self):
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "healthy")

    def test_submit_and_poll(self):
        response = self._submit()
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["dispatch"], "direct")

        detail = self.client.get(f"/api/jobs/{body['jobId']}", headers={"x-user-id": "u1"})
        self.assertEqual(detail.status_code, 200)
        self.assertEqual(detail.json()["status"], "completed")
        self.assertEqual(detail.json()["result"]["summary"]["overallScore"], 64)

        events = self.client.get(f"/api/jobs/{body['jobId']}/events", headers={"x-user-id": "u1"})
        names = [e["event_name"] for e in events.json()["events"]]
        self.assertEqual(names[0], "analysis/job.created")
        self.assertEqual(names[-1], "analysis/job.completed")

    def test_missing_fields_return_400(self):
        response = self.client.post("/api/jobs", json={"imageId": "img-1"}, headers={"x-user-id": "u1"})
        self.assertEqual(response.status_code, 400)
        self.assertIn("image_url", response.json()["error"])

    def test_missing_user_returns_400(self):
        response = self.client.post("/api/jobs", json={"imageId": "img-1", "imageUrl": "https://x/1.png"})
        self.assertEqual(response.status_code, 400)

    def test_unknown_job_returns_404(self):
        response = self.client.get("/api/jobs/nope", headers={"x-user-id": "u1"})
        self.assertEqual(response.status_code, 404)

    def test_rate_limit_and_blocked_user_return_429(self):
        self.assertEqual(self._submit().status_code, 200)
        self.assertEqual(self._submit().status_code, 200)
        self.assertEqual(self._submit().status_code, 429)
        self.assertEqual(self._submit(user="mallory").status_code, 429)

    def test_group_submission(self):
        response = self.client.post(
            "/api/group-jobs",
            json={"groupId": "g1", "imageUrls": ["https://x/1.png", "https://x/2.png"]},
            headers={"x-user-id": "u1"},
        )
        self.assertEqual(response.status_code, 200)
        job_id = response.json()["groupJobId"]
        self.assertEqual(self.orchestrator.store.get_job(job_id).status, "completed")

    def test_cancel_completed_job_conflicts(self):
        job_id = self._submit().json()["jobId"]
        response = self.client.post(f"/api/jobs/{job_id}/cancel", headers={"x-user-id": "u1"})
        self.assertEqual(response.status_code, 409)

    def test_webhook_requires_secret(self):
        job_id = self.orchestrator.store.create_job({"image_id": "i", "image_url": "https://x/1.png", "user_id": "u1"})
        event = {"name": "analysis/job.created", "data": {"jobId": job_id}}

        denied = self.client.post("/api/webhooks/event-bus", json=event, headers={"x-event-secret": "wrong"})
        self.assertEqual(denied.status_code, 401)

        accepted = self.client.post("/api/webhooks/event-bus", json=event, headers={"x-event-secret": "s3cret"})
        self.assertEqual(accepted.status_code, 200)
        self.assertTrue(accepted.json()["ok"])
        self.assertEqual(self.orchestrator.store.get_job(job_id).status, "completed")

    def test_webhook_without_configured_secret(self):
        self.orchestrator.config.raw["dispatch"].pop("webhook_secret")
        response = self.client.post("/api/webhooks/event-bus", json={"name": "analysis/job.created", "data": {}})
        self.assertEqual(response.status_code, 500)

    def test_models_endpoint(self):
        response = self.client.get("/api/models")
        self.assertEqual(response.status_code, 200)
        stages = response.json()["stages"]
        self.assertEqual(stages["vision"]["candidates"], ["vision"])
        self.assertEqual(stages["analysis"]["primary"], ["analysis"])


if __name__ == "__main__":
    unittest.main()
