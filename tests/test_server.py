import shutil
import tempfile
import unittest
from unittest.mock import MagicMock

from fastapi.testclient import TestClient

from comic_crafter.core.checkpoint import PipelineState
from comic_crafter.core.config import PipelineConfig
from comic_crafter.core.errors import PipelineError, RestoreError
from comic_crafter.core.pipeline import ComicPipeline
from comic_crafter.server.app import create_app
from comic_crafter.utils.checkpoint_manager import CheckpointManager

from fakes import FakeImageGenerator, FakeLLM


class TestServer(unittest.TestCase):
    def setUp(self):
        tmp = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, tmp, ignore_errors=True)
        checkpoints = CheckpointManager(checkpoint_dir=tmp)
        self.addCleanup(checkpoints.shutdown)
        self.pipeline = ComicPipeline(FakeLLM(), FakeImageGenerator(), config=PipelineConfig(retry_delay=0),
                                      checkpoint_manager=checkpoints)
        self.client = TestClient(create_app(self.pipeline))

    def test_health(self):
        self.assertEqual(self.client.get("/api/health").json(), {"status": "healthy"})

    def test_initial_state(self):
        body = self.client.get("/api/state").json()
        self.assertEqual(body["stage"], "character_setup")
        self.assertEqual(body["progress"], 0)
        self.assertFalse(body["running"])
        self.assertEqual(body["resumeHint"], "initial")
        self.assertIsNone(body["pendingIntervention"])

    def test_start_runs_to_completion(self):
        response = self.client.post("/api/start", content=b"seed", headers={"content-type": "image/png"})
        self.assertEqual(response.status_code, 202)

        body = self.client.get("/api/state").json()
        self.assertEqual(body["stage"], "finalize")
        self.assertEqual(body["progress"], 100)
        self.assertEqual(body["title"], "The Brass Ledger")
        self.assertEqual(body["totalPanels"], 4)
        self.assertEqual([p["key"] for p in body["panels"]], ["0-1", "1-1", "1-2", "2-1"])
        self.assertEqual(len(body["characters"]), 5)
        self.assertEqual(body["scenes"]["records room"], ["wide"])
        self.assertEqual(body["fullText"], "Once upon a time in a city of ink.")

        image = self.client.get("/api/panels/1-1/image")
        self.assertEqual(image.status_code, 200)
        self.assertTrue(image.content.startswith(b"image-"))

    def test_start_without_body(self):
        self.assertEqual(self.client.post("/api/start", content=b"").status_code, 400)

    def test_sample_start(self):
        self.assertEqual(self.client.post("/api/start/sample").status_code, 202)
        body = self.client.get("/api/state").json()
        self.assertTrue(body["isSample"])
        self.assertEqual(body["stage"], "finalize")

    def test_retry_with_nothing_reports_error(self):
        self.assertEqual(self.client.post("/api/retry").status_code, 202)
        self.assertEqual(self.client.get("/api/state").json()["error"], "No image was uploaded to retry.")

    def test_intervention_without_pending_is_conflict(self):
        response = self.client.post("/api/intervention", json={"choice": "accept"})
        self.assertEqual(response.status_code, 409)

    def test_missing_panel_image(self):
        self.assertEqual(self.client.get("/api/panels/9-9/image").status_code, 404)
        self.assertEqual(self.client.get("/api/intervention/image").status_code, 404)

    def test_export_and_restore(self):
        self.client.post("/api/start", content=b"seed", headers={"content-type": "image/png"})
        exported = self.client.get("/api/export")
        self.assertEqual(exported.status_code, 200)
        self.assertEqual(exported.headers["content-type"], "application/zip")
        self.assertIn('filename="the-brass-ledger_progress.zip"', exported.headers["content-disposition"])

        self.assertEqual(self.client.post("/api/reset").status_code, 200)
        self.assertIsNone(self.client.get("/api/state").json()["title"])

        restored = self.client.post("/api/restore", content=exported.content)
        self.assertEqual(restored.status_code, 200)
        self.assertEqual(restored.json(), {"resumeHint": "view_only"})
        self.assertEqual(self.client.get("/api/state").json()["progress"], 100)

    def test_restore_garbage_is_bad_request(self):
        self.assertEqual(self.client.post("/api/restore", content=b"not a zip").status_code, 400)

    def test_start_while_slot_is_claimed_is_conflict(self):
        token = self.pipeline.reserve()
        self.assertEqual(self.client.post("/api/start", content=b"seed").status_code, 409)
        self.assertEqual(self.client.post("/api/start/sample").status_code, 409)
        self.assertIsNone(self.client.get("/api/state").json()["title"])

        self.pipeline.release(token)
        self.assertEqual(self.client.post("/api/start", content=b"seed").status_code, 202)
        self.assertFalse(self.client.get("/api/state").json()["running"])

    def test_checkpoint_routes(self):
        self.client.post("/api/start", content=b"seed", headers={"content-type": "image/png"})
        self.pipeline.checkpoint_manager.save_checkpoint(self.pipeline.snapshot(), "nightly")
        self.client.post("/api/reset")

        listed = self.client.get("/api/checkpoints").json()["checkpoints"]
        self.assertEqual([(c["name"], c["title"], c["progress"]) for c in listed], [("nightly", "The Brass Ledger", 100)])

        loaded = self.client.post("/api/checkpoints/nightly/load")
        self.assertEqual(loaded.status_code, 200)
        self.assertEqual(loaded.json(), {"resumeHint": "view_only"})
        self.assertEqual(self.client.get("/api/state").json()["title"], "The Brass Ledger")

        self.assertEqual(self.client.post("/api/checkpoints/missing/load").status_code, 404)
        self.assertEqual(self.client.post("/api/checkpoints/..hidden/load").status_code, 422)

        self.assertEqual(self.client.delete("/api/checkpoints/nightly").status_code, 200)
        self.assertEqual(self.client.get("/api/checkpoints").json()["checkpoints"], [])


class TestServerConflicts(unittest.TestCase):
    def setUp(self):
        self.pipeline = MagicMock()
        self.pipeline.is_running = True
        self.pipeline.reserve.side_effect = PipelineError("A generation run is already in progress.")
        self.pipeline.snapshot.return_value = PipelineState()
        self.client = TestClient(create_app(self.pipeline))

    def test_start_while_running(self):
        self.assertEqual(self.client.post("/api/start", content=b"seed").status_code, 409)
        self.assertEqual(self.client.post("/api/start/sample").status_code, 409)
        self.assertEqual(self.client.post("/api/retry").status_code, 409)
        self.pipeline.start_from_image.assert_not_called()

    def test_state_reports_running(self):
        self.assertTrue(self.client.get("/api/state").json()["running"])

    def test_reset_and_restore_while_running(self):
        self.pipeline.reset.side_effect = PipelineError("Cannot reset while a generation run is active.")
        self.pipeline.restore_archive.side_effect = PipelineError("Cannot restore while a generation run is active.")
        self.assertEqual(self.client.post("/api/reset").status_code, 409)
        self.assertEqual(self.client.post("/api/restore", content=b"zip").status_code, 409)

    def test_restore_error_is_bad_request(self):
        self.pipeline.restore_archive.side_effect = RestoreError("Archive has no comic_metadata.json.")
        response = self.client.post("/api/restore", content=b"zip")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"], "Archive has no comic_metadata.json.")

    def test_intervention_is_forwarded(self):
        response = self.client.post("/api/intervention", json={"choice": "reject", "reason": "wrong coat"})
        self.assertEqual(response.status_code, 200)
        self.pipeline.resolve_intervention.assert_called_once_with("reject", "wrong coat")

    def test_checkpoint_load_while_running(self):
        self.pipeline.restore_checkpoint.side_effect = PipelineError("Cannot restore while a generation run is active.")
        self.assertEqual(self.client.post("/api/checkpoints/autosave/load").status_code, 409)

    def test_claimed_slot_is_released_after_the_task(self):
        self.pipeline.reserve.side_effect = None
        self.pipeline.reserve.return_value = "claim"

        self.assertEqual(self.client.post("/api/start/sample").status_code, 202)

        self.pipeline.start_from_sample.assert_called_once_with()
        self.pipeline.release.assert_called_once_with("claim")


if __name__ == "__main__":
    unittest.main()
