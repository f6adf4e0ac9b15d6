import json
import os
import shutil
import tempfile
import unittest
from unittest.mock import MagicMock, patch

from comic_crafter.core.agent import BaseAgent
from comic_crafter.core.errors import ComicGenerationError, MalformedResponse
from comic_crafter.core.models import CastList, CharacterConcept, ConsistencyVerdict, ImageAsset, PanelSetting
from comic_crafter.agents.infrastructure.resilience_agent import ResilienceAgent
from comic_crafter.agents.narrative.cast_designer import CastDesignerAgent, describe_cast
from comic_crafter.agents.narrative.dialogue_polisher import DialoguePolisherAgent, PolishedDialogue, PolishedLine
from comic_crafter.agents.visual.consistency_checker import ConsistencyCheckerAgent
from comic_crafter.agents.visual.portrait_artist import PortraitArtistAgent
from comic_crafter.agents.visual.scene_painter import ScenePainterAgent
from comic_crafter.utils.sample_loader import DEFAULT_SAMPLE_DIR, SampleLoader

from fakes import FakeImageGenerator, FakeLLM, make_blueprint, make_character, make_concepts, make_panel, make_profile


class FlakyAgent(BaseAgent):
    def __init__(self, failures, config=None):
        super().__init__("Flaky", config)
        self.failures = list(failures)
        self.calls = 0

    def process(self):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return {"match": True, "reason": "ok"}


class TestBaseAgent(unittest.TestCase):
    def test_single_attempt_by_default(self):
        agent = FlakyAgent([ConnectionError("down")])
        with self.assertRaises(ConnectionError):
            agent.run()
        self.assertEqual(agent.calls, 1)

    def test_tries_config_retries_transient_errors(self):
        agent = FlakyAgent([ConnectionError("down"), ConnectionError("down")], config={"tries": 3, "delay": 0})
        result = agent.run(expected_schema=ConsistencyVerdict)
        self.assertEqual(result, ConsistencyVerdict(match=True, reason="ok"))
        self.assertEqual(agent.calls, 3)

    def test_malformed_response_is_not_retried(self):
        agent = FlakyAgent([MalformedResponse("bad json")], config={"tries": 3, "delay": 0})
        with self.assertRaises(MalformedResponse):
            agent.run()
        self.assertEqual(agent.calls, 1)

    def test_schema_mismatch_raises_malformed(self):
        agent = FlakyAgent([])
        with self.assertRaises(MalformedResponse):
            agent.run(expected_schema=CastList)


class TestResilienceAgent(unittest.TestCase):
    @patch.dict(os.environ, {"GEMINI_API_KEY": "x"})
    def test_healthy_backend(self):
        llm = MagicMock()
        llm.is_healthy.return_value = True
        with patch("shutil.disk_usage", return_value=(100 * 2**30, 0, 50 * 2**30)):
            report = ResilienceAgent().run(llm)
        self.assertEqual(report["status"], "healthy")
        self.assertEqual(report["checks"]["llm_backend"], "reachable")

    @patch.dict(os.environ, {"GEMINI_API_KEY": "x"})
    def test_unreachable_backend_is_unhealthy(self):
        llm = MagicMock()
        llm.is_healthy.return_value = False
        with patch("shutil.disk_usage", return_value=(100 * 2**30, 0, 50 * 2**30)):
            report = ResilienceAgent().run(llm)
        self.assertEqual(report["status"], "unhealthy")

    @patch.dict(os.environ, {}, clear=True)
    def test_missing_credentials_degrade(self):
        with patch("shutil.disk_usage", return_value=(100 * 2**30, 0, 50 * 2**30)):
            report = ResilienceAgent().run()
        self.assertEqual(report["status"], "degraded")
        self.assertEqual(report["checks"]["env_vars"], "Missing: GEMINI_API_KEY")


class TestCastDesigner(unittest.TestCase):
    def test_duplicate_names_collapse(self):
        concepts = make_concepts() + [CharacterConcept(role="Ally", name=" rook ", description="An impostor.")]
        agent = CastDesignerAgent(llm=FakeLLM(concepts=concepts))

        cast = agent.run(make_profile())

        self.assertEqual([c.name for c in cast], [c.name for c in make_concepts()])

    def test_describe_cast(self):
        text = describe_cast(make_concepts()[:2])
        self.assertIn("Rook (Protagonist): Wiry detective", text)
        self.assertIn("Mother Vale (Mentor): Elderly radio operator", text)


class TestDialoguePolisher(unittest.TestCase):
    def setUp(self):
        self.panels = [
            make_panel(1, 1, dialogue=[("Rook", "My file is empty."), ("Pip Marlow", "So is mine.")]),
            make_panel(1, 2),
            make_panel(1, 3, dialogue=[("Rook", "Then we write new ones.")]),
        ]

    def test_polishes_every_panel_in_order(self):
        llm = MagicMock()
        llm.generate_structured_output.side_effect = lambda **kw: PolishedDialogue(dialogue=[
            PolishedLine(character="x", content=f"{kw['context']} line {i}") for i in range(2 if "1-1" in kw["context"] else 1)
        ])
        agent = DialoguePolisherAgent(llm=llm, config={"max_workers": 2})

        panels = agent.polish_all(self.panels, make_blueprint())

        self.assertEqual([p.key for p in panels], ["1-1", "1-2", "1-3"])
        self.assertEqual([d.content for d in panels[0].textual.dialogue],
                         ["polishDialogue[1-1] line 0", "polishDialogue[1-1] line 1"])
        self.assertEqual([d.character for d in panels[0].textual.dialogue], ["Rook", "Pip Marlow"])
        self.assertEqual(panels[2].textual.dialogue[0].content, "polishDialogue[1-3] line 0")
        self.assertEqual(llm.generate_structured_output.call_count, 2)

    def test_line_count_mismatch_keeps_original(self):
        llm = MagicMock()
        llm.generate_structured_output.return_value = PolishedDialogue(dialogue=[PolishedLine(character="Rook", content="Only one.")])
        agent = DialoguePolisherAgent(llm=llm)

        panel = agent.polish(self.panels[0], make_blueprint())

        self.assertIs(panel, self.panels[0])

    def test_failure_keeps_original_and_input_untouched(self):
        llm = MagicMock()
        llm.generate_structured_output.side_effect = MalformedResponse("bad")
        agent = DialoguePolisherAgent(llm=llm)

        panels = agent.polish_all(self.panels, make_blueprint())

        self.assertEqual(panels[0].textual.dialogue[0].content, "My file is empty.")
        self.assertEqual(self.panels[2].textual.dialogue[0].content, "Then we write new ones.")


class TestConsistencyChecker(unittest.TestCase):
    def test_sends_generated_image_before_reference(self):
        llm = MagicMock()
        llm.generate_structured_output.return_value = ConsistencyVerdict(match=True, reason="ok")
        rook = make_character(make_concepts()[0])
        generated = ImageAsset(name="panel", data=b"panel", mime_type="image/png")

        ConsistencyCheckerAgent(llm=llm).run(generated, rook)

        kwargs = llm.generate_structured_output.call_args.kwargs
        self.assertEqual([img.data for img in kwargs["images"]], [b"panel", b"Rook-full"])
        self.assertEqual(kwargs["context"], "verifyConsistency[Rook]")


class TestAssetAgents(unittest.TestCase):
    def test_portrait_artist_reuses_existing_shots(self):
        images = FakeImageGenerator()
        artist = PortraitArtistAgent(image_generator=images)
        existing = {
            "full": ImageAsset(name="Rook (full)", data=b"kept"),
            "action": ImageAsset(name="Rook (action)", data=b""),
        }
        shots = {"full": "Full body.", "action": "Action pose.", "profile": "Side view."}

        character = artist.draw_character(make_concepts()[0], "noir ink", shots, existing)

        self.assertEqual(character.images["full"].data, b"kept")
        self.assertEqual(character.images["action"].data, b"image-0")
        self.assertEqual(character.images["profile"].data, b"image-1")
        self.assertEqual([c["aspect_ratio"] for c in images.calls], ["1:1", "1:1"])
        self.assertIn("Action pose.", images.calls[0]["prompt"])

    def test_portrait_artist_retries_with_asset_budget(self):
        def busy_once(prompt, index):
            if index == 0:
                raise ConnectionError("busy")
        images = FakeImageGenerator(fail_fn=busy_once)
        artist = PortraitArtistAgent(image_generator=images, config={"tries": 2, "delay": 0})

        character = artist.draw_character(make_concepts()[0], "noir ink", {"full": "Full body."})

        self.assertEqual(character.images["full"].data, b"image-1")

    def test_scene_painter_fills_missing_perspectives(self):
        images = FakeImageGenerator()
        painter = ScenePainterAgent(image_generator=images)
        existing = {"wide": ImageAsset(name="Rooftop (wide)", data=b"kept")}

        plates = painter.paint_location(PanelSetting(location="Rooftop", time_of_day="Night"), "noir ink",
                                        {"wide": "Establishing Wide Shot", "low": "Dramatic Low Angle"}, existing)

        self.assertEqual(plates["wide"].data, b"kept")
        self.assertEqual(plates["low"].data, b"image-0")
        self.assertEqual(images.calls[0]["aspect_ratio"], "16:9")
        self.assertIn("Dramatic Low Angle", images.calls[0]["prompt"])


class TestSampleLoader(unittest.TestCase):
    def test_bundled_sample_keeps_first_pages(self):
        bundle = SampleLoader(DEFAULT_SAMPLE_DIR).load(["full", "action"], ["wide"])

        self.assertEqual(bundle.story.title, "The Brass Ledger")
        self.assertEqual([p.key for p in bundle.story.panels], ["0-1", "1-1", "1-2", "2-1", "3-1"])
        self.assertEqual(len(bundle.concepts), 5)
        self.assertEqual(bundle.profile.art_style, "noir ink")

    def test_bundled_images_are_reused_for_every_key(self):
        sample_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, sample_dir)
        shutil.copy(os.path.join(DEFAULT_SAMPLE_DIR, "comic_metadata.json"), sample_dir)
        os.makedirs(os.path.join(sample_dir, "portraits", "Rook"))
        with open(os.path.join(sample_dir, "portraits", "Rook", "full.png"), "wb") as f:
            f.write(b"rook")
        os.makedirs(os.path.join(sample_dir, "scenes", "vale's_radio_shack"))
        with open(os.path.join(sample_dir, "scenes", "vale's_radio_shack", "wide.jpg"), "wb") as f:
            f.write(b"shack")

        bundle = SampleLoader(sample_dir).load(["full", "action"], ["wide", "low"])

        self.assertEqual([c.name for c in bundle.roster], ["Rook"])
        self.assertEqual(set(bundle.roster[0].images), {"full", "action"})
        self.assertEqual(bundle.roster[0].images["action"].mime_type, "image/png")
        self.assertEqual(list(bundle.scene_images), ["vale's radio shack"])
        self.assertEqual(bundle.scene_images["vale's radio shack"]["low"].data, b"shack")

    def test_invalid_metadata_raises(self):
        sample_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, sample_dir)
        with open(os.path.join(sample_dir, "comic_metadata.json"), "w") as f:
            json.dump({"story": {}}, f)
        with self.assertRaises(ComicGenerationError):
            SampleLoader(sample_dir).load(["full"], ["wide"])

    def test_missing_directory_raises(self):
        with self.assertRaises(ComicGenerationError):
            SampleLoader("/nonexistent/sample").load(["full"], ["wide"])


if __name__ == "__main__":
    unittest.main()
