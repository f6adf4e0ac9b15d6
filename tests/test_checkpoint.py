import io
import json
import os
import shutil
import tempfile
import unittest
import zipfile
from unittest.mock import MagicMock

from comic_crafter.core.checkpoint import PipelineStage, PipelineState, ResumeHint, progress_percent
from comic_crafter.core.errors import RestoreError
from comic_crafter.core.models import GeneratedCharacter, GeneratedPanel, ImageAsset
from comic_crafter.core.storage import LocalStorage
from comic_crafter.utils.checkpoint_manager import METADATA_FILE, CheckpointManager, panel_path, portrait_path, scene_path

from fakes import make_blueprint, make_character, make_concepts, make_outline, make_panel, make_profile


def png(data: bytes, name: str = "") -> ImageAsset:
    return ImageAsset(name=name, data=data, mime_type="image/png")


def make_state(panels_done=2, with_concepts=True, source=True) -> PipelineState:
    outline = make_outline()
    concepts = make_concepts()
    state = PipelineState(
        character_profile=make_profile(),
        story_package=make_blueprint(),
        story=outline,
        character_concepts=concepts if with_concepts else [],
        character_roster=[make_character(c) for c in concepts],
        scene_images={"records room": {"wide": png(b"records-wide", "Records Room (wide)")}},
        source_image=png(b"seed", "initial") if source else None,
        status="Generating Page 1, Panel 2...",
    )
    for panel in outline.panels[:panels_done]:
        state.generated_panels.append(GeneratedPanel(**panel.model_dump(), image=png(f"panel-{panel.key}".encode())))
    return state


def build_zip(metadata, files=None) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        if metadata is not None:
            zf.writestr(METADATA_FILE, metadata if isinstance(metadata, str) else json.dumps(metadata))
        for path, data in (files or {}).items():
            zf.writestr(path, data)
    return buffer.getvalue()


class TestArchivePaths(unittest.TestCase):
    def test_paths_use_underscored_names_and_mime_extensions(self):
        self.assertEqual(portrait_path("Mother Vale", "full", "image/png"), "portraits/Mother_Vale/full.png")
        self.assertEqual(scene_path("records room", "wide", "image/jpeg"), "scenes/records_room/wide.jpg")
        self.assertEqual(panel_path("3-4", 1, "image/png"), "panels/page_3_4_panel_1.png")


class TestArchiveRoundTrip(unittest.TestCase):
    def setUp(self):
        self.manager = CheckpointManager(checkpoint_dir=tempfile.mkdtemp())
        self.addCleanup(shutil.rmtree, self.manager.checkpoint_dir, ignore_errors=True)
        self.addCleanup(self.manager.shutdown)

    def test_partial_run_restores_for_panel_resume(self):
        original = make_state(panels_done=2)

        state, hint = self.manager.restore_archive(self.manager.export_archive(original))

        self.assertEqual(hint, ResumeHint.RESUME_PANELS)
        self.assertEqual(state.stage, PipelineStage.PANEL_GENERATION)
        self.assertEqual(state.progress, 50)
        self.assertEqual(state.status, "Generating Page 1, Panel 2...")
        self.assertEqual(state.character_profile, original.character_profile)
        self.assertEqual(state.story_package, original.story_package)
        self.assertEqual(state.story, original.story)
        self.assertEqual(state.character_concepts, original.character_concepts)
        self.assertEqual([c.name for c in state.character_roster], [c.name for c in original.character_roster])
        self.assertEqual(state.character_roster[0].images["closeup_happy"].data, b"Rook-closeup_happy")
        self.assertEqual(state.scene_images["records room"]["wide"].data, b"records-wide")
        self.assertEqual(state.scene_images["records room"]["wide"].name, "Records Room (wide)")
        self.assertEqual([p.key for p in state.generated_panels], ["0-1", "1-1"])
        self.assertEqual(state.generated_panels[1].image.data, b"panel-1-1")
        self.assertEqual(state.generated_panels[1].textual.dialogue[0].content, "My file is empty.")
        self.assertEqual(state.source_image.data, b"seed")

    def test_finished_comic_restores_view_only(self):
        state, hint = self.manager.restore_archive(self.manager.export_archive(make_state(panels_done=4)))
        self.assertEqual(hint, ResumeHint.VIEW_ONLY)
        self.assertEqual(state.stage, PipelineStage.FINALIZE)
        self.assertEqual(state.progress, 100)

    def test_story_without_roster_resumes_assets(self):
        original = make_state(panels_done=0)
        original.character_roster = []
        state, hint = self.manager.restore_archive(self.manager.export_archive(original))
        self.assertEqual(hint, ResumeHint.RESUME_ASSETS)
        self.assertEqual(state.stage, PipelineStage.PORTRAIT_GENERATION)

    def test_empty_state_restores_initial(self):
        state, hint = self.manager.restore_archive(self.manager.export_archive(PipelineState()))
        self.assertEqual(hint, ResumeHint.INITIAL)
        self.assertEqual(state.stage, PipelineStage.CHARACTER_SETUP)

    def test_placeholder_images_keep_their_slot(self):
        original = make_state()
        original.character_roster[0].images["action"] = ImageAsset(name="Rook (action)", data=b"", mime_type="image/png")

        data = self.manager.export_archive(original)
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            self.assertNotIn("portraits/Rook/action.png", zf.namelist())
        state, _ = self.manager.restore_archive(data)

        self.assertIn("action", state.character_roster[0].images)
        self.assertTrue(state.character_roster[0].images["action"].is_placeholder)

    def test_concepts_are_rebuilt_from_roster(self):
        state, _ = self.manager.restore_archive(self.manager.export_archive(make_state(with_concepts=False)))
        self.assertEqual([c.name for c in state.character_concepts], [c.name for c in make_concepts()])

    def test_missing_seed_falls_back_to_protagonist_portrait(self):
        state, _ = self.manager.restore_archive(self.manager.export_archive(make_state(source=False)))
        self.assertEqual(state.source_image.data, b"Rook-full")

    def test_duplicate_panels_keep_the_first(self):
        original = make_state(panels_done=2)
        duplicate = original.generated_panels[1].model_copy(update={"image": png(b"second")})
        original.generated_panels.append(duplicate)

        state, _ = self.manager.restore_archive(self.manager.export_archive(original))

        self.assertEqual([p.key for p in state.generated_panels], ["0-1", "1-1"])

    def test_names_that_flatten_to_one_folder_stay_distinct(self):
        original = PipelineState(
            character_roster=[
                GeneratedCharacter(role="Protagonist", name="Ana Rook", description="d", images={"full": png(b"A")}),
                GeneratedCharacter(role="Ally", name="Ana_Rook", description="d", images={"full": png(b"B")}),
            ],
            scene_images={
                "north dock": {"wide": png(b"dock-space")},
                "north_dock": {"wide": png(b"dock-underscore")},
            },
        )

        data = self.manager.export_archive(original)
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            names = zf.namelist()
        state, _ = self.manager.restore_archive(data)

        self.assertEqual(len(names), len(set(names)))
        self.assertIn("portraits/Ana_Rook/full.png", names)
        self.assertIn("portraits/Ana_Rook_2/full.png", names)
        self.assertEqual([(c.name, c.images["full"].data) for c in state.character_roster],
                         [("Ana Rook", b"A"), ("Ana_Rook", b"B")])
        self.assertEqual(state.scene_images["north dock"]["wide"].data, b"dock-space")
        self.assertEqual(state.scene_images["north_dock"]["wide"].data, b"dock-underscore")

    def test_resume_progress_rounds_halves_up(self):
        original = make_state(panels_done=0)
        original.story = make_outline([make_panel(1, n) for n in range(1, 9)])
        original.generated_panels = [GeneratedPanel(**original.story.panels[0].model_dump(), image=png(b"p"))]

        state, hint = self.manager.restore_archive(self.manager.export_archive(original))

        self.assertEqual(hint, ResumeHint.RESUME_PANELS)
        self.assertEqual(state.progress, 13)


class TestProgressPercent(unittest.TestCase):
    def test_halves_round_up(self):
        self.assertEqual(progress_percent(1, 8), 13)
        self.assertEqual(progress_percent(3, 8), 38)
        self.assertEqual(progress_percent(1, 2), 50)
        self.assertEqual(progress_percent(1, 3), 33)

    def test_bounds(self):
        self.assertEqual(progress_percent(0, 0), 0)
        self.assertEqual(progress_percent(0, 5), 0)
        self.assertEqual(progress_percent(5, 5), 100)


class TestRestoreTolerance(unittest.TestCase):
    def setUp(self):
        self.manager = CheckpointManager(checkpoint_dir=tempfile.mkdtemp())
        self.addCleanup(shutil.rmtree, self.manager.checkpoint_dir, ignore_errors=True)
        self.addCleanup(self.manager.shutdown)

    def test_non_zip_payload_is_rejected(self):
        with self.assertRaises(RestoreError):
            self.manager.restore_archive(b"definitely not a zip")

    def test_missing_metadata_is_rejected(self):
        with self.assertRaises(RestoreError):
            self.manager.restore_archive(build_zip(None, {"panels/page_1_panel_1.png": b"x"}))

    def test_unparseable_metadata_is_rejected(self):
        with self.assertRaises(RestoreError):
            self.manager.restore_archive(build_zip("{not json"))
        with self.assertRaises(RestoreError):
            self.manager.restore_archive(build_zip([1, 2, 3]))

    def test_unreadable_section_is_ignored(self):
        state, hint = self.manager.restore_archive(build_zip({
            "characterProfile": {"art_style": "noir ink"},
            "storyDevelopmentPackage": make_blueprint().model_dump(mode="json"),
        }))
        self.assertIsNone(state.character_profile)
        self.assertEqual(state.story_package.title, "The Brass Ledger")
        self.assertEqual(hint, ResumeHint.INITIAL)

    def test_missing_image_file_becomes_placeholder(self):
        metadata = {
            "story": make_outline().model_dump(mode="json"),
            "characterConcepts": [c.model_dump() for c in make_concepts()[:1]],
            "characterRoster": [{"role": "Protagonist", "name": "Rook", "description": "d",
                                 "images": {"full": "portraits/Rook/full.png"}}],
        }
        state, _ = self.manager.restore_archive(build_zip(metadata))
        self.assertTrue(state.character_roster[0].images["full"].is_placeholder)
        self.assertIsNone(state.source_image)

    def test_legacy_archive_is_rebuilt_from_folders(self):
        metadata = {
            "characterProfile": make_profile().model_dump(mode="json"),
            "storyDevelopmentPackage": make_blueprint().model_dump(mode="json"),
            "story": make_outline().model_dump(mode="json"),
            "characterConcepts": [c.model_dump() for c in make_concepts()],
        }
        files = {
            "portraits/Rook/full.png": b"rook",
            "portraits/Rook/action.png": b"rook-action",
            "portraits/Mother_Vale/full.jpg": b"vale",
            "scenes/records_room/wide.png": b"room",
            "panels/page_0_panel_1.png": b"cover",
            "panels/page_1_panel_1.png": b"first",
        }

        state, hint = self.manager.restore_archive(build_zip(metadata, files))

        self.assertEqual(hint, ResumeHint.RESUME_PANELS)
        self.assertEqual([c.name for c in state.character_roster], ["Rook", "Mother Vale"])
        self.assertEqual(set(state.character_roster[0].images), {"full", "action"})
        self.assertEqual(state.character_roster[0].images["full"].mime_type, "image/png")
        self.assertEqual(state.character_roster[1].images["full"].mime_type, "image/jpeg")
        self.assertEqual(list(state.scene_images), ["records room"])
        self.assertEqual(state.scene_images["records room"]["wide"].data, b"room")
        self.assertEqual([p.key for p in state.generated_panels], ["0-1", "1-1"])
        self.assertEqual(state.generated_panels[0].image.data, b"cover")
        self.assertEqual(state.progress, 50)
        self.assertEqual(state.source_image.data, b"rook")

    def test_scene_section_that_is_not_an_object_is_ignored(self):
        state, hint = self.manager.restore_archive(build_zip({
            "story": make_outline().model_dump(mode="json"),
            "sceneImages": ["a"],
        }))
        self.assertEqual(state.scene_images, {})
        self.assertEqual(hint, ResumeHint.RESUME_ASSETS)

    def test_scene_entry_given_as_bare_path_is_read(self):
        state, _ = self.manager.restore_archive(build_zip(
            {"sceneImages": {"docks": {"wide": "scenes/docks/wide.jpg", "low": 7}, "pier": "scenes/pier"}},
            {"scenes/docks/wide.jpg": b"docks"},
        ))
        self.assertEqual(list(state.scene_images), ["docks"])
        self.assertEqual(state.scene_images["docks"]["wide"].data, b"docks")
        self.assertEqual(state.scene_images["docks"]["wide"].mime_type, "image/jpeg")
        self.assertNotIn("low", state.scene_images["docks"])

    def test_unreadable_generated_panels_are_skipped(self):
        good = make_outline().panels[1].model_dump(mode="json")
        good["imagePath"] = "panels/page_1_panel_1.png"
        state, _ = self.manager.restore_archive(build_zip(
            {"story": make_outline().model_dump(mode="json"), "generatedPanels": ["x", 3, None, {"page_number": 1}, good]},
            {"panels/page_1_panel_1.png": b"first"},
        ))
        self.assertEqual([p.key for p in state.generated_panels], ["1-1"])
        self.assertEqual(state.generated_panels[0].image.data, b"first")

        state, _ = self.manager.restore_archive(build_zip({"generatedPanels": {"1-1": good}}))
        self.assertEqual(state.generated_panels, [])

    def test_initial_image_given_as_bare_path_is_read(self):
        state, _ = self.manager.restore_archive(build_zip(
            {"initialImage": "source/initial.jpg"}, {"source/initial.jpg": b"seed"},
        ))
        self.assertEqual(state.source_image.data, b"seed")

        state, _ = self.manager.restore_archive(build_zip({"initialImage": ["source/initial.jpg"]}))
        self.assertIsNone(state.source_image)

        state, _ = self.manager.restore_archive(build_zip(
            {"initialImage": {"path": ["source/initial.jpg"]}}, {"source/initial.jpg": b"seed"},
        ))
        self.assertIsNone(state.source_image)

    def test_malformed_roster_and_concepts_are_skipped(self):
        state, _ = self.manager.restore_archive(build_zip({
            "characterConcepts": {"name": "Rook"},
            "characterRoster": [
                "Rook",
                {"role": "Mentor", "name": "Mother Vale", "images": ["portraits/Mother_Vale/full.png"]},
                {"role": "Protagonist", "name": "Rook", "images": {"full": "portraits/Rook/full.png"}},
            ],
        }, {"portraits/Rook/full.png": b"rook"}))
        self.assertEqual([c.name for c in state.character_roster], ["Rook"])
        self.assertEqual(state.character_roster[0].images["full"].data, b"rook")
        self.assertEqual([c.name for c in state.character_concepts], ["Rook"])

        state, _ = self.manager.restore_archive(build_zip({"characterRoster": {"Rook": {}}, "status": ["x"]}))
        self.assertEqual(state.character_roster, [])


class TestCheckpointFiles(unittest.TestCase):
    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.checkpoint_dir = os.path.join(self.test_dir, ".checkpoints")
        self.manager = CheckpointManager(LocalStorage(), checkpoint_dir=self.checkpoint_dir)

    def tearDown(self):
        self.manager.shutdown()
        shutil.rmtree(self.test_dir)

    def test_save_load_checkpoint(self):
        """State survives a save/load cycle through the checkpoint directory."""
        path = self.manager.save_checkpoint(make_state(panels_done=3), "autosave")

        self.assertEqual(path, os.path.join(self.checkpoint_dir, "checkpoint_autosave.zip"))
        self.assertTrue(os.path.exists(path))
        state, hint = self.manager.load_checkpoint("autosave")
        self.assertEqual(hint, ResumeHint.RESUME_PANELS)
        self.assertEqual(len(state.generated_panels), 3)

    def test_load_missing_checkpoint_returns_none(self):
        self.assertIsNone(self.manager.load_checkpoint("nothing"))

    def test_list_and_clear_checkpoints(self):
        self.manager.save_checkpoint(make_state(panels_done=1), "first")
        self.manager.save_checkpoint(make_state(panels_done=4), "second")
        with open(os.path.join(self.checkpoint_dir, "notes.txt"), "w") as f:
            f.write("ignored")

        listed = {c["name"]: c for c in self.manager.list_checkpoints()}

        self.assertEqual(set(listed), {"first", "second"})
        self.assertEqual(listed["second"]["title"], "The Brass Ledger")
        self.assertEqual(listed["first"]["panels_generated"], 1)
        self.assertEqual(listed["second"]["panels_generated"], 4)

        self.manager.clear_checkpoint("first")
        self.assertEqual([c["name"] for c in self.manager.list_checkpoints()], ["second"])

    def test_background_sync_retries_failed_uploads(self):
        storage = MagicMock()
        storage.save_file.side_effect = [ConnectionError("offline"), "remote"]
        manager = CheckpointManager(storage, checkpoint_dir=self.checkpoint_dir)

        manager.save_checkpoint(make_state(), "synced")
        manager.shutdown(wait=True)

        self.assertEqual(storage.save_file.call_count, 2)

    def test_background_sync_gives_up_after_three_attempts(self):
        storage = MagicMock()
        storage.save_file.side_effect = ConnectionError("offline")
        manager = CheckpointManager(storage, checkpoint_dir=self.checkpoint_dir)

        manager.save_checkpoint(make_state(), "synced")
        manager.shutdown(wait=True)

        self.assertEqual(storage.save_file.call_count, 3)
        self.assertTrue(os.path.exists(manager.get_checkpoint_path("synced")))


if __name__ == "__main__":
    unittest.main()
