import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from comic_crafter.core.checkpoint import (
    InterventionChoice,
    InterventionDecision,
    InterventionRequest,
    PipelineStage,
    PipelineState,
    ResumeHint,
    progress_percent,
)
from comic_crafter.core.config import COVER_PAGE_NUMBER, PipelineConfig
from comic_crafter.core.errors import PipelineError, RunCancelled
from comic_crafter.core.image_interface import ImageGeneratorInterface
from comic_crafter.core.models import GeneratedPanel, ImageAsset, Panel, PanelSetting, location_key
from comic_crafter.agents.narrative.character_analyst import CharacterAnalystAgent
from comic_crafter.agents.narrative.cast_designer import CastDesignerAgent, describe_cast
from comic_crafter.agents.narrative.story_architect import StoryArchitectAgent
from comic_crafter.agents.narrative.script_writer import ScriptWriterAgent
from comic_crafter.agents.narrative.dialogue_polisher import DialoguePolisherAgent
from comic_crafter.agents.narrative.narrator import NarratorAgent
from comic_crafter.agents.visual.portrait_artist import PortraitArtistAgent
from comic_crafter.agents.visual.scene_painter import ScenePainterAgent
from comic_crafter.agents.visual.consistency_manager import ConsistencyManager
from comic_crafter.agents.visual.consistency_checker import ConsistencyCheckerAgent
from comic_crafter.agents.production.illustrator import IllustratorAgent
from comic_crafter.utils.checkpoint_manager import CheckpointManager
from comic_crafter.utils.image_utils import sniff_mime_type
from comic_crafter.utils.sample_loader import SampleLoader
from comic_crafter.utils.llm_interface import LLMInterface

logger = logging.getLogger("ComicGen.Pipeline")

StateListener = Callable[[PipelineState], None]

STORY_FAILURE = "Failed to create story"
ASSETS_FAILURE = "Failed to generate assets"
PANELS_FAILURE = "Generation Failed"
SAMPLE_FAILURE = "Failed to load default story"


class ComicPipeline:
    """
    Resumable comic generation run.

    Owns one PipelineState and drives it forward stage by stage. Every stage is skipped
    when its output is already present, so re-entering after a failure or a restore only
    does the missing work. Observers either subscribe for push updates after every unit
    of work or poll `snapshot()`.
    """
    def __init__(self, llm: LLMInterface, image_generator: ImageGeneratorInterface,
                 config: Optional[PipelineConfig] = None,
                 checkpoint_manager: Optional[CheckpointManager] = None,
                 sample_loader: Optional[SampleLoader] = None,
                 fast_llm: Optional[LLMInterface] = None,
                 autosave_name: Optional[str] = None):
        self.config = config or PipelineConfig()
        self.checkpoint_manager = checkpoint_manager or CheckpointManager()
        self.sample_loader = sample_loader or SampleLoader(max_page=self.config.sample_max_page)
        self.autosave_name = autosave_name
        fast_llm = fast_llm or llm

        asset_config = {"tries": self.config.asset_attempts, "delay": self.config.retry_delay}
        self.analyst = CharacterAnalystAgent("CharacterAnalyst", llm=llm)
        self.cast_designer = CastDesignerAgent("CastDesigner", llm=llm, config={"cast_size": self.config.cast_size})
        self.story_architect = StoryArchitectAgent("StoryArchitect", llm=llm)
        self.script_writer = ScriptWriterAgent("ScriptWriter", llm=llm)
        self.dialogue_polisher = DialoguePolisherAgent("DialoguePolisher", llm=fast_llm, config={"max_workers": self.config.polish_workers})
        self.narrator = NarratorAgent("Narrator", llm=fast_llm)
        self.portrait_artist = PortraitArtistAgent("PortraitArtist", image_generator=image_generator, config=asset_config)
        self.scene_painter = ScenePainterAgent("ScenePainter", image_generator=image_generator, config=asset_config)
        self.illustrator = IllustratorAgent(
            "Illustrator",
            image_generator=image_generator,
            consistency_manager=ConsistencyManager("ConsistencyManager"),
            consistency_checker=ConsistencyCheckerAgent("ConsistencyChecker", llm=fast_llm),
            config={"max_attempts": self.config.max_attempts},
        )

        self.state = PipelineState()
        self._condition = threading.Condition(threading.RLock())
        self._listeners: List[StateListener] = []
        self._running = False
        self._reserved: Optional[object] = None
        self._cancel_requested = False
        self._run_thread: Optional[int] = None
        self._decision: Optional[InterventionDecision] = None

    # ---------------------------------------------------------------- observers

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Registers `listener`; returns a callable that unsubscribes it."""
        with self._condition:
            self._listeners.append(listener)

        def unsubscribe():
            with self._condition:
                if listener in self._listeners:
                    self._listeners.remove(listener)
        return unsubscribe

    def snapshot(self) -> PipelineState:
        with self._condition:
            return self.state.model_copy(deep=True)

    @property
    def is_running(self) -> bool:
        return self._running or self._reserved is not None

    def reserve(self) -> object:
        """
        Claims the run slot for a command that will be issued from another thread.
        The next run consumes the claim; `release(token)` drops it if that run never starts.
        """
        with self._condition:
            if self.is_running:
                raise PipelineError("A generation run is already in progress.")
            self._reserved = object()
            return self._reserved

    def release(self, token: object):
        with self._condition:
            if self._reserved is token:
                self._reserved = None

    def _notify(self):
        with self._condition:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(self.state)
            except Exception as e:
                logger.warning(f"State listener failed: {e}")

    def _enter(self, stage: PipelineStage, cast_status: Optional[str] = None, status: Optional[str] = None):
        with self._condition:
            self.state.stage = stage
            if cast_status is not None:
                self.state.cast_status = cast_status
            if status is not None:
                self.state.status = status
        logger.info(f"▶️ {stage.value}: {status or cast_status or ''}")
        self._notify()

    # ----------------------------------------------------------------- commands

    def start_from_image(self, image_bytes: bytes, mime_type: Optional[str] = None) -> PipelineState:
        """Starts a fresh run from an uploaded character image."""
        if not image_bytes:
            raise PipelineError("No image was uploaded.")
        self.reset()
        with self._condition:
            self.state.source_image = ImageAsset(name="initial", data=image_bytes, mime_type=mime_type or sniff_mime_type(image_bytes))
        return self._run()

    def start_from_sample(self) -> PipelineState:
        """Starts a fresh run from the bundled sample story instead of live story generation."""
        self.reset()
        with self._condition:
            self.state.is_sample = True
        return self._run(load_sample=True)

    def retry(self) -> PipelineState:
        """Re-enters the pipeline from the current state. Completed work is skipped."""
        with self._condition:
            state = self.state
            if state.story is None and state.is_sample:
                reload_sample = True
            elif state.story is None and state.character_profile is None and state.source_image is None:
                reload_sample = None
            else:
                reload_sample = False

        if reload_sample is None:
            self.reset()
            with self._condition:
                self.state.error = "No image was uploaded to retry."
            self._notify()
            return self.state
        if reload_sample:
            return self.start_from_sample()
        return self._run()

    def resolve_intervention(self, choice, reason: Optional[str] = None):
        """Delivers the human decision for the pending panel. 'reject' is accepted as 'retry'."""
        try:
            parsed = InterventionChoice.parse(choice)
        except ValueError as e:
            raise PipelineError(f"Unknown intervention choice: {choice!r}") from e
        with self._condition:
            if self.state.pending_intervention is None or self._decision is not None:
                raise PipelineError("No intervention is pending.")
            self._decision = InterventionDecision(choice=parsed, reason=reason)
            self._condition.notify_all()
        logger.info(f"👤 Intervention decision received: {parsed.value}")

    def reset(self):
        """
        Clears every field back to its initial empty value. A run parked on a human
        decision is abandoned first; any other active run makes this fail.
        """
        with self._condition:
            self._abandon_paused_run("reset")
            self.state = PipelineState()
            self._decision = None
        self._notify()

    def _abandon_paused_run(self, action: str):
        """Cancels a run waiting in `_request_intervention` and blocks until it unwinds. Caller holds the lock."""
        if not self._running:
            return
        paused = self._run_thread
        if self.state.pending_intervention is None or paused == threading.get_ident():
            raise PipelineError(f"Cannot {action} while a generation run is active.")
        logger.info(f"⏹️ Abandoning the run paused on panel {self.state.pending_intervention.panel_key}.")
        self._cancel_requested = True
        self._condition.notify_all()
        while self._running and self._run_thread == paused:
            self._condition.wait()
        if self._running:
            raise PipelineError(f"Cannot {action} while a generation run is active.")

    def export_archive(self) -> bytes:
        """Exports the current state. Safe while a panel waits for a human decision."""
        return self.checkpoint_manager.export_archive(self.snapshot())

    def restore_archive(self, data: bytes) -> ResumeHint:
        """Replaces the current state with an archive's contents and returns where to resume."""
        with self._condition:
            if self._running and self.state.pending_intervention is None:
                raise PipelineError("Cannot restore while a generation run is active.")
        state, hint = self.checkpoint_manager.restore_archive(data)
        self._replace_state(state)
        return hint

    def restore_checkpoint(self, name: str) -> Optional[ResumeHint]:
        """Replaces the current state with a named checkpoint; None if there is no such checkpoint."""
        with self._condition:
            if self._running and self.state.pending_intervention is None:
                raise PipelineError("Cannot restore while a generation run is active.")
        loaded = self.checkpoint_manager.load_checkpoint(name)
        if loaded is None:
            return None
        state, hint = loaded
        self._replace_state(state)
        logger.info(f"📂 Checkpoint '{name}' loaded. Resume hint: {hint.value}")
        return hint

    def _replace_state(self, state: PipelineState):
        with self._condition:
            self._abandon_paused_run("restore")
            self.state = state
            self._decision = None
        self._notify()

    # ---------------------------------------------------------------- execution

    def _run(self, load_sample: bool = False) -> PipelineState:
        with self._condition:
            if self._running:
                raise PipelineError("A generation run is already in progress.")
            self._running = True
            self._reserved = None
            self._run_thread = threading.get_ident()
            self.state.error = None
        try:
            if load_sample and not self._guarded(SAMPLE_FAILURE, self._load_sample):
                return self.state
            for prefix, phase in ((STORY_FAILURE, self._plan_story),
                                  (ASSETS_FAILURE, self._generate_assets),
                                  (PANELS_FAILURE, self._generate_panels)):
                if not self._guarded(prefix, phase):
                    return self.state
            self._finalize()
            return self.state
        finally:
            with self._condition:
                self._running = False
                self._run_thread = None
                self._cancel_requested = False
                self._condition.notify_all()

    def _guarded(self, prefix: str, phase: Callable[[], None]) -> bool:
        """Runs one phase; any failure is recorded on the state and halts the run."""
        try:
            phase()
            return True
        except RunCancelled as e:
            logger.info(f"⏹️ {e}")
            return False
        except Exception as e:
            message = str(e) or e.__class__.__name__
            with self._condition:
                self.state.error = f"{prefix}: {message}"
            logger.error(f"❌ {self.state.error}")
            self._autosave()
            self._notify()
            return False

    def _autosave(self):
        if not self.autosave_name:
            return
        try:
            self.checkpoint_manager.save_checkpoint(self.snapshot(), self.autosave_name)
        except Exception as e:
            logger.warning(f"⚠️ Automatic checkpoint failed: {e}")

    def _load_sample(self):
        self._enter(PipelineStage.CHARACTER_SETUP, cast_status="Loading default story from file...", status="Loading default story...")
        bundle = self.sample_loader.load(list(self.config.character_shots), list(self.config.perspectives))
        with self._condition:
            state = self.state
            state.character_profile = bundle.profile
            state.story_package = bundle.story_package
            state.character_concepts = bundle.concepts
            state.story = bundle.story
            state.character_roster = bundle.roster
            state.scene_images = bundle.scene_images
        logger.info(f"📂 Sample loaded: {len(bundle.roster)} bundled portraits, {len(bundle.scene_images)} bundled scenes.")
        self._notify()

    def _plan_story(self):
        state = self.state
        if state.story is not None:
            logger.info(f"⏭️ Skipping story planning (outline '{state.story.title}' already present).")
            return

        if state.character_profile is None:
            if state.source_image is None:
                raise PipelineError("No character image to analyze.")
            self._enter(PipelineStage.ANALYZE, cast_status="Analyzing character...")
            profile = self.analyst.run(state.source_image)
            with self._condition:
                state.character_profile = profile
            self._notify()

        if not state.character_concepts:
            self._enter(PipelineStage.CAST_CONCEPTS, cast_status="Generating supporting cast...")
            concepts = self.cast_designer.run(state.character_profile)
            with self._condition:
                state.character_concepts = concepts
            self._notify()

        if state.story_package is None:
            self._enter(PipelineStage.BLUEPRINT, cast_status="Developing story blueprint...")
            package = self.story_architect.run(state.character_concepts)
            with self._condition:
                state.story_package = package
            self._notify()

        self._enter(PipelineStage.SCRIPT, cast_status="Generating detailed comic panels from blueprint...")
        outline = self.script_writer.run(state.story_package, describe_cast(state.character_concepts))

        if self.config.polish_dialogue:
            self._enter(PipelineStage.SCRIPT, cast_status="Polishing dialogue...")
            outline = outline.model_copy(update={"panels": self.dialogue_polisher.polish_all(outline.panels, state.story_package)})

        try:
            outline = outline.model_copy(update={"full_text": self.narrator.run(outline)})
        except Exception as e:
            logger.warning(f"⚠️ Narration failed; continuing without prose text: {e}")

        with self._condition:
            state.story = outline
        logger.info(f"[PROGRESS] 0% - Script '{outline.title}' ready with {len(outline.panels)} panels.")
        self._notify()

    def _art_style(self) -> str:
        profile = self.state.character_profile
        return profile.art_style if profile else "comic book"

    def _generate_assets(self):
        state = self.state
        art_style = self._art_style()
        shots = self.config.character_shots

        self._enter(PipelineStage.PORTRAIT_GENERATION)
        for concept in state.character_concepts:
            existing = state.find_character(concept.name)
            if existing is not None and all(k in existing.images and not existing.images[k].is_placeholder for k in shots):
                continue
            self._enter(PipelineStage.PORTRAIT_GENERATION, cast_status=f"Designing character: {concept.name}...")
            character = self.portrait_artist.draw_character(concept, art_style, shots, existing.images if existing else None)
            with self._condition:
                if existing is not None:
                    state.character_roster[state.character_roster.index(existing)] = character
                else:
                    state.character_roster.append(character)
            self._notify()

        if state.story is None:
            return

        self._enter(PipelineStage.SCENE_GENERATION, cast_status="Pre-rendering background scenes...")
        perspectives = self.config.perspectives
        locations: Dict[str, PanelSetting] = {}
        for panel in state.story.panels:
            locations.setdefault(location_key(panel.visuals.setting.location), panel.visuals.setting)

        for key, setting in locations.items():
            existing_plates = state.scene_images.get(key) or {}
            if all(p in existing_plates and not existing_plates[p].is_placeholder for p in perspectives):
                continue
            self._enter(PipelineStage.SCENE_GENERATION, cast_status=f"Generating scene: {setting.location}...")
            plates = self.scene_painter.paint_location(setting, art_style, perspectives, existing_plates)
            with self._condition:
                state.scene_images[key] = plates
            self._notify()

        with self._condition:
            state.cast_status = "The cast and scenes are ready! Assembling the pages..."
        self._notify()

    def _request_intervention(self, request: InterventionRequest) -> InterventionDecision:
        """Suspends the run until `resolve_intervention` delivers a decision."""
        with self._condition:
            self._decision = None
            self.state.pending_intervention = request
            self.state.stage = PipelineStage.AWAITING_INTERVENTION
            self.state.status = (f"Waiting for your decision on Page {request.page_number}, "
                                 f"Panel {request.panel_number} ({request.character_name})...")
        logger.info(f"⏸️ Panel {request.panel_key} needs a human decision: {request.reason}")
        self._notify()

        timeout = self.config.intervention_timeout
        deadline = time.monotonic() + timeout if timeout else None
        with self._condition:
            try:
                while self._decision is None and not self._cancel_requested:
                    remaining = deadline - time.monotonic() if deadline is not None else None
                    if remaining is not None and remaining <= 0:
                        raise PipelineError(f"No decision on Page {request.page_number}, Panel {request.panel_number} "
                                            f"within {timeout:g} seconds.")
                    self._condition.wait(remaining)
                if self._cancel_requested:
                    raise RunCancelled(f"Run abandoned while panel {request.panel_key} awaited a decision.")
                decision = self._decision
            finally:
                self._decision = None
                self.state.pending_intervention = None
                self.state.stage = PipelineStage.PANEL_GENERATION
        self._notify()
        return decision

    def _add_panel(self, panel: Panel, image: ImageAsset, panel_keys: set):
        state = self.state
        with self._condition:
            state.generated_panels.append(GeneratedPanel(**panel.model_dump(), image=image))
            done = len(state.generated_keys & panel_keys)
            state.progress = max(state.progress, progress_percent(done, len(panel_keys)))
        logger.info(f"[PROGRESS] {state.progress}% - Panel {panel.key} complete ({done}/{len(panel_keys)}).")
        self._notify()

    def _generate_panels(self):
        state = self.state
        if state.story is None or state.character_profile is None or state.story_package is None:
            raise PipelineError("Character profile or story blueprint is missing. Cannot generate pages.")
        self._enter(PipelineStage.PANEL_GENERATION, status="Preparing panels...")

        story = state.story
        art_style = self._art_style()
        panel_keys = {p.key for p in story.panels}
        if not panel_keys:
            return

        cover = next((p for p in story.panels if str(p.page_number) == str(COVER_PAGE_NUMBER)), None)
        if cover is not None and cover.key not in state.generated_keys:
            self._enter(PipelineStage.PANEL_GENERATION, status="Generating the cover...")
            image = self.illustrator.draw_cover(cover, state.protagonist, story.title, state.story_package.logline, art_style)
            self._add_panel(cover, image, panel_keys)

        for panel in story.panels:
            if panel is cover or panel.key in state.generated_keys:
                continue
            self._enter(PipelineStage.PANEL_GENERATION, status=f"Generating Page {panel.page_number}, Panel {panel.panel_number}...")
            image = self.illustrator.draw_panel(
                panel, state.character_roster, state.scene_images, art_style,
                on_intervention=self._request_intervention,
            )
            self._add_panel(panel, image, panel_keys)

    def _finalize(self):
        with self._condition:
            self.state.progress = 100
        self._enter(PipelineStage.FINALIZE, status="Finalizing your comic...")
        logger.info(f"🚀 Comic '{self.state.story.title}' complete with {len(self.state.generated_panels)} panels.")
        self._autosave()
