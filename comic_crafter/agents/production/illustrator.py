from typing import Any, Callable, Dict, List, Optional, Tuple
from comic_crafter.core.agent import BaseAgent
from comic_crafter.core.checkpoint import InterventionChoice, InterventionDecision, InterventionRequest
from comic_crafter.core.errors import ConsistencyFailure, ImageGenerationBlocked
from comic_crafter.core.image_interface import ImageGeneratorInterface
from comic_crafter.core.models import ConsistencyVerdict, GeneratedCharacter, ImageAsset, Panel
from comic_crafter.agents.visual.consistency_manager import ConsistencyManager
from comic_crafter.agents.visual.consistency_checker import ConsistencyCheckerAgent
from comic_crafter.utils.image_utils import sniff_mime_type
from comic_crafter.utils.timing import log_execution_time

InterventionHandler = Callable[[InterventionRequest], InterventionDecision]


class IllustratorAgent(BaseAgent):
    """
    Draws panels with a bounded verify-and-retry loop.

    Each attempt generates an image, then checks every character on the panel against
    its reference; the first mismatch ends that attempt. A mismatch on the second-to-last
    attempt is handed to a human, who may accept the image or send the loop on to its
    final attempt with a correction note.
    """
    def __init__(self, agent_name: str, image_generator: ImageGeneratorInterface,
                 consistency_manager: ConsistencyManager, consistency_checker: ConsistencyCheckerAgent,
                 config: Dict[str, Any] = None):
        super().__init__(agent_name, config)
        self.image_generator = image_generator
        self.consistency_manager = consistency_manager
        self.consistency_checker = consistency_checker
        self.max_attempts = self.config.get("max_attempts", 3)

    def process(self, panel: Panel, roster: List[GeneratedCharacter],
                scene_images: Dict[str, Dict[str, ImageAsset]], art_style: str,
                on_intervention: Optional[InterventionHandler] = None) -> ImageAsset:
        return self.draw_panel(panel, roster, scene_images, art_style, on_intervention)

    def _first_mismatch(self, image: ImageAsset, characters: List[GeneratedCharacter]) -> Optional[Tuple[GeneratedCharacter, ConsistencyVerdict]]:
        for character in characters:
            verdict = self.consistency_checker.process(image, character)
            if not verdict.match:
                return character, verdict
        return None

    def draw_panel(self, panel: Panel, roster: List[GeneratedCharacter],
                   scene_images: Dict[str, Dict[str, ImageAsset]], art_style: str,
                   on_intervention: Optional[InterventionHandler] = None) -> ImageAsset:
        """
        Returns the accepted image for `panel`.
        Raises the last generation error if the final attempt's call fails, and
        ConsistencyFailure if no attempt passes verification.
        """
        brief = self.consistency_manager.process(panel, roster, scene_images, art_style)
        self.logger.info(f"Illustrating Panel {panel.key} ({len(brief.characters)} characters, {len(brief.references)} references)...")

        last_reason: Optional[str] = None
        safety_reframe = False
        for attempt in range(1, self.max_attempts + 1):
            prompt = brief.prompt
            if attempt > 1:
                prompt = self.consistency_manager.with_correction(brief.prompt, last_reason, safety_reframe)

            try:
                with log_execution_time(f"Generate Panel Image (Page {panel.page_number}, Panel {panel.panel_number}, attempt {attempt})"):
                    data = self.image_generator.generate(prompt, brief.references, brief.aspect_ratio)
            except ImageGenerationBlocked as e:
                if attempt == self.max_attempts:
                    raise
                self.logger.warning(f"Attempt {attempt}/{self.max_attempts} for panel {panel.key} was blocked: {e}")
                last_reason, safety_reframe = str(e), True
                continue
            except Exception as e:
                if attempt == self.max_attempts:
                    raise
                self.logger.warning(f"Attempt {attempt}/{self.max_attempts} for panel {panel.key} failed: {e}")
                last_reason, safety_reframe = str(e), False
                continue

            safety_reframe = False
            image = ImageAsset(name=f"Page {panel.page_number}, Panel {panel.panel_number}", data=data, mime_type=sniff_mime_type(data))

            if not brief.characters:
                return image

            mismatch = self._first_mismatch(image, brief.characters)
            if mismatch is None:
                self.logger.info(f"✅ Panel {panel.key} passed verification on attempt {attempt}.")
                return image

            character, verdict = mismatch
            last_reason = verdict.reason or f"{character.name} does not match the reference."
            self.logger.warning(f"Attempt {attempt}/{self.max_attempts} for panel {panel.key}: {character.name} mismatch - {last_reason}")

            if attempt == self.max_attempts - 1 and on_intervention is not None:
                decision = on_intervention(InterventionRequest(
                    page_number=panel.page_number,
                    panel_number=panel.panel_number,
                    attempt=attempt,
                    character_name=character.name,
                    reason=last_reason,
                    generated_image=image,
                    reference_image=character.canonical_image,
                ))
                if decision.choice == InterventionChoice.ACCEPT:
                    self.logger.info(f"👤 Human accepted panel {panel.key} despite: {last_reason}")
                    return image
                last_reason = decision.reason or last_reason
                self.logger.info(f"👤 Human rejected panel {panel.key}; final attempt with note: {last_reason}")

        raise ConsistencyFailure(panel.key, last_reason or "unknown mismatch")

    def draw_cover(self, panel: Panel, protagonist: Optional[GeneratedCharacter], title: str, logline: str, art_style: str) -> ImageAsset:
        """
        Generates the cover once from the protagonist's references. No verification.
        """
        self.logger.info(f"🖼️ Generating the cover for '{title}'...")
        prompt, references = self.consistency_manager.cover_brief(protagonist, title, logline, art_style)
        with log_execution_time("Generate Cover Image"):
            data = self.image_generator.generate(prompt, references, "3:4")
        return ImageAsset(name=f"Cover ({panel.key})", data=data, mime_type=sniff_mime_type(data))
