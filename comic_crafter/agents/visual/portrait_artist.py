from typing import Any, Dict, Optional
from comic_crafter.core.agent import BaseAgent
from comic_crafter.core.image_interface import ImageGeneratorInterface
from comic_crafter.core.models import CharacterConcept, GeneratedCharacter, ImageAsset
from comic_crafter.core import prompts
from comic_crafter.utils.image_utils import sniff_mime_type
from comic_crafter.utils.timing import log_execution_time

class PortraitArtistAgent(BaseAgent):
    def __init__(self, agent_name: str = "PortraitArtist", image_generator: ImageGeneratorInterface = None, config: Dict[str, Any] = None):
        super().__init__(agent_name, config)
        self.image_generator = image_generator

    def process(self, concept: CharacterConcept, art_style: str, shot_description: str) -> ImageAsset:
        prompt = prompts.render(
            prompts.CHARACTER_IMAGE_PROMPT,
            character_description=concept.description,
            art_style=art_style,
            shot_description=shot_description,
        )
        data = self.image_generator.generate(prompt, [], "1:1")
        return ImageAsset(name=concept.name, data=data, mime_type=sniff_mime_type(data))

    def draw_character(self, concept: CharacterConcept, art_style: str, shots: Dict[str, str],
                       existing: Optional[Dict[str, ImageAsset]] = None) -> GeneratedCharacter:
        """
        Renders every shot for one character. Shots already in `existing` are reused.
        Any failed shot raises, so a character is only returned with its full shot set.
        """
        images: Dict[str, ImageAsset] = {}
        for shot_key, shot_description in shots.items():
            if existing and shot_key in existing and not existing[shot_key].is_placeholder:
                images[shot_key] = existing[shot_key]
                continue
            self.logger.info(f"🎨 Designing character: {concept.name} ({shot_key})...")
            with log_execution_time(f"Generate Portrait: {concept.name} ({shot_key})"):
                images[shot_key] = self.run(concept, art_style, shot_description)
        return GeneratedCharacter(role=concept.role, name=concept.name, description=concept.description, images=images)
