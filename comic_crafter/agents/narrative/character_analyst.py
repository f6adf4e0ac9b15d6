from typing import Any, Dict, Optional
from comic_crafter.core.agent import BaseAgent
from comic_crafter.core.models import CharacterProfile, ImageAsset
from comic_crafter.core import prompts
from comic_crafter.utils.llm_interface import LLMInterface

class CharacterAnalystAgent(BaseAgent):
    def __init__(self, agent_name: str = "CharacterAnalyst", llm: Optional[LLMInterface] = None, config: Dict[str, Any] = None):
        super().__init__(agent_name, config)
        self.llm = llm or LLMInterface(model_name=self.config.get("model_name", "gemini/gemini-2.5-flash"))

    def process(self, image: ImageAsset) -> CharacterProfile:
        """
        Extracts the visual fingerprint of the seed character from the uploaded image.
        """
        self.logger.info(f"Analyzing seed image ({image.mime_type}, {len(image.data)} bytes)...")
        profile = self.llm.generate_structured_output(
            prompt=prompts.ANALYZE_PROMPT,
            system_prompt=prompts.ANALYZE_SYSTEM_PROMPT,
            schema=CharacterProfile,
            images=[image],
            context="analyzeCharacter",
        )
        self.logger.info(f"Profile extracted. Art style: '{profile.art_style}'.")
        return profile
