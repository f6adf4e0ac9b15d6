from typing import Any, Dict, Optional
from comic_crafter.core.agent import BaseAgent
from comic_crafter.core.models import ConsistencyVerdict, GeneratedCharacter, ImageAsset
from comic_crafter.core import prompts
from comic_crafter.utils.llm_interface import LLMInterface

class ConsistencyCheckerAgent(BaseAgent):
    def __init__(self, agent_name: str = "ConsistencyChecker", llm: Optional[LLMInterface] = None, config: Dict[str, Any] = None):
        super().__init__(agent_name, config)
        self.llm = llm or LLMInterface(model_name=self.config.get("model_name", "gemini/gemini-2.5-flash"))

    def process(self, image: ImageAsset, character: GeneratedCharacter) -> ConsistencyVerdict:
        """
        Asks a vision model whether `character` in the generated image still matches
        the character's canonical portrait.
        """
        self.logger.info(f"🔍 Verifying {character.name} against the reference portrait...")
        images = [image]
        reference = character.canonical_image
        if reference is not None:
            images.append(reference)

        verdict = self.llm.generate_structured_output(
            prompt=prompts.render(
                prompts.VERIFY_PROMPT,
                character_name=character.name,
                character_description=character.description,
            ),
            system_prompt=prompts.VERIFY_SYSTEM_PROMPT,
            schema=ConsistencyVerdict,
            images=images,
            context=f"verifyConsistency[{character.name}]",
        )
        if verdict.match:
            self.logger.info(f"✅ {character.name} matches the reference.")
        else:
            self.logger.warning(f"❌ {character.name} does not match: {verdict.reason}")
        return verdict
