from typing import List, Dict, Any, Optional
from comic_crafter.core.agent import BaseAgent
from comic_crafter.core.models import CharacterConcept, CharacterProfile, CastList
from comic_crafter.core import prompts
from comic_crafter.utils.llm_interface import LLMInterface


def describe_cast(concepts: List[CharacterConcept]) -> str:
    """'Name (Role): description' entries joined into one paragraph, as every story prompt expects."""
    return ". ".join(f"{c.name} ({c.role}): {c.description}" for c in concepts)


class CastDesignerAgent(BaseAgent):
    def __init__(self, agent_name: str = "CastDesigner", llm: Optional[LLMInterface] = None, config: Dict[str, Any] = None):
        super().__init__(agent_name, config)
        self.llm = llm or LLMInterface(model_name=self.config.get("model_name", "gemini/gemini-2.5-flash"))
        self.cast_size = self.config.get("cast_size", 5)

    def process(self, profile: CharacterProfile) -> List[CharacterConcept]:
        """
        Generates the whole cast in one batch call from the protagonist's profile.
        """
        self.logger.info("Generating supporting cast...")
        user_prompt = prompts.render(
            prompts.CAST_PROMPT,
            protagonist_description=profile.consistency_tags,
            art_style=profile.art_style,
            cast_size=self.cast_size,
        )
        result = self.llm.generate_structured_output(
            prompt=user_prompt,
            system_prompt=prompts.CAST_SYSTEM_PROMPT,
            schema=CastList,
            context="generateCharacterConcepts",
        )

        # Names are the join key for portraits and panels, so collapse duplicates.
        concepts: List[CharacterConcept] = []
        seen = set()
        for concept in result.characters:
            canonical = concept.name.strip().lower()
            if canonical in seen:
                self.logger.info(f"Dropping duplicate cast entry for '{concept.name}'.")
                continue
            seen.add(canonical)
            concepts.append(concept)

        if len(concepts) != self.cast_size:
            self.logger.warning(f"Expected a cast of {self.cast_size}, got {len(concepts)}. Continuing with what we have.")
        self.logger.info(f"👥 Cast: {', '.join(f'{c.name} ({c.role})' for c in concepts)}")
        return concepts
