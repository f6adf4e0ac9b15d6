from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from comic_crafter.core.agent import BaseAgent
from comic_crafter.core.models import Panel, StoryDevelopmentPackage
from comic_crafter.core import prompts
from comic_crafter.utils.llm_interface import LLMInterface


class PolishedLine(BaseModel):
    character: str
    content: str


class PolishedDialogue(BaseModel):
    dialogue: List[PolishedLine] = Field(default_factory=list)


class DialoguePolisherAgent(BaseAgent):
    """
    Best-effort dialogue rewrite. A failure for one panel keeps that panel's original lines.
    """
    def __init__(self, agent_name: str = "DialoguePolisher", llm: Optional[LLMInterface] = None, config: Dict[str, Any] = None):
        super().__init__(agent_name, config)
        self.llm = llm or LLMInterface(model_name=self.config.get("model_name", "gemini/gemini-2.5-flash"))
        self.max_workers = self.config.get("max_workers", 4)

    def process(self, panel: Panel, blueprint: StoryDevelopmentPackage) -> Panel:
        voices = "\n".join(
            f"- {v.character_name}: {v.speech_patterns}; {v.vocabulary}" for v in blueprint.character_voices
        ) or "- (no voice notes)"
        dialogue = "\n".join(f"{i + 1}. {line.character}: {line.content}" for i, line in enumerate(panel.textual.dialogue))
        result = self.llm.generate_structured_output(
            prompt=prompts.render(
                prompts.POLISH_PROMPT,
                voices=voices,
                page_number=panel.page_number,
                panel_number=panel.panel_number,
                action=panel.visuals.action.description,
                dialogue=dialogue,
            ),
            system_prompt=prompts.POLISH_SYSTEM_PROMPT,
            schema=PolishedDialogue,
            context=f"polishDialogue[{panel.key}]",
        )
        if len(result.dialogue) != len(panel.textual.dialogue):
            raise ValueError(
                f"Polished dialogue for panel {panel.key} has {len(result.dialogue)} lines, expected {len(panel.textual.dialogue)}"
            )

        polished = panel.model_copy(deep=True)
        for line, new_line in zip(polished.textual.dialogue, result.dialogue):
            line.content = new_line.content
        return polished

    def polish(self, panel: Panel, blueprint: StoryDevelopmentPackage) -> Panel:
        """Returns the polished panel, or the input panel unchanged on any failure."""
        if not panel.textual.dialogue:
            return panel
        try:
            return self.process(panel, blueprint)
        except Exception as e:
            self.logger.warning(f"⚠️ Dialogue polish failed for panel {panel.key}, keeping original lines: {e}")
            return panel

    def polish_all(self, panels: List[Panel], blueprint: StoryDevelopmentPackage) -> List[Panel]:
        """
        Polishes every panel independently and in parallel; output keeps the input order.
        """
        if not panels:
            return []
        self.logger.info(f"✍️ Polishing dialogue for {len(panels)} panels...")
        with ThreadPoolExecutor(max_workers=max(1, min(self.max_workers, len(panels)))) as executor:
            tasks = [executor.submit(self.polish, panel, blueprint) for panel in panels]
            return [task.result() for task in tasks]
