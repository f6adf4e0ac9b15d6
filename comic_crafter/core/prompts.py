"""
Prompt templates. Placeholders use str.format syntax; fill them with `render`.
"""

ANALYZE_SYSTEM_PROMPT = """
You are a senior character designer for comics.
Study the uploaded character image and extract a Character Consistency Profile:
the physical traits, clothing style, color palette, distinctive features, a concise
'consistency_tags' keyword string for prompt injection (e.g. 'man with red hair, green jacket,
cybernetic arm') and a short 'art_style' label (e.g. '90s anime style', 'noir ink').
"""

ANALYZE_PROMPT = "Analyze the uploaded image of a character and return the consistency profile as JSON."

CAST_SYSTEM_PROMPT = "You are a comic book casting director. Respond ONLY with valid JSON."

CAST_PROMPT = """
Hero description: "{protagonist_description}". Art style: "{art_style}".
Build the full cast of a superhero comic. Every character must fit the art style exactly
(if the style is 'cartoon animal', no realistic humans).

Create exactly {cast_size} characters:
1. The Protagonist, expanded from the hero description.
2. Two allies, each a different archetype from [Lover, Best Friend, Mentor, Tech Guru, Anti-Hero].
3. The primary Antagonist, a visual foil to the protagonist.
4. One antagonist minion from [Sidekick, Tech Guru, Relative].

For each character give a 'role' (e.g. "Protagonist", "Mentor", "Antagonist", "Sidekick"),
a unique 'name' and a visual 'description' (costume, build, key features) suitable for image generation.
Return a JSON object with a 'characters' array.
"""

BLUEPRINT_SYSTEM_PROMPT = """
You are a story architect for gritty, emotionally resonant comics about sacrifice, legacy and redemption.
Respond ONLY with valid JSON.
"""

BLUEPRINT_PROMPT = """
Characters: {cast_description}

Design the blueprint of a 20-22 page comic book:
- 'title' and a one-sentence 'logline' naming the core personal conflict.
- 1-2 'themes' (prefer: Sacrifice for a Greater Good, The Burden of Legacy, Atonement and Redemption,
  Finding Purpose in a Fading World, The Cost of Defiance).
- 'character_arcs': for each major character an 'internal_conflict' and an 'arc_summary'.
- 'character_voices': for each character 'speech_patterns' and 'vocabulary'.
- 'three_act_outline': acts 1-3 with 'act_title', 'summary' and ordered 'key_scenes'
  ('scene_title', 'description', 'page_estimation').
"""

SCRIPT_SYSTEM_PROMPT = """
You are a comic book writer who turns story blueprints into panel-by-panel scripts.
Respond ONLY with valid JSON.
"""

SCRIPT_PROMPT = """
Story blueprint:
{blueprint}

Characters:
{cast_description}

Write the full panel script following the blueprint's acts, arcs, themes and character voices.
- Page {cover_page} is the cover: a single splash panel establishing the protagonist.
- The climax is a double-page spread with page_number "{centerfold_page}".
- Vary shot types ('Splash Page', 'Wide Shot', 'Medium Shot', 'Close-Up') and angles ('High Angle', 'Low Angle', 'Eye-Level').
- Every panel names its setting location consistently, so panels in the same place reuse the same location string.
- Dialogue uses the character voices; give each line a 'position' with x/y percentages (0-100, top-left origin).
- Sound effects carry 'position', 'rotation' (-15..15 degrees) and 'scale' (1.0 normal, 1.5 large).
- Captions carry 'coordinates' in corners or edges.
(page_number, panel_number) pairs must be unique.
Return a JSON object with 'title', 'prologue' and 'panels'.
"""

POLISH_SYSTEM_PROMPT = """
You are a dialogue editor for comics. Tighten lines, keep subtext, respect each character's voice.
Respond ONLY with valid JSON.
"""

POLISH_PROMPT = """
Character voices:
{voices}

Panel (page {page_number}, panel {panel_number}) action: {action}

Current dialogue:
{dialogue}

Rewrite the 'content' of every line. Keep the same number of lines, the same speakers and order.
Return a JSON object with a 'dialogue' array of objects holding 'character' and 'content'.
"""

NARRATE_SYSTEM_PROMPT = "You are a novelist who adapts comic scripts into flowing prose."

NARRATE_PROMPT = """
Comic script (JSON):
{outline}

Turn this script into a cohesive narrative story. Keep the plot, the character voices and the key moments.
Weave actions, dialogue and captions into flowing prose; translate camera notes into emotion.
Use thought bubbles and captions as internal monologue. Keep the tone given by the mood and lighting notes.
Output plain text only, with a blank line between paragraphs.
"""

VERIFY_SYSTEM_PROMPT = """
You are a meticulous comic art continuity checker. Respond ONLY with valid JSON.
"""

VERIFY_PROMPT = """
The first image is a freshly generated comic panel. The second image, when present, is the canonical
reference of the character "{character_name}" ({character_description}).

Does "{character_name}" in the panel match the reference: costume, colors, accessories, markings and
physical features? Ignore pose, expression, lighting and camera angle.
Return a JSON object with a boolean 'match' and a short 'reason' naming any mismatch.
"""

CHARACTER_IMAGE_PROMPT = """
Character concept art portrait for a comic book, presented as a high-quality sticker.
Character: {character_description}.
Art style, strictly: "{art_style}".
Shot: {shot_description}.
Transparent background. No text, logos or watermarks.
"""

SCENE_IMAGE_PROMPT = """
Detailed background illustration for a comic book scene in the {art_style} aesthetic.
Setting: {setting_description}
Viewing angle: {perspective}.
The image must be an empty environment: no characters, figures or living beings.
Capture the described mood and stay strictly within the art style; characters are composited later.
"""

PANEL_IMAGE_PROMPT = """
Artwork for a single comic book panel in the {art_style} aesthetic. Do not draw panel borders; fill the frame.
Professional comic illustration: bold outlines, dynamic action lines, dramatic high-contrast lighting, saturated colors.

Render the dialogue, captions and sound effects below into the artwork. Speech bubble tails point at the speaker.
Place sound effects using their position, rotation and scale (0,0 is top-left, 100,100 bottom-right).

CHARACTER REFERENCES (absolute truth for appearance; text below is for pose and expression only):
{character_references}

The supplied background image is the environment of this panel; place the characters inside it unchanged.
The panel must contain exactly these characters: {character_list}.

Panel visuals (JSON):
{panel_visuals}

Panel textual (JSON):
{panel_textual}

Panel auditory (JSON):
{panel_auditory}
"""

COVER_IMAGE_PROMPT = """
Cinematic cover for a comic book titled "{title}" in the {art_style} aesthetic.
Logline: {logline}
Feature the protagonist prominently in a dramatic moment that hints at the conflict.
Render the title "{title}" prominently in a bold, readable display font.
The reference images are the single source of truth for the protagonist's appearance;
this description is for posing only: {character_description}
"""

CORRECTION_NOTE = """
CORRECTION FROM THE PREVIOUS ATTEMPT: {reason}
Fix this while keeping everything else about the panel.
"""

SAFETY_REFRAME = (
    "Depict any violence or danger in a metaphorical, non-graphic way suitable for all audiences."
)

ASPECT_RATIO_SUFFIX = "\n\nStrictly generate the image with an aspect ratio of {aspect_ratio}."


def render(template: str, **values) -> str:
    return template.format(**values).strip()
