from typing import List, Optional

from .models import StorySession, TextRequest

INITIAL = "initial"
INTERMEDIATE = "intermediate"
PENULTIMATE = "penultimate"
FINAL = "final"

CONTINUATION_MAX_TOKENS = 250
CONCLUSION_MAX_TOKENS = 150
TEMPERATURE = 0.7

SYSTEM_PROMPT = """You are a creative children's story writer. Write warm, simple, age-appropriate stories for young readers.
- Short sentences, simple words, no scary or violent content.
- Keep the same main character, setting and tone for the whole story.
Output ONLY valid JSON matching the requested schema. No markdown, no commentary."""


CONTINUATION_SCHEMA = """Your response MUST be a valid JSON object containing ONLY the following keys: "story", "question", and "choices".
"story": string (the story text).
"question": string (a short question asking what the main character should do next).
"choices": array of exactly 3 strings (three short action choices).

Example JSON output:
{
  "story": "Lily looked closer and saw tiny wings fluttering inside the jar!",
  "question": "Should Lily open the jar?",
  "choices": ["Open", "Wait", "Shake"]
}"""


CONCLUSION_SCHEMA = """Your response MUST be a valid JSON object containing ONLY the key "story".
"story": string (the concluding story paragraph).

Example JSON output:
{
  "story": "And so, Lily and the fairy became the best of friends, sharing many more adventures."
}"""


INITIAL_TEMPLATE = """Start a children's story (around 50-70 words, simple language) with:
Style: {style}
Character: {character}
Setting: {setting}
Theme: {theme}

{schema}

Output ONLY the JSON object."""


INTERMEDIATE_TEMPLATE = """Continue this children's story based on the user choice.
Style: {style}
Character: {character}
Setting: {setting}
Theme: {theme}

Story So Far:
{story_so_far}

User chose: "{user_choice}".

Write the next short part (around 50-70 words).

{schema}

Output ONLY the JSON object."""


PENULTIMATE_TEMPLATE = """Continue this children's story based on the user choice. The story will end in the next part, so start guiding it toward a happy, natural ending.
Style: {style}
Character: {character}
Setting: {setting}
Theme: {theme}

Story So Far:
{story_so_far}

User chose: "{user_choice}".

Write the next short part (around 50-70 words). The three choices should each lead toward the ending.

{schema}

Output ONLY the JSON object."""


FINAL_TEMPLATE = """Conclude this children's story based on the user's last choice.
Style: {style}
Character: {character}
Setting: {setting}
Theme: {theme}

Story So Far:
{story_so_far}

User chose: "{user_choice}".

Write a short concluding paragraph (around 50-70 words) that wraps up the story. Do not ask any questions.

{schema}

Output ONLY the JSON object."""


OMITTED_MARKER = "(Earlier parts of the story are omitted.)"


def select_template(step: int, target_steps: int) -> str:
    if step >= target_steps:
        return FINAL
    if step <= 1:
        return INITIAL
    if step == target_steps - 1:
        return PENULTIMATE
    return INTERMEDIATE


def story_so_far(session: StorySession, max_segments: Optional[int] = None) -> str:
    texts: List[str] = [seg.text for seg in session.segments]
    if max_segments is not None and max_segments > 0 and len(texts) > max_segments:
        texts = [OMITTED_MARKER] + texts[-max_segments:]
    return "\n\n".join(texts) if texts else "(The story has not started yet.)"


def build_text_request(session: StorySession, step: int, target_steps: int,
                       user_choice: Optional[str], max_segments: Optional[int] = None) -> TextRequest:
    """Build the chat request for ``step`` of a ``target_steps`` story.

    The template is chosen purely by position: the first step introduces the
    characters, the step before last steers toward an ending and the last step
    asks for the conclusion only (no question, no choices).
    """
    template = select_template(step, target_steps)
    fields = dict(
        style=session.style,
        character=session.character,
        setting=session.setting,
        theme=session.theme,
    )
    if template == INITIAL:
        prompt = INITIAL_TEMPLATE.format(schema=CONTINUATION_SCHEMA, **fields)
    else:
        body = {
            INTERMEDIATE: INTERMEDIATE_TEMPLATE,
            PENULTIMATE: PENULTIMATE_TEMPLATE,
            FINAL: FINAL_TEMPLATE,
        }[template]
        prompt = body.format(
            story_so_far=story_so_far(session, max_segments),
            user_choice=(user_choice or "").strip(),
            schema=CONCLUSION_SCHEMA if template == FINAL else CONTINUATION_SCHEMA,
            **fields
        )
    return TextRequest(
        template=template,
        system=SYSTEM_PROMPT,
        prompt=prompt,
        max_tokens=CONCLUSION_MAX_TOKENS if template == FINAL else CONTINUATION_MAX_TOKENS,
        temperature=TEMPERATURE,
    )
