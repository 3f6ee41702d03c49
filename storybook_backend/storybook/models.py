from datetime import datetime, timezone
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class CamelModel(BaseModel):
    # camelCase on the wire and in the store, snake_case in Python
    model_config = ConfigDict(populate_by_name=True)


class StartStoryRequest(CamelModel):
    style: Optional[str] = None
    character: Optional[str] = None
    setting: Optional[str] = None
    theme: Optional[str] = None
    visual_style_prompt: Optional[str] = Field(default=None, alias="visualStylePrompt")

    def missing_fields(self) -> List[str]:
        missing = []
        for name, field in type(self).model_fields.items():
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                missing.append(field.alias or name)
        return missing


class NextStepRequest(CamelModel):
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    user_choice: Optional[str] = Field(default=None, alias="userChoice")

    def missing_fields(self) -> List[str]:
        missing = []
        if not self.session_id or not self.session_id.strip():
            missing.append("sessionId")
        if not self.user_choice or not self.user_choice.strip():
            missing.append("userChoice")
        return missing


class StorySegment(CamelModel):
    text: str
    image_url: str = Field(alias="imageUrl")


class StorySession(CamelModel):
    id: str
    style: str
    character: str
    setting: str
    theme: str
    visual_style_prompt: str = Field(alias="visualStylePrompt")
    step_count: int = Field(default=1, alias="stepCount", ge=1)
    segments: List[StorySegment] = Field(default_factory=list)
    version: int = 0
    created_at: str = Field(default_factory=_utcnow, alias="createdAt")
    last_updated: str = Field(default_factory=_utcnow, alias="lastUpdated")

    def is_terminal(self, target_steps: int) -> bool:
        return self.step_count >= target_steps

    def touch(self) -> None:
        self.last_updated = _utcnow()

    def to_record(self) -> dict:
        return self.model_dump(by_alias=True)


class TextRequest(BaseModel):
    """A provider-neutral chat completion request for one story step."""
    template: str
    system: str
    prompt: str
    max_tokens: int
    temperature: float = 0.7
    json_output: bool = True


class StoryPayload(BaseModel):
    """Normalized text generator output. `question`/`choices` are empty on the final step."""
    story: str
    question: Optional[str] = None
    choices: List[str] = Field(default_factory=list)
    is_final: bool = False
    fallback: bool = False


class TurnResult(BaseModel):
    session_id: str
    step_count: int
    story: str
    image_url: str
    question: Optional[str] = None
    choices: List[str] = Field(default_factory=list)
    is_final: bool = False
