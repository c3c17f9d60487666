"""Request and response models for the resume coach gateway."""

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ChatMessage(BaseModel):
    """A single message in a chat conversation."""

    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    """Incoming chat request from the coach UI."""

    messages: List[ChatMessage] = Field(
        ..., min_length=1, description="Conversation messages, system first"
    )
    max_tokens: int = Field(default=3000, gt=0)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    stream: bool = False


class UsageInfo(BaseModel):
    """Token usage information returned by the provider."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChoiceMessage(BaseModel):
    role: str = "assistant"
    content: str = ""


class Choice(BaseModel):
    index: int = 0
    message: ChoiceMessage
    finish_reason: Optional[str] = None


class ChatResponse(BaseModel):
    """OpenAI-shaped chat completion returned for every provider."""

    id: Optional[str] = None
    object: str = "chat.completion"
    model: Optional[str] = None
    provider: Optional[str] = None
    choices: List[Choice]
    usage: Optional[UsageInfo] = None

    @property
    def content(self) -> str:
        return self.choices[0].message.content if self.choices else ""


class ErrorResponse(BaseModel):
    """Error response envelope. Messages are always generic."""

    error: str
