from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


ProviderName = Literal["local", "remote"]
ProfileId = Literal["performant", "balanced", "fast"]
ChatTrigger = Literal["submit-message", "regenerate-message"]
MessageRole = Literal["system", "user", "assistant"]


class InferenceServerStatus(BaseModel):
    installed: bool
    running: bool
    version: Optional[str] = None


class LocalModel(BaseModel):
    name: str
    size_bytes: int = Field(default=0, alias="size")
    modified_at: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())


class PullProgressEvent(BaseModel):
    status: str = ""
    digest: Optional[str] = None
    total_bytes: Optional[int] = Field(default=None, alias="total")
    completed_bytes: Optional[int] = Field(default=None, alias="completed")
    error: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ModelProfile(BaseModel):
    id: ProfileId
    model_identifier: str
    label: str
    description: str
    approximate_size_label: str
    minimum_ram_hint: str

    model_config = ConfigDict(frozen=True, protected_namespaces=())


class ChatSettings(BaseModel):
    provider: ProviderName = "local"
    default_local_model: str = "qwen2.5-coder:7b-instruct-q4_K_M"
    use_local_ai: bool = False
    selected_profile: ProfileId = "balanced"

    model_config = ConfigDict(frozen=True, protected_namespaces=())


class Chat(BaseModel):
    id: str
    database_id: str
    title: Optional[str] = None
    created_at: str
    updated_at: str


class ChatMessage(BaseModel):
    id: str
    chat_id: Optional[str] = None
    role: MessageRole
    parts: List[Dict[str, Any]] = Field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def text(self) -> str:
        for part in self.parts:
            if part.get("type") == "text":
                return str(part.get("text") or "")
        return ""


class ToolCall(BaseModel):
    tool_name: str
    tool_call_id: str
    input: Dict[str, Any] = Field(default_factory=dict)
    output: Optional[Any] = None


class SubmitMessageRequest(BaseModel):
    database_id: str = Field(alias="databaseId")
    message: ChatMessage

    model_config = ConfigDict(populate_by_name=True)


class RegenerateRequest(BaseModel):
    database_id: str = Field(alias="databaseId")
    message_id: Optional[str] = Field(default=None, alias="messageId")

    model_config = ConfigDict(populate_by_name=True)


class ModelNameRequest(BaseModel):
    model_name: str = Field(alias="modelName")

    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())
