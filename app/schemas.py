import time
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


ResponseStatus = Literal["loading", "success", "error"]
ExportFormat = Literal["text", "doc", "pdf", "excel", "pptx"]
RegenerateKind = Literal["retry", "expand", "concise"]
DatabaseSourceType = Literal["csv_upload", "manual_entry", "azure_ai_search"]

STEP_TYPES = (
    "prompt",
    "file_upload",
    "mcp_tool",
    "export",
    "persona",
    "database_search",
    "vector_search",
    "web_scraper",
)


def now_ms() -> int:
    return int(time.time() * 1000)


class AttachmentStatistics(BaseModel):
    words: Optional[int] = None
    pages: Optional[int] = None


class AttachedFile(BaseModel):
    id: str
    name: str
    type: str
    base64: str = ""
    content: Optional[str] = None
    statistics: Optional[AttachmentStatistics] = None
    exclude_from_context: bool = False


class ToolDescriptor(BaseModel):
    id: str
    name: str
    server: str
    description: str = ""
    input_schema: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(frozen=True)

    def schema_keys(self) -> List[str]:
        props = (self.input_schema or {}).get("properties")
        if isinstance(props, dict):
            return list(props.keys())
        return []


class ToolCallInvocation(BaseModel):
    tool: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ModelResponseVersion(BaseModel):
    text: str
    timestamp: int = Field(default_factory=now_ms)
    label: str = "Original"


class ModelResponse(BaseModel):
    model_id: str
    text: str = ""
    status: ResponseStatus = "loading"
    error: Optional[str] = None
    versions: List[ModelResponseVersion] = Field(default_factory=list)
    current_version_index: Optional[int] = None

    model_config = {"protected_namespaces": ()}

    @property
    def is_terminal(self) -> bool:
        return self.status != "loading"


class SearchMetadata(BaseModel):
    database_id: str
    search_query: str
    offset: int
    total_results: int


class WorkflowExport(BaseModel):
    format: ExportFormat = "text"


class Message(BaseModel):
    id: str
    role: Literal["user", "assistant"]
    content: str = ""
    attachments: List[AttachedFile] = Field(default_factory=list)
    responses: Dict[str, ModelResponse] = Field(default_factory=dict)
    is_system: bool = False
    workflow_step_index: Optional[int] = None
    search_metadata: Optional[SearchMetadata] = None
    workflow_export: Optional[WorkflowExport] = None
    user_name: Optional[str] = None


class GenerationRequest(BaseModel):
    model_id: str
    prompt_text: str
    attachments: List[AttachedFile] = Field(default_factory=list)
    active_tools: List[ToolDescriptor] = Field(default_factory=list)
    system_instruction: Optional[str] = None
    history: List[Message] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True, protected_namespaces=())


class WorkflowStep(BaseModel):
    id: str
    # Unknown types are kept so a stale template ends the run instead of failing to load.
    type: str
    prompt: Optional[str] = None
    model: Optional[str] = None
    tool_ids: List[str] = Field(default_factory=list)
    export_format: Optional[ExportFormat] = None
    file_requirement: Optional[str] = None
    persona_id: Optional[str] = None
    multi_step_instruction: Optional[str] = None
    database_id: Optional[str] = None
    search_query: Optional[str] = None
    url: Optional[str] = None
    include_meta: bool = False


class Workflow(BaseModel):
    id: str
    name: str
    description: str = ""
    steps: List[WorkflowStep] = Field(default_factory=list)
    is_system: bool = False


class Persona(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    system_instruction: str
    multi_step_instruction: Optional[str] = None


class DatabaseSource(BaseModel):
    id: str
    name: str
    type: DatabaseSourceType = "manual_entry"
    content: str = ""
    row_count: int = 0
    file_name: Optional[str] = None
    created_at: int = Field(default_factory=now_ms)
    azure_endpoint: Optional[str] = None
    azure_index_name: Optional[str] = None
    azure_content_field: Optional[str] = None
    azure_vector_field: Optional[str] = None
    azure_title_field: Optional[str] = None
    azure_embedding_model: Optional[str] = None
    azure_search_key: Optional[str] = None


class ChatSession(BaseModel):
    id: str
    title: str = "New Chat"
    timestamp: int = Field(default_factory=now_ms)
    messages: List[Message] = Field(default_factory=list)
    folder_id: Optional[str] = None
    persona_id: Optional[str] = None
    workflow_id: Optional[str] = None
    current_workflow_step: Optional[int] = None
    is_shared: bool = False
    group_id: Optional[str] = None

    def partition_key(self, user: str) -> str:
        if self.is_shared and self.group_id:
            return self.group_id
        return user


class PendingStep(BaseModel):
    """What a paused workflow is waiting for, derived from persisted state."""

    index: int
    step_type: str
    awaiting: Literal["confirmation", "files", "query", "url", "next"]
    guided_instruction: Optional[str] = None
    input_text: Optional[str] = None
    has_next: bool = False


class SendMessageRequest(BaseModel):
    text: str = ""
    models: List[str] = Field(default_factory=list)
    attachments: List[AttachedFile] = Field(default_factory=list)
    tool_ids: Optional[List[str]] = None
    persona_id: Optional[str] = None


class RegenerateRequest(BaseModel):
    model_id: str
    kind: RegenerateKind = "retry"

    model_config = {"protected_namespaces": ()}


class VersionRequest(BaseModel):
    model_id: str
    direction: Literal["prev", "next"]

    model_config = {"protected_namespaces": ()}


class BranchRequest(BaseModel):
    message_id: str
    model_id: str
    title: Optional[str] = None
    continue_workflow: bool = False

    model_config = {"protected_namespaces": ()}


class CreateSessionRequest(BaseModel):
    title: str = "New Chat"
    persona_id: Optional[str] = None
    is_shared: bool = False
    group_id: Optional[str] = None


class PlayWorkflowRequest(BaseModel):
    persona_id: Optional[str] = None
