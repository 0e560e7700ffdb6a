from pydantic import BaseModel, ConfigDict, Field


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    message: str = Field(min_length=1)
    model: str = Field(min_length=1)
    session_id: str | None = Field(default=None, alias="sessionId")


class CreateSessionRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model: str | None = None
    title: str | None = None


class UpdateSessionRequest(BaseModel):
    title: str | None = None
