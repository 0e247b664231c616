from pydantic import BaseModel, Field


class SessionCreateIn(BaseModel):
    agent_id: str | None = Field(default=None, min_length=1, max_length=64)
    autonomous_mode: bool = False
    autonomous_limit_per_minute: int = Field(default=3, ge=0, le=60)
    energy: float | None = Field(default=None, ge=0.0, le=100.0)


class TickIn(BaseModel):
    input: str | None = Field(default=None, max_length=8000)


class AgentSwitchIn(BaseModel):
    agent_id: str | None = Field(default=None, min_length=1, max_length=64)


class AutonomyIn(BaseModel):
    enabled: bool
    limit_per_minute: int | None = Field(default=None, ge=0, le=60)
