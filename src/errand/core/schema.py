"""
Schema definitions for completion <-> agent <-> function messages.

These data models serve as the contract between the completion service, the orchestration loop,
and the dispatchable functions.  We keep them separate from runtime logic so they can be imported
anywhere without side-effects.
"""

from typing import (
    Any,
    Dict,
    List,
    Literal,
    Optional,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)

Role = Literal["user", "assistant", "function"]


class TranscriptEntry(BaseModel):
    """One tagged block of the append-only transcript."""

    role: Role
    content: str


class FunctionCallRequest(BaseModel):
    """A call that the completion service wants the agent to execute."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., alias="function", description="Registered function name")
    parameters: Dict[str, Any] = Field(
        default_factory=dict, description="Keyword arguments for the function"
    )

    @field_validator("parameters", mode="before")
    @classmethod
    def _null_parameters(cls, value: Any) -> Any:
        return {} if value is None else value


class Decision(BaseModel):
    """Parsed output of one completion round."""

    answer: Optional[str] = None
    reasoning: str = ""
    function_calls: List[FunctionCallRequest] = Field(default_factory=list)

    @field_validator("reasoning", mode="before")
    @classmethod
    def _null_reasoning(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("function_calls", mode="before")
    @classmethod
    def _null_calls(cls, value: Any) -> Any:
        # Replies often spell "no calls" as null.
        return [] if value is None else value

    @property
    def is_final(self) -> bool:
        """An empty call list always ends the loop."""
        return not self.function_calls


class FunctionCallResult(BaseModel):
    """Outcome of a single dispatched call.  Failures are data, not exceptions."""

    name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    success: bool
    data: Any = None
    error: Optional[str] = None


class Specialization(BaseModel):
    """A named persona whose instructions are added to the prompt while active."""

    name: str
    instructions: str = ""


class AgentState(BaseModel):
    """Everything one iteration of the loop reads and produces."""

    transcript: List[TranscriptEntry] = Field(default_factory=list)
    specialization: Optional[Specialization] = None
    iterations: int = 0

    def append(self, role: Role, content: str) -> "AgentState":
        """Return a new state with one more transcript entry."""
        entry = TranscriptEntry(role=role, content=content)
        return self.model_copy(update={"transcript": [*self.transcript, entry]})


class AgentResult(BaseModel):
    """Final outcome handed back to the front door."""

    answer: str
    transcript: List[TranscriptEntry]
    specialization: Optional[Specialization] = None
    iterations: int = 0


class SpecializationChange(BaseModel):
    """Returned by a function that switches persona; applied to the *next* loop state."""

    specialization: Specialization
