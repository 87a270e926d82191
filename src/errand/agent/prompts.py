"""Prompt assembly: persona, capability documentation and the transcript narrative."""

from typing import (
    Mapping,
    Sequence,
)

from errand.core.schema import (
    Specialization,
    TranscriptEntry,
)
from errand.tools import (
    FunctionSchema,
    get_function_schemas,
)

INSTRUCTIONS = """\
You are an assistant embedded in an agent that works on the user's to-do list, shopping list and
stored knowledge about the user. Reply with a single JSON object and nothing else:
{"answer": "<final reply, empty while calling functions>",
 "reasoning": "<why these functions are needed>",
 "function_calls": [{"function": "<name>", "parameters": {...}}]}
Calls in one list run in the order given, so a later call sees the effect of an earlier one.
Results of your calls are added to the conversation below and you will be asked again.
When you can answer, return the answer with an empty function_calls list.
Do not ask the user for permission to use functions.
"""


def render_capabilities(schemas: Mapping[str, FunctionSchema]) -> str:
    """Describe every dispatchable function and its parameters."""
    lines = ["Available functions:"]
    for name, schema in schemas.items():
        params = ", ".join(
            f"{p}: {info['type']}{'' if info['required'] else ' (optional)'}"
            for p, info in schema["parameters"].items()
        )
        description = " ".join(schema["description"].split())
        lines.append(f"- {name}({params}): {description}")
    return "\n".join(lines)


def render_transcript(transcript: Sequence[TranscriptEntry]) -> str:
    """Render the transcript as an ordered ``role: content`` narrative."""
    return "Conversation History:\n" + "\n".join(
        f"{entry.role}: {entry.content}" for entry in transcript
    )


def build_prompt(
    transcript: Sequence[TranscriptEntry], specialization: Specialization | None = None
) -> str:
    """Persona instructions + capability docs + transcript, in that order."""
    sections = []
    if specialization is not None and specialization.instructions:
        sections.append(
            f"Active specialization: {specialization.name}\n{specialization.instructions}"
        )
    sections.append(INSTRUCTIONS)
    sections.append(render_capabilities(get_function_schemas()))
    sections.append(render_transcript(transcript))
    return "\n\n".join(sections)
