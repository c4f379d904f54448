"""Personas and system-prompt assembly."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from .memory import MemoryStore

MEMORY_PROMPT_APPENDIX = (
    "\nYou have a long-term memory. Key facts about the user will be provided in a "
    "'Long-Term Memory' block. To remember a new fact or update an existing one, output "
    'a command on its own line like this: [SAVE_MEMORY key="the_key" '
    'value="the_value_to_remember"]. Do not wrap this command in code blocks. The command '
    "will be hidden from the user."
)


@dataclass(frozen=True)
class Persona:
    """
    A named system prompt.

    Fields:
        id: Stable identifier stored on conversations.
        prompt: Base system prompt (the memory appendix is added on top).
        model_id: Model this persona works best with, if any.
        memory: If False, neither the memory appendix nor the memory block is sent.
    """
    id: str
    name: str
    prompt: str
    model_id: Optional[str] = None
    memory: bool = True

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"id": self.id, "name": self.name, "prompt": self.prompt}
        if self.model_id:
            d["model_id"] = self.model_id
        if not self.memory:
            d["memory"] = False
        return d


BUILTIN_PERSONAS: List[Persona] = [
    Persona(
        id="default",
        name="Helpful Assistant",
        prompt=(
            "You are a helpful, respectful, and honest assistant. Always answer as helpfully "
            "as possible, providing accurate and well-reasoned responses. Be friendly and approachable."
        ),
    ),
    Persona(
        id="code_expert",
        name="Code Expert",
        prompt=(
            "You are an expert programmer specializing in complex algorithms and data structures. "
            "Your code is clean, efficient, and follows best practices. Provide detailed "
            "explanations and use markdown for all code blocks with the correct language identifier."
        ),
    ),
    Persona(
        id="ultra_thinker",
        name="Ultra Thinker",
        prompt=(
            "You are a deep thinker and problem solver. Break down complex problems into their "
            "constituent parts, analyze them from first principles, and synthesize novel solutions."
        ),
    ),
]


class PersonaRegistry:
    """Built-in personas plus any defined in config (config wins on id clash)."""

    def __init__(self, personas: Iterable[Persona] = BUILTIN_PERSONAS, default_id: str = "default") -> None:
        self._personas: Dict[str, Persona] = {p.id: p for p in personas}
        self.default_id = default_id

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "PersonaRegistry":
        registry = cls(default_id=str((cfg.get("defaults") or {}).get("persona_id") or "default"))
        for item in cfg.get("personas") or []:
            if not isinstance(item, dict) or not item.get("id") or not item.get("prompt"):
                continue
            registry.add(
                Persona(
                    id=str(item["id"]),
                    name=str(item.get("name") or item["id"]),
                    prompt=str(item["prompt"]).strip(),
                    model_id=item.get("model_id"),
                    memory=bool(item.get("memory", True)),
                )
            )
        return registry

    def add(self, persona: Persona) -> None:
        self._personas[persona.id] = persona

    def get(self, persona_id: Optional[str]) -> Optional[Persona]:
        if persona_id and persona_id in self._personas:
            return self._personas[persona_id]
        return self._personas.get(self.default_id)

    def all(self) -> List[Persona]:
        return list(self._personas.values())

    def system_prompt(self, persona_id: Optional[str], memory: Optional[MemoryStore] = None) -> str:
        """Persona prompt with the memory appendix and, if any, the memory block on top."""
        persona = self.get(persona_id)
        if persona is None:
            return ""
        if not persona.memory:
            return persona.prompt
        prompt = persona.prompt + MEMORY_PROMPT_APPENDIX
        block = memory.render_block() if memory is not None else ""
        return f"{block}\n\n{prompt}" if block else prompt
