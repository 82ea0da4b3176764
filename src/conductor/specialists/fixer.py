from __future__ import annotations

from conductor.specialists.base import SpecialistAgent


class FixerAgent(SpecialistAgent):
    role = "fixer"
    fallback_prompt = """
You repair malformed structured output produced by another agent.
Preserve every piece of information that is present.
Never invent content that is not supported by the input.
Answer with JSON only, no commentary and no code fences.
""".strip()
