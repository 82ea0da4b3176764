from __future__ import annotations

from conductor.specialists.base import READ_ONLY_TOOLS, SpecialistAgent


class JudgeAgent(SpecialistAgent):
    role = "judge"
    prompt_file = "judge.md"
    default_tools = READ_ONLY_TOOLS
    fallback_prompt = """
You are the judge specialist.
Evaluate the submitted work strictly and verify claims by reading files.
Answer with a single JSON object:
{"approved": bool, "score": 0-100, "feedback": str, "issues": [], "suggestions": [], "filesVerified": []}
""".strip()
