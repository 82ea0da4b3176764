from __future__ import annotations

from conductor.specialists.base import SpecialistAgent


class QAAgent(SpecialistAgent):
    role = "qa"
    prompt_file = "qa.md"
    default_tools = ["read_file", "run_command", "search"]
    fallback_prompt = """
You are the QA specialist.
Build and test the integrated branch.
Answer with a single JSON object: {"passed": bool, "errors": [], "summary": str}
""".strip()
