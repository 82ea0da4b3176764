from __future__ import annotations

from conductor.specialists.base import READ_ONLY_TOOLS, SpecialistAgent


class PlanningAgent(SpecialistAgent):
    role = "planning-agent"
    prompt_file = "planning.md"
    default_tools = READ_ONLY_TOOLS
    fallback_prompt = """
You are the planning specialist.
Split the task into epics, each bound to exactly one repository.
Declare every file an epic will modify or create.
Answer with a single JSON object containing "analysis" and "epics".
""".strip()
