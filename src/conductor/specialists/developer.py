from __future__ import annotations

from conductor.specialists.base import SpecialistAgent


class DeveloperAgent(SpecialistAgent):
    role = "developer"
    prompt_file = "developer.md"
    default_tools = ["edit_file", "read_file", "run_command", "search", "write_file"]
    fallback_prompt = """
You are the developer specialist.
Implement exactly the epic you are given inside the current repository.
Only touch the files the epic declares unless a change is unavoidable.
Commit your work on the current branch when done.
""".strip()
