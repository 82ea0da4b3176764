from conductor.specialists.base import SpecialistAgent, SpecialistResponse
from conductor.specialists.developer import DeveloperAgent
from conductor.specialists.fixer import FixerAgent
from conductor.specialists.judge import JudgeAgent
from conductor.specialists.planner import PlanningAgent
from conductor.specialists.qa import QAAgent

__all__ = [
    "DeveloperAgent",
    "FixerAgent",
    "JudgeAgent",
    "PlanningAgent",
    "QAAgent",
    "SpecialistAgent",
    "SpecialistResponse",
]
