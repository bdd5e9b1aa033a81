from proofsmith.stages.base import StageRunner
from proofsmith.stages.critic import CriticRun, CriticStage
from proofsmith.stages.followup import FollowupResult, FollowupStage
from proofsmith.stages.planner import PlannerResult, PlannerStage
from proofsmith.stages.scope import ScopeClassifierStage
from proofsmith.stages.writer import WriterResult, WriterStage

__all__ = [
    "CriticRun",
    "CriticStage",
    "FollowupResult",
    "FollowupStage",
    "PlannerResult",
    "PlannerStage",
    "ScopeClassifierStage",
    "StageRunner",
    "WriterResult",
    "WriterStage",
]
