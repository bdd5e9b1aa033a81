from __future__ import annotations

from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator


class ProofStrategy(StrEnum):
    DIRECT_PROOF = "DIRECT_PROOF"
    CONTRADICTION_GENERAL = "CONTRADICTION_GENERAL"
    CONTRADICTION_MINIMALITY = "CONTRADICTION_MINIMALITY"
    INDUCTION_WEAK = "INDUCTION_WEAK"
    INDUCTION_STRONG = "INDUCTION_STRONG"
    GREEDY_EXCHANGE = "GREEDY_EXCHANGE"
    INVARIANT_MAINTENANCE = "INVARIANT_MAINTENANCE"
    PIGEONHOLE_PRINCIPLE = "PIGEONHOLE_PRINCIPLE"
    CONSTRUCTIVE = "CONSTRUCTIVE"
    CASE_ANALYSIS = "CASE_ANALYSIS"


CONTRADICTION_STRATEGIES = frozenset(
    {ProofStrategy.CONTRADICTION_GENERAL, ProofStrategy.CONTRADICTION_MINIMALITY}
)

UserIntent = Literal["LEARNING", "VERIFICATION"]
ProofMode = Literal["MATH_FORMAL", "EXPLANATORY"]
VariantRole = Literal["FAST_PRIMARY", "BACKGROUND_QUALITY"]
ModelTier = Literal["FAST", "QUALITY"]
AuditStatus = Literal["PASS", "FAIL", "PASSED_WITH_WARNINGS"]
CriticStatus = Literal["PASS", "FAIL"]
JobStatus = Literal["QUEUED", "PROCESSING", "COMPLETED", "FAILED"]
ScopeVerdict = Literal["ALLOW", "REVIEW", "BLOCK"]

PROOF_MODES: tuple[str, ...] = ("MATH_FORMAL", "EXPLANATORY")
USER_INTENTS: tuple[str, ...] = ("LEARNING", "VERIFICATION")


def opposite_mode(mode: ProofMode) -> ProofMode:
    return "EXPLANATORY" if mode == "MATH_FORMAL" else "MATH_FORMAL"


class PlanStep(BaseModel):
    type: Literal["step", "math"]
    content: str = Field(min_length=1)


class ContradictionSetup(BaseModel):
    assumption: str = Field(min_length=1)
    implication: str = Field(min_length=1)
    climax: str = Field(min_length=1)


class AuditReport(BaseModel):
    status: AuditStatus
    attempts: int = Field(ge=0)
    critiques: list[str] = Field(default_factory=list)
    final_verdict: str = Field(min_length=1)


class PlanMeta(BaseModel):
    strategy: ProofStrategy
    confidence_score: float = Field(ge=0.0, le=1.0)
    user_intent: UserIntent


class PlanSetup(BaseModel):
    definitions: list[str] = Field(default_factory=list)
    assumptions: list[str] = Field(default_factory=list)
    goal: str = Field(min_length=1)


class CoreLogic(BaseModel):
    invariant: str | None = None
    base_cases: list[str] = Field(default_factory=list)
    contradiction_setup: ContradictionSetup | None = None
    observations: list[str] = Field(default_factory=list)


class Plan(BaseModel):
    """Structured planner output.

    ``audit_report`` is a planning-time stub (FAIL, zero attempts); the real
    audit is produced by the pipeline once drafts have been critiqued.
    """

    meta: PlanMeta
    setup: PlanSetup
    core_logic: CoreLogic
    steps: list[PlanStep] = Field(min_length=1)
    audit_report: AuditReport = Field(
        default_factory=lambda: AuditReport(
            status="FAIL", attempts=0, critiques=[], final_verdict="Pending audit."
        )
    )

    @model_validator(mode="after")
    def _drop_unused_contradiction_setup(self) -> Plan:
        if self.meta.strategy not in CONTRADICTION_STRATEGIES:
            self.core_logic.contradiction_setup = None
        return self

    @property
    def strategy(self) -> ProofStrategy:
        return self.meta.strategy


class CriticResult(BaseModel):
    status: CriticStatus
    gaps: list[str] = Field(default_factory=list)
    final_verdict: str = Field(min_length=1)


class MentalModel(BaseModel):
    title: str
    trick: str
    logic: str
    invariant: str


class FinalProofPayload(BaseModel):
    run_id: str
    strategy: ProofStrategy
    attempts: int = Field(ge=1)
    mode: ProofMode
    variant_role: VariantRole
    is_background: bool
    plan: Plan
    proof_markdown: str
    audit: AuditReport
    mental_model: MentalModel


class GenerateProofRequest(BaseModel):
    problem: str = Field(min_length=1)
    attempt: str | None = None
    user_intent: UserIntent = "LEARNING"
    mode_preference: ProofMode = "MATH_FORMAL"

    @field_validator("problem", mode="before")
    @classmethod
    def _strip_problem(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("attempt", mode="before")
    @classmethod
    def _strip_attempt(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip() or None
        return value


class BackgroundJobPayload(BaseModel):
    run_id: str
    problem: str
    attempt: str | None = None
    user_intent: UserIntent
    plan: Plan
    user_id: str | None = None
    mode: ProofMode = "EXPLANATORY"


class ScopeResult(BaseModel):
    verdict: ScopeVerdict
    confidence: float
    reason: str = ""
    suggestion: str = ""


class FollowupRequest(BaseModel):
    question: str = Field(min_length=1)
    run_id: str | None = None
    variant_role: VariantRole | None = None
    mode_hint: ProofMode | None = None


class FollowupContext(BaseModel):
    problem: str
    strategy: str
    variant_role: VariantRole
    proof_markdown: str


class FollowupAnswer(BaseModel):
    answer_markdown: str
    model: str
    used_context: bool


def describe_validation_error(exc: ValidationError, *, limit: int = 4) -> str:
    parts: list[str] = []
    for issue in exc.errors()[:limit]:
        location = ".".join(str(item) for item in issue.get("loc", ())) or "<root>"
        parts.append(f"{location}: {issue.get('msg', 'invalid')}")
    return "; ".join(parts)
