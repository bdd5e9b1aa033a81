from __future__ import annotations

from proofsmith.models import MentalModel, ProofStrategy

DEFAULT_MENTAL_MODEL = MentalModel(
    title="Direct Proof",
    trick="Assume the premises and push forward with valid implications.",
    logic="Every step should reduce distance to the target claim without contradiction.",
    invariant="Each established statement remains true and reusable.",
)

MENTAL_MODELS: dict[ProofStrategy, MentalModel] = {
    ProofStrategy.DIRECT_PROOF: DEFAULT_MENTAL_MODEL,
    ProofStrategy.CONTRADICTION_GENERAL: MentalModel(
        title="Contradiction (General)",
        trick="Assume the negation and force an impossible conclusion.",
        logic="If assumptions imply both a claim and its negation, the negation is false.",
        invariant="Logical rules remain valid under temporary negation assumptions.",
    ),
    ProofStrategy.CONTRADICTION_MINIMALITY: MentalModel(
        title="Minimal Counterexample",
        trick="Assume failure and choose the first or smallest failure.",
        logic="If that failure implies an even earlier failure, contradiction follows.",
        invariant="All earlier cases are correct by minimality.",
    ),
    ProofStrategy.INDUCTION_WEAK: MentalModel(
        title="Weak Induction",
        trick="Prove the base case, then show n implies n+1.",
        logic="A chain from the base case covers all natural numbers.",
        invariant="The induction hypothesis holds for the current n.",
    ),
    ProofStrategy.INDUCTION_STRONG: MentalModel(
        title="Strong Induction",
        trick="Assume all earlier cases and prove n.",
        logic="The stronger hypothesis unlocks recursive dependencies.",
        invariant="All k < n satisfy the property during the step.",
    ),
    ProofStrategy.GREEDY_EXCHANGE: MentalModel(
        title="Greedy Exchange",
        trick="Swap an optimal solution toward the greedy choice without worsening it.",
        logic="If exchange preserves optimality, greedy can be part of an optimal solution.",
        invariant="Each exchange keeps solution feasibility and objective value.",
    ),
    ProofStrategy.INVARIANT_MAINTENANCE: MentalModel(
        title="Invariant Maintenance",
        trick="State a condition that is true before and after each iteration.",
        logic="Initialization, maintenance and termination together imply correctness.",
        invariant="The declared invariant statement itself.",
    ),
    ProofStrategy.PIGEONHOLE_PRINCIPLE: MentalModel(
        title="Pigeonhole",
        trick="Show there are more objects than containers under the given constraints.",
        logic="At least one container must hold multiple objects.",
        invariant="Total count and container count bounds are fixed.",
    ),
    ProofStrategy.CONSTRUCTIVE: MentalModel(
        title="Constructive Proof",
        trick="Build an explicit witness that satisfies the claim.",
        logic="Verifying the constructed object proves existence.",
        invariant="Construction constraints remain satisfied at every step.",
    ),
    ProofStrategy.CASE_ANALYSIS: MentalModel(
        title="Case Analysis",
        trick="Partition the domain into exhaustive, disjoint cases.",
        logic="If each case implies the claim, the whole domain does too.",
        invariant="The case partition remains complete and non-overlapping.",
    ),
}


def get_mental_model(strategy: ProofStrategy | str) -> MentalModel:
    try:
        key = ProofStrategy(strategy)
    except ValueError:
        return DEFAULT_MENTAL_MODEL
    return MENTAL_MODELS.get(key, DEFAULT_MENTAL_MODEL)
