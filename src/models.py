"""Pure dataclasses for the spec council pipeline. No logic, no deps.

Records produced during a run are frozen. Collections on them are tuples, so
any change builds a new value with dataclasses.replace.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Stage(str, Enum):
    QUESTIONS = "questions"
    RESEARCH = "research"
    CHALLENGE = "challenge"
    SYNTHESIS = "synthesis"
    REVIEW = "review"
    VOTING = "voting"
    SPEC = "spec"


# Per-round order; SPEC only runs once consensus is reached.
STAGE_SEQUENCE: tuple[Stage, ...] = (
    Stage.QUESTIONS,
    Stage.RESEARCH,
    Stage.CHALLENGE,
    Stage.SYNTHESIS,
    Stage.REVIEW,
    Stage.VOTING,
)


class RoundStatus(str, Enum):
    IN_PROGRESS = "in-progress"
    COMPLETE = "complete"
    PAUSED = "paused"


class HistoryType(str, Enum):
    ROUND_START = "round-start"
    OUTPUT = "output"
    VOTE = "vote"
    SPEC = "spec"
    USER_COMMENT = "user-comment"
    ERROR = "error"


class DialogueKind(str, Enum):
    QUESTION = "question"
    ANSWER = "answer"
    VOTE = "vote"
    DISCUSSION = "discussion"
    USER = "user"


@dataclass
class PersonaConfig:
    id: str
    prompt_template: str
    temperature: float = 0.7
    enabled: bool = True
    name: str = ""


@dataclass(frozen=True)
class GenerationRequest:
    role: str                       # persona id or stage name, used for routing
    prompt: str
    system: str | None = None
    temperature: float = 0.7
    max_tokens: int | None = None   # None -> model default from settings
    json_mode: bool = False
    model_override: str | None = None


@dataclass(frozen=True)
class GenerationResponse:
    text: str
    model_used: str
    provider: str
    latency_ms: float
    cost: float = 0.0
    token_count: int | None = None


@dataclass(frozen=True)
class ToolParameter:
    name: str
    type: str                       # string | number | boolean | object | array
    description: str
    required: bool = False
    default: Any = None


@dataclass(frozen=True)
class ToolMetadata:
    duration: float = 0.0           # seconds
    cost: float = 0.0
    source: str = ""


@dataclass(frozen=True)
class ToolResult:
    success: bool
    data: Any = None
    error: str | None = None
    metadata: ToolMetadata = field(default_factory=ToolMetadata)


@dataclass(frozen=True)
class ResearchQuestion:
    id: str
    question: str
    domain: str
    priority: int = 5
    required_expertise: tuple[str, ...] = ()


@dataclass(frozen=True)
class ResearchEvidence:
    question_id: str
    query: str
    result: ToolResult


@dataclass(frozen=True)
class ToolUsage:
    tool: str
    success: bool
    duration: float


@dataclass(frozen=True)
class ResearchResult:
    persona_id: str
    findings: str
    questions: tuple[ResearchQuestion, ...] = ()
    tools_used: tuple[ToolUsage, ...] = ()
    model: str = ""
    cost: float = 0.0
    duration: float = 0.0


@dataclass(frozen=True)
class Challenge:
    id: str
    type: str                       # feasibility | risk | alternative | assumption | vision | cost
    question: str
    target_persona: str
    challenger: str
    priority: int = 5


@dataclass(frozen=True)
class ChallengeResponse:
    challenge_id: str
    challenger: str
    argument: str
    evidence_against: tuple[str, ...] = ()
    alternative_approach: str | None = None
    risk_score: float = 5.0
    model: str = ""
    cost: float = 0.0


@dataclass(frozen=True)
class DebateResolution:
    persona_id: str
    original_position: str
    challenges: tuple[str, ...]     # challenge ids
    resolution: str
    confidence_change: int = 0
    adopted_alternatives: tuple[str, ...] = ()


@dataclass(frozen=True)
class Synthesis:
    persona_id: str
    text: str
    model: str
    cost: float
    timestamp: float
    battle_tested: bool = False
    confidence_boost: int = 0


@dataclass(frozen=True)
class ReviewIssue:
    severity: str                   # critical | major | minor
    category: str                   # accuracy | completeness | citation | feasibility | consistency
    description: str
    remediation: str = ""
    affected_persona: str | None = None


@dataclass(frozen=True)
class ReviewResult:
    overall_score: int
    passed: bool
    issues: tuple[ReviewIssue, ...] = ()
    recommendations: tuple[str, ...] = ()
    model: str = ""
    timestamp: float = 0.0


@dataclass(frozen=True)
class Vote:
    persona_id: str
    approved: bool
    reasoning: str
    confidence: int | None = None
    timestamp: float = 0.0
    key_requirements: tuple[str, ...] = ()


@dataclass(frozen=True)
class TechStackItem:
    category: str
    name: str
    rationale: str = ""
    version: str | None = None
    alternatives: tuple[str, ...] = ()


@dataclass(frozen=True)
class Round:
    number: int
    stage: Stage = Stage.QUESTIONS
    questions: tuple[ResearchQuestion, ...] = ()
    evidence: tuple[ResearchEvidence, ...] = ()
    research_results: tuple[ResearchResult, ...] = ()
    challenges: tuple[Challenge, ...] = ()
    challenge_responses: tuple[ChallengeResponse, ...] = ()
    debate_resolutions: tuple[DebateResolution, ...] = ()
    syntheses: tuple[Synthesis, ...] = ()
    review_result: ReviewResult | None = None
    votes: tuple[Vote, ...] = ()
    status: RoundStatus = RoundStatus.IN_PROGRESS
    user_comment: str | None = None


@dataclass(frozen=True)
class ResumeContext:
    idea: str
    next_round: int
    user_comment: str | None = None


@dataclass(frozen=True)
class HistoryEntry:
    timestamp: float
    type: HistoryType
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DialogueEntry:
    speaker: str
    message: str
    timestamp: float
    kind: DialogueKind = DialogueKind.DISCUSSION


@dataclass(frozen=True)
class SessionState:
    rounds: tuple[Round, ...] = ()
    current_round_index: int = -1
    is_paused: bool = False
    pending_resume: ResumeContext | None = None
    history: tuple[HistoryEntry, ...] = ()
    generated_document: str | None = None
    tech_stack: tuple[TechStackItem, ...] = ()
