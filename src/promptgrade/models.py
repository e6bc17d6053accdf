# src/promptgrade/models.py
from __future__ import annotations

import hashlib
import json
from typing import (
    Annotated,
    Any,
    Callable,
    Dict,
    List,
    Literal,
    Optional,
    Tuple,
    Union,
)

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel

BASE_ASSERTION_TYPES = (
    "equals",
    "contains",
    "icontains",
    "contains-any",
    "contains-all",
    "icontains-any",
    "icontains-all",
    "starts-with",
    "regex",
    "is-json",
    "contains-json",
    "is-valid-openai-function-call",
    "javascript",
    "python",
    "webhook",
    "rouge-n",
    "levenshtein",
    "similar",
    "classifier",
    "llm-rubric",
)


class _Model(BaseModel):
    # Accept both `named_scores` and `namedScores` so YAML/JSON configs load unchanged.
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        arbitrary_types_allowed=True,
    )


def sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class TokenUsage(_Model):
    total: int = 0
    prompt: int = 0
    completion: int = 0
    cached: int = 0


class ProviderResponse(_Model):
    output: Any = None
    error: Optional[str] = None
    token_usage: Optional[TokenUsage] = None
    cached: bool = False


class ProviderEmbeddingResponse(_Model):
    embedding: Optional[List[float]] = None
    error: Optional[str] = None
    token_usage: Optional[TokenUsage] = None


class ProviderClassificationResponse(_Model):
    classification: Optional[Dict[str, float]] = None
    error: Optional[str] = None


class PromptMetrics(_Model):
    score: float = 0.0
    test_pass_count: int = 0
    test_fail_count: int = 0
    assert_pass_count: int = 0
    assert_fail_count: int = 0
    total_latency_ms: int = 0
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    named_scores: Dict[str, float] = Field(default_factory=dict)


class Prompt(_Model):
    raw: str
    display: str = ""
    id: Optional[str] = None
    # Called with `{"vars": ...}`; must return a string or a JSON-serializable object.
    function: Optional[Callable[..., Any]] = None
    metrics: Optional[PromptMetrics] = None

    @field_validator("raw", mode="before")
    @classmethod
    def _serialize_structured_raw(cls, value: Any) -> Any:
        if isinstance(value, (dict, list)):
            return json.dumps(value, separators=(",", ":"))
        return value

    def model_post_init(self, __context: Any) -> None:
        if not self.display:
            self.display = self.raw

    @property
    def identity(self) -> str:
        return self.id or sha256(self.raw)


def _negatable(*kinds: str) -> Tuple[str, ...]:
    return kinds + tuple(f"not-{kind}" for kind in kinds)


TEXT_KINDS = _negatable(
    "equals",
    "contains",
    "icontains",
    "contains-any",
    "contains-all",
    "icontains-any",
    "icontains-all",
    "starts-with",
    "regex",
)
JSON_KINDS = _negatable("is-json", "contains-json")
FUNCTION_CALL_KINDS = _negatable("is-valid-openai-function-call")
CODE_KINDS = _negatable("javascript", "python")
WEBHOOK_KINDS = _negatable("webhook")
TEXT_METRIC_KINDS = _negatable("rouge-n", "levenshtein")
EMBEDDING_KINDS = _negatable("similar", "classifier")
RUBRIC_KINDS = _negatable("llm-rubric")


class AssertionBase(_Model):
    """Fields shared by every assertion kind."""

    type: str
    weight: float = 1.0
    metric: Optional[str] = None

    @property
    def inverse(self) -> bool:
        return self.type.startswith("not-")

    @property
    def base_type(self) -> str:
        return self.type[len("not-") :] if self.inverse else self.type


class TextAssertion(AssertionBase):
    type: Literal[TEXT_KINDS]
    # A string or list of strings; equals also accepts any JSON value.
    value: Any


class JsonAssertion(AssertionBase):
    type: Literal[JSON_KINDS]
    # Optional JSON Schema: inline mapping or `file://` path.
    value: Optional[Union[Dict[str, Any], str]] = None


class FunctionCallAssertion(AssertionBase):
    type: Literal[FUNCTION_CALL_KINDS]


class CodeAssertion(AssertionBase):
    type: Literal[CODE_KINDS]
    # Inline code, a `file://` path or a Python callable `(output, context)`.
    value: Any
    threshold: Optional[float] = None


class WebhookAssertion(AssertionBase):
    type: Literal[WEBHOOK_KINDS]
    value: str


class TextMetricAssertion(AssertionBase):
    type: Literal[TEXT_METRIC_KINDS]
    value: str
    threshold: Optional[float] = None


class EmbeddingAssertion(AssertionBase):
    type: Literal[EMBEDDING_KINDS]
    value: str
    threshold: Optional[float] = None
    # An ApiProvider instance, a provider id string or an `{id, config}` mapping.
    provider: Any = None


class RubricAssertion(AssertionBase):
    type: Literal[RUBRIC_KINDS]
    value: str
    provider: Any = None


Assertion = Annotated[
    Union[
        TextAssertion,
        JsonAssertion,
        FunctionCallAssertion,
        CodeAssertion,
        WebhookAssertion,
        TextMetricAssertion,
        EmbeddingAssertion,
        RubricAssertion,
    ],
    Field(discriminator="type"),
]
_ASSERTION_ADAPTER: TypeAdapter[Assertion] = TypeAdapter(Assertion)


def check_assertion_type(kind: Any) -> None:
    base = kind
    if isinstance(kind, str) and kind.startswith("not-"):
        base = kind[len("not-") :]
    if base not in BASE_ASSERTION_TYPES:
        raise ValueError(f"Unknown assertion type: {kind}")


def make_assertion(**fields: Any) -> AssertionBase:
    """Build the assertion model matching `fields["type"]`."""
    check_assertion_type(fields.get("type"))
    return _ASSERTION_ADAPTER.validate_python(fields)


class TestCaseOptions(_Model):
    prefix: Optional[str] = None
    suffix: Optional[str] = None
    provider: Any = None
    postprocess: Optional[str] = None

    def merged_with(self, override: Optional[TestCaseOptions]) -> TestCaseOptions:
        """Return a copy where every non-empty field of `override` wins."""
        if override is None:
            return self.model_copy()
        updates = {
            name: getattr(override, name)
            for name in TestCaseOptions.model_fields
            if getattr(override, name) is not None
        }
        return self.model_copy(update=updates)


class TestCase(_Model):
    description: Optional[str] = None
    vars: Dict[str, Any] = Field(default_factory=dict)
    assertions: List[Assertion] = Field(default_factory=list, alias="assert")
    threshold: Optional[float] = None
    options: TestCaseOptions = Field(default_factory=TestCaseOptions)

    @field_validator("assertions", mode="before")
    @classmethod
    def _parse_compact_assertions(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        from .assertions import assertion_from_string

        for item in value:
            if isinstance(item, dict):
                check_assertion_type(item.get("type"))
        return [
            assertion_from_string(item) if isinstance(item, str) else item
            for item in value
        ]

    @field_validator("vars", mode="before")
    @classmethod
    def _none_vars(cls, value: Any) -> Any:
        return {} if value is None else value


# A test case whose vars have been expanded to a single concrete combination.
AtomicTestCase = TestCase


class Scenario(_Model):
    description: Optional[str] = None
    config: List[TestCase] = Field(default_factory=list)
    tests: Optional[List[TestCase]] = None


class TestSuite(_Model):
    description: Optional[str] = None
    prompts: List[Prompt] = Field(default_factory=list)
    providers: List[Any] = Field(default_factory=list)
    tests: List[TestCase] = Field(default_factory=list)
    default_test: Optional[TestCase] = None
    scenarios: Optional[List[Scenario]] = None
    # Maps a provider id to the prompt displays it may run.
    provider_prompt_map: Optional[Dict[str, List[str]]] = None
    nunjucks_filters: Optional[Dict[str, Callable[..., Any]]] = None


class GradingResult(_Model):
    passed: bool = Field(alias="pass")
    score: float
    reason: str
    named_scores: Dict[str, float] = Field(default_factory=dict)
    tokens_used: Optional[TokenUsage] = None
    component_results: Optional[List[GradingResult]] = None
    assertion: Optional[Assertion] = None


class ProviderSetup(_Model):
    id: str


class PromptSetup(_Model):
    raw: str
    display: str


class EvaluateResult(_Model):
    prompt: PromptSetup
    provider: ProviderSetup
    vars: Dict[str, Any] = Field(default_factory=dict)
    response: Optional[ProviderResponse] = None
    success: bool = False
    score: float = 0.0
    named_scores: Dict[str, float] = Field(default_factory=dict)
    latency_ms: int = 0
    error: Optional[str] = None
    grading_result: Optional[GradingResult] = None


class EvaluateTableOutput(_Model):
    passed: bool = Field(alias="pass")
    score: float
    named_scores: Dict[str, float] = Field(default_factory=dict)
    text: str
    prompt: str
    provider: str
    latency_ms: int = 0
    token_usage: Optional[TokenUsage] = None
    grading_result: Optional[GradingResult] = None


class EvaluateTableRow(_Model):
    description: Optional[str] = None
    vars: List[str] = Field(default_factory=list)
    outputs: List[Optional[EvaluateTableOutput]] = Field(default_factory=list)


class EvaluateTableHead(_Model):
    prompts: List[Prompt] = Field(default_factory=list)
    vars: List[str] = Field(default_factory=list)


class EvaluateTable(_Model):
    head: EvaluateTableHead = Field(default_factory=EvaluateTableHead)
    body: List[Optional[EvaluateTableRow]] = Field(default_factory=list)


class EvaluateStats(_Model):
    successes: int = 0
    failures: int = 0
    token_usage: TokenUsage = Field(default_factory=TokenUsage)


class EvaluateSummary(_Model):
    version: int = 2
    results: List[EvaluateResult] = Field(default_factory=list)
    stats: EvaluateStats = Field(default_factory=EvaluateStats)
    table: EvaluateTable = Field(default_factory=EvaluateTable)


class EvaluateOptions(_Model):
    max_concurrency: Optional[int] = None
    repeat: int = 1
    delay: int = 0
    show_progress_bar: bool = False
    progress_callback: Optional[Callable[[int, int], None]] = None
    generate_suggestions: bool = False


class WorkItem(_Model):
    """One (prompt, provider, test vars, repeat) unit of execution."""

    provider: Any
    prompt: Prompt
    test: TestCase
    nunjucks_filters: Optional[Dict[str, Callable[..., Any]]] = None
    include_provider_id: bool = False
    row_index: int
    col_index: int
    repeat_index: int
    delay: int = 0


