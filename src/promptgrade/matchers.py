# src/promptgrade/matchers.py
from __future__ import annotations

import json
import math
import re
from collections import Counter
from typing import Any, Iterator, List, Optional

from rapidfuzz.distance import Levenshtein

from .models import GradingResult, TokenUsage
from .providers import ApiProvider, OpenAIEmbeddingProvider, load_provider

DEFAULT_ROUGE_THRESHOLD = 0.75
DEFAULT_LEVENSHTEIN_THRESHOLD = 5
DEFAULT_SIMILARITY_THRESHOLD = 0.75
DEFAULT_CLASSIFIER_THRESHOLD = 0.5

_RUBRIC_SYSTEM_PROMPT = """\
You are grading output according to a user-specified rubric. If the statement \
in the rubric is true, then the output passes the test. Respond with a JSON \
object with this structure: {"pass": boolean, "reason": string}.

Examples:

Output: Hello world
Rubric: Content contains a greeting
{"pass": true, "reason": "the content contains the word 'hello'"}

Output: Avast ye swabs, repel the invaders!
Rubric: Does not speak like a pirate
{"pass": false, "reason": "'avast ye' is a common pirate term"}"""


def fmt(number: float) -> str:
    """Compact number formatting for reasons: 1 -> '1', 0.2 -> '0.2'."""
    return f"{number:g}"


def _passed(result: GradingResult) -> GradingResult:
    if result.passed:
        return result.model_copy(update={"reason": "Assertion passed"})
    return result


def iter_json_values(text: str) -> Iterator[Any]:
    """Yield every JSON object or array embedded in `text`, left to right.

    Each `{` or `[` is tried as the start of a value with `raw_decode`; on
    success the scan resumes after the decoded value, otherwise at the next
    character. Stray brackets before a valid value are therefore skipped.
    """
    decoder = json.JSONDecoder()
    index = 0
    length = len(text)
    while index < length:
        if text[index] not in "{[":
            index += 1
            continue
        try:
            value, end = decoder.raw_decode(text, index)
        except ValueError:
            index += 1
            continue
        except RecursionError:
            # Nested too deeply to decode; resume at the innermost `[` of the run.
            run_end = index
            while run_end < length and text[run_end] == "[":
                run_end += 1
            index = max(index + 1, run_end - 1)
            continue
        yield value
        index = end


def first_json_value(text: str) -> Optional[Any]:
    return next(iter_json_values(text), None)


def supports(provider: Any, capability: str) -> bool:
    """Whether `provider` implements an optional ApiProvider capability."""
    method = getattr(type(provider), capability, None)
    return method is not None and method is not getattr(ApiProvider, capability, None)


def resolve_provider(*candidates: Any) -> Optional[ApiProvider]:
    """First configured provider wins; ids and mappings are loaded."""
    for candidate in candidates:
        if candidate is not None:
            return load_provider(candidate)
    return None


# --- Text metrics ---


def _ngrams(text: str, n: int) -> Counter:
    tokens = re.findall(r"\w+", text.lower())
    return Counter(tuple(tokens[i : i + n]) for i in range(len(tokens) - n + 1))


def rouge_n(candidate: str, reference: str, n: int = 1) -> float:
    """ROUGE-N recall: clipped n-gram overlap over reference n-gram count."""
    reference_grams = _ngrams(reference, n)
    total = sum(reference_grams.values())
    if total == 0:
        return 0.0
    overlap = sum((_ngrams(candidate, n) & reference_grams).values())
    return overlap / total


def matches_rouge(
    expected: str, output: str, threshold: Optional[float], inverse: bool = False
) -> GradingResult:
    threshold = DEFAULT_ROUGE_THRESHOLD if threshold is None else threshold
    score = rouge_n(output, expected)
    above = score >= threshold
    passed = above != inverse
    if above:
        reason = f"ROUGE-N score {fmt(score)} is greater than or equal to threshold {fmt(threshold)}"
    else:
        reason = f"ROUGE-N score {fmt(score)} is less than threshold {fmt(threshold)}"
    return GradingResult(
        passed=passed, score=score if not inverse else 1 - score, reason=reason
    )


def matches_levenshtein(
    expected: str, output: str, threshold: Optional[float], inverse: bool = False
) -> GradingResult:
    threshold = DEFAULT_LEVENSHTEIN_THRESHOLD if threshold is None else threshold
    distance = Levenshtein.distance(output, expected)
    within = distance <= threshold
    passed = within != inverse
    if within:
        reason = f"Levenshtein distance {distance} is less than or equal to threshold {fmt(threshold)}"
    else:
        reason = f"Levenshtein distance {distance} is greater than threshold {fmt(threshold)}"
    return _passed(
        GradingResult(passed=passed, score=1.0 if passed else 0.0, reason=reason)
    )


# --- Provider-backed matchers ---


def cosine_similarity(a: List[float], b: List[float]) -> float:
    if len(a) != len(b):
        raise ValueError("Embeddings have different dimensions")
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


async def matches_similarity(
    expected: str,
    output: str,
    threshold: Optional[float],
    inverse: bool = False,
    provider: Optional[ApiProvider] = None,
) -> GradingResult:
    threshold = DEFAULT_SIMILARITY_THRESHOLD if threshold is None else threshold
    if provider is None or not supports(provider, "call_embedding_api"):
        provider = OpenAIEmbeddingProvider()

    expected_embedding = await provider.call_embedding_api(expected)
    output_embedding = await provider.call_embedding_api(output)
    tokens_used = TokenUsage()
    for response in (expected_embedding, output_embedding):
        if response.error or not response.embedding:
            return GradingResult(
                passed=False,
                score=0.0,
                reason=response.error or "Unknown error fetching embeddings",
            )
        if response.token_usage:
            tokens_used.total += response.token_usage.total
            tokens_used.prompt += response.token_usage.prompt

    similarity = cosine_similarity(
        expected_embedding.embedding or [], output_embedding.embedding or []
    )
    above = similarity >= threshold
    passed = above != inverse
    if above:
        reason = f"Similarity {fmt(similarity)} is greater than threshold {fmt(threshold)}"
    else:
        reason = f"Similarity {fmt(similarity)} is less than threshold {fmt(threshold)}"
    return _passed(
        GradingResult(
            passed=passed,
            score=similarity if not inverse else 1 - similarity,
            reason=reason,
            tokens_used=tokens_used,
        )
    )


async def matches_classification(
    expected: str,
    output: str,
    threshold: Optional[float],
    provider: Optional[ApiProvider],
    inverse: bool = False,
) -> GradingResult:
    threshold = DEFAULT_CLASSIFIER_THRESHOLD if threshold is None else threshold
    if provider is None:
        raise ValueError(
            "classifier assertions require a provider with classification support"
        )

    response = await provider.call_classification_api(output)
    if response.error or response.classification is None:
        return GradingResult(
            passed=False,
            score=0.0,
            reason=response.error or "Unknown error fetching classification",
        )

    score = response.classification.get(expected, 0.0)
    above = score >= threshold
    passed = above != inverse
    comparison = ">=" if above else "<"
    return _passed(
        GradingResult(
            passed=passed,
            score=score,
            reason=(
                f"Classification {expected} has score {fmt(score)} "
                f"{comparison} {fmt(threshold)}"
            ),
        )
    )


async def matches_llm_rubric(
    rubric: str, output: str, provider: ApiProvider, inverse: bool = False
) -> GradingResult:
    prompt = json.dumps(
        [
            {"role": "system", "content": _RUBRIC_SYSTEM_PROMPT},
            {"role": "user", "content": f"Output: {output}\nRubric: {rubric}"},
        ]
    )
    response = await provider.call_api(prompt)
    if response.error or response.output is None:
        return GradingResult(
            passed=False,
            score=0.0,
            reason=response.error or "No output from grading provider",
        )

    text = (
        response.output
        if isinstance(response.output, str)
        else json.dumps(response.output)
    )
    verdict = first_json_value(text)
    if not isinstance(verdict, dict) or "pass" not in verdict:
        return GradingResult(
            passed=False,
            score=0.0,
            reason=f"Could not extract JSON from llm-rubric response: {text}",
            tokens_used=response.token_usage,
        )

    passed = bool(verdict["pass"]) != inverse
    score = verdict.get("score")
    if not isinstance(score, (int, float)) or isinstance(score, bool):
        score = 1.0 if passed else 0.0
    return GradingResult(
        passed=passed,
        score=float(score),
        reason=str(verdict.get("reason") or ""),
        tokens_used=response.token_usage,
    )
