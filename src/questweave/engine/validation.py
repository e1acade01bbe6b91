"""Consistency gate over generated narration.

Three families of checks feed one score:

- world-rule compliance against the world bible (critical; a single hit
  forces the result below the pass threshold),
- contradictions against retrieved history (major, fixed penalty each),
  produced by pluggable :class:`ContradictionScorer` implementations,
- tone and named-character voice deviations (minor).

If any check itself raises, the validator returns a neutral pass flagged
``degraded`` so a scoring bug never blocks a turn.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from enum import Enum
from typing import Protocol
from typing import runtime_checkable

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from questweave.config import ValidationConfig
from questweave.models.memory import ContextItem
from questweave.world import FORBIDDEN_MAGIC
from questweave.world import FORBIDDEN_OUTCOMES
from questweave.world import FORBIDDEN_TONES
from questweave.world import NPCS
from questweave.world import NPCVoice

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


class Severity(str, Enum):
    critical = "critical"
    major = "major"
    minor = "minor"


class ViolationKind(str, Enum):
    world_rule = "world_rule"
    contradiction = "contradiction"
    tone = "tone"
    npc_voice = "npc_voice"
    magic_system = "magic_system"


class Violation(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ViolationKind
    severity: Severity
    description: str
    evidence: str | None = None


class ValidationResult(BaseModel):
    """Score and violations for one piece of content."""

    model_config = ConfigDict(frozen=True)

    score: int = Field(ge=0, le=100)
    passed: bool
    violations: list[Violation] = Field(default_factory=list)
    low_confidence: bool = False
    degraded: bool = False

    @property
    def has_critical(self) -> bool:
        return any(v.severity is Severity.critical for v in self.violations)


class ValidationFailed(Exception):
    """Content scored below the pass threshold."""

    def __init__(self, result: ValidationResult) -> None:
        super().__init__(
            f"validation failed with score {result.score} "
            f"({len(result.violations)} violations)"
        )
        self.result = result


class SubjectContext(BaseModel):
    """What the validator knows about the subject being narrated."""

    subject_id: str
    character_name: str = "Adventurer"
    in_combat: bool = False


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------

_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")
_QUOTE_RE = re.compile(r"[\"“]([^\"”]+)[\"”]")
_NEGATION_TOKENS = {"not", "never", "no", "none", "cannot", "without", "nobody", "nothing"}
_FILLER_TOKENS = {
    "a", "an", "the", "and", "or", "but", "is", "was", "are", "were", "be", "been",
    "to", "of", "in", "on", "at", "for", "with", "you", "your", "it", "its", "that",
    "this", "he", "she", "they", "his", "her", "their", "has", "have", "had", "still",
}
_PROPER_NAME_RE = re.compile(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\b")


def split_sentences(text: str) -> list[str]:
    return [s.strip() for s in _SENTENCE_RE.split(text.strip()) if s.strip()]


def _tokens(text: str) -> list[str]:
    text = re.sub(r"n't\b", " not", text.lower())
    cleaned = "".join(ch if ch.isalnum() or ch.isspace() else " " for ch in text)
    return cleaned.split()


def claim_base_and_polarity(text: str) -> tuple[frozenset[str], bool]:
    """Content-word set of a sentence plus whether it is negated."""
    tokens = _tokens(text)
    negated = any(tok in _NEGATION_TOKENS for tok in tokens)
    base = frozenset(
        tok for tok in tokens if tok not in _NEGATION_TOKENS and tok not in _FILLER_TOKENS
    )
    return base, negated


def _proper_names(text: str) -> set[str]:
    names = set(_PROPER_NAME_RE.findall(text))
    # A capitalised first word is not evidence of a name.
    first = text.split(" ", 1)[0].strip(".,!?\"'")
    if first in names and " " not in first:
        names.discard(first)
    return names


# ---------------------------------------------------------------------------
# Contradiction scorers
# ---------------------------------------------------------------------------


@runtime_checkable
class ContradictionScorer(Protocol):
    """Finds contradictions between new content and retrieved history."""

    def find(
        self, content: str, history: Sequence[ContextItem]
    ) -> list[Violation]: ...


class NegationContradictionScorer(ContradictionScorer):
    """Flags sentence pairs that say the same thing with opposite polarity."""

    def __init__(self, min_overlap: float = 0.75, min_tokens: int = 3) -> None:
        self._min_overlap = min_overlap
        self._min_tokens = min_tokens

    def find(self, content: str, history: Sequence[ContextItem]) -> list[Violation]:
        past = [
            (sentence, *claim_base_and_polarity(sentence))
            for item in history
            for sentence in split_sentences(item.text)
        ]
        found: list[Violation] = []
        for sentence in split_sentences(content):
            base, negated = claim_base_and_polarity(sentence)
            if len(base) < self._min_tokens:
                continue
            for past_sentence, past_base, past_negated in past:
                if negated == past_negated or len(past_base) < self._min_tokens:
                    continue
                overlap = len(base & past_base) / len(base | past_base)
                if overlap >= self._min_overlap:
                    found.append(
                        Violation(
                            kind=ViolationKind.contradiction,
                            severity=Severity.major,
                            description="Narration negates an established fact.",
                            evidence=f"{sentence!r} vs {past_sentence!r}",
                        )
                    )
                    break
        return found


_STATE_OPPOSITES: tuple[tuple[frozenset[str], frozenset[str]], ...] = (
    (frozenset({"alive", "living", "lives"}), frozenset({"dead", "died", "deceased"})),
    (frozenset({"ally", "allies", "friend", "friends"}), frozenset({"enemy", "enemies", "foe"})),
    (frozenset({"trusts", "trusted"}), frozenset({"distrusts", "distrusted", "betrayed"})),
    (frozenset({"found", "recovered"}), frozenset({"lost", "missing"})),
    (frozenset({"repaired", "restored", "whole"}), frozenset({"broken", "shattered", "destroyed"})),
    (frozenset({"open", "opened", "unlocked"}), frozenset({"sealed", "locked", "closed"})),
)


class StateReversalScorer(ContradictionScorer):
    """Flags a named entity whose established state flips to its opposite."""

    def find(self, content: str, history: Sequence[ContextItem]) -> list[Violation]:
        facts: dict[str, list[tuple[str, set[str]]]] = {}
        for item in history:
            for sentence in split_sentences(item.text):
                words = set(_tokens(sentence))
                for name in _proper_names(sentence) | set(item.participants):
                    facts.setdefault(name, []).append((sentence, words))

        found: list[Violation] = []
        seen: set[tuple[str, str]] = set()
        for sentence in split_sentences(content):
            words = set(_tokens(sentence))
            for name in _proper_names(sentence):
                for past_sentence, past_words in facts.get(name, []):
                    if not self._reversed(past_words, words):
                        continue
                    key = (name, past_sentence)
                    if key in seen:
                        continue
                    seen.add(key)
                    found.append(
                        Violation(
                            kind=ViolationKind.contradiction,
                            severity=Severity.major,
                            description=f"State of {name} reverses without cause.",
                            evidence=f"{sentence!r} vs {past_sentence!r}",
                        )
                    )
        return found

    @staticmethod
    def _reversed(before: set[str], after: set[str]) -> bool:
        for left, right in _STATE_OPPOSITES:
            if (before & left and after & right and not after & left) or (
                before & right and after & left and not after & right
            ):
                return True
        return False


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------


class ConsistencyValidator:
    """Scores narration and decides pass/fail."""

    def __init__(
        self,
        config: ValidationConfig | None = None,
        *,
        contradiction_scorers: Sequence[ContradictionScorer] | None = None,
        npcs: Sequence[NPCVoice] = NPCS,
    ) -> None:
        self._config = config or ValidationConfig()
        self._scorers = list(
            contradiction_scorers
            if contradiction_scorers is not None
            else (NegationContradictionScorer(), StateReversalScorer())
        )
        self._npcs = list(npcs)

    @property
    def config(self) -> ValidationConfig:
        return self._config

    def validate(
        self,
        content: str,
        subject_context: SubjectContext | None = None,
        retrieved_history: Sequence[ContextItem] = (),
    ) -> ValidationResult:
        try:
            violations = self._collect(content, subject_context, retrieved_history)
        except Exception:
            logger.exception("Validator errored; returning neutral pass")
            return ValidationResult(
                score=self._config.neutral_score,
                passed=True,
                degraded=True,
            )
        return self.score(violations)

    def score(self, violations: Sequence[Violation]) -> ValidationResult:
        cfg = self._config
        penalties = {
            Severity.critical: cfg.critical_penalty,
            Severity.major: cfg.contradiction_penalty,
            Severity.minor: cfg.minor_penalty,
        }
        score = 100 - sum(penalties[v.severity] for v in violations)
        score = max(0, min(100, score))
        critical = any(v.severity is Severity.critical for v in violations)
        if critical:
            score = min(score, max(cfg.pass_threshold - 1, 0))
        return ValidationResult(
            score=score,
            passed=not critical and score >= cfg.pass_threshold,
            violations=list(violations),
        )

    def require_pass(self, result: ValidationResult) -> ValidationResult:
        if not result.passed:
            raise ValidationFailed(result)
        return result

    @staticmethod
    def feedback(result: ValidationResult) -> str:
        """Revision guidance listing each violation, worst first."""
        order = {Severity.critical: 0, Severity.major: 1, Severity.minor: 2}
        lines = [
            f"- [{v.severity.value}] {v.description}"
            + (f" ({v.evidence})" if v.evidence else "")
            for v in sorted(result.violations, key=lambda v: order[v.severity])
        ]
        return "Revise the narration to fix these issues:\n" + "\n".join(lines)

    # -- checks --

    def _collect(
        self,
        content: str,
        subject_context: SubjectContext | None,
        history: Sequence[ContextItem],
    ) -> list[Violation]:
        del subject_context
        violations = self._world_rules(content)
        for scorer in self._scorers:
            violations.extend(scorer.find(content, history))
        violations.extend(self._tone(content))
        violations.extend(self._npc_voice(content))
        return violations

    @staticmethod
    def _world_rules(content: str) -> list[Violation]:
        found = []
        for rule in FORBIDDEN_OUTCOMES:
            match = rule.pattern.search(content)
            if match:
                found.append(
                    Violation(
                        kind=ViolationKind.world_rule,
                        severity=Severity.critical,
                        description=rule.description,
                        evidence=match.group(0),
                    )
                )
        for pattern in FORBIDDEN_MAGIC:
            match = pattern.search(content)
            if match:
                found.append(
                    Violation(
                        kind=ViolationKind.magic_system,
                        severity=Severity.minor,
                        description="Flashy spellcraft breaks the grounded magic system.",
                        evidence=match.group(0),
                    )
                )
        return found

    @staticmethod
    def _tone(content: str) -> list[Violation]:
        found = []
        for pattern, label, shaming in FORBIDDEN_TONES:
            match = pattern.search(content)
            if match:
                found.append(
                    Violation(
                        kind=ViolationKind.tone,
                        severity=Severity.major if shaming else Severity.minor,
                        description=f"Forbidden tone: {label}.",
                        evidence=match.group(0),
                    )
                )
        return found

    def _npc_voice(self, content: str) -> list[Violation]:
        found = []
        for npc, quote in self._attributed_quotes(content):
            lowered = quote.lower()
            for phrase in npc.never_says:
                if phrase in lowered:
                    found.append(
                        Violation(
                            kind=ViolationKind.npc_voice,
                            severity=Severity.minor,
                            description=f"{npc.name} would never say this.",
                            evidence=phrase,
                        )
                    )
            if npc.max_sentence_words is not None:
                longest = max(
                    (len(s.split()) for s in split_sentences(quote)), default=0
                )
                if longest > npc.max_sentence_words:
                    found.append(
                        Violation(
                            kind=ViolationKind.npc_voice,
                            severity=Severity.minor,
                            description=f"{npc.name} speaks in short, direct sentences.",
                            evidence=f"{longest} words",
                        )
                    )
        return found

    def _attributed_quotes(
        self, content: str, window: int = 80
    ) -> list[tuple[NPCVoice, str]]:
        attributed = []
        lowered = content.lower()
        for match in _QUOTE_RE.finditer(content):
            before = lowered[max(0, match.start() - window) : match.start()]
            after = lowered[match.end() : match.end() + window]
            best: tuple[int, NPCVoice] | None = None
            for npc in self._npcs:
                for alias in npc.names:
                    alias_l = alias.lower()
                    distance = None
                    if alias_l in before:
                        distance = len(before) - before.rfind(alias_l)
                    if alias_l in after:
                        d_after = after.find(alias_l)
                        distance = d_after if distance is None else min(distance, d_after)
                    if distance is not None and (best is None or distance < best[0]):
                        best = (distance, npc)
            if best is not None:
                attributed.append((best[1], match.group(1)))
        return attributed
