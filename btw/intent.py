"""
Intent routing: transcript -> allow-listed command or general query.

Matching order:
    1. containment - an example (with {slots} as wildcards) appears as a
       whole-word run in the transcript. Score 0.9 + 0.1 * literal coverage,
       so an exact match scores 1.0.
    2. similarity - Dice coefficient over literal tokens, capped below any
       containment score. Zero unless more than half of the example's
       literal words occur in the transcript.

Each command scores its best example; on equal scores the example whose
slot values validate wins. Candidates are ranked by score, then
by catalog order (first declared wins). Below ``min_confidence`` the text is
a general query.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .commands import CommandCatalog, CommandSpec, validate_parameter
from .errors import ParameterError
from .normalization import is_slot, normalize_example, slot_name, tokenize

logger = logging.getLogger(__name__)

DEFAULT_MIN_CONFIDENCE = 0.6
CONTAINMENT_BASE = 0.9
SIMILARITY_CEILING = 0.85


@dataclass(frozen=True)
class MatchCandidate:
    command: CommandSpec
    score: float
    example: str
    index: int
    parameters: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Intent:
    raw_text: str
    matched_command: Optional[CommandSpec] = None
    extracted_parameters: Dict[str, str] = field(default_factory=dict)
    match_score: float = 0.0
    matched_example: Optional[str] = None
    missing_parameters: Tuple[str, ...] = ()

    @property
    def is_command(self) -> bool:
        return self.matched_command is not None

    @property
    def is_general(self) -> bool:
        return self.matched_command is None

    @property
    def is_complete(self) -> bool:
        return self.is_command and not self.missing_parameters


def _example_pattern(example_tokens: Sequence[str]) -> "re.Pattern[str]":
    parts = []
    last = len(example_tokens) - 1
    for i, token in enumerate(example_tokens):
        if is_slot(token):
            # A trailing slot takes the rest of the sentence, inner slots stop
            # at the next literal word
            quant = "" if i == last else "?"
            parts.append(rf"(?P<{slot_name(token)}>\S+(?: \S+)*{quant})")
        else:
            parts.append(re.escape(token))
    return re.compile(r"(?:^| )" + " ".join(parts) + r"(?= |$)")


def extract_slots(example_tokens: Sequence[str], tokens: Sequence[str]) -> Dict[str, str]:
    """
    Keyword-anchored extraction for examples that did not match literally.

    A slot's value is the run of transcript tokens after the literal word that
    precedes the slot in the example, up to the literal word that follows it.
    When the anchor word is absent, a trailing slot takes the last token
    unless that token is one of the example's own words.
    """
    values: Dict[str, str] = {}
    literals = {t for t in example_tokens if not is_slot(t)}
    last = len(example_tokens) - 1
    for i, token in enumerate(example_tokens):
        if not is_slot(token):
            continue
        before = example_tokens[i - 1] if i > 0 and not is_slot(example_tokens[i - 1]) else None
        after = (
            example_tokens[i + 1]
            if i < last and not is_slot(example_tokens[i + 1])
            else None
        )

        if before is not None and before in tokens:
            start = tokens.index(before) + 1
        elif after is not None and after in tokens:
            start = 0
        elif i == last and tokens and tokens[-1] not in literals:
            start = len(tokens) - 1
        else:
            continue

        end = len(tokens)
        if after is not None and after in tokens[start:]:
            end = start + list(tokens[start:]).index(after)

        value = " ".join(tokens[start:end]).strip()
        if value:
            values[slot_name(token)] = value
    return values


def _bindable(command: CommandSpec, params: Dict[str, str]) -> bool:
    for name, value in params.items():
        spec = command.parameters.get(name)
        if spec is None:
            continue
        try:
            validate_parameter(name, spec, value)
        except ParameterError:
            return False
    return True


class ExampleMatcher:
    """Deterministic scoring of a transcript against catalog examples."""

    def __init__(self):
        self._cache: Dict[str, Tuple[List[str], "re.Pattern[str]"]] = {}

    def _compiled(self, example: str) -> Tuple[List[str], "re.Pattern[str]"]:
        cached = self._cache.get(example)
        if cached is None:
            tokens = normalize_example(example)
            cached = (tokens, _example_pattern(tokens))
            self._cache[example] = cached
        return cached

    def score_example(self, tokens: Sequence[str], example: str) -> Tuple[float, Dict[str, str]]:
        example_tokens, pattern = self._compiled(example)
        literals = [t for t in example_tokens if not is_slot(t)]
        if not tokens or not literals:
            return 0.0, {}

        match = pattern.search(" ".join(tokens))
        if match:
            params = {k: v for k, v in match.groupdict().items() if v}
            coverage = len(literals) / len(tokens)
            return CONTAINMENT_BASE + (1.0 - CONTAINMENT_BASE) * min(coverage, 1.0), params

        literal_set = set(literals)
        token_set = set(tokens)
        overlap = len(literal_set & token_set)
        # Most of the example's own words must be present, so a lone
        # "screen" or "next" is not a command
        if overlap * 2 <= len(literal_set):
            return 0.0, {}
        dice = 2.0 * overlap / (len(literal_set) + len(token_set))
        params = extract_slots(example_tokens, list(tokens))
        return min(dice, SIMILARITY_CEILING), params

    def rank(self, text: str, catalog: CommandCatalog) -> List[MatchCandidate]:
        tokens = tokenize(text)
        candidates: List[MatchCandidate] = []
        for index, command in enumerate(catalog):
            best: Optional[MatchCandidate] = None
            best_key = None
            for example in command.examples:
                score, params = self.score_example(tokens, example)
                # Equal scores within a command go to the example whose slot
                # values validate ("volume to {level} percent" over a greedy
                # "set volume to {level}")
                key = (score, _bindable(command, params))
                if best_key is None or key > best_key:
                    best_key = key
                    best = MatchCandidate(command, score, example, index, params)
            if best is not None and best.score > 0.0:
                candidates.append(best)
        candidates.sort(key=lambda c: (-c.score, c.index))
        return candidates


class IntentRouter:
    """Resolve a transcript against the immutable command catalog."""

    def __init__(self, catalog: CommandCatalog, min_confidence: float = DEFAULT_MIN_CONFIDENCE,
                 matcher: Optional[ExampleMatcher] = None):
        self.catalog = catalog
        self.min_confidence = float(min_confidence)
        self.matcher = matcher or ExampleMatcher()

    def route(self, text: str) -> Intent:
        ranked = self.matcher.rank(text, self.catalog)
        if not ranked or ranked[0].score < self.min_confidence:
            top = ranked[0].score if ranked else 0.0
            logger.info("intent: general query (best score %.2f < %.2f)", top, self.min_confidence)
            return Intent(raw_text=text, match_score=top)

        best = ranked[0]
        command = best.command
        params = {k: v for k, v in best.parameters.items() if k in command.parameters}
        missing = tuple(p for p in command.required_parameters if not params.get(p))

        logger.info(
            "intent: %s (score=%.2f, example=%r, params=%s%s)",
            command.id, best.score, best.example, params,
            f", missing={list(missing)}" if missing else "",
        )
        return Intent(
            raw_text=text,
            matched_command=command,
            extracted_parameters=params,
            match_score=best.score,
            matched_example=best.example,
            missing_parameters=missing,
        )
