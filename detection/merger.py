"""Candidate deduplication and emission policies for multi-strategy detection."""

import asyncio
from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable, Optional

from config import config
from detection.similarity import levenshtein_similarity, span_overlap
from logger import log_debug
from metrics import merge_discarded
from models import QuestionCandidate


class EmissionPolicy(str, Enum):
    """When merged candidates leave the merger."""
    FIRST_ARRIVAL = "first_arrival"
    WAIT_FOR_ALL = "wait_for_all"
    AGREEMENT = "agreement"


class AgreementKey(str, Enum):
    """What two strategies must agree on under the agreement policy."""
    SPAN = "span"
    UTTERANCE = "utterance"


@dataclass(frozen=True)
class MergePolicy:
    """
    Merge configuration.

    Two candidates from different strategies collapse into one when their
    similarity is at or above similarity_threshold. A low threshold
    collapses aggressively: at 0.0 every candidate of an utterance is a
    duplicate of the first one emitted.
    """
    similarity_threshold: float = 0.6
    emission: EmissionPolicy = EmissionPolicy.FIRST_ARRIVAL
    agreement_key: AgreementKey = AgreementKey.SPAN
    min_agreement: int = 2
    gate_on_first: bool = False

    def __post_init__(self):
        if not 0.0 <= self.similarity_threshold <= 1.0:
            raise ValueError(f"Similarity threshold must be within [0, 1], got {self.similarity_threshold}")
        if self.min_agreement < 1:
            raise ValueError(f"min_agreement must be at least 1, got {self.min_agreement}")
        object.__setattr__(self, "emission", EmissionPolicy(self.emission))
        object.__setattr__(self, "agreement_key", AgreementKey(self.agreement_key))

    @classmethod
    def from_config(cls, cfg=None) -> "MergePolicy":
        """Create a policy from the service configuration."""
        cfg = cfg or config
        return cls(
            similarity_threshold=cfg.merge_similarity_threshold,
            emission=EmissionPolicy(cfg.merge_emission_policy),
            agreement_key=AgreementKey(cfg.merge_agreement_key),
            min_agreement=cfg.merge_min_agreement,
            gate_on_first=cfg.merge_gate_on_first,
        )


def candidate_similarity(a: QuestionCandidate, b: QuestionCandidate) -> float:
    """Best of span overlap and edit similarity; 0 across utterances."""
    if a.utterance_id != b.utterance_id:
        return 0.0
    return max(span_overlap(a.span, b.span), levenshtein_similarity(a.text, b.text))


def arrival_key(candidate: QuestionCandidate):
    """Order of arrival with a stable tie-break."""
    return (candidate.emitted_at_ms, candidate.detection_latency_ms, candidate.strategy_name, candidate.span)


class CandidateMerger:
    """Collapses duplicate candidates and applies the emission policy."""

    def __init__(self, policy: MergePolicy = None):
        self.policy = policy or MergePolicy()

    def similar(self, a: QuestionCandidate, b: QuestionCandidate) -> bool:
        """Check whether two candidates from different strategies are the same question."""
        if a.strategy_name == b.strategy_name:
            return False
        return candidate_similarity(a, b) >= self.policy.similarity_threshold

    def merge(self, candidates: Iterable[QuestionCandidate]) -> list[QuestionCandidate]:
        """
        Deduplicate one utterance's candidates.

        Similar candidates are grouped transitively. Each group keeps the
        earliest-arriving member's span and text, the maximum confidence,
        and the union of contributing strategies.

        Args:
            candidates: Candidates in any order

        Returns:
            Deduplicated candidates in arrival order
        """
        ordered = sorted(candidates, key=arrival_key)
        parent = list(range(len(ordered)))

        def find(i):
            while parent[i] != i:
                parent[i] = parent[parent[i]]
                i = parent[i]
            return i

        for i in range(len(ordered)):
            for j in range(i + 1, len(ordered)):
                if self.similar(ordered[i], ordered[j]):
                    root_i, root_j = find(i), find(j)
                    if root_i != root_j:
                        # The earlier root stays representative
                        parent[max(root_i, root_j)] = min(root_i, root_j)

        groups: dict[int, list[QuestionCandidate]] = {}
        for i, candidate in enumerate(ordered):
            groups.setdefault(find(i), []).append(candidate)
        return [self._collapse(groups[root]) for root in sorted(groups)]

    @staticmethod
    def _collapse(group: list[QuestionCandidate]) -> QuestionCandidate:
        first = group[0]
        if len(group) == 1:
            return first
        sources = []
        for candidate in group:
            for source in candidate.sources:
                if source not in sources:
                    sources.append(source)
        return replace(first, confidence=max(c.confidence for c in group), sources=tuple(sources))

    def agree(self, merged: list[QuestionCandidate]) -> list[QuestionCandidate]:
        """Keep only candidates enough strategies agree on."""
        needed = self.policy.min_agreement
        if self.policy.agreement_key is AgreementKey.SPAN:
            return [c for c in merged if len(set(c.sources)) >= needed]

        by_utterance: dict[str, set[str]] = {}
        for candidate in merged:
            by_utterance.setdefault(candidate.utterance_id, set()).update(candidate.sources)
        return [c for c in merged if len(by_utterance[c.utterance_id]) >= needed]

    def apply(self, candidates: Iterable[QuestionCandidate]) -> list[QuestionCandidate]:
        """Merge, then filter by agreement when that policy is active."""
        candidates = list(candidates)
        result = self.merge(candidates)
        if self.policy.emission is EmissionPolicy.AGREEMENT:
            result = self.agree(result)
        self._count_discarded(len(candidates) - len(result))
        return result

    def collector(self, utterance_id: str) -> "UtteranceCollector":
        """Create the serialized candidate set for one utterance."""
        return UtteranceCollector(self, utterance_id)

    def _count_discarded(self, count: int) -> None:
        if count > 0:
            merge_discarded.labels(policy=self.policy.emission.value).inc(count)


class UtteranceCollector:
    """
    Candidate set of a single utterance.

    Every mutation goes through the collector's own lock, so merges for
    different utterances proceed independently.
    """

    def __init__(self, merger: CandidateMerger, utterance_id: str):
        self.merger = merger
        self.utterance_id = utterance_id
        self.received: list[QuestionCandidate] = []
        self.emitted: list[QuestionCandidate] = []
        self._lock = asyncio.Lock()

    async def offer(self, candidate: QuestionCandidate) -> Optional[QuestionCandidate]:
        """
        First-arrival emission: pass the candidate on unless it duplicates one already emitted.

        Returns:
            The candidate if it should be emitted now, None if discarded
        """
        async with self._lock:
            self.received.append(candidate)
            for seen in self.emitted:
                if self.merger.similar(seen, candidate):
                    self.merger._count_discarded(1)
                    log_debug("Candidate discarded as already seen", utterance_id=self.utterance_id,
                              strategy=candidate.strategy_name, duplicate_of=seen.strategy_name)
                    return None
            self.emitted.append(candidate)
            return candidate

    async def add(self, candidate: QuestionCandidate) -> None:
        async with self._lock:
            self.received.append(candidate)

    async def finish(self) -> list[QuestionCandidate]:
        """Merge everything received and return what should be emitted."""
        async with self._lock:
            self.emitted = self.merger.apply(self.received)
            return list(self.emitted)
