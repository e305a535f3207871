"""Relevance-based capability selection.

Narrows the registry to a ranked, size-bounded subset per query using
keyword TF-IDF scores, a category bonus from a coarse query classification,
and a per-capability boost for capabilities the model asked for while they
were not offered.
"""

from __future__ import annotations

import math
import time
from collections import Counter, OrderedDict, deque
from collections.abc import Callable, Hashable, Sequence
from dataclasses import dataclass, field
from typing import Generic, Protocol, TypeVar

from loguru import logger

from tandem.errors import SelectionError
from tandem.tokens import TokenCounter
from tandem.tools.registry import CapabilityDescriptor, CapabilityRegistry, Category
from tandem.utils import tokenize

CATEGORY_KEYWORDS: dict[Category, tuple[str, ...]] = {
    Category.FILE_READ: ("read", "view", "show", "display", "content", "open", "look", "see", "check", "what is in",
                         "contents of"),
    Category.FILE_WRITE: ("create", "edit", "modify", "change", "update", "write", "add", "fix", "refactor", "replace",
                          "delete", "remove"),
    Category.FILE_SEARCH: ("search", "find", "locate", "where", "grep", "look for", "which file", "contains"),
    Category.SYSTEM: ("run", "execute", "install", "build", "test", "compile", "npm", "yarn", "pip", "command",
                      "terminal"),
    Category.GIT: ("git", "commit", "push", "pull", "branch", "merge", "diff", "status", "version control"),
    Category.WEB: ("search online", "google", "web", "internet", "fetch url", "website", "documentation", "latest",
                   "news"),
    Category.PLANNING: ("plan", "todo", "task", "organize", "steps", "breakdown"),
    Category.MEDIA: ("image", "audio", "video", "screenshot", "picture", "photo", "sound", "music", "capture"),
    Category.DOCUMENT: ("pdf", "document", "docx", "xlsx", "word", "excel", "archive", "zip"),
    Category.UTILITY: ("diagram", "chart", "export", "qr", "visualize", "convert"),
    Category.CODEBASE: ("codebase", "structure", "architecture", "analyze", "overview", "dependencies"),
    Category.EXTERNAL: ("mcp", "external", "server", "plugin"),
}
DEFAULT_CATEGORIES = (Category.FILE_READ, Category.FILE_SEARCH, Category.SYSTEM)
MULTI_STEP_MARKERS = (" and ", " then ", " after ")

MISS_BOOST = 0.5
MIN_ADAPTIVE_SCORE = 0.1
ADAPTATION_RATE = 0.1
TARGET_SUCCESS_RATE = 0.95
ADAPTIVE_WARMUP = 10
MAX_HISTORY = 1000

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class MetricsSink(Protocol):
    def record(self, name: str, offered: Sequence[str], query: str) -> None: ...


@dataclass(frozen=True)
class SelectorOptions:
    max_count: int = 15
    always_include: tuple[str, ...] = ()
    min_score: float = 0.5
    min_fill: int = 5
    adaptive: bool = True


@dataclass(frozen=True)
class QueryClassification:
    categories: tuple[Category, ...]
    confidence: float
    keywords: tuple[str, ...]
    requires_multiple: bool


@dataclass(frozen=True)
class SelectionResult:
    query: str
    selected: tuple[str, ...]
    scores: dict[str, float]
    classification: QueryClassification
    tokens_before: int
    tokens_after: int

    @property
    def tokens_saved(self) -> int:
        return self.tokens_before - self.tokens_after


@dataclass(frozen=True)
class RequestRecord:
    requested: str
    offered: tuple[str, ...]
    query: str
    was_selected: bool


@dataclass
class SelectionMetrics:
    total: int = 0
    successful: int = 0
    missed: int = 0
    missed_names: Counter[str] = field(default_factory=Counter)
    last_updated: float | None = None

    @property
    def success_rate(self) -> float:
        return self.successful / self.total if self.total else 1.0


class _LRUCache(Generic[K, V]):
    def __init__(self, max_size: int, ttl_seconds: float, clock: Callable[[], float]) -> None:
        self._entries: OrderedDict[K, tuple[float, V]] = OrderedDict()
        self._max_size = max_size
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    def get(self, key: K) -> V | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if self._clock() - stored_at > self._ttl_seconds:
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return value

    def set(self, key: K, value: V) -> None:
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self._max_size:
            self._entries.popitem(last=False)
        self._entries[key] = (self._clock(), value)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class RelevanceSelector:
    """Per-session capability selector with memoization and recall feedback."""

    def __init__(
        self,
        counter: TokenCounter,
        *,
        metrics_sink: MetricsSink | None = None,
        base_min_score: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._counter = counter
        self._metrics_sink = metrics_sink
        self._base_min_score = base_min_score
        self._adaptive_min_score = base_min_score
        self._clock = clock
        self._classifications: _LRUCache[str, QueryClassification] = _LRUCache(100, 5 * 60, clock)
        self._selections: _LRUCache[tuple, SelectionResult] = _LRUCache(50, 2 * 60, clock)
        self._misses: Counter[str] = Counter()
        self._metrics = SelectionMetrics()
        self._history: deque[RequestRecord] = deque(maxlen=MAX_HISTORY)

    @property
    def adaptive_threshold(self) -> float:
        return self._adaptive_min_score

    def invalidate(self) -> None:
        """Drop memoized classifications and selections."""

        self._classifications.clear()
        self._selections.clear()

    def classify(self, query: str) -> QueryClassification:
        cache_key = query.lower().strip()
        cached = self._classifications.get(cache_key)
        if cached is not None:
            return cached

        tokens = tokenize(query)
        query_lower = query.lower()
        category_scores: dict[Category, int] = {}
        detected: list[str] = []
        for category, keywords in CATEGORY_KEYWORDS.items():
            score = 0
            for keyword in keywords:
                if keyword in query_lower:
                    score += 2
                    detected.append(keyword)
                score += sum(1 for part in keyword.split() if part in tokens)
            if score > 0:
                category_scores[category] = score

        if not category_scores:
            result = QueryClassification(
                categories=DEFAULT_CATEGORIES,
                confidence=0.3,
                keywords=tuple(tokens),
                requires_multiple=False,
            )
        else:
            ordered = sorted(category_scores, key=lambda item: -category_scores[item])
            result = QueryClassification(
                categories=tuple(ordered[:3]),
                confidence=min(max(category_scores.values()) / 10, 1.0),
                keywords=tuple(dict.fromkeys(detected)),
                requires_multiple=len(ordered) > 1 or any(marker in query_lower for marker in MULTI_STEP_MARKERS),
            )
        self._classifications.set(cache_key, result)
        return result

    def select(
        self,
        query: str,
        registry: CapabilityRegistry,
        options: SelectorOptions | None = None,
    ) -> SelectionResult:
        options = options or SelectorOptions()
        cache_key = (query.lower().strip(), options, tuple(registry.names()))
        cached = self._selections.get(cache_key)
        if cached is not None:
            logger.debug("selector.cache_hit query={!r}", query[:40])
            return cached

        try:
            result = self._select(query, registry, options)
        except Exception as exc:
            raise SelectionError(f"selection failed: {exc!s}") from exc
        self._selections.set(cache_key, result)
        logger.info(
            "selector.select offered={}/{} tokens={}->{} categories={}",
            len(result.selected),
            len(registry),
            result.tokens_before,
            result.tokens_after,
            ",".join(result.classification.categories),
        )
        return result

    def record_request(self, name: str, selection: SelectionResult) -> None:
        """Record a capability the model requested against the selection that offered the candidates."""

        was_selected = name in selection.selected
        self._history.append(
            RequestRecord(requested=name, offered=selection.selected, query=selection.query, was_selected=was_selected)
        )
        metrics = self._metrics
        metrics.total += 1
        metrics.last_updated = self._clock()
        if was_selected:
            metrics.successful += 1
        else:
            metrics.missed += 1
            metrics.missed_names[name] += 1
            self._misses[name] += 1
            self._adaptive_min_score = max(MIN_ADAPTIVE_SCORE, self._adaptive_min_score - ADAPTATION_RATE)
            self._selections.clear()
            logger.info("selector.miss name={} misses={}", name, self._misses[name])

        if metrics.total % 10 == 0:
            self._adjust_threshold()

        if self._metrics_sink is not None:
            try:
                self._metrics_sink.record(name, selection.selected, selection.query)
            except Exception:
                logger.exception("selector.metrics_sink.error")

    def metrics(self) -> SelectionMetrics:
        m = self._metrics
        return SelectionMetrics(
            total=m.total,
            successful=m.successful,
            missed=m.missed,
            missed_names=Counter(m.missed_names),
            last_updated=m.last_updated,
        )

    def most_missed(self, limit: int = 10) -> list[tuple[str, int]]:
        return self._metrics.missed_names.most_common(limit)

    def history(self, limit: int = 50) -> list[RequestRecord]:
        return list(self._history)[-limit:]

    def reset_metrics(self) -> None:
        self._metrics = SelectionMetrics()
        self._history.clear()
        self._misses.clear()
        self._adaptive_min_score = self._base_min_score
        self._selections.clear()

    def format_metrics(self) -> str:
        m = self._metrics
        lines = [
            "Tool Selection Metrics",
            "-" * 30,
            f"Total Selections: {m.total}",
            f"Successful: {m.successful} ({m.success_rate * 100:.1f}%)",
            f"Missed: {m.missed}",
            f"Adaptive Threshold: {self._adaptive_min_score:.2f} (base: {self._base_min_score})",
        ]
        missed = self.most_missed(5)
        if missed:
            lines.extend(["", "Most Missed Tools:"])
            lines.extend(f"  - {name}: {count} times" for name, count in missed)
        return "\n".join(lines)

    def _select(self, query: str, registry: CapabilityRegistry, options: SelectorOptions) -> SelectionResult:
        classification = self.classify(query)
        query_tokens = tokenize(query)
        descriptors = registry.descriptors()
        idf = _inverse_document_frequency(descriptors)
        order = {descriptor.name: idx for idx, descriptor in enumerate(descriptors)}

        scores = {
            descriptor.name: self._score(descriptor, query_tokens, idf, classification) for descriptor in descriptors
        }
        threshold = (
            self._adaptive_min_score
            if options.adaptive and self._metrics.total > ADAPTIVE_WARMUP
            else options.min_score
        )

        selected: list[str] = [name for name in dict.fromkeys(options.always_include) if name in order]
        ranked = sorted(scores, key=lambda name: (-scores[name], order[name]))
        for name in ranked:
            if len(selected) >= options.max_count:
                break
            if name in selected or scores[name] < threshold:
                continue
            selected.append(name)

        if len(selected) < options.min_fill:
            for category in classification.categories:
                for descriptor in descriptors:
                    if len(selected) >= options.max_count:
                        break
                    if descriptor.category == category and descriptor.name not in selected:
                        selected.append(descriptor.name)

        selected.sort(key=lambda name: (-scores[name], order[name]))
        return SelectionResult(
            query=query,
            selected=tuple(selected),
            scores=scores,
            classification=classification,
            tokens_before=self._counter.count_text(registry.serialize()),
            tokens_after=self._counter.count_text(registry.serialize(selected)),
        )

    def _score(
        self,
        descriptor: CapabilityDescriptor,
        query_tokens: list[str],
        idf: dict[str, float],
        classification: QueryClassification,
    ) -> float:
        if descriptor.keywords:
            score = _tfidf(query_tokens, descriptor.keywords, idf) * (1 + descriptor.priority * 0.1)
        else:
            description_tokens = set(tokenize(f"{descriptor.name.replace('_', ' ')} {descriptor.description}"))
            score = float(sum(1 for token in query_tokens if token in description_tokens))

        if descriptor.category in classification.categories:
            rank = classification.categories.index(descriptor.category)
            score *= 1 + (3 - rank) * 0.3
        return score + self._misses[descriptor.name] * MISS_BOOST

    def _adjust_threshold(self) -> None:
        rate = self._metrics.success_rate
        if rate < TARGET_SUCCESS_RATE:
            self._adaptive_min_score = max(MIN_ADAPTIVE_SCORE, self._adaptive_min_score - ADAPTATION_RATE)
        elif rate > 0.99 and self._adaptive_min_score < self._base_min_score:
            self._adaptive_min_score = min(self._base_min_score, self._adaptive_min_score + ADAPTATION_RATE * 0.5)


def _inverse_document_frequency(descriptors: Sequence[CapabilityDescriptor]) -> dict[str, float]:
    frequency: Counter[str] = Counter()
    for descriptor in descriptors:
        frequency.update(set(descriptor.keywords))
    total = max(len(descriptors), 1)
    return {keyword: math.log(total / (df + 1)) + 1 for keyword, df in frequency.items()}


def _tfidf(query_tokens: list[str], keywords: Sequence[str], idf: dict[str, float]) -> float:
    keyword_set = set(keywords)
    score = 0.0
    for token, tf in Counter(query_tokens).items():
        if token in keyword_set:
            score += tf * idf.get(token, 1.0) * 2
        for keyword in keyword_set:
            if keyword in token or token in keyword:
                score += tf * idf.get(keyword, 1.0) * 0.5
    return score
