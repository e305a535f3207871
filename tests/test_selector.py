from __future__ import annotations

from dataclasses import dataclass, field

import pytest
from conftest import WordCounter, make_descriptor

from tandem.core.selector import RelevanceSelector, SelectorOptions
from tandem.tools.registry import CapabilityRegistry, Category


@dataclass
class _Clock:
    now: float = 0.0

    def __call__(self) -> float:
        return self.now


@dataclass
class _Sink:
    records: list[tuple[str, tuple[str, ...], str]] = field(default_factory=list)

    def record(self, name, offered, query) -> None:
        self.records.append((name, tuple(offered), query))


def _wide_registry(size: int = 30) -> CapabilityRegistry:
    descriptors = [
        make_descriptor("view_file", category=Category.FILE_READ, keywords=("view", "read", "file"), priority=10),
        make_descriptor("search", category=Category.FILE_SEARCH, keywords=("search", "find"), priority=9),
        make_descriptor("git_diff", category=Category.GIT, keywords=("git", "diff", "changes"), priority=6),
    ]
    descriptors += [
        make_descriptor(f"extra_{idx}", category=Category.MEDIA, keywords=(f"thing{idx}",), priority=1)
        for idx in range(size - len(descriptors))
    ]
    return CapabilityRegistry(descriptors)


def test_classify_ranks_categories() -> None:
    selector = RelevanceSelector(WordCounter())
    result = selector.classify("find where the config is and then show the git diff")

    assert Category.FILE_SEARCH in result.categories
    assert Category.GIT in result.categories
    assert len(result.categories) <= 3
    assert result.requires_multiple
    assert 0 < result.confidence <= 1


def test_classify_defaults_when_nothing_matches() -> None:
    result = RelevanceSelector(WordCounter()).classify("zzz qqq")
    assert result.categories == (Category.FILE_READ, Category.FILE_SEARCH, Category.SYSTEM)
    assert result.confidence == pytest.approx(0.3)


def test_select_is_bounded_and_includes_always_include() -> None:
    selector = RelevanceSelector(WordCounter())
    registry = _wide_registry()
    options = SelectorOptions(max_count=5, always_include=("extra_20",))

    result = selector.select("show me the git diff", registry, options)

    assert len(result.selected) <= 5
    assert "extra_20" in result.selected
    assert "git_diff" in result.selected
    assert result.selected[0] == "git_diff"
    assert result.tokens_after <= result.tokens_before


def test_select_empty_query_returns_always_include() -> None:
    selector = RelevanceSelector(WordCounter())
    result = selector.select("", _wide_registry(), SelectorOptions(always_include=("search", "missing")))
    assert "search" in result.selected
    assert "missing" not in result.selected


def test_select_fills_from_classified_categories() -> None:
    selector = RelevanceSelector(WordCounter())
    result = selector.select("qqq", _wide_registry(), SelectorOptions(max_count=10, min_fill=5, min_score=100))
    assert {"view_file", "search"} <= set(result.selected)


def test_select_is_memoized_until_ttl_expires() -> None:
    clock = _Clock()
    selector = RelevanceSelector(WordCounter(), clock=clock)
    registry = _wide_registry()

    first = selector.select("read the file", registry)
    assert selector.select("  READ the file ", registry) is first

    clock.now += 121
    assert selector.select("read the file", registry) is not first


def test_registry_change_invalidates_memoized_selection() -> None:
    selector = RelevanceSelector(WordCounter())
    registry = _wide_registry()
    first = selector.select("read the file", registry)

    registry.register(make_descriptor("read_pdf", category=Category.DOCUMENT, keywords=("read", "pdf")))
    assert selector.select("read the file", registry) is not first


def test_missed_capability_is_boosted_next_time() -> None:
    sink = _Sink()
    selector = RelevanceSelector(WordCounter(), metrics_sink=sink)
    registry = _wide_registry()
    options = SelectorOptions(max_count=3, min_fill=0)

    before = selector.select("thing7 please", registry, options)
    selector.record_request("extra_12", before)
    after = selector.select("thing7 please", registry, options)

    assert after.scores["extra_12"] == pytest.approx(before.scores["extra_12"] + 0.5)
    assert selector.adaptive_threshold == pytest.approx(0.4)
    assert sink.records == [("extra_12", before.selected, "thing7 please")]

    metrics = selector.metrics()
    assert metrics.total == 1
    assert metrics.missed == 1
    assert selector.most_missed() == [("extra_12", 1)]


def test_adaptive_threshold_has_floor() -> None:
    selector = RelevanceSelector(WordCounter())
    selection = selector.select("read", _wide_registry())
    for _ in range(20):
        selector.record_request("not_offered", selection)
    assert selector.adaptive_threshold == pytest.approx(0.1)
    assert "Missed: 20" in selector.format_metrics()


def test_sink_errors_do_not_propagate() -> None:
    class _Broken:
        def record(self, name, offered, query) -> None:
            raise RuntimeError("boom")

    selector = RelevanceSelector(WordCounter(), metrics_sink=_Broken())
    selection = selector.select("read", _wide_registry())
    selector.record_request("view_file", selection)
    assert selector.metrics().successful == 1
