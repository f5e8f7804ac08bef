import numpy as np
import pytest
from hypothesis import given, strategies as st

from conftest import FixedSampler, make_document
from discovery.errors import SelectionError
from discovery.mab import BetaSampler, select


class FakeArm:
    def __init__(self, name, size, alpha=1.0, beta=1.0):
        self.alpha = alpha
        self.beta = beta
        self.docs = [make_document(i, stack_id=name) for i in range(size)]

    def __len__(self):
        return len(self.docs)

    def pop_best(self):
        return self.docs.pop(0)


class SequenceSampler:
    def __init__(self, values):
        self.values = list(values)

    def sample(self, alpha, beta):
        return self.values.pop(0)


class BrokenSampler:
    def sample(self, alpha, beta):
        raise RuntimeError("rng exploded")


def test_select_without_stacks_fails():
    with pytest.raises(SelectionError):
        select(3, [], FixedSampler())


def test_select_zero_documents_is_empty():
    arm = FakeArm("a", 3)
    assert select(0, [arm], FixedSampler()) == []
    assert len(arm) == 3


@given(
    sizes=st.lists(st.integers(0, 6), min_size=1, max_size=5),
    max_documents=st.integers(0, 30),
)
def test_select_returns_bounded_batch(sizes, max_documents):
    arms = [FakeArm(str(i), size) for i, size in enumerate(sizes)]
    rng = np.random.default_rng(0)
    selected = select(max_documents, arms, BetaSampler(rng))
    assert len(selected) == min(max_documents, sum(sizes))
    remaining = sum(len(a) for a in arms)
    assert remaining == sum(sizes) - len(selected)


def test_ties_go_to_first_arm():
    first, second = FakeArm("first", 2), FakeArm("second", 2)
    selected = select(3, [first, second], FixedSampler(0.5))
    assert [d.stack_id for d in selected] == ["first", "first", "second"]


def test_highest_sample_wins_and_only_drawn_arm_is_resampled():
    a, b = FakeArm("a", 3), FakeArm("b", 3)
    # a=0.2, b=0.9 at first; b is drawn and resampled to 0.1, then a twice
    sampler = SequenceSampler([0.2, 0.9, 0.1, 0.5, 0.3])
    selected = select(3, [a, b], sampler)
    assert [d.stack_id for d in selected] == ["b", "a", "a"]


def test_empty_arms_are_never_drawn():
    empty, full = FakeArm("empty", 0), FakeArm("full", 2)
    selected = select(5, [empty, full], FixedSampler(1.0))
    assert [d.stack_id for d in selected] == ["full", "full"]


def test_sampler_failure_is_a_selection_error():
    with pytest.raises(SelectionError):
        select(1, [FakeArm("a", 1)], BrokenSampler())


class FailingResampler:
    def __init__(self, value):
        self.values = [value]

    def sample(self, alpha, beta):
        if not self.values:
            raise RuntimeError("rng exploded")
        return self.values.pop(0)


@pytest.mark.parametrize("bad_second_value", [None, float("inf")])
def test_failed_resample_leaves_stacks_untouched(bad_second_value):
    arm = FakeArm("a", 12)
    sampler = FailingResampler(0.5)
    if bad_second_value is not None:
        sampler.values.append(bad_second_value)
    with pytest.raises(SelectionError):
        select(3, [arm], sampler)
    assert len(arm) == 12
    assert arm.docs[0].id == "doc-0"


def test_non_finite_sample_is_a_selection_error():
    with pytest.raises(SelectionError):
        select(1, [FakeArm("a", 1)], FixedSampler(float("nan")))


def test_beta_sampler_is_reproducible():
    first = BetaSampler(np.random.default_rng(42))
    second = BetaSampler(np.random.default_rng(42))
    values = [first.sample(2.0, 5.0) for _ in range(5)]
    assert values == [second.sample(2.0, 5.0) for _ in range(5)]
    assert all(0.0 <= v <= 1.0 for v in values)
