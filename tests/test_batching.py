import logging

from conftest import make_hunk

from prreview.batching import (
    PlanningOptions,
    create_plan,
    estimate_hunk_tokens,
    file_category,
    plan_summary,
    reduce_batch,
    simplify_batch,
    split_batch,
)
from prreview.models import Batch, ChangeType


def _hunks(n, path="src/mod.py", size=40):
    return [
        make_hunk(file_path=path, content="+" + "x" * size, new_line_start=i * 10 + 1)
        for i in range(n)
    ]


def _batched_hunks(plan):
    return [h for b in plan.batches for h in b.hunks]


class TestEstimates:
    def test_estimate_hunk_tokens(self):
        hunk = make_hunk(file_path="abcd.py", content="+" + "y" * 39)

        # ceil(7/4) + ceil(40/4) + 20
        assert estimate_hunk_tokens(hunk) == 2 + 10 + 20

    def test_file_category(self):
        assert file_category("src/app.tsx") == "typescript"
        assert file_category("tests/test_app.py") == "tests"
        assert file_category("docker-compose.yml") == "config"
        assert file_category("README") == "other"


class TestCreatePlan:
    def test_empty_input_yields_empty_single_plan(self):
        plan = create_plan([])

        assert plan.strategy == "single"
        assert plan.batches == []
        assert plan_summary(plan) == "No changes to review"

    def test_small_review_is_one_single_batch(self):
        hunks = _hunks(3)

        plan = create_plan(hunks)

        assert plan.strategy == "single"
        assert len(plan.batches) == 1
        assert plan.batches[0].id == "single"
        assert list(plan.batches[0].hunks) == hunks
        assert plan.total_hunks == 3
        assert plan.total_files == 1

    def test_every_hunk_lands_in_exactly_one_batch(self):
        hunks = _hunks(12, "src/a.py") + _hunks(7, "lib/b.rb")
        options = PlanningOptions(max_tokens_per_batch=120)

        plan = create_plan(hunks, options)

        assert plan.strategy == "mixed"
        batched = _batched_hunks(plan)
        assert len(batched) == len(hunks)
        assert sorted(map(id, batched)) == sorted(map(id, hunks))
        assert [b.id for b in plan.batches] == [
            f"batch-{i + 1}" for i in range(len(plan.batches))
        ]

    def test_token_budget_respected_when_hunks_fit(self):
        hunks = _hunks(10)
        per_hunk = estimate_hunk_tokens(hunks[0])
        options = PlanningOptions(max_tokens_per_batch=per_hunk * 3)

        plan = create_plan(hunks, options)

        assert all(b.estimated_tokens <= per_hunk * 3 for b in plan.batches)
        assert [len(b.hunks) for b in plan.batches] == [3, 3, 3, 1]

    def test_oversized_hunk_gets_its_own_batch(self):
        big = make_hunk(file_path="src/big.py", content="+" + "z" * 4000)
        hunks = _hunks(2) + [big] + _hunks(1, "src/other.py")
        options = PlanningOptions(max_tokens_per_batch=200)

        plan = create_plan(hunks, options)

        big_batch = next(b for b in plan.batches if big in b.hunks)
        assert big_batch.hunks == (big,)
        assert big_batch.estimated_tokens > 200

    def test_file_and_hunk_limits(self):
        hunks = [make_hunk(file_path=f"src/f{i}.py") for i in range(5)]
        options = PlanningOptions(
            max_tokens_per_batch=estimate_hunk_tokens(hunks[0]) * 4,
            max_files_per_batch=2,
        )

        plan = create_plan(hunks, options)

        assert all(len(b.files) <= 2 for b in plan.batches)

        options = PlanningOptions(
            max_tokens_per_batch=estimate_hunk_tokens(hunks[0]) * 4,
            max_hunks_per_batch=1,
        )
        assert all(len(b.hunks) == 1 for b in create_plan(hunks, options).batches)

    def test_excluded_types_are_dropped(self):
        hunks = _hunks(2, "yarn.lock") + _hunks(1, "src/app.py") + _hunks(1, "debug.LOG")

        plan = create_plan(hunks)

        assert [h.file_path for h in _batched_hunks(plan)] == ["src/app.py"]
        assert plan.total_hunks == 1

    def test_exclusion_accepts_types_without_dot(self):
        hunks = _hunks(1, "a.md") + _hunks(1, "b.py")

        plan = create_plan(hunks, PlanningOptions(exclude_file_types=["md"]))

        assert [h.file_path for h in _batched_hunks(plan)] == ["b.py"]

    def test_prioritized_files_come_first_and_are_high_priority(self):
        hunks = _hunks(4, "docs/guide.md") + _hunks(4, "src/app.ts")
        options = PlanningOptions(max_tokens_per_batch=150)

        plan = create_plan(hunks, options)

        order = [h.file_path for h in _batched_hunks(plan)]
        assert order == ["src/app.ts"] * 4 + ["docs/guide.md"] * 4
        assert plan.batches[0].priority == "high"
        assert plan.batches[-1].priority == "medium"

    def test_test_only_batches_are_low_priority(self):
        plan = create_plan(_hunks(2, "tests/test_app.rb"))

        assert plan.batches[0].priority == "low"

    def test_to_dict_lists_batches(self):
        plan = create_plan(_hunks(2))

        data = plan.to_dict()

        assert data["strategy"] == "single"
        assert data["batches"][0]["files"] == ["src/mod.py"]
        assert data["batches"][0]["hunks"] == 2


class TestStrategies:
    def _mixed_categories(self):
        return (
            _hunks(1, "src/a.py")
            + _hunks(1, "docs/a.md")
            + _hunks(1, "src/b.py")
            + _hunks(1, "docs/b.md")
            + _hunks(1, "src/c.ts")
        )

    def test_file_based_groups_by_category(self):
        hunks = self._mixed_categories()
        budget = max(estimate_hunk_tokens(h) for h in hunks) * 2
        options = PlanningOptions(max_tokens_per_batch=budget, batch_strategy="file-based")

        plan = create_plan(hunks, options)

        assert plan.strategy == "file-based"
        categories = [{file_category(h.file_path) for h in b.hunks} for b in plan.batches]
        assert all(len(c) == 1 for c in categories)
        assert [c.pop() for c in categories] == ["python", "documentation", "typescript"]
        assert [b.id for b in plan.batches] == [
            f"batch-{i + 1}" for i in range(len(plan.batches))
        ]
        assert sorted(h.file_path for h in _batched_hunks(plan)) == sorted(
            h.file_path for h in hunks
        )

    def test_file_based_splits_large_categories(self):
        hunks = _hunks(5, "src/mod.py") + _hunks(1, "README.md")
        budget = estimate_hunk_tokens(hunks[0]) * 2
        options = PlanningOptions(max_tokens_per_batch=budget, batch_strategy="file-based")

        plan = create_plan(hunks, options)

        assert [len(b.hunks) for b in plan.batches] == [2, 2, 1, 1]
        assert plan.batches[-1].files == ["README.md"]
        assert plan.total_hunks == 6

    def test_size_based_sends_largest_hunks_first(self):
        sizes = [10, 80, 40, 120, 20]
        hunks = [_hunks(1, f"src/m{i}.py", size=s)[0] for i, s in enumerate(sizes)]
        budget = max(estimate_hunk_tokens(h) for h in hunks) + 5
        options = PlanningOptions(max_tokens_per_batch=budget, batch_strategy="size-based")

        plan = create_plan(hunks, options)

        assert plan.strategy == "size-based"
        order = [h.file_path for h in _batched_hunks(plan)]
        assert order == ["src/m3.py", "src/m1.py", "src/m2.py", "src/m4.py", "src/m0.py"]
        assert plan.batches[0].id == "batch-1"
        assert plan.batches[0].hunks[0].file_path == "src/m3.py"

    def test_unknown_strategy_falls_back_to_mixed(self, caplog):
        hunks = _hunks(6)
        options = PlanningOptions(
            max_tokens_per_batch=estimate_hunk_tokens(hunks[0]) * 2,
            batch_strategy="by-author",
        )

        with caplog.at_level(logging.WARNING, logger="prreview.batching"):
            plan = create_plan(hunks, options)

        assert plan.strategy == "mixed"
        assert len(_batched_hunks(plan)) == 6
        assert "Unknown batch strategy 'by-author'" in caplog.text

    def test_small_review_stays_single_for_any_strategy(self):
        for strategy in ("file-based", "size-based"):
            plan = create_plan(_hunks(2), PlanningOptions(batch_strategy=strategy))

            assert plan.strategy == "single"
            assert [b.id for b in plan.batches] == ["single"]


class TestDerivedBatches:
    def _batch(self, hunks):
        return Batch(id="batch-1", hunks=tuple(hunks), estimated_tokens=1000)

    def test_reduce_keeps_leading_seventy_percent(self):
        batch = self._batch(_hunks(10))

        reduced = reduce_batch(batch)

        assert reduced.hunks == batch.hunks[:7]
        assert reduced.estimated_tokens == 700
        assert reduced.id == batch.id

    def test_reduce_keeps_at_least_one_hunk(self):
        batch = self._batch(_hunks(1))

        assert len(reduce_batch(batch).hunks) == 1

    def test_simplify_keeps_added_and_edited_hunks(self):
        deleted = make_hunk(content="-gone", change_type=ChangeType.DELETE)
        edited = make_hunk(content="-a\n+b", change_type=ChangeType.EDIT)
        added = make_hunk(content="+c", change_type=ChangeType.ADD)
        batch = self._batch([deleted, edited, added, deleted])

        simplified = simplify_batch(batch)

        assert simplified.hunks == (edited, added)
        assert simplified.estimated_tokens == 500

    def test_simplify_falls_back_to_first_hunk(self):
        deleted = make_hunk(content="-gone", change_type=ChangeType.DELETE)
        batch = self._batch([deleted, deleted])

        assert simplify_batch(batch).hunks == (deleted,)

    def test_split_covers_every_hunk_once(self):
        batch = self._batch(_hunks(5))

        parts = split_batch(batch)

        assert [p.id for p in parts] == ["batch-1_sub_1", "batch-1_sub_2"]
        assert [len(p.hunks) for p in parts] == [2, 3]
        assert parts[0].hunks + parts[1].hunks == batch.hunks
        assert all(p.estimated_tokens == 500 for p in parts)

    def test_split_single_hunk_batch(self):
        batch = self._batch(_hunks(1))

        parts = split_batch(batch)

        assert len(parts) == 1
        assert parts[0].hunks == batch.hunks
