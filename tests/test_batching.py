# ==============================================================================
# BATCH SUBMISSION TESTS
# ==============================================================================

import pytest

from polystore.core.exceptions import DatabaseError, DuplicateKeyError
from polystore.database.batching import SubmitResult, submit_with_retry
from polystore.utils.helpers import chunked


class RecordingSubmitter:
    """Fake native batch call that leaves chosen items unprocessed."""

    def __init__(self, flaky=(), failing=(), flaky_rounds=1):
        self.flaky = set(flaky)
        self.failing = set(failing)
        self.flaky_rounds = flaky_rounds
        self.batches = []
        self.seen = {}

    async def __call__(self, batch):
        self.batches.append(list(batch))
        result = SubmitResult()
        for position, item in enumerate(batch):
            self.seen[item] = self.seen.get(item, 0) + 1
            if item in self.failing:
                result.failed[position] = DuplicateKeyError(f"duplicate {item}")
            elif item in self.flaky and self.seen[item] <= self.flaky_rounds:
                result.unprocessed.append(position)
        return result


@pytest.mark.asyncio
class TestSubmitWithRetry:
    """Tests for chunked submission with resubmission of unprocessed items."""

    async def test_items_are_chunked(self):
        submit = RecordingSubmitter()
        outcome = await submit_with_retry(list("abcde"), submit, 2, 3, 0)

        assert submit.batches == [["a", "b"], ["c", "d"], ["e"]]
        assert outcome.processed == [0, 1, 2, 3, 4]
        assert outcome.errors == []

    async def test_unprocessed_items_are_resubmitted(self):
        submit = RecordingSubmitter(flaky={"b", "d"})
        outcome = await submit_with_retry(list("abcd"), submit, 10, 3, 0)

        assert submit.batches == [["a", "b", "c", "d"], ["b", "d"]]
        assert outcome.processed == [0, 1, 2, 3]

    async def test_permanent_failures_are_not_retried(self):
        submit = RecordingSubmitter(failing={"b"})
        outcome = await submit_with_retry(list("abc"), submit, 10, 3, 0)

        assert submit.seen["b"] == 1
        assert outcome.processed == [0, 2]
        assert [e.index for e in outcome.errors] == [1]
        assert isinstance(outcome.errors[0].error, DuplicateKeyError)

    async def test_exhausted_items_become_errors(self):
        submit = RecordingSubmitter(flaky={"a"}, flaky_rounds=10)
        outcome = await submit_with_retry(["a", "b"], submit, 10, 2, 0, backend="redis")

        assert submit.seen["a"] == 2
        assert outcome.processed == [1]
        assert outcome.errors[0].index == 0
        assert isinstance(outcome.errors[0].error, DatabaseError)
        assert outcome.errors[0].error.operation == "bulk_create"

    async def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            await submit_with_retry(["a"], RecordingSubmitter(), 1, 0, 0)


def test_chunked_preserves_order():
    assert [list(c) for c in chunked(range(5), 2)] == [[0, 1], [2, 3], [4]]
