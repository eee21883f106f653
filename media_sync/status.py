"""Per-entity subtask status packed into a single integer.

Every item and page tracks five subtasks. Each subtask value takes three
bits of the stored integer: subtask ``i`` occupies bits ``[3i, 3i+3)``.

* ``0`` means not attempted yet
* ``1..6`` counts failed attempts
* ``7`` (``STATUS_OK``) means done

The value is the retry counter; there is no separate attempt field.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Sequence

SUBTASK_COUNT = 5
BITS_PER_SUBTASK = 3
SUBTASK_MASK = 0b111

STATUS_NOT_STARTED = 0
STATUS_OK = 7
MAX_RETRY = 6

# Item subtasks
ITEM_COVER = 0
ITEM_SIDECAR = 1
ITEM_AVATAR = 2
ITEM_AVATAR_SIDECAR = 3
ITEM_PAGES = 4

# Page subtasks
PAGE_COVER = 0
PAGE_MEDIA = 1
PAGE_SIDECAR = 2
PAGE_COMMENTS = 3
PAGE_SUBTITLES = 4

ITEM_SUBTASK_NAMES = ("cover", "sidecar", "avatar", "avatar sidecar", "pages")
PAGE_SUBTASK_NAMES = ("cover", "media", "sidecar", "comments", "subtitles")


class Outcome(Enum):
    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    IGNORED = "ignored"
    FAILED = "failed"


@dataclass(frozen=True)
class SubtaskResult:
    """The result of one subtask attempt.

    ``fixed_status`` overrides the counter with an explicit value; the item's
    page-dispatch subtask uses it to store the minimum of its pages.
    """
    outcome: Outcome
    error: Optional[BaseException] = None
    fixed_status: Optional[int] = None

    @classmethod
    def skipped(cls) -> "SubtaskResult":
        return cls(Outcome.SKIPPED)

    @classmethod
    def succeeded(cls) -> "SubtaskResult":
        return cls(Outcome.SUCCEEDED)

    @classmethod
    def ignored(cls, error: BaseException) -> "SubtaskResult":
        return cls(Outcome.IGNORED, error)

    @classmethod
    def failed(cls, error: BaseException) -> "SubtaskResult":
        return cls(Outcome.FAILED, error)

    @classmethod
    def fixed(cls, status: int, error: Optional[BaseException] = None) -> "SubtaskResult":
        if not 0 <= status <= STATUS_OK:
            raise ValueError(f"status value out of range: {status}")
        return cls(Outcome.FAILED, error, fixed_status=status)

    @property
    def is_failure(self) -> bool:
        return self.outcome is Outcome.FAILED and self.fixed_status != STATUS_OK


class Status:
    """Five 3-bit subtask values with retry-aware update rules."""

    __slots__ = ("_values",)

    def __init__(self, values: Optional[Sequence[int]] = None) -> None:
        if values is None:
            values = [STATUS_NOT_STARTED] * SUBTASK_COUNT
        if len(values) != SUBTASK_COUNT:
            raise ValueError(f"expected {SUBTASK_COUNT} subtask values, got {len(values)}")
        self._values: List[int] = []
        for value in values:
            self._values.append(_check_value(value))

    @classmethod
    def from_int(cls, raw: int) -> "Status":
        return cls([(raw >> (BITS_PER_SUBTASK * i)) & SUBTASK_MASK for i in range(SUBTASK_COUNT)])

    def to_int(self) -> int:
        raw = 0
        for i, value in enumerate(self._values):
            raw |= value << (BITS_PER_SUBTASK * i)
        return raw

    def __int__(self) -> int:
        return self.to_int()

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Status):
            return self._values == other._values
        return NotImplemented

    def __repr__(self) -> str:
        return f"Status({self._values!r})"

    def values(self) -> List[int]:
        return list(self._values)

    def get(self, index: int) -> int:
        return self._values[_check_index(index)]

    def set(self, index: int, value: int) -> None:
        self._values[_check_index(index)] = _check_value(value)

    def should_run(self) -> List[bool]:
        """Eligibility per subtask: not done and retries not exhausted."""
        return [value < MAX_RETRY for value in self._values]

    def any_should_run(self) -> bool:
        return any(self.should_run())

    def is_completed(self) -> bool:
        return all(value == STATUS_OK for value in self._values)

    def has_failures(self) -> bool:
        return any(1 <= value <= MAX_RETRY for value in self._values)

    def reset_failed(self) -> bool:
        changed = False
        for i, value in enumerate(self._values):
            if 1 <= value <= MAX_RETRY:
                self._values[i] = STATUS_NOT_STARTED
                changed = True
        return changed

    def reset_all(self) -> bool:
        changed = any(value != STATUS_NOT_STARTED for value in self._values)
        self._values = [STATUS_NOT_STARTED] * SUBTASK_COUNT
        return changed

    def update(self, results: Iterable[SubtaskResult]) -> None:
        results = list(results)
        if len(results) != SUBTASK_COUNT:
            raise ValueError(f"expected {SUBTASK_COUNT} results, got {len(results)}")
        for i, result in enumerate(results):
            self._apply(i, result)

    def _apply(self, index: int, result: SubtaskResult) -> None:
        if result.fixed_status is not None:
            self._values[index] = result.fixed_status
            return
        current = self._values[index]
        # exhausted or done values are never touched by a plain result
        if current >= MAX_RETRY:
            return
        if result.outcome in (Outcome.SUCCEEDED, Outcome.SKIPPED, Outcome.IGNORED):
            self._values[index] = STATUS_OK
        elif result.outcome is Outcome.FAILED:
            self._values[index] = min(current + 1, MAX_RETRY)


def _check_index(index: int) -> int:
    if not 0 <= index < SUBTASK_COUNT:
        raise IndexError(f"subtask index out of range: {index}")
    return index


def _check_value(value: int) -> int:
    if not 0 <= value <= STATUS_OK:
        raise ValueError(f"subtask value out of range: {value}")
    return int(value)


def min_page_status(page_statuses: Iterable[int]) -> int:
    """Smallest subtask value across all pages; ``STATUS_OK`` when empty."""
    lowest = STATUS_OK
    for raw in page_statuses:
        values = Status.from_int(raw).values()
        lowest = min(lowest, min(values))
    return lowest
