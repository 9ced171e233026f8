from typing import Iterator, Sequence

from chairbook.services.conflicts import BusyInterval, first_overlap
from chairbook.services.schedule import DayWindow

SLOT_STEP_MINUTES = 30


def iter_free_slots(
    window: DayWindow,
    duration: int,
    busy: Sequence[BusyInterval],
    step: int = SLOT_STEP_MINUTES,
    not_before: int = 0,
) -> Iterator[int]:
    """Yield start minutes of free ``duration``-long slots inside ``window``.

    Candidates sit on the ``step`` grid anchored at the window opening. The
    generator holds no state between calls; callers pass freshly read busy
    intervals every time.
    """
    if not window.is_available or duration <= 0 or step <= 0:
        return
    start = window.window_start
    while start + duration <= window.window_end:
        if start >= not_before and first_overlap(busy, start, duration) is None:
            yield start
        start += step
