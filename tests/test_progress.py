import allure

from sheet_tasks.engine.progress import ProgressTracker

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Progress Reporting"),
]


class _Sink:
    def __init__(self) -> None:
        self.writes: list[tuple[str, int]] = []

    def update_progress(self, *, task_id: str, percentage: int) -> bool:
        self.writes.append((task_id, percentage))
        return True


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_progress_is_written_every_n_rows() -> None:
    sink = _Sink()
    tracker = ProgressTracker(sink, every_rows=10, interval_seconds=1_000, clock=_Clock())

    for done in range(1, 26):
        tracker.report("task-1", done, 25)

    assert sink.writes == [("task-1", 40), ("task-1", 80)]
    tracker.flush("task-1")
    assert sink.writes[-1] == ("task-1", 100)


def test_progress_is_written_after_interval() -> None:
    sink = _Sink()
    clock = _Clock()
    tracker = ProgressTracker(sink, every_rows=100, interval_seconds=5.0, clock=clock)

    tracker.report("task-1", 1, 200)
    clock.now = 4.9
    tracker.report("task-1", 2, 200)
    assert sink.writes == []

    clock.now = 5.0
    tracker.report("task-1", 3, 200)
    assert sink.writes == [("task-1", 1)]


def test_flush_without_pending_value_is_a_noop() -> None:
    sink = _Sink()
    tracker = ProgressTracker(sink, every_rows=1, clock=_Clock())

    tracker.report("task-1", 1, 2)
    tracker.flush("task-1")

    assert sink.writes == [("task-1", 50)]
    assert tracker.last_written("task-1") == 50


def test_progress_never_sends_a_lower_value() -> None:
    sink = _Sink()
    tracker = ProgressTracker(sink, every_rows=1, clock=_Clock())

    tracker.report("task-1", 3, 4)
    tracker.report("task-1", 2, 4)

    assert sink.writes == [("task-1", 75)]


def test_first_row_triggers_interval_write_when_clock_started_at_claim() -> None:
    sink = _Sink()
    clock = _Clock()
    tracker = ProgressTracker(sink, every_rows=100, interval_seconds=5.0, clock=clock)

    tracker.start("task-1")
    clock.now = 120.0
    tracker.report("task-1", 1, 50)

    assert sink.writes == [("task-1", 2)]


def test_unchanged_value_is_rewritten_when_due() -> None:
    sink = _Sink()
    tracker = ProgressTracker(sink, every_rows=1, clock=_Clock())

    tracker.report("task-1", 1, 300)
    tracker.report("task-1", 2, 300)

    assert sink.writes == [("task-1", 0), ("task-1", 0)]
