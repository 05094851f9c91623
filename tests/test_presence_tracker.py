from __future__ import annotations

from roomsync.models.models import InboundEvent
from roomsync.services.presence_tracker import PresenceTracker


def event(event_type: str, **fields) -> InboundEvent:
    return InboundEvent.model_validate({"type": event_type, **fields})


class TestPresenceTracker:

    def test_starts_at_zero(self) -> None:
        assert PresenceTracker().count == 0

    def test_last_count_wins(self) -> None:
        tracker = PresenceTracker()

        for count in (3, 7, 2, 4):
            tracker.apply(event("user_count_update", count=count))

        assert tracker.count == 4

    def test_join_and_leave_never_change_the_count(self) -> None:
        tracker = PresenceTracker()
        tracker.apply(event("user_count_update", count=5))

        assert tracker.apply(event("user_joined", userId="u9", name="Zed")) is False
        tracker.apply(event("user_joined"))
        tracker.apply(event("user_left", userId="u2"))

        assert tracker.count == 5

    def test_count_after_interleaving_is_last_explicit_value(self) -> None:
        tracker = PresenceTracker()
        stream = [
            event("user_joined", userId="a"),
            event("user_count_update", count=2),
            event("user_left", userId="a"),
            event("user_joined", userId="b"),
            event("user_count_update", count=6),
            event("user_joined", userId="c"),
        ]

        for item in stream:
            tracker.apply(item)

        assert tracker.count == 6

    def test_apply_reports_changes(self) -> None:
        tracker = PresenceTracker()

        assert tracker.apply(event("user_count_update", count=1)) is True
        assert tracker.apply(event("user_count_update", count=1)) is False

    def test_invalid_counts_are_ignored(self) -> None:
        tracker = PresenceTracker()
        tracker.apply(event("user_count_update", count=3))

        tracker.apply(event("user_count_update"))
        tracker.apply(event("user_count_update", count=-1))

        assert tracker.count == 3

    def test_activity_is_recorded_and_bounded(self) -> None:
        tracker = PresenceTracker(activity_limit=2)

        tracker.apply(event("user_joined", userId="a", name="A"))
        tracker.apply(event("user_joined", userId="b", name="B"))
        tracker.apply(event("user_left", userId="a", name="A"))

        kinds = [(a.kind, a.user_id) for a in tracker.activity()]
        assert kinds == [("user_joined", "b"), ("user_left", "a")]

    def test_reset(self) -> None:
        tracker = PresenceTracker()
        tracker.apply(event("user_count_update", count=3))
        tracker.apply(event("user_joined", userId="a"))

        tracker.reset()

        assert tracker.count == 0
        assert tracker.activity() == []
