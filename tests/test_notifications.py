from __future__ import annotations

from titlesearch.notifications import Notifier


def test_notifications_are_kept_until_dismissed() -> None:
    notifier = Notifier()
    first = notifier.success("Project 'Baner Plot' created.")
    second = notifier.error("Monthly STR generation limit (20) exceeded.")

    assert [item.message for item in notifier.active()] == [first.message, second.message]
    assert notifier.latest() is second
    assert second.to_dict()["type"] == "error"

    assert notifier.dismiss(first.id)
    assert not notifier.dismiss(first.id)
    assert notifier.active() == [second]


def test_oldest_notifications_are_dropped_past_the_cap() -> None:
    notifier = Notifier(max_items=2)
    for index in range(4):
        notifier.info(f"message {index}")

    assert [item.message for item in notifier.active()] == ["message 2", "message 3"]
    notifier.clear()
    assert notifier.latest() is None
