from __future__ import annotations

import random

from cloudagents.merge import MessageLog, merge_messages
from cloudagents.testing import assistant_message, user_message


def _ids(messages) -> list[str]:
    return [message.id for message in messages]


def test_merge_appends_only_unseen_in_fetched_order() -> None:
    existing = [user_message("u1", "hi"), assistant_message("a1", "hello")]
    fetched = [
        user_message("u1", "hi"),
        assistant_message("a2", "working"),
        assistant_message("a1", "hello"),
        assistant_message("a3", "done"),
    ]

    merged = merge_messages(existing, fetched)

    assert _ids(merged) == ["u1", "a1", "a2", "a3"]
    assert merged[0] is existing[0]
    assert _ids(existing) == ["u1", "a1"]


def test_merge_returns_same_object_when_nothing_new() -> None:
    existing = [user_message("u1", "hi")]
    assert merge_messages(existing, [user_message("u1", "hi")]) is existing
    assert merge_messages(existing, []) is existing


def test_duplicates_within_a_batch_collapse_to_first() -> None:
    merged = merge_messages([], [assistant_message("a1", "first"), assistant_message("a1", "second")])
    assert len(merged) == 1
    assert merged[0].text == "first"


def test_earlier_entries_survive_a_shorter_batch() -> None:
    existing = [user_message("u1", "hi"), assistant_message("a1", "one"), assistant_message("a2", "two")]
    merged = merge_messages(existing, [assistant_message("a2", "two")])
    assert merged is existing


def test_log_length_is_non_decreasing_and_order_is_stable() -> None:
    rng = random.Random(3)
    pool = [assistant_message(f"m{i}", f"text {i}") for i in range(30)]
    log = MessageLog()
    previous: list[str] = []

    for _ in range(50):
        batch = rng.sample(pool, rng.randint(0, 10))
        appended = log.merge(batch)
        current = _ids(log.messages)
        assert len(current) >= len(previous)
        assert current[: len(previous)] == previous
        assert _ids(appended) == current[len(previous) :]
        assert len(set(current)) == len(current)
        previous = current


def test_message_log_membership_and_snapshot() -> None:
    log = MessageLog([user_message("u1", "hi")])
    assert "u1" in log
    assert "a1" not in log
    assert log.merge([user_message("u1", "hi")]) == []

    snapshot = log.snapshot()
    log.merge([assistant_message("a1", "ok")])

    assert len(snapshot) == 1
    assert len(log) == 2
    assert log.ids == frozenset({"u1", "a1"})
