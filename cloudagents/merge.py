"""Append-only merge of fetched conversation batches into a local log."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from .models import Message


def merge_messages(existing: list[Message], fetched: Iterable[Message]) -> list[Message]:
    """Return ``existing`` extended with the unseen messages of ``fetched``.

    Existing entries keep their positions; new identities are appended in the
    order they appear in ``fetched``. When nothing is new the very same list
    object is returned, so callers can skip downstream updates with ``is``.
    """
    seen = {message.id for message in existing}
    appended: list[Message] = []
    for message in fetched:
        if message.id in seen:
            continue
        seen.add(message.id)
        appended.append(message)
    if not appended:
        return existing
    return [*existing, *appended]


class MessageLog:
    """Merged conversation log with an identity index."""

    __slots__ = ("_messages", "_ids")

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self._messages: list[Message] = []
        self._ids: set[str] = set()
        self.merge(messages)

    @property
    def messages(self) -> list[Message]:
        return self._messages

    @property
    def ids(self) -> frozenset[str]:
        return frozenset(self._ids)

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._ids

    def merge(self, batch: Iterable[Message]) -> list[Message]:
        """Merge ``batch`` and return only the messages that were appended."""
        merged = merge_messages(self._messages, batch)
        if merged is self._messages:
            return []
        appended = merged[len(self._messages) :]
        self._messages = merged
        self._ids.update(message.id for message in appended)
        return appended

    def snapshot(self) -> Sequence[Message]:
        return tuple(self._messages)


__all__ = ["MessageLog", "merge_messages"]
