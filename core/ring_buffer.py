"""
Single-Producer / Single-Consumer Ring Buffer

Hands raw stream payloads from a connector's receive thread to the
ingestion thread without a lock.

Contract:
    - Exactly one thread calls ``push`` and exactly one thread calls ``pop``.
    - One slot always stays empty to tell "full" from "empty", so a buffer
      built with capacity N holds at most N - 1 items.
    - ``push`` on a full buffer returns False and leaves existing items
      untouched. The caller decides what to do with the rejected item
      (streaming connectors drop it and count the drop).
    - Items come out in the order they went in.

Memory ordering:
    The producer writes the slot first and only then publishes the new tail
    index; the consumer reads the slot first and only then publishes the new
    head index. Each index is written by exactly one thread and rebinding an
    attribute is atomic under the interpreter lock, so the consumer can never
    observe a tail that points past an unwritten slot.
"""

from typing import Any, Generic, List, Optional, Tuple, TypeVar

T = TypeVar("T")


class RingBuffer(Generic[T]):
    """
    Fixed-capacity FIFO with non-blocking push/pop.

    Args:
        capacity: Number of slots (must be at least 2; usable size is capacity - 1)

    Raises:
        ValueError: If capacity < 2

    Example:
        >>> buf = RingBuffer(4)
        >>> buf.push("a"), buf.push("b"), buf.push("c"), buf.push("d")
        (True, True, True, False)
        >>> buf.pop()
        (True, 'a')
    """

    def __init__(self, capacity: int):
        if capacity < 2:
            raise ValueError(f"RingBuffer capacity must be at least 2, got {capacity}")

        self._capacity = capacity
        self._slots: List[Any] = [None] * capacity
        self._head = 0  # next slot to read, owned by the consumer
        self._tail = 0  # next slot to write, owned by the producer

    @property
    def capacity(self) -> int:
        """Slot count; the buffer holds at most ``capacity - 1`` items."""
        return self._capacity

    # ============================================
    # Producer Side
    # ============================================

    def push(self, item: T) -> bool:
        """
        Append an item.

        Returns:
            bool: False if the buffer is full (the item is not stored)
        """
        tail = self._tail
        next_tail = (tail + 1) % self._capacity
        if next_tail == self._head:
            return False

        self._slots[tail] = item
        self._tail = next_tail
        return True

    # ============================================
    # Consumer Side
    # ============================================

    def pop(self) -> Tuple[bool, Optional[T]]:
        """
        Remove the oldest item.

        Returns:
            (True, item) on success, (False, None) when empty
        """
        head = self._head
        if head == self._tail:
            return False, None

        item = self._slots[head]
        self._slots[head] = None
        self._head = (head + 1) % self._capacity
        return True, item

    def drain(self, max_items: Optional[int] = None) -> List[T]:
        """Pop up to ``max_items`` items (all available when None), oldest first."""
        items: List[T] = []
        while max_items is None or len(items) < max_items:
            ok, item = self.pop()
            if not ok:
                break
            items.append(item)
        return items

    # ============================================
    # Inspection
    # ============================================

    def __len__(self) -> int:
        return (self._tail - self._head) % self._capacity

    def empty(self) -> bool:
        return self._head == self._tail

    def full(self) -> bool:
        return (self._tail + 1) % self._capacity == self._head

    def __repr__(self) -> str:
        return f"<RingBuffer(size={len(self)}, capacity={self._capacity})>"
