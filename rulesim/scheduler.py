"""Global time-ordered event list on top of the SimPy event heap.

Every pending :class:`ScheduledEvent` is carried by a triggered
:class:`simpy.Event` that sits in the environment's event queue. SimPy
orders its queue by ``(time, priority, event id)``; scheduled events all use
the same priority and are pushed in insertion order, so the heap order is
exactly ``(scheduled_time, insertion_sequence)``. Popping an event is a
single :meth:`simpy.Environment.step`, which also advances ``env.now`` to the
event's time.

"""
from heapq import heapify, heappush
from itertools import count
from typing import Any, Callable, Iterator, List, NamedTuple, Optional, Tuple
import math

import simpy


class SchedulingError(Exception):
    """An event cannot be placed in the event list."""


class ScheduledEvent(NamedTuple):
    """A pending invocation of a model's event expression.

    `message` is set for events that deliver an external input.

    """

    model_id: str
    expression: str
    parameters: Tuple[Any, ...]
    scheduled_time: float
    insertion_sequence: int
    message: Optional[Any] = None


class _EventCarrier(simpy.Event):
    """Already-triggered SimPy event whose value is a :class:`ScheduledEvent`."""

    def __init__(self, env: simpy.Environment, event: ScheduledEvent) -> None:
        super().__init__(env)
        self._ok = True
        self._value = event


class EventScheduler:
    """Pending-event list and clock of one simulation.

    :param env: The environment whose event heap and clock are used.

    """

    def __init__(self, env: simpy.Environment) -> None:
        self.env = env
        self._sequence = count()
        self._popped: Optional[ScheduledEvent] = None

    @property
    def current_time(self) -> float:
        return self.env.now

    def __len__(self) -> int:
        return sum(1 for _ in self._carriers())

    def _carriers(self) -> Iterator[_EventCarrier]:
        for item in self.env._queue:
            if isinstance(item[3], _EventCarrier):
                yield item[3]

    def _on_pop(self, carrier: simpy.Event) -> None:
        self._popped = carrier.value

    def insert(self, event: ScheduledEvent) -> None:
        """Insert a pending event.

        :raises SchedulingError:
            If the event's time is earlier than the current time or is not
            finite.

        """
        t = event.scheduled_time
        if not math.isfinite(t):
            raise SchedulingError(f'Cannot schedule {event} at non-finite time')
        if t < self.env.now:
            raise SchedulingError(
                f'Cannot schedule {event} before current time {self.env.now}'
            )
        carrier = _EventCarrier(self.env, event)
        carrier.callbacks.append(self._on_pop)
        heappush(
            self.env._queue,
            (t, simpy.events.NORMAL, next(self.env._eid), carrier),
        )

    def schedule_at(
        self,
        time: float,
        model_id: str,
        expression: str,
        parameters: Tuple[Any, ...] = (),
        message: Optional[Any] = None,
    ) -> Optional[ScheduledEvent]:
        """Create and insert an event at an absolute time.

        Nothing is inserted for an infinite time; None is returned.

        """
        if time == math.inf:
            return None
        event = ScheduledEvent(
            model_id, expression, tuple(parameters), time, next(self._sequence), message
        )
        self.insert(event)
        return event

    def schedule(
        self,
        model_id: str,
        expression: str,
        parameters: Tuple[Any, ...] = (),
        delay: float = 0.0,
        message: Optional[Any] = None,
    ) -> Optional[ScheduledEvent]:
        """Create and insert an event `delay` time units from now."""
        if delay < 0:
            raise SchedulingError(f'Negative delay {delay} for {model_id}.{expression}')
        if delay == 0:
            time = self.env.now
        else:
            time = self.env.now + delay
        return self.schedule_at(time, model_id, expression, parameters, message)

    def _remove(self, predicate: Callable[[ScheduledEvent], bool]) -> int:
        queue = self.env._queue
        kept = [
            item
            for item in queue
            if not (isinstance(item[3], _EventCarrier) and predicate(item[3].value))
        ]
        removed = len(queue) - len(kept)
        if removed:
            queue[:] = kept
            heapify(queue)
        return removed

    def cancel(self, model_id: str, expression: str) -> int:
        """Remove every pending event for ``(model_id, expression)``.

        Cancelling when nothing matches is not an error.

        :returns: Number of events removed.

        """
        return self._remove(
            lambda event: event.model_id == model_id and event.expression == expression
        )

    def discard(self, event: ScheduledEvent) -> bool:
        """Remove one specific pending event; returns whether it was pending."""
        sequence = event.insertion_sequence
        return bool(self._remove(lambda e: e.insertion_sequence == sequence))

    def pending(
        self, model_id: Optional[str] = None, expression: Optional[str] = None
    ) -> List[ScheduledEvent]:
        """Pending events in pop order, optionally filtered."""
        return [
            item[3].value
            for item in sorted(self.env._queue, key=lambda item: item[:3])
            if isinstance(item[3], _EventCarrier)
            and (model_id is None or item[3].value.model_id == model_id)
            and (expression is None or item[3].value.expression == expression)
        ]

    def peek(self) -> Optional[ScheduledEvent]:
        """The event :meth:`pop_next` would return, without removing it."""
        pending = self.pending()
        return pending[0] if pending else None

    def peek_time(self) -> float:
        """Time of the next pending event; infinity if there is none."""
        return self.env.peek()

    def pop_next(self) -> Optional[ScheduledEvent]:
        """Remove and return the earliest pending event.

        The clock advances to the event's time. Returns None when no events
        remain.

        """
        while self.env.peek() != math.inf:
            self.env.step()
            event, self._popped = self._popped, None
            if event is not None:
                return event
        return None
