"""Time logging for engine entry points of sunbridge sessions."""

import time
from typing import Any, Dict, Optional

import attrs


@attrs.define(frozen=True)
class TimingEvent:
    """Record of a single timing event.

    Attributes
    ----------
    name : str
        Identifier for the event (e.g., 'cvode_advance')
    event_type : str
        Type of event: 'start', 'stop', or 'progress'
    timestamp : float
        Wall-clock time from time.perf_counter()
    metadata : dict
        Optional metadata (target times, flags, root counts, etc.)
    """
    name: str = attrs.field(validator=attrs.validators.instance_of(str))
    event_type: str = attrs.field(
        validator=attrs.validators.in_({'start', 'stop', 'progress'})
    )
    timestamp: float = attrs.field(
        validator=attrs.validators.instance_of(float)
    )
    metadata: dict = attrs.field(factory=dict)


class TimeLogger:
    """Callback-based timing of calls into the solver engine.

    Parameters
    ----------
    verbosity : str or None, default='default'
        Output verbosity level. Options:
        - None: record nothing
        - 'default': Aggregate times only
        - 'verbose': Per-call durations
        - 'debug': All events with start/stop/progress

    Attributes
    ----------
    verbosity : str or None
        Current verbosity level
    events : list[TimingEvent]
        Chronological list of all recorded events
    registered : dict[str, dict]
        Events declared with :meth:`register_event`, with their category
        and description
    _active_starts : dict[str, float]
        Map of event names to their start timestamps (for matching)

    Notes
    -----
    Sessions use :data:`default_timelogger` unless given their own logger.
    """

    def __init__(self, verbosity: Optional[str] = 'default') -> None:
        if verbosity not in {None, 'default', 'verbose', 'debug'}:
            raise ValueError(
                f"verbosity must be None, 'default', 'verbose', or 'debug', "
                f"got '{verbosity}'"
            )
        self.verbosity = verbosity
        self.events: list[TimingEvent] = []
        self.registered: Dict[str, dict] = {}
        self._active_starts: dict[str, float] = {}

    @property
    def enabled(self) -> bool:
        return self.verbosity is not None

    def register_event(
        self, event_name: str, category: str, description: str = ""
    ) -> None:
        """Declare an event so its durations can be grouped by category.

        Re-registering an event replaces its category and description.
        """
        if not event_name:
            raise ValueError("event_name cannot be empty")
        self.registered[event_name] = {
            'category': category,
            'description': description,
        }

    def _metadata(self, event_name: str, metadata: dict) -> dict:
        merged = dict(metadata)
        info = self.registered.get(event_name)
        if info is not None:
            merged.setdefault('category', info['category'])
        return merged

    def start_event(self, event_name: str, **metadata: Any) -> None:
        """Record the start of a timed operation.

        Parameters
        ----------
        event_name : str
            Unique identifier for this event
        **metadata : Any
            Optional metadata to store with event
        """
        if not event_name:
            raise ValueError("event_name cannot be empty")
        if not self.enabled:
            return

        timestamp = time.perf_counter()
        event = TimingEvent(
            name=event_name,
            event_type='start',
            timestamp=timestamp,
            metadata=self._metadata(event_name, metadata)
        )
        self.events.append(event)
        self._active_starts[event_name] = timestamp

        if self.verbosity == 'debug':
            print(f"[DEBUG] Started: {event_name}")

    def stop_event(self, event_name: str, **metadata: Any) -> None:
        """Record the end of a timed operation.

        Parameters
        ----------
        event_name : str
            Identifier matching a previous start_event call
        **metadata : Any
            Optional metadata to store with event

        Notes
        -----
        If no matching start event exists, logs warning in debug mode
        and stores orphaned stop event for diagnostics.
        """
        if not event_name:
            raise ValueError("event_name cannot be empty")
        if not self.enabled:
            return

        timestamp = time.perf_counter()
        event = TimingEvent(
            name=event_name,
            event_type='stop',
            timestamp=timestamp,
            metadata=self._metadata(event_name, metadata)
        )
        self.events.append(event)

        if event_name in self._active_starts:
            duration = timestamp - self._active_starts.pop(event_name)

            if self.verbosity == 'debug':
                print(f"[DEBUG] Stopped: {event_name} ({duration:.3f}s)")
            elif self.verbosity == 'verbose':
                print(f"{event_name}: {duration:.3f}s")
        else:
            if self.verbosity == 'debug':
                print(f"[DEBUG] Warning: stop_event('{event_name}') "
                      "without matching start")

    def progress(
        self, event_name: str, message: str, **metadata: Any
    ) -> None:
        """Record a progress update within an operation.

        Progress events don't require matching start/stop and are only
        printed in debug mode.
        """
        if not event_name:
            raise ValueError("event_name cannot be empty")
        if not self.enabled:
            return

        metadata_with_msg = self._metadata(event_name, metadata)
        metadata_with_msg['message'] = message
        event = TimingEvent(
            name=event_name,
            event_type='progress',
            timestamp=time.perf_counter(),
            metadata=metadata_with_msg
        )
        self.events.append(event)

        if self.verbosity == 'debug':
            print(f"[DEBUG] Progress: {event_name} - {message}")

    def get_event_duration(self, event_name: str) -> Optional[float]:
        """Query duration of the most recent completed event.

        Returns
        -------
        float or None
            Duration in seconds, or None if no matching start/stop pair
        """
        start_time = None
        stop_time = None

        for event in reversed(self.events):
            if event.name == event_name:
                if event.event_type == 'stop' and stop_time is None:
                    stop_time = event.timestamp
                elif event.event_type == 'start' and stop_time is not None:
                    start_time = event.timestamp
                    break

        if start_time is not None and stop_time is not None:
            return stop_time - start_time
        return None

    def get_aggregate_durations(
        self, category: Optional[str] = None
    ) -> dict[str, float]:
        """Sum event durations by name, optionally for one category.

        Parameters
        ----------
        category : str, optional
            If provided, only events whose metadata['category'] matches
            are counted.

        Returns
        -------
        dict[str, float]
            Mapping of event names to total durations
        """
        durations: dict[str, float] = {}
        event_starts: dict[str, float] = {}

        for event in self.events:
            if category is not None:
                if event.metadata.get('category') != category:
                    continue

            if event.event_type == 'start':
                event_starts[event.name] = event.timestamp
            elif event.event_type == 'stop':
                if event.name in event_starts:
                    duration = (
                        event.timestamp - event_starts.pop(event.name)
                    )
                    durations[event.name] = (
                        durations.get(event.name, 0.0) + duration
                    )

        return durations

    def print_summary(self) -> None:
        """Print timing summary based on verbosity level.

        Only performs new printing in 'default' mode; 'verbose' and
        'debug' have already printed inline.
        """
        if self.verbosity == 'default':
            durations = self.get_aggregate_durations()
            if durations:
                print("\nTiming Summary:")
                for name, duration in sorted(durations.items()):
                    print(f"  {name}: {duration:.3f}s")

    def clear(self) -> None:
        """Forget all recorded events, keeping registrations."""
        self.events.clear()
        self._active_starts.clear()


#: Logger used by sessions that are not given one; records nothing.
default_timelogger = TimeLogger(verbosity=None)

_ENGINE_EVENTS = {
    'cvode_advance': "ODE integration towards a target time",
    'ida_advance': "DAE integration towards a target time",
    'ida_calc_ic': "DAE consistent initial-condition calculation",
    'kinsol_solve': "Newton solve of a nonlinear system",
    'adjoint_forward': "Forward integration with checkpointing",
    'adjoint_backward': "Backward integration of adjoint problems",
}


def register_engine_events(logger: TimeLogger) -> None:
    """Register the engine entry points on ``logger``."""
    for name, description in _ENGINE_EVENTS.items():
        logger.register_event(name, 'engine', description)


register_engine_events(default_timelogger)
