"""Per-call session state shared by the two legs of a bridged call."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

from .logging_utils import get_logger

logger = get_logger(__name__)


class CallPhase(str, Enum):
    """Lifecycle phase of a bridged call."""

    CONNECTING = "connecting"
    AWAITING_START = "awaiting_start"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


class SessionEvent(str, Enum):
    """Events that move a session between phases."""

    LEGS_STARTED = "legs_started"
    STREAM_STARTED = "stream_started"
    STREAM_STOPPED = "stream_stopped"
    LEG_CLOSED = "leg_closed"
    ALL_CLOSED = "all_closed"


class Leg(str, Enum):
    """The two connections owned by a session."""

    INBOUND = "inbound"
    OUTBOUND = "outbound"


_OPEN_PHASES = (CallPhase.CONNECTING, CallPhase.AWAITING_START, CallPhase.ACTIVE)

TRANSITIONS: Mapping[tuple[CallPhase, SessionEvent], CallPhase] = MappingProxyType({
    (CallPhase.CONNECTING, SessionEvent.LEGS_STARTED): CallPhase.AWAITING_START,
    (CallPhase.CONNECTING, SessionEvent.STREAM_STARTED): CallPhase.ACTIVE,
    (CallPhase.AWAITING_START, SessionEvent.STREAM_STARTED): CallPhase.ACTIVE,
    **{(phase, SessionEvent.STREAM_STOPPED): CallPhase.CLOSING for phase in _OPEN_PHASES},
    **{(phase, SessionEvent.LEG_CLOSED): CallPhase.CLOSING for phase in _OPEN_PHASES},
    (CallPhase.CLOSING, SessionEvent.STREAM_STOPPED): CallPhase.CLOSING,
    (CallPhase.CLOSING, SessionEvent.LEG_CLOSED): CallPhase.CLOSING,
    (CallPhase.CLOSING, SessionEvent.ALL_CLOSED): CallPhase.CLOSED,
})


@dataclass
class CallStats:
    """Per-call audio and control counters."""

    inbound_chunks_forwarded: int = 0
    inbound_chunks_dropped: int = 0
    outbound_chunks_relayed: int = 0
    outbound_chunks_dropped: int = 0
    interruptions: int = 0
    pings_answered: int = 0
    messages_rejected: int = 0

    def to_dict(self) -> dict[str, int]:
        """Convert counters to a dictionary."""
        return dict(self.__dict__)


@dataclass
class CallSession:
    """State for one bridged call.

    Created when the telephony websocket is accepted and discarded once
    both legs have closed. The telephony handler is the only writer of
    ``stream_sid``, ``call_sid`` and the stream phases; the agent client
    only reads them. Everything runs on one event loop, so plain
    attribute access is enough to make writes visible to the other leg.

    Attributes:
        custom_parameters: Routing parameters captured at accept time.
        stream_sid: Twilio stream SID, set once by the start event.
        call_sid: Twilio call SID, informational.
        phase: Current lifecycle phase.
        created_at: When the inbound connection was accepted.
        stats: Audio and control counters.
    """

    custom_parameters: Mapping[str, Optional[str]] = field(default_factory=dict)
    stream_sid: Optional[str] = None
    call_sid: Optional[str] = None
    phase: CallPhase = CallPhase.CONNECTING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    stats: CallStats = field(default_factory=CallStats)
    _closed_legs: set[Leg] = field(default_factory=set, repr=False)

    def __post_init__(self) -> None:
        self.custom_parameters = MappingProxyType(dict(self.custom_parameters))

    def transition(self, event: SessionEvent) -> bool:
        """Apply an event to the phase machine.

        Returns:
            True if the event was accepted, False if it is not valid in
            the current phase (the phase is left unchanged).
        """
        new_phase = TRANSITIONS.get((self.phase, event))
        if new_phase is None:
            logger.warning(
                "Rejected session event %s in phase %s",
                event.value,
                self.phase.value,
                extra={"stream_sid": self.stream_sid},
            )
            return False
        if new_phase != self.phase:
            logger.debug("Session phase %s -> %s", self.phase.value, new_phase.value)
        self.phase = new_phase
        return True

    def record_stream_start(self, stream_sid: str, call_sid: Optional[str]) -> bool:
        """Record the stream identifiers from the telephony start event.

        The stream SID is set at most once; a repeated start is ignored.

        Returns:
            True if the identifiers were recorded.
        """
        if self.stream_sid is not None:
            logger.warning(
                "Duplicate stream start ignored: have %s, got %s",
                self.stream_sid,
                stream_sid,
            )
            return False
        if not self.transition(SessionEvent.STREAM_STARTED):
            return False
        self.stream_sid = stream_sid
        self.call_sid = call_sid
        return True

    @property
    def is_active(self) -> bool:
        """Whether the stream has started and teardown has not begun."""
        return self.phase == CallPhase.ACTIVE

    @property
    def is_closing(self) -> bool:
        """Whether teardown has begun or finished."""
        return self.phase in (CallPhase.CLOSING, CallPhase.CLOSED)

    @property
    def is_closed(self) -> bool:
        """Whether both legs have closed."""
        return self.phase == CallPhase.CLOSED

    def is_leg_closed(self, leg: Leg) -> bool:
        """Whether the given leg has closed."""
        return leg in self._closed_legs

    def mark_leg_closed(self, leg: Leg) -> None:
        """Record that a leg has closed; closes the session once both have."""
        if leg in self._closed_legs:
            return
        self._closed_legs.add(leg)
        self.transition(SessionEvent.LEG_CLOSED)
        if len(self._closed_legs) == len(Leg):
            self.transition(SessionEvent.ALL_CLOSED)

    def log_extra(self) -> dict[str, Any]:
        """Context fields attached to per-call log lines."""
        return {
            "stream_sid": self.stream_sid,
            "call_sid": self.call_sid,
            **{f"param_{name}": value for name, value in self.custom_parameters.items()},
        }

    def to_dict(self) -> dict[str, Any]:
        """Convert session to dictionary."""
        return {
            "stream_sid": self.stream_sid,
            "call_sid": self.call_sid,
            "phase": self.phase.value,
            "custom_parameters": dict(self.custom_parameters),
            "created_at": self.created_at.isoformat(),
            "closed_legs": sorted(leg.value for leg in self._closed_legs),
            **self.stats.to_dict(),
        }
