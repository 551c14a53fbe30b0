"""Session builder: coalesces raw samples into debounced sessions.

The builder is a small finite-state machine with three states:

``Idle``
    no open session.
``Tracking``
    one open session that is extended by every sample with the same app key.
``PendingSwitch``
    a different app key has been observed but has not yet been stable for
    the configured dwell time. If the original app comes back the flicker is
    discarded; if the candidate stays long enough the original session is
    closed at the moment the candidate was first seen.

:func:`advance` and :func:`stop` are pure transition functions; the
:class:`SessionBuilder` wraps them with locking, the minimum-significance
filter and the close callback.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, replace
from typing import Callable, Optional, Union

from .config import CollectorSettings
from .models import RawSample, Session

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class OpenSession:
    id: str
    title: str
    app_key: str
    started_at_ms: int
    last_seen_ms: int

    @classmethod
    def from_sample(cls, sample: RawSample) -> "OpenSession":
        return cls(
            id=uuid.uuid4().hex,
            title=sample.title or "",
            app_key=sample.app_key or "",
            started_at_ms=sample.observed_at_ms,
            last_seen_ms=sample.observed_at_ms,
        )

    def seen_at(self, at_ms: int) -> "OpenSession":
        return replace(self, last_seen_ms=at_ms)


@dataclass(slots=True, frozen=True)
class Idle:
    pass


@dataclass(slots=True, frozen=True)
class Tracking:
    current: OpenSession


@dataclass(slots=True, frozen=True)
class PendingSwitch:
    current: OpenSession
    candidate: OpenSession


BuilderState = Union[Idle, Tracking, PendingSwitch]

IDLE = Idle()


@dataclass(slots=True, frozen=True)
class ClosedSpan:
    session: OpenSession
    ended_at_ms: int

    @property
    def duration_ms(self) -> int:
        return max(0, self.ended_at_ms - self.session.started_at_ms)


@dataclass(slots=True, frozen=True)
class Transition:
    state: BuilderState
    closed: tuple[ClosedSpan, ...] = ()


def last_seen_ms(state: BuilderState) -> Optional[int]:
    if isinstance(state, Tracking):
        return state.current.last_seen_ms
    if isinstance(state, PendingSwitch):
        return state.candidate.last_seen_ms
    return None


def advance(
    state: BuilderState,
    sample: RawSample,
    *,
    dwell_ms: int,
    sleep_gap_ms: int,
    failure_tolerance_ms: int,
) -> Transition:
    """Apply one sample to ``state``.

    An error sample is absorbed while it falls within ``failure_tolerance_ms``
    of the last observation; past that the open session closes at its last
    observed time, leaving the failure as a gap.
    """
    if not sample.is_usable:
        previous = last_seen_ms(state)
        if previous is None or sample.observed_at_ms - previous <= failure_tolerance_ms:
            return Transition(state)
        logger.debug(
            "Sampling failing since %d (%s); closing open session", previous, sample.error
        )
        return Transition(IDLE, _close_at_last_seen(state))

    now = sample.observed_at_ms
    previous = last_seen_ms(state)
    if previous is not None and now < previous:
        logger.debug("Ignoring out-of-order sample at %d (last seen %d)", now, previous)
        return Transition(state)

    closed: tuple[ClosedSpan, ...] = ()
    if previous is not None and now - previous > sleep_gap_ms:
        # No stop signal arrived, but the machine was clearly away.
        closed = _close_at_last_seen(state)
        state = IDLE

    if isinstance(state, Idle):
        return Transition(Tracking(OpenSession.from_sample(sample)), closed)

    if isinstance(state, Tracking):
        current = state.current
        if sample.app_key == current.app_key:
            return Transition(Tracking(current.seen_at(now)), closed)
        return _maybe_commit(current, OpenSession.from_sample(sample), dwell_ms, closed)

    current, candidate = state.current, state.candidate
    if sample.app_key == current.app_key:
        return Transition(Tracking(current.seen_at(now)), closed)
    if sample.app_key == candidate.app_key:
        return _maybe_commit(current, candidate.seen_at(now), dwell_ms, closed)
    return _maybe_commit(current, OpenSession.from_sample(sample), dwell_ms, closed)


def stop(state: BuilderState, at_ms: int) -> Transition:
    """Close everything immediately, without debounce."""
    if isinstance(state, Idle):
        return Transition(IDLE)
    if isinstance(state, Tracking):
        end = max(at_ms, state.current.last_seen_ms)
        return Transition(IDLE, (ClosedSpan(state.current, end),))
    candidate = state.candidate
    end = max(at_ms, candidate.last_seen_ms)
    return Transition(
        IDLE,
        (
            ClosedSpan(state.current, candidate.started_at_ms),
            ClosedSpan(candidate, end),
        ),
    )


def _maybe_commit(
    current: OpenSession,
    candidate: OpenSession,
    dwell_ms: int,
    closed: tuple[ClosedSpan, ...],
) -> Transition:
    if candidate.last_seen_ms - candidate.started_at_ms >= dwell_ms:
        return Transition(
            Tracking(candidate),
            closed + (ClosedSpan(current, candidate.started_at_ms),),
        )
    return Transition(PendingSwitch(current, candidate), closed)


def _close_at_last_seen(state: BuilderState) -> tuple[ClosedSpan, ...]:
    if isinstance(state, Tracking):
        return (ClosedSpan(state.current, state.current.last_seen_ms),)
    if isinstance(state, PendingSwitch):
        return (
            ClosedSpan(state.current, state.candidate.started_at_ms),
            ClosedSpan(state.candidate, state.candidate.last_seen_ms),
        )
    return ()


class SessionBuilder:
    """Feeds samples through the state machine and emits closed sessions."""

    def __init__(
        self,
        settings: CollectorSettings,
        on_close: Callable[[Session], None],
        resolve_category: Optional[Callable[[str], str]] = None,
    ) -> None:
        self.settings = settings
        self._on_close = on_close
        self._resolve_category = resolve_category
        self._state: BuilderState = IDLE
        self._lock = threading.Lock()

    @property
    def state(self) -> BuilderState:
        return self._state

    def feed(self, sample: RawSample) -> list[Session]:
        with self._lock:
            transition = advance(
                self._state,
                sample,
                dwell_ms=self.settings.switch_dwell_ms,
                sleep_gap_ms=self.settings.sleep_gap_ms,
                failure_tolerance_ms=self.settings.failure_tolerance_ms,
            )
            self._state = transition.state
            return self._emit(transition.closed)

    def stop(self, at_ms: int, reason: str = "stop") -> list[Session]:
        with self._lock:
            if not isinstance(self._state, Idle):
                logger.info("Closing open session (%s)", reason)
            transition = stop(self._state, at_ms)
            self._state = transition.state
            return self._emit(transition.closed)

    def open_session(self) -> Optional[Session]:
        """The session currently being tracked, as it would be persisted now."""
        with self._lock:
            state = self._state
        if isinstance(state, Tracking):
            span = ClosedSpan(state.current, state.current.last_seen_ms)
        elif isinstance(state, PendingSwitch):
            span = ClosedSpan(state.current, state.candidate.started_at_ms)
        else:
            return None
        return self._to_session(span)

    def _emit(self, spans: tuple[ClosedSpan, ...]) -> list[Session]:
        emitted: list[Session] = []
        for span in spans:
            if span.duration_ms < self.settings.min_session_ms:
                logger.debug(
                    "Discarding %s session of %d ms", span.session.app_key, span.duration_ms
                )
                continue
            session = self._to_session(span)
            emitted.append(session)
            self._on_close(session)
        return emitted

    def _to_session(self, span: ClosedSpan) -> Session:
        category_id = (
            self._resolve_category(span.session.app_key) if self._resolve_category else None
        )
        return Session(
            id=span.session.id,
            title=span.session.title,
            app_key=span.session.app_key,
            started_at_ms=span.session.started_at_ms,
            duration_ms=span.duration_ms,
            category_id=category_id,
        )
