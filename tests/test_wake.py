"""
Tests for wake word gating and the session state machine
"""

import numpy as np
import pytest

from btw.audio import make_frame
from btw.errors import ErrorCategory, ReentrantSession, WakeModelError
from btw.session import InvalidTransition, SessionMachine, SessionState
from btw.wake import WakeGate, build_detector

from conftest import FakeDetector, silence_frame


class TestWakeGate:
    def test_detection_when_idle(self):
        detector = FakeDetector(fire_on=[3])
        gate = WakeGate(detector)

        results = [gate.process(silence_frame(), SessionState.IDLE) for _ in range(3)]

        assert [r.detected for r in results] == [False, False, True]
        assert gate.detections == 1

    @pytest.mark.parametrize("state", [
        SessionState.AWAKE,
        SessionState.CAPTURING,
        SessionState.TRANSCRIBING,
        SessionState.ROUTING,
        SessionState.CONFIRMING,
    ])
    def test_frames_ignored_outside_idle(self, state):
        detector = FakeDetector(fire_on=[1])
        gate = WakeGate(detector)

        result = gate.process(silence_frame(), state)

        assert not result.detected
        assert detector.calls == 0

    def test_regroups_to_detector_block_size(self):
        """Two 640-sample frames make exactly one 1280-sample detector block"""
        detector = FakeDetector(frame_length=1280)
        gate = WakeGate(detector)

        gate.process(silence_frame(length=640), SessionState.IDLE)
        assert detector.calls == 0
        gate.process(silence_frame(length=640), SessionState.IDLE)
        assert detector.calls == 1

    def test_partial_block_discarded_outside_idle(self):
        detector = FakeDetector(frame_length=1280)
        gate = WakeGate(detector)

        gate.process(silence_frame(length=640), SessionState.IDLE)
        gate.process(silence_frame(length=640), SessionState.CAPTURING)
        gate.process(silence_frame(length=640), SessionState.IDLE)

        assert detector.calls == 0

    def test_detector_sees_samples_in_order(self):
        seen = []

        class Recorder(FakeDetector):
            def process(self, samples):
                seen.append(samples.copy())
                return super().process(samples)

        gate = WakeGate(Recorder(frame_length=4))
        gate.process(make_frame(np.arange(6, dtype=np.int16), 0, timestamp=0.0), SessionState.IDLE)
        gate.process(make_frame(np.arange(6, 8, dtype=np.int16), 1, timestamp=0.0), SessionState.IDLE)

        assert [block.tolist() for block in seen] == [[0, 1, 2, 3], [4, 5, 6, 7]]


class TestBuildDetector:
    def test_unknown_provider_is_fatal(self):
        with pytest.raises(WakeModelError):
            build_detector({"provider": "nonexistent"})


class TestSessionMachine:
    def test_happy_path(self):
        session = SessionMachine()
        assert session.try_wake()
        for state in (SessionState.CAPTURING, SessionState.TRANSCRIBING,
                      SessionState.ROUTING, SessionState.EXECUTING, SessionState.IDLE):
            session.transition(state)
        assert session.is_idle
        assert session.sessions_started == 1

    def test_wake_ignored_when_busy(self):
        session = SessionMachine()
        session.try_wake()
        session.transition(SessionState.CAPTURING)

        assert not session.try_wake()
        assert session.state is SessionState.CAPTURING
        assert session.sessions_started == 1
        assert session.rejected_wakes == 1

    def test_begin_refuses_second_session(self):
        session = SessionMachine()
        session.begin()

        with pytest.raises(ReentrantSession) as excinfo:
            session.begin()

        assert excinfo.value.category is ErrorCategory.REJECTED
        assert session.state is SessionState.AWAKE
        assert session.sessions_started == 1

    def test_invalid_edge_raises(self):
        session = SessionMachine()
        with pytest.raises(InvalidTransition):
            session.transition(SessionState.ROUTING)

    def test_any_state_can_abort_to_idle(self):
        session = SessionMachine()
        session.try_wake()
        session.transition(SessionState.CAPTURING)
        session.transition(SessionState.TRANSCRIBING)
        session.reset()
        assert session.is_idle

    def test_reset_when_idle_is_noop(self):
        changes = []
        session = SessionMachine(on_change=lambda old, new: changes.append((old, new)))
        session.reset()
        assert changes == []

    def test_on_change_failure_does_not_break_transition(self):
        def boom(old, new):
            raise RuntimeError("callback failed")

        session = SessionMachine(on_change=boom)
        assert session.try_wake()
        assert session.state is SessionState.AWAKE
