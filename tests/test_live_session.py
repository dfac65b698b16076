import json
import tempfile
import threading
import unittest
from pathlib import Path
from typing import List
from unittest.mock import Mock

import httpx
import numpy as np

from answer_stream import AnswerPhase
from api_client import APIError, InterviewAPI
from capture_core import CaptureError, RecognitionResult
from fakes import (
    LOOPBACK_DEVICE,
    MIC_DEVICE,
    FakeCapture,
    FakeRecognizer,
    FakeRecorder,
    TimerFactory,
    answer_transport,
    reset_fakes,
)
from live_parameters import APIConfig, CaptureParameters, DetectionConfig
from live_session import CaptureMode, CaptureSessionManager, CaptureState, LiveSession, RestartPolicy
from models import Profile, SessionContext
from profile_store import ChatHistoryStore, ChatLog, KeyValueStore
from question_buffer import QuestionBuffer

LOUD_FRAME = np.full(160, 12000, dtype=np.int16).tobytes()


def make_api(transport: httpx.BaseTransport) -> InterviewAPI:
    cfg = APIConfig(base_url="http://backend.test", timeout_s=5.0, stream_idle_timeout_s=5.0)
    return InterviewAPI(cfg, transport=transport)


class RestartPolicyTests(unittest.TestCase):
    def test_backoff_then_exhaustion(self) -> None:
        now = [0.0]
        policy = RestartPolicy(max_restarts=3, window_s=30.0, base_delay_s=0.5, max_delay_s=1.5, clock=lambda: now[0])

        self.assertEqual([policy.next_delay() for _ in range(3)], [0.5, 1.0, 1.5])
        self.assertIsNone(policy.next_delay())

    def test_window_slides(self) -> None:
        now = [0.0]
        policy = RestartPolicy(max_restarts=1, window_s=10.0, clock=lambda: now[0])

        self.assertIsNotNone(policy.next_delay())
        self.assertIsNone(policy.next_delay())
        now[0] = 11.0
        self.assertIsNotNone(policy.next_delay())


class CaptureManagerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        reset_fakes()
        self.answering = False
        self.now = 100.0
        self.timers = TimerFactory()
        self.notices: List[tuple] = []
        self.buffer = QuestionBuffer(lambda: self.answering, timer_factory=self.timers)
        self.api = Mock()
        self.api.transcribe_chunk.return_value = ""
        self.devices = [MIC_DEVICE, LOOPBACK_DEVICE]
        self.manager = CaptureSessionManager(
            self.buffer,
            self.api,
            params=CaptureParameters(max_restarts=2, restart_base_delay_s=0.5),
            capture_factory=FakeCapture,
            recognizer_factory=FakeRecognizer,
            recorder_factory=FakeRecorder,
            devices=lambda: list(self.devices),
            timer_factory=self.timers,
            notifier=lambda level, message: self.notices.append((level, message)),
            clock=lambda: self.now,
        )
        self.states: List[CaptureState] = []
        self.manager.add_state_listener(self.states.append)


class ConnectTests(CaptureManagerTestCase):
    def test_microphone_mode(self) -> None:
        self.manager.connect(CaptureMode.MICROPHONE)

        self.assertEqual(self.states, [CaptureState.CONNECTING, CaptureState.CONNECTED])
        self.assertEqual(self.manager.sources, ["MIC"])
        self.assertEqual(FakeRecognizer.instances[0].label, "MIC")
        self.assertTrue(FakeRecognizer.instances[0].started)
        self.assertEqual(FakeRecorder.instances, [])
        self.assertTrue(self.manager.is_listening)

    def test_screen_mode_uses_loopback_and_mic(self) -> None:
        self.manager.connect(CaptureMode.SCREEN)

        self.assertEqual(sorted(self.manager.sources), ["MIC", "SYSTEM"])
        self.assertEqual(FakeCapture.by_label("SYSTEM").device_idx, 1)
        self.assertEqual(FakeRecognizer.instances[0].label, "MIC")
        self.assertTrue(FakeRecorder.instances[0].started)
        self.assertEqual(FakeRecorder.instances[0].interval_s, 5.0)
        self.assertTrue(self.manager.is_capturing_audio)

    def test_screen_mode_without_mic_recognizes_system_audio(self) -> None:
        FakeCapture.fail_labels["MIC"] = CaptureError("mic busy")

        self.manager.connect(CaptureMode.SCREEN)

        self.assertTrue(self.manager.is_connected)
        self.assertEqual(self.manager.sources, ["SYSTEM"])
        self.assertEqual(FakeRecognizer.instances[0].label, "SYSTEM")

    def test_missing_loopback_fails_to_idle(self) -> None:
        self.devices = [MIC_DEVICE]

        with self.assertRaises(CaptureError):
            self.manager.connect(CaptureMode.SCREEN)

        self.assertEqual(self.manager.state, CaptureState.IDLE)
        self.assertEqual(self.states[-1], CaptureState.IDLE)
        self.assertEqual(self.notices[-1][0], "error")
        self.assertEqual(FakeRecognizer.instances, [])

    def test_permission_denied_is_reported(self) -> None:
        FakeCapture.fail_labels["MIC"] = CaptureError("denied", permission_denied=True)

        with self.assertRaises(CaptureError):
            self.manager.connect(CaptureMode.MICROPHONE)

        self.assertEqual(self.manager.state, CaptureState.IDLE)
        self.assertIn("denied", self.notices[-1][1])

    def test_partial_failure_stops_opened_sources(self) -> None:
        self.manager._recognizer_factory = Mock(side_effect=RuntimeError("no engine"))

        with self.assertRaises(CaptureError):
            self.manager.connect(CaptureMode.SCREEN)

        self.assertTrue(all(c.stopped for c in FakeCapture.instances))
        self.assertTrue(FakeRecorder.instances[0].stopped)
        self.assertEqual(self.manager.sources, [])

    def test_second_connect_is_rejected(self) -> None:
        self.manager.connect(CaptureMode.MICROPHONE)

        with self.assertRaises(CaptureError):
            self.manager.connect(CaptureMode.SCREEN)

        self.assertEqual(self.manager.mode, CaptureMode.MICROPHONE)


class DisconnectTests(CaptureManagerTestCase):
    def test_stops_everything_and_is_idempotent(self) -> None:
        self.manager.connect(CaptureMode.SCREEN)
        self.buffer.append("what is terraform")
        silence = self.timers.last

        self.assertTrue(self.manager.disconnect())
        self.assertFalse(self.manager.disconnect())

        self.assertTrue(all(c.stopped for c in FakeCapture.instances))
        self.assertTrue(FakeRecognizer.instances[0].stopped)
        self.assertTrue(FakeRecorder.instances[0].stopped)
        self.assertTrue(silence.cancelled)
        self.assertEqual(self.buffer.text, "")
        self.assertEqual(self.manager.state, CaptureState.IDLE)
        self.assertEqual(self.states.count(CaptureState.IDLE), 1)

    def test_disconnect_when_idle(self) -> None:
        self.assertFalse(self.manager.disconnect())

    def test_reconnect_after_disconnect(self) -> None:
        self.manager.connect(CaptureMode.MICROPHONE)
        self.manager.disconnect()

        self.manager.connect(CaptureMode.SCREEN)

        self.assertTrue(self.manager.is_connected)

    def test_system_audio_ending_disconnects(self) -> None:
        self.manager.connect(CaptureMode.SCREEN)

        FakeCapture.by_label("SYSTEM").on_ended("SYSTEM")
        FakeCapture.by_label("SYSTEM").on_ended("SYSTEM")

        self.assertEqual(self.manager.state, CaptureState.IDLE)
        self.assertEqual(self.notices[-1], ("info", "Session ended"))

    def test_mic_ending_in_screen_mode_falls_back(self) -> None:
        self.manager.connect(CaptureMode.SCREEN)

        FakeCapture.by_label("MIC").on_ended("MIC")
        FakeCapture.by_label("SYSTEM").on_frame("SYSTEM", LOUD_FRAME)

        self.assertTrue(self.manager.is_connected)
        self.assertEqual(FakeRecognizer.instances[0].frames, [LOUD_FRAME])


class RoutingTests(CaptureManagerTestCase):
    def test_frames_reach_recognizer_and_recorder(self) -> None:
        self.manager.connect(CaptureMode.SCREEN)

        FakeCapture.by_label("MIC").on_frame("MIC", b"m" * 320)
        FakeCapture.by_label("SYSTEM").on_frame("SYSTEM", LOUD_FRAME)

        self.assertEqual(FakeRecognizer.instances[0].frames, [b"m" * 320])
        self.assertEqual(FakeRecorder.instances[0].fed, [LOUD_FRAME])
        self.assertGreater(self.manager.audio_level, 50)

    def test_final_and_interim_results(self) -> None:
        self.manager.connect(CaptureMode.MICROPHONE)
        recognizer = FakeRecognizer.instances[0]

        recognizer.on_result(RecognitionResult("MIC", "tell me", False))
        self.assertEqual((self.buffer.text, self.buffer.preview), ("", "tell me"))

        recognizer.on_result(RecognitionResult("MIC", "tell me about yourself", True))
        self.assertEqual(self.buffer.text, "tell me about yourself")

    def test_final_result_while_answering_only_previews(self) -> None:
        self.manager.connect(CaptureMode.MICROPHONE)
        self.answering = True

        FakeRecognizer.instances[0].on_result(RecognitionResult("MIC", "follow up", True))

        self.assertEqual(self.buffer.text, "")
        self.assertEqual(self.buffer.preview, "follow up")

    def test_chunk_transcription_feeds_buffer(self) -> None:
        self.api.transcribe_chunk.return_value = "how would you scale it"
        self.manager.connect(CaptureMode.SCREEN)

        FakeRecorder.instances[0].on_blob(b"RIFF" + b"\x00" * 2000)
        FakeRecorder.instances[0].on_blob(b"RIFF" + b"\x00" * 2000)

        self.assertEqual(self.buffer.text, "how would you scale it")

    def test_chunk_transcription_failure_is_logged(self) -> None:
        self.api.transcribe_chunk.side_effect = APIError("Transcribe failed", 500)
        self.manager.connect(CaptureMode.SCREEN)

        FakeRecorder.instances[0].on_blob(b"RIFF" + b"\x00" * 2000)

        self.assertEqual(self.buffer.text, "")
        self.assertTrue(self.manager.is_connected)

    def test_blobs_after_disconnect_are_dropped(self) -> None:
        self.manager.connect(CaptureMode.SCREEN)
        recorder = FakeRecorder.instances[0]
        self.manager.disconnect()

        recorder.on_blob(b"RIFF" + b"\x00" * 2000)

        self.api.transcribe_chunk.assert_not_called()


class RecognizerRestartTests(CaptureManagerTestCase):
    def test_unexpected_end_restarts_after_backoff(self) -> None:
        self.manager.connect(CaptureMode.MICROPHONE)

        FakeRecognizer.instances[0].die()
        timer = self.timers.last

        self.assertEqual(timer.interval, 0.5)
        self.assertFalse(self.manager.is_listening)
        timer.fire()

        self.assertEqual(len(FakeRecognizer.instances), 2)
        self.assertTrue(FakeRecognizer.instances[1].started)
        self.assertTrue(self.manager.is_listening)

    def test_exhausted_restarts_disconnect(self) -> None:
        self.manager.connect(CaptureMode.MICROPHONE)

        for _ in range(2):
            FakeRecognizer.instances[-1].die()
            self.timers.last.fire()
        FakeRecognizer.instances[-1].die()

        self.assertEqual(self.manager.state, CaptureState.IDLE)
        self.assertIn(("error", "Speech recognition keeps failing; ending session"), self.notices)

    def test_fatal_error_disconnects_immediately(self) -> None:
        self.manager.connect(CaptureMode.MICROPHONE)

        FakeRecognizer.instances[0].die(fatal="OPENAI_API_KEY missing")

        self.assertEqual(self.manager.state, CaptureState.IDLE)
        self.assertIn(("error", "OPENAI_API_KEY missing"), self.notices)

    def test_restart_cancelled_by_disconnect(self) -> None:
        self.manager.connect(CaptureMode.MICROPHONE)
        FakeRecognizer.instances[0].die()
        timer = self.timers.last

        self.manager.disconnect()
        timer.fire()

        self.assertTrue(timer.cancelled)
        self.assertEqual(len(FakeRecognizer.instances), 1)

    def test_stopped_recognizer_is_not_restarted(self) -> None:
        self.manager.connect(CaptureMode.MICROPHONE)

        self.manager.toggle_listening()
        FakeRecognizer.instances[0].die()

        self.assertFalse(self.manager.is_listening)
        self.assertTrue(self.manager.is_connected)
        self.assertTrue(self.manager.toggle_listening())
        self.assertEqual(len(FakeRecognizer.instances), 2)

    def test_elapsed_time_resets_on_disconnect(self) -> None:
        self.assertEqual(self.manager.elapsed_s, 0.0)
        self.manager.connect(CaptureMode.MICROPHONE)

        self.now += 75.0
        self.assertEqual(self.manager.elapsed_s, 75.0)

        self.manager.disconnect()
        self.assertEqual(self.manager.elapsed_s, 0.0)


class LiveSessionTests(unittest.TestCase):
    def setUp(self) -> None:
        reset_fakes()
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.kv = KeyValueStore(Path(self._tmp.name))
        self.timers = TimerFactory()
        self.requests: List[httpx.Request] = []
        self.profile = Profile(name="Ada", skills=["python"])

    def make_session(self, transport=None, context=None) -> LiveSession:
        transport = transport or answer_transport(["I led ", "the migration."], self.requests)
        api = make_api(transport)

        def capture_factory(buffer):
            return CaptureSessionManager(
                buffer,
                api,
                capture_factory=FakeCapture,
                recognizer_factory=FakeRecognizer,
                recorder_factory=FakeRecorder,
                devices=lambda: [MIC_DEVICE, LOOPBACK_DEVICE],
                timer_factory=self.timers,
                notifier=lambda level, message: None,
            )

        return LiveSession(
            api,
            ChatLog(ChatHistoryStore(self.kv)),
            context=context,
            profile_provider=lambda: self.profile,
            detection=DetectionConfig(),
            timer_factory=self.timers,
            capture_factory=capture_factory,
        )

    def test_generate_answer_appends_question_and_answer(self) -> None:
        ctx = SessionContext(role="SRE", company="Acme")
        session = self.make_session(context=ctx)
        session.set_manual_input("Tell me about a migration")

        self.assertTrue(session.generate_answer(wait=True))

        kinds = [(m.kind, m.text) for m in session.messages]
        self.assertEqual(kinds, [("question", "Tell me about a migration"), ("answer", "I led the migration.")])
        self.assertEqual(session.streaming_text, "")
        self.assertEqual(session.manual_input, "")
        body = json.loads(self.requests[0].content)
        self.assertTrue(body["session_id"].startswith("nexus_"))
        self.assertEqual(body["profile"]["name"], "Ada")
        self.assertEqual(body["interview_context"]["role"], "SRE")
        self.assertEqual(body["interview_context"]["company"], "Acme")

    def test_profile_left_out_when_disabled(self) -> None:
        session = self.make_session(context=SessionContext(role="SRE", use_profile=False))

        session.generate_answer("Why Acme?", wait=True)

        self.assertNotIn("profile", json.loads(self.requests[0].content))

    def test_uses_detected_question_and_clears_it(self) -> None:
        session = self.make_session()
        session.buffer.append("how do you")
        session.buffer.append("handle on-call")

        self.assertTrue(session.generate_answer(wait=True))

        self.assertEqual(session.messages[0].text, "how do you handle on-call")
        self.assertEqual(session.detected_question, "")

    def test_nothing_to_answer(self) -> None:
        session = self.make_session()

        self.assertFalse(session.generate_answer("   "))
        self.assertFalse(session.answer_detected())
        self.assertEqual(session.messages, [])

    def test_failed_stream_commits_error_answer(self) -> None:
        session = self.make_session(transport=answer_transport([], self.requests, status=500))

        session.generate_answer("Why?", wait=True)

        self.assertEqual(session.messages[-1].kind, "answer")
        self.assertEqual(session.messages[-1].text, "Error: model unavailable")
        self.assertEqual(session.streamer.phase, AnswerPhase.FAILED)

    def test_idle_timeout_commits_error_answer(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            def body():
                yield b'data: {"text": "I would"}\n\n'
                raise httpx.ReadTimeout("idle")

            return httpx.Response(200, content=body())

        session = self.make_session(transport=httpx.MockTransport(handler))

        session.generate_answer("Why?", wait=True)

        self.assertEqual(session.messages[-1].kind, "answer")
        self.assertTrue(session.messages[-1].text.startswith("Error: "))
        self.assertEqual(session.streaming_text, "")
        self.assertEqual(session.streamer.phase, AnswerPhase.FAILED)

    def test_rejected_while_streaming(self) -> None:
        release = threading.Event()

        def handler(request: httpx.Request) -> httpx.Response:
            def body():
                yield b'data: {"text": "thinking"}\n\n'
                release.wait(5)
                yield b'data: {"done": true}\n\n'

            return httpx.Response(200, content=body())

        session = self.make_session(transport=httpx.MockTransport(handler))
        session.capture.connect(CaptureMode.MICROPHONE)

        self.assertTrue(session.generate_answer("first"))
        self.assertFalse(session.generate_answer("second"))
        FakeRecognizer.instances[0].on_result(RecognitionResult("MIC", "ignored while answering", True))
        self.assertEqual(session.detected_question, "")

        session.capture.disconnect()
        self.assertTrue(session.is_streaming)

        release.set()
        session.streamer.join(5)
        self.assertEqual([m.text for m in session.messages], ["first", "thinking"])

    def test_waiting_caller_does_not_block_others(self) -> None:
        release = threading.Event()

        def handler(request: httpx.Request) -> httpx.Response:
            def body():
                yield b'data: {"text": "thinking"}\n\n'
                release.wait(5)
                yield b'data: {"done": true}\n\n'

            return httpx.Response(200, content=body())

        session = self.make_session(transport=httpx.MockTransport(handler))
        first = threading.Thread(target=session.generate_answer, args=("first",), kwargs={"wait": True})
        first.start()
        for _ in range(100):
            if session.streaming_text:
                break
            release.wait(0.02)

        self.assertFalse(session.generate_answer("second", wait=True))
        self.assertFalse(release.is_set())

        release.set()
        first.join(5)
        self.assertEqual([m.text for m in session.messages], ["first", "thinking"])

    def test_chat_is_persisted_and_cleared(self) -> None:
        session = self.make_session()
        session.generate_answer("Why?", wait=True)

        self.assertEqual(len(ChatHistoryStore(self.kv).load()), 2)
        session.clear_chat()

        self.assertEqual(session.messages, [])
        self.assertEqual(ChatHistoryStore(self.kv).load(), [])


if __name__ == "__main__":
    unittest.main()
