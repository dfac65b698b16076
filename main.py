#!/usr/bin/env python3
"""Nexus live-interview assistant: Tk GUI and CLI entrypoints."""

from __future__ import annotations

import argparse
import json
import logging
import queue
import sys
import threading
import time
import tkinter as tk
from pathlib import Path
from tkinter import filedialog, ttk
from tkinter.scrolledtext import ScrolledText
from typing import Callable, Optional, Sequence

from api_client import APIError, InterviewAPI, describe_profiles
from capture_core import CaptureError, find_loopback_candidate, list_input_devices, pick_default_mic
from config import APIConfig, DetectionConfig
from live_session import CaptureMode, CaptureSessionManager, LiveSession
from models import AVAILABLE_MODELS, DEFAULT_MODEL_ID, ChatMessage, SessionContext
from profile_store import ChatHistoryStore, ChatLog, KeyValueStore, ProfileStore
from views import CODING_LANGUAGES, CodingSession, FlowStage, PracticeSession, SessionFlow, SetupError

LOG = logging.getLogger("nexus_live")
BRIDGED_LOGGERS = ("nexus_live", "nexus_http")
EXPORT_FILENAME = "nexus-backup.json"


# ---------------------------------------------------------------------------
# Shared wiring


class Services:
    """Storage, backend client and chat log built from one ``APIConfig``."""

    def __init__(self, cfg: Optional[APIConfig] = None):
        self.cfg = cfg or APIConfig.from_env()
        self.detection = DetectionConfig.from_env()
        self.kv = KeyValueStore(self.cfg.storage_dir)
        self.profiles = ProfileStore(self.kv)
        self.chat_store = ChatHistoryStore(self.kv, limit=self.detection.chat_limit)
        self.api = InterviewAPI(self.cfg)

    def live_session(self, notifier: Callable[[str, str], None], on_change: Optional[Callable[[], None]] = None) -> LiveSession:
        return LiveSession(
            self.api,
            ChatLog(self.chat_store),
            profile_provider=self.profiles.load,
            detection=self.detection,
            capture_factory=lambda buf: CaptureSessionManager(buf, self.api, notifier=notifier),
            on_change=on_change,
        )

    def close(self) -> None:
        self.api.close()


# ---------------------------------------------------------------------------
# GUI


class TkLogHandler(logging.Handler):
    def __init__(self, callback: Callable[[str], None]):
        super().__init__()
        self.callback = callback

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            self.callback(msg)
        except Exception:
            self.handleError(record)


class App(tk.Tk):
    def __init__(self, services: Optional[Services] = None):
        super().__init__()
        self.title("Nexus Live Interview")
        self.geometry("1000x720")

        self.services = services or Services()
        self.log_queue: "queue.Queue[str]" = queue.Queue(maxsize=256)
        self._log_handler: Optional[TkLogHandler] = None
        self._refresh_pending = False
        self._upload_thread: Optional[threading.Thread] = None

        self.session = self.services.live_session(self._notify_threadsafe, self._schedule_refresh)
        self.flow = SessionFlow(self.session)

        self.status = tk.StringVar(value="Idle")
        self.profile_var = tk.StringVar()
        self.role_var = tk.StringVar()
        self.company_var = tk.StringVar()
        self.model_var = tk.StringVar(value=self._model_label(DEFAULT_MODEL_ID))
        self.use_profile_var = tk.BooleanVar(value=True)
        self.manual_var = tk.StringVar()
        self.transcript_var = tk.StringVar()
        self.session_var = tk.StringVar()

        body = ttk.Frame(self)
        body.pack(fill=tk.BOTH, expand=True)

        self.screen_frame = ttk.Frame(body)
        self.screen_frame.pack(side=tk.TOP, fill=tk.BOTH, expand=True, padx=8, pady=6)

        self.setup_frame = self._build_setup(self.screen_frame)
        self.connect_frame = self._build_connect(self.screen_frame)
        self.active_frame = self._build_active(self.screen_frame)

        log_frame = ttk.LabelFrame(body, text="Log")
        log_frame.pack(side=tk.BOTTOM, fill=tk.X, padx=8, pady=(0, 6))
        self.log_text = ScrolledText(log_frame, height=7, wrap=tk.WORD)
        self.log_text.pack(fill=tk.X)
        ttk.Label(log_frame, textvariable=self.status, anchor="w").pack(fill=tk.X)

        self._setup_logging_bridge()
        self._refresh_profile()
        self._show_stage()
        self.after(200, self._drain_logs)
        self.after(1000, self._tick)

    # ---- layout ----------------------------------------------------------

    @staticmethod
    def _model_label(model_id: str) -> str:
        for model in AVAILABLE_MODELS:
            if model["id"] == model_id:
                return f"{model['name']} ({model['desc']})"
        return model_id

    @staticmethod
    def _model_id(label: str) -> str:
        for model in AVAILABLE_MODELS:
            if label.startswith(model["name"]):
                return model["id"]
        return DEFAULT_MODEL_ID

    def _build_setup(self, parent) -> ttk.Frame:
        frame = ttk.Frame(parent)

        profile_box = ttk.LabelFrame(frame, text="Profile")
        profile_box.pack(fill=tk.X, pady=(0, 6))
        ttk.Label(profile_box, textvariable=self.profile_var).pack(side=tk.LEFT, padx=4)
        ttk.Button(profile_box, text="Clear", command=self._clear_profile).pack(side=tk.RIGHT, padx=2)
        self.upload_btn = ttk.Button(profile_box, text="Upload resume…", command=self._choose_resume)
        self.upload_btn.pack(side=tk.RIGHT, padx=2)

        data_box = ttk.LabelFrame(frame, text="Data")
        data_box.pack(side=tk.BOTTOM, fill=tk.X, pady=(6, 0))
        ttk.Button(data_box, text="Export data…", command=self._export_data).pack(side=tk.LEFT, padx=2)
        ttk.Button(data_box, text="Clear all data", command=self._clear_all_data).pack(side=tk.LEFT, padx=2)

        form = ttk.LabelFrame(frame, text="Interview")
        form.pack(fill=tk.BOTH, expand=True)
        form.columnconfigure(1, weight=1)

        ttk.Label(form, text="Role *").grid(row=0, column=0, sticky="w")
        ttk.Entry(form, textvariable=self.role_var).grid(row=0, column=1, sticky="ew", pady=2)
        ttk.Label(form, text="Company").grid(row=1, column=0, sticky="w")
        ttk.Entry(form, textvariable=self.company_var).grid(row=1, column=1, sticky="ew", pady=2)
        ttk.Label(form, text="Job description").grid(row=2, column=0, sticky="nw")
        self.jd_text = ScrolledText(form, height=8, wrap=tk.WORD)
        self.jd_text.grid(row=2, column=1, sticky="nsew", pady=2)
        form.rowconfigure(2, weight=1)
        ttk.Label(form, text="Model").grid(row=3, column=0, sticky="w")
        ttk.Combobox(
            form,
            textvariable=self.model_var,
            values=[self._model_label(m["id"]) for m in AVAILABLE_MODELS],
            state="readonly",
        ).grid(row=3, column=1, sticky="ew", pady=2)
        ttk.Checkbutton(form, text="Use my profile in answers", variable=self.use_profile_var).grid(
            row=4, column=1, sticky="w"
        )
        ttk.Button(form, text="Continue", command=self._on_continue).grid(row=5, column=1, sticky="e", pady=6)
        return frame

    def _build_connect(self, parent) -> ttk.Frame:
        frame = ttk.Frame(parent)
        ttk.Label(frame, textvariable=self.session_var, font=("TkDefaultFont", 12, "bold")).pack(anchor="w", pady=6)
        buttons = ttk.Frame(frame)
        buttons.pack(anchor="w", pady=6)
        ttk.Button(buttons, text="System audio (screen)", command=lambda: self._on_connect(CaptureMode.SCREEN)).pack(
            side=tk.LEFT, padx=4
        )
        ttk.Button(buttons, text="Microphone only", command=lambda: self._on_connect(CaptureMode.MICROPHONE)).pack(
            side=tk.LEFT, padx=4
        )
        ttk.Button(frame, text="Back", command=self._on_back).pack(anchor="w", pady=6)
        return frame

    def _build_active(self, parent) -> ttk.Frame:
        frame = ttk.Frame(parent)

        top = ttk.Frame(frame)
        top.pack(fill=tk.X)
        self.active_status = tk.StringVar()
        ttk.Label(top, textvariable=self.active_status).pack(side=tk.LEFT)
        ttk.Button(top, text="End session", command=self._on_end_session).pack(side=tk.RIGHT, padx=2)
        ttk.Button(top, text="Clear chat", command=self.session.clear_chat).pack(side=tk.RIGHT, padx=2)
        self.listen_btn = ttk.Button(top, text="Mute mic", command=self._on_toggle_listen)
        self.listen_btn.pack(side=tk.RIGHT, padx=2)

        ttk.Label(frame, textvariable=self.transcript_var, foreground="gray").pack(fill=tk.X, pady=(4, 0))

        detected = ttk.LabelFrame(frame, text="Detected question")
        detected.pack(fill=tk.X, pady=4)
        self.detected_text = ScrolledText(detected, height=3, wrap=tk.WORD, state=tk.DISABLED)
        self.detected_text.pack(side=tk.LEFT, fill=tk.X, expand=True)
        det_buttons = ttk.Frame(detected)
        det_buttons.pack(side=tk.RIGHT, padx=4)
        self.answer_btn = ttk.Button(det_buttons, text="Get answer", command=self._on_answer_detected)
        self.answer_btn.pack(fill=tk.X)
        ttk.Button(det_buttons, text="Clear", command=self.session.clear_detected).pack(fill=tk.X, pady=2)

        self.chat_text = ScrolledText(frame, height=18, wrap=tk.WORD, state=tk.DISABLED)
        self.chat_text.pack(fill=tk.BOTH, expand=True, pady=4)
        self.chat_text.tag_configure("question", foreground="#1d4ed8")
        self.chat_text.tag_configure("streaming", foreground="gray")

        manual = ttk.Frame(frame)
        manual.pack(fill=tk.X)
        entry = ttk.Entry(manual, textvariable=self.manual_var)
        entry.pack(side=tk.LEFT, fill=tk.X, expand=True)
        entry.bind("<Return>", lambda _e: self._on_send_manual())
        self.send_btn = ttk.Button(manual, text="Send", command=self._on_send_manual)
        self.send_btn.pack(side=tk.RIGHT, padx=2)
        return frame

    def _show_stage(self) -> None:
        for frame in (self.setup_frame, self.connect_frame, self.active_frame):
            frame.pack_forget()
        stage = self.flow.stage
        if stage is FlowStage.SETUP:
            self.setup_frame.pack(fill=tk.BOTH, expand=True)
        elif stage is FlowStage.CONNECT:
            form = self.flow.form
            at = f" @ {form.company}" if form.company.strip() else ""
            self.session_var.set(f"{form.role.strip()}{at}")
            self.connect_frame.pack(fill=tk.BOTH, expand=True)
        else:
            self.active_frame.pack(fill=tk.BOTH, expand=True)
            self._refresh()

    # ---- logging bridge --------------------------------------------------

    def _setup_logging_bridge(self):
        handler = TkLogHandler(self._queue_log)
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter("%(levelname)s %(message)s"))
        for name in BRIDGED_LOGGERS:
            logging.getLogger(name).addHandler(handler)
        self._log_handler = handler

    def _queue_log(self, message: str):
        try:
            self.log_queue.put_nowait(message)
        except queue.Full:
            pass

    def _drain_logs(self):
        try:
            while True:
                msg = self.log_queue.get_nowait()
                self._append_log(msg)
        except queue.Empty:
            pass
        finally:
            self.after(200, self._drain_logs)

    def _append_log(self, message: str):
        stamp = time.strftime("%H:%M:%S")
        self.log_text.insert(tk.END, f"[{stamp}] {message}\n")
        self.log_text.see(tk.END)

    def _notify_threadsafe(self, level: str, message: str) -> None:
        def _ui():
            self.status.set(message)
            self._append_log(f"{level.upper()} {message}")
            if self.flow.stage is not FlowStage.ACTIVE and self.active_frame.winfo_ismapped():
                self._show_stage()

        self.after(0, _ui)

    # ---- profile ---------------------------------------------------------

    def _refresh_profile(self) -> None:
        profile = self.services.profiles.load()
        self.profile_var.set(profile.headline() if profile is not None else "No profile loaded")

    def _clear_profile(self) -> None:
        self.services.profiles.clear()
        self._refresh_profile()
        self._append_log("Profile cleared")

    def _export_data(self) -> None:
        path = filedialog.asksaveasfilename(
            title="Export data",
            initialfile=EXPORT_FILENAME,
            defaultextension=".json",
            filetypes=[("JSON", "*.json")],
        )
        if not path:
            return
        try:
            target = self.services.kv.export(path)
        except OSError as exc:
            self.status.set(f"Export failed: {exc}")
            return
        self.status.set(f"Data exported to {target}")

    def _clear_all_data(self) -> None:
        self.services.kv.clear()
        self.session.clear_chat()
        self._refresh_profile()
        self.status.set("All data cleared")

    def _choose_resume(self) -> None:
        path = filedialog.askopenfilename(
            title="Select resume",
            filetypes=[("Resumes", "*.pdf *.doc *.docx"), ("All files", "*.*")],
        )
        if path:
            self._upload_async(Path(path))

    def _upload_async(self, path: Path) -> None:
        if self._upload_thread is not None and self._upload_thread.is_alive():
            self._append_log("Upload already in progress")
            return
        self.upload_btn.configure(state=tk.DISABLED)
        self.status.set(f"Uploading {path.name}…")

        def _worker():
            try:
                profile = self.services.api.upload_resume(path)
            except APIError as exc:
                self.after(0, self._handle_upload_failure, exc)
                return
            self.services.profiles.save(profile)
            self.after(0, self._handle_upload_success, profile.name)

        thread = threading.Thread(target=_worker, name="resume-upload", daemon=True)
        self._upload_thread = thread
        thread.start()

    def _handle_upload_success(self, name: str) -> None:
        self.upload_btn.configure(state=tk.NORMAL)
        self._refresh_profile()
        self.status.set(f"Welcome, {name}!")

    def _handle_upload_failure(self, exc: APIError) -> None:
        self.upload_btn.configure(state=tk.NORMAL)
        self.status.set(f"Upload failed: {exc.message}")
        self._append_log(f"Upload failed: {exc.message}")

    # ---- flow actions ----------------------------------------------------

    def _read_form(self) -> None:
        form = self.flow.form
        form.role = self.role_var.get()
        form.company = self.company_var.get()
        form.job_description = self.jd_text.get("1.0", tk.END).strip()
        form.model_id = self._model_id(self.model_var.get())
        form.use_profile = bool(self.use_profile_var.get())

    def _on_continue(self) -> None:
        self._read_form()
        try:
            self.flow.advance()
        except SetupError as exc:
            self.status.set(str(exc))
            return
        self._show_stage()

    def _on_back(self) -> None:
        self.flow.back_to_setup()
        self._show_stage()

    def _on_connect(self, mode: CaptureMode) -> None:
        self.status.set("Connecting…")
        self.update_idletasks()
        if self.flow.start(mode):
            self._show_stage()

    def _on_end_session(self) -> None:
        self.flow.end_session()
        self._show_stage()

    def _on_toggle_listen(self) -> None:
        listening = self.session.capture.toggle_listening()
        self.listen_btn.configure(text="Mute mic" if listening else "Unmute mic")

    def _on_answer_detected(self) -> None:
        if not self.session.answer_detected():
            self.status.set("Nothing to answer yet" if not self.session.is_streaming else "Answer in progress")

    def _on_send_manual(self) -> None:
        self.session.set_manual_input(self.manual_var.get())
        if self.session.generate_answer():
            self.manual_var.set("")

    # ---- rendering -------------------------------------------------------

    def _schedule_refresh(self) -> None:
        if self._refresh_pending:
            return
        self._refresh_pending = True
        self.after(0, self._refresh)

    def _write_text(self, widget, text: str) -> None:
        widget.configure(state=tk.NORMAL)
        widget.delete("1.0", tk.END)
        widget.insert(tk.END, text)
        widget.configure(state=tk.DISABLED)

    def _render_chat(self) -> None:
        widget = self.chat_text
        widget.configure(state=tk.NORMAL)
        widget.delete("1.0", tk.END)
        for message in self.session.messages:
            self._insert_message(widget, message)
        if self.session.streaming_text:
            widget.insert(tk.END, f"{self.session.streaming_text}▌\n\n", "streaming")
        widget.see(tk.END)
        widget.configure(state=tk.DISABLED)

    @staticmethod
    def _insert_message(widget, message: ChatMessage) -> None:
        stamp = time.strftime("%H:%M:%S", time.localtime(message.timestamp_ms / 1000))
        if message.kind == "question":
            widget.insert(tk.END, f"[{stamp}] Q: {message.text}\n", "question")
        else:
            widget.insert(tk.END, f"[{stamp}] {message.text}\n\n")

    def _refresh(self) -> None:
        self._refresh_pending = False
        if self.flow.stage is not FlowStage.ACTIVE:
            if self.active_frame.winfo_ismapped():
                self._show_stage()
            return
        self.transcript_var.set(self.session.live_transcript)
        self._write_text(self.detected_text, self.session.detected_question)
        self._render_chat()
        busy = tk.DISABLED if self.session.is_streaming else tk.NORMAL
        self.answer_btn.configure(state=busy)
        self.send_btn.configure(state=busy)

    def _tick(self) -> None:
        try:
            capture = self.session.capture
            if self.flow.stage is FlowStage.ACTIVE and capture.is_connected:
                elapsed = int(capture.elapsed_s)
                mode = "System audio" if capture.mode is CaptureMode.SCREEN else "Microphone"
                listening = "listening" if capture.is_listening else "muted"
                self.active_status.set(
                    f"{mode} · {listening} · {elapsed // 60:02d}:{elapsed % 60:02d} · level {capture.audio_level:.0f}"
                )
        finally:
            self.after(1000, self._tick)

    def destroy(self):
        if self._log_handler:
            for name in BRIDGED_LOGGERS:
                logging.getLogger(name).removeHandler(self._log_handler)
            self._log_handler = None
        try:
            self.session.close()
        except Exception:  # noqa: BLE001
            LOG.exception("session close failed")
        self.services.close()
        super().destroy()


def run_app() -> None:
    App().mainloop()


# ---------------------------------------------------------------------------
# CLI


def _print_notice(level: str, message: str) -> None:
    print(f"[{level}] {message}", file=sys.stderr)


def _context_from_args(args: argparse.Namespace) -> Optional[SessionContext]:
    role = (getattr(args, "role", None) or "").strip()
    if not role:
        return None
    return SessionContext(
        role=role,
        company=args.company or "",
        job_description=args.job_description or "",
        model_id=args.model or DEFAULT_MODEL_ID,
        use_profile=not args.no_profile,
    )


class _StreamPrinter:
    """Writes the growing answer to stdout as deltas."""

    def __init__(self, session: LiveSession):
        self.session = session
        self._printed = 0

    def __call__(self) -> None:
        text = self.session.streaming_text
        if len(text) > self._printed:
            sys.stdout.write(text[self._printed:])
            sys.stdout.flush()
            self._printed = len(text)

    def finish(self) -> None:
        messages = self.session.messages
        if messages and messages[-1].kind == "answer":
            final = messages[-1].text
            if final.startswith("Error: "):
                sys.stdout.write(("\n" if self._printed else "") + final)
            elif len(final) > self._printed:
                sys.stdout.write(final[self._printed:])
        sys.stdout.write("\n")
        sys.stdout.flush()
        self._printed = 0


def _cmd_health(services: Services, args: argparse.Namespace) -> int:
    print(json.dumps(services.api.check_health(), indent=2))
    return 0


def _cmd_upload(services: Services, args: argparse.Namespace) -> int:
    profile = services.api.upload_resume(Path(args.path))
    services.profiles.save(profile)
    print(f"Welcome, {profile.name}!")
    print(profile.headline())
    return 0


def _cmd_profile(services: Services, args: argparse.Namespace) -> int:
    if args.action == "clear":
        services.profiles.clear()
        print("Profile cleared")
        return 0
    if args.action == "list":
        for line in describe_profiles(services.api.list_profiles()):
            print(line)
        return 0
    profile = services.profiles.load()
    if profile is None:
        print("No profile loaded")
        return 1
    print(json.dumps(profile.to_payload(), indent=2))
    return 0


def _cmd_history(services: Services, args: argparse.Namespace) -> int:
    if args.action == "clear":
        services.chat_store.clear()
        print("Chat cleared")
        return 0
    for message in services.chat_store.load():
        prefix = "Q" if message.kind == "question" else "A"
        print(f"{prefix}: {message.text}")
    return 0


def _cmd_data(services: Services, args: argparse.Namespace) -> int:
    if args.action == "clear":
        services.kv.clear()
        print("All data cleared")
        return 0
    target = services.kv.export(args.path)
    print(f"Data exported to {target}")
    return 0


def _cmd_devices(services: Services, args: argparse.Namespace) -> int:
    for dev in list_input_devices():
        print(f"{dev['index']}: {dev['name']} ({dev['channels']} ch)")
    loop_idx, loop_name = find_loopback_candidate()
    mic_idx = pick_default_mic()
    print(f"system audio: {loop_name if loop_idx is not None else 'not found'}")
    print(f"microphone: {mic_idx if mic_idx is not None else 'not found'}")
    return 0


def _cmd_memory(services: Services, args: argparse.Namespace) -> int:
    if args.action == "clear":
        result = services.api.clear_memory(args.session_id)
    else:
        result = services.api.memory_status(args.session_id)
    print(json.dumps(result, indent=2))
    return 0


def _cmd_ask(services: Services, args: argparse.Namespace) -> int:
    session = services.live_session(_print_notice)
    session.context = _context_from_args(args)
    printer = _StreamPrinter(session)
    session.on_change = printer
    question = " ".join(args.question)
    if not session.generate_answer(question, wait=True):
        print("Nothing to ask", file=sys.stderr)
        return 2
    printer.finish()
    last = session.messages[-1]
    return 1 if last.kind == "answer" and last.text.startswith("Error: ") else 0


def _cmd_practice(services: Services, args: argparse.Namespace) -> int:
    def _write(text: str) -> None:
        sys.stdout.write(text[len(printed[0]):])
        sys.stdout.flush()
        printed[0] = text

    printed = [""]
    profiles = (lambda: None) if args.no_profile else services.profiles.load
    if args.command == "code":
        session: PracticeSession = CodingSession(services.api, profiles)
        result = session.solve(" ".join(args.challenge), args.language, on_update=_write)
    else:
        session = PracticeSession(services.api, profiles, history_limit=services.detection.practice_history_limit)
        result = session.ask(" ".join(args.question), on_update=_write)
    sys.stdout.write("\n")
    if result is None:
        print(f"Failed to get response: {session.last_error or 'nothing to ask'}", file=sys.stderr)
        return 1
    return 0


def _cmd_listen(services: Services, args: argparse.Namespace) -> int:
    session = services.live_session(_print_notice)
    session.context = _context_from_args(args)
    printer = _StreamPrinter(session)
    shown = {"preview": "", "question": ""}

    def _on_change() -> None:
        printer()
        if session.is_streaming:
            return
        preview, detected = session.live_transcript, session.detected_question
        if preview and preview != shown["preview"]:
            print(f"… {preview}", file=sys.stderr)
        if detected != shown["question"] and detected:
            print(f"? {detected}", file=sys.stderr)
        shown["preview"], shown["question"] = preview, detected

    session.on_change = _on_change
    mode = CaptureMode.SCREEN if args.mode == "screen" else CaptureMode.MICROPHONE
    try:
        session.capture.connect(mode)
    except CaptureError:
        return 2

    print("Listening… Enter answers the detected question, text asks it, 'q' quits.", file=sys.stderr)
    try:
        for line in sys.stdin:
            line = line.strip()
            if line.lower() in {"q", "quit", "exit"}:
                break
            if not session.capture.is_connected:
                break
            if session.generate_answer(line or None, wait=True):
                printer.finish()
    except KeyboardInterrupt:
        pass
    finally:
        session.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="nexus-live", description="Live interview assistant (headless)")
    parser.add_argument("--api-base", default=None, help="Backend base URL (default: NEXUS_API_BASE)")
    parser.add_argument("--storage-dir", default=None, help="Local storage directory (default: NEXUS_STORAGE_DIR)")
    parser.add_argument("--quiet", action="store_true", help="Reduce console logs")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("health", help="Check backend health")
    p.set_defaults(func=_cmd_health)

    p = sub.add_parser("upload", help="Upload a resume and store the parsed profile")
    p.add_argument("path")
    p.set_defaults(func=_cmd_upload)

    p = sub.add_parser("profile", help="Show, list or clear the stored profile")
    p.add_argument("action", choices=["show", "clear", "list"], nargs="?", default="show")
    p.set_defaults(func=_cmd_profile)

    p = sub.add_parser("history", help="Show or clear the persisted live chat")
    p.add_argument("action", choices=["show", "clear"], nargs="?", default="show")
    p.set_defaults(func=_cmd_history)

    p = sub.add_parser("data", help="Export or clear all locally stored data")
    p.add_argument("action", choices=["export", "clear"])
    p.add_argument("path", nargs="?", default=EXPORT_FILENAME)
    p.set_defaults(func=_cmd_data)

    p = sub.add_parser("devices", help="List audio input devices")
    p.set_defaults(func=_cmd_devices)

    p = sub.add_parser("memory", help="Backend conversation memory for a session")
    p.add_argument("action", choices=["status", "clear"], nargs="?", default="status")
    p.add_argument("--session-id", default="default")
    p.set_defaults(func=_cmd_memory)

    p = sub.add_parser("practice", help="Practice answer to one interview question")
    p.add_argument("question", nargs="+")
    p.add_argument("--no-profile", action="store_true")
    p.set_defaults(func=_cmd_practice)

    p = sub.add_parser("code", help="Solve a coding challenge")
    p.add_argument("challenge", nargs="+")
    p.add_argument("--language", choices=CODING_LANGUAGES, default="python")
    p.add_argument("--no-profile", action="store_true")
    p.set_defaults(func=_cmd_practice)

    for name, func, help_text in (
        ("ask", _cmd_ask, "Stream an answer to one question"),
        ("listen", _cmd_listen, "Capture audio and answer detected questions"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--role", default=None)
        p.add_argument("--company", default=None)
        p.add_argument("--job-description", default=None)
        p.add_argument("--model", default=DEFAULT_MODEL_ID, choices=[m["id"] for m in AVAILABLE_MODELS])
        p.add_argument("--no-profile", action="store_true", help="Do not send the stored profile")
        if name == "ask":
            p.add_argument("question", nargs="+")
        else:
            p.add_argument("--mode", choices=["mic", "screen"], default="mic")
        p.set_defaults(func=func)
    return parser


def cli_main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    if args.quiet:
        for name in BRIDGED_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    cfg = APIConfig.from_env()
    if args.api_base:
        cfg.base_url = args.api_base.rstrip("/")
    if args.storage_dir:
        cfg.storage_dir = Path(args.storage_dir).expanduser()

    services = Services(cfg)
    try:
        return args.func(services, args)
    except APIError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        return 1
    finally:
        services.close()


# ---------------------------------------------------------------------------
# Entry point helpers

__all__ = ["App", "Services", "TkLogHandler", "build_parser", "cli_main", "run_app", "main"]


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = list(argv if argv is not None else sys.argv)
    if len(args) > 1 and args[1] == "cli":
        return cli_main(args[2:])
    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    run_app()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
