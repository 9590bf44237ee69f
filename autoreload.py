#!/usr/bin/env python3
import argparse
import json
import logging
import os
import re
import signal
import socket
import subprocess
import sys
import tempfile
import threading
import time
from collections import deque
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from typing import Callable, Deque, Dict, List, Optional
from urllib.parse import urljoin

import requests


def default_ipc_path() -> str:
    return os.path.join(tempfile.gettempdir(), "mpv-autoreload.sock")


DEFAULT_CONFIG = {
    "mpv_path": "mpv",
    "spawn_mpv": True,
    "ipc_path": default_ipc_path(),
    "ipc_timeout_sec": 2,
    "mpv_args": [],
    "demuxer_interval_sec": 4,
    "demuxer_max_sec": 15,
    "demuxer_min_duration_sec": 6,
    "demuxer_disable_when_seekable": False,
    "pause_interval_sec": 2,
    "pause_max_sec": 10,
    "pause_seed_from_demuxer": True,
    "position_poll_sec": 2,
    "non_resumable_formats": ["hls"],
    "notify": True,
    "notify_command": ["notify-send", "-t", "0", "-u", "low"],
    "osd": True,
    "redirect_url_pattern": "",
    "redirect_extract_pattern": "",
    "redirect_timeout_sec": 15,
    "redirect_user_agent": "Mozilla/5.0",
    "log_file": "",
    "log_max_bytes": 5_000_000,
    "log_backup_count": 3,
    "log_level": "INFO",
}

NUMERIC_KEYS = (
    "ipc_timeout_sec",
    "demuxer_interval_sec",
    "demuxer_max_sec",
    "demuxer_min_duration_sec",
    "pause_interval_sec",
    "pause_max_sec",
    "position_poll_sec",
    "redirect_timeout_sec",
)

ON_LOAD_HOOK_ID = 1
PAUSED_FOR_CACHE_OBSERVER_ID = 1
NOTIFY_TEXT = "mpv reload"


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class Thresholds:
    demuxer_interval: float
    demuxer_max: float
    demuxer_min_duration: float
    demuxer_disable_when_seekable: bool
    pause_interval: float
    pause_max: float
    pause_seed_from_demuxer: bool


@dataclass
class StallCounter:
    interval: float
    last_value: float = 0.0
    stalled_sec: float = 0.0

    def sample(self, value: float) -> bool:
        if value == self.last_value:
            self.stalled_sec += self.interval
            return True
        self.stalled_sec = 0.0
        self.last_value = value
        return False

    def reset(self) -> None:
        self.last_value = 0.0
        self.stalled_sec = 0.0


@dataclass
class StreamTarget:
    url: str = ""
    captured_at_load: bool = False


def load_config(path: Optional[str], overrides: Optional[Dict] = None) -> Dict:
    cfg = dict(DEFAULT_CONFIG)
    config_dir = os.getcwd()
    if path:
        abs_path = os.path.abspath(path)
        if not os.path.exists(abs_path):
            raise ConfigError(f"Config not found: {path}")
        with open(abs_path, "r", encoding="utf-8") as fh:
            try:
                data = json.load(fh)
            except ValueError as exc:
                raise ConfigError(f"Invalid JSON in {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"Config root must be an object: {path}")
        cfg.update(data)
        config_dir = os.path.dirname(abs_path)
    if overrides:
        cfg.update(overrides)
    if not cfg.get("ipc_path"):
        cfg["ipc_path"] = default_ipc_path()
    for key in ("log_file", "ipc_path"):
        value = cfg.get(key)
        if isinstance(value, str) and value:
            cfg[key] = resolve_path_from_base(config_dir, value)
    for key in NUMERIC_KEYS:
        value = cfg.get(key)
        if isinstance(value, bool):
            raise ConfigError(f"{key} must be a number, got {value!r}")
        try:
            cfg[key] = float(value)
        except (TypeError, ValueError):
            raise ConfigError(f"{key} must be a number, got {value!r}") from None
    if cfg["pause_interval_sec"] <= 0:
        raise ConfigError("pause_interval_sec must be greater than zero")
    if not isinstance(cfg.get("mpv_args"), list):
        raise ConfigError("mpv_args must be a list of strings")
    return cfg


def resolve_path_from_base(base_dir: str, value: str) -> str:
    if not value:
        return value
    if os.path.isabs(value):
        return os.path.normpath(value)
    return os.path.normpath(os.path.join(base_dir, value))


def thresholds_from_config(cfg: Dict) -> Thresholds:
    return Thresholds(
        demuxer_interval=float(cfg["demuxer_interval_sec"]),
        demuxer_max=float(cfg["demuxer_max_sec"]),
        demuxer_min_duration=float(cfg["demuxer_min_duration_sec"]),
        demuxer_disable_when_seekable=bool(cfg.get("demuxer_disable_when_seekable")),
        pause_interval=float(cfg["pause_interval_sec"]),
        pause_max=float(cfg["pause_max_sec"]),
        pause_seed_from_demuxer=bool(cfg.get("pause_seed_from_demuxer")),
    )


def setup_logging(cfg: Dict) -> None:
    level = getattr(logging, str(cfg.get("log_level") or "INFO").upper(), logging.INFO)
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    log_file = cfg.get("log_file")
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                log_file,
                maxBytes=int(cfg.get("log_max_bytes") or 0),
                backupCount=int(cfg.get("log_backup_count") or 0),
            )
        )
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(message)s",
        handlers=handlers,
        force=True,
    )


def desktop_notify(command: List[str], text: str) -> bool:
    if not command:
        return False
    try:
        subprocess.Popen(
            [*command, text],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
    except (OSError, ValueError) as exc:
        logging.debug("notify command %s failed: %s", command[0], exc)
        return False
    return True


class PeriodicTimer:
    def __init__(self, service: "TimerService", interval: float, callback: Callable[[], None]) -> None:
        self.interval = interval
        self.callback = callback
        self.due_at: Optional[float] = service.now() + interval
        self._service = service
        self._cancelled = False

    def is_running(self) -> bool:
        return self.due_at is not None

    def suspend(self) -> None:
        self.due_at = None

    def resume(self) -> None:
        if self._cancelled or self.due_at is not None:
            return
        self.due_at = self._service.now() + self.interval

    def cancel(self) -> None:
        self.due_at = None
        if not self._cancelled:
            self._cancelled = True
            self._service.discard(self)


class TimerService:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._timers: List[PeriodicTimer] = []

    def now(self) -> float:
        return self._clock()

    def create_periodic_timer(self, interval: float, callback: Callable[[], None]) -> PeriodicTimer:
        if interval <= 0:
            raise ValueError(f"timer interval must be positive, got {interval}")
        timer = PeriodicTimer(self, interval, callback)
        self._timers.append(timer)
        return timer

    def discard(self, timer: PeriodicTimer) -> None:
        if timer in self._timers:
            self._timers.remove(timer)

    def next_deadline(self) -> Optional[float]:
        deadlines = [t.due_at for t in self._timers if t.due_at is not None]
        return min(deadlines) if deadlines else None

    def run_due(self, now: Optional[float] = None) -> int:
        if now is None:
            now = self.now()
        fired = 0
        while True:
            due = [t for t in self._timers if t.due_at is not None and t.due_at <= now]
            if not due:
                return fired
            timer = min(due, key=lambda t: t.due_at)
            timer.due_at += timer.interval
            fired += 1
            try:
                timer.callback()
            except Exception:
                logging.exception("Timer callback failed")


class DemuxerCacheMonitor:
    def __init__(self, host, timers: TimerService, thresholds: Thresholds) -> None:
        self._host = host
        self._timers = timers
        self._thresholds = thresholds
        self._timer: Optional[PeriodicTimer] = None
        self._seekable_disabled = False
        self.counter = StallCounter(thresholds.demuxer_interval)
        self.pause_monitor: Optional["StreamPauseMonitor"] = None
        self.on_reload: Optional[Callable[[], None]] = None

    @property
    def enabled(self) -> bool:
        t = self._thresholds
        return t.demuxer_interval > 0 and t.demuxer_max > 0 and not self._seekable_disabled

    def is_running(self) -> bool:
        return self._timer is not None and self._timer.is_running()

    def start(self) -> None:
        if not self.enabled:
            logging.info("Demuxer cache monitor disabled")
            return
        if self._timer is not None:
            return
        self._timer = self._timers.create_periodic_timer(self._thresholds.demuxer_interval, self.tick)
        self.tick()

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def reset(self) -> None:
        logging.debug("Demuxer cache counter reset")
        self.counter.reset()

    def is_stale(self) -> bool:
        return self.enabled and self.counter.stalled_sec >= self._thresholds.demuxer_max

    def tick(self) -> None:
        if self._thresholds.demuxer_disable_when_seekable and self._host.is_seekable():
            logging.info("Stream is seekable; demuxer cache monitor switched off")
            self._seekable_disabled = True
            self.stop()
            self.counter.reset()
            return

        cache_time = self._host.get_buffered_amount()
        cache_duration = self._host.get_buffered_duration()
        reading = -1.0 if cache_time is None else float(cache_time)
        duration = -1.0 if cache_duration is None else float(cache_duration)

        stuck = self.counter.sample(reading)
        logging.debug(
            "Demuxer cache %s %8.2f/%4.1f stalled=%.0fs",
            "stuck" if stuck else "live",
            reading,
            duration,
            self.counter.stalled_sec,
        )

        # paused-for-cache stops firing once the player has nothing left to play
        if self._fallback_due(duration):
            logging.info("Demuxer cache stale for %.0fs with player idle, reloading", self.counter.stalled_sec)
            if self.on_reload is not None:
                self.on_reload()

    def _fallback_due(self, duration: float) -> bool:
        if not self.is_stale():
            return False
        floor = self._thresholds.demuxer_min_duration
        if floor > 0 and duration >= floor:
            return False
        if self.pause_monitor is not None and self.pause_monitor.is_running():
            return False
        return bool(self._host.is_idle())


class PauseTimer:
    def __init__(self, interval: float) -> None:
        self.interval = interval
        self.handle: Optional[PeriodicTimer] = None
        self.paused_sec = 0.0

    @property
    def armed(self) -> bool:
        return self.handle is not None

    @property
    def suspended(self) -> bool:
        return self.handle is not None and not self.handle.is_running()


class StreamPauseMonitor:
    def __init__(self, host, timers: TimerService, thresholds: Thresholds, demuxer: DemuxerCacheMonitor) -> None:
        self._host = host
        self._timers = timers
        self._thresholds = thresholds
        self._demuxer = demuxer
        self.timer = PauseTimer(thresholds.pause_interval)
        self.on_reload: Optional[Callable[[], None]] = None

    def is_running(self) -> bool:
        return self.timer.armed and not self.timer.suspended

    def on_pause_changed(self, paused: bool) -> None:
        if not paused:
            if self.timer.armed:
                logging.debug("Playback resumed after %.0fs paused for cache", self.timer.paused_sec)
            self.reset()
            return

        if self._demuxer.is_stale():
            logging.info(
                "Paused for cache with demuxer cache stale for %.0fs, reloading now",
                self._demuxer.counter.stalled_sec,
            )
            self._reload()
            return

        if not self.timer.armed:
            seed = self._demuxer.counter.stalled_sec if self._thresholds.pause_seed_from_demuxer else 0.0
            self.timer.paused_sec = seed
            self.timer.handle = self._timers.create_periodic_timer(self.timer.interval, self.tick)
            logging.debug("Paused for cache; waiting up to %.0fs (seeded %.0fs)", self._thresholds.pause_max, seed)
        elif self.timer.suspended:
            self.timer.handle.resume()
            logging.debug("Paused for cache again; pause timer resumed at %.0fs", self.timer.paused_sec)
        else:
            logging.debug("Paused for cache while pause timer already running; ignored")

    def tick(self) -> None:
        if self._host.is_idle():
            logging.debug("Player idle; pause timer suspended at %.0fs", self.timer.paused_sec)
            if self.timer.handle is not None:
                self.timer.handle.suspend()
            return
        self.timer.paused_sec += self.timer.interval
        logging.debug("Paused for cache %.0fs/%.0fs", self.timer.paused_sec, self._thresholds.pause_max)
        if self.timer.paused_sec >= self._thresholds.pause_max:
            logging.info("Paused for cache longer than %.0fs, reloading", self._thresholds.pause_max)
            self._reload()

    def reset(self) -> None:
        if self.timer.handle is not None:
            self.timer.handle.cancel()
            self.timer.handle = None
        self.timer.paused_sec = 0.0

    def _reload(self) -> None:
        if self.on_reload is not None:
            self.on_reload()


class ReloadCoordinator:
    def __init__(
        self,
        host,
        target: StreamTarget,
        demuxer: DemuxerCacheMonitor,
        pause: StreamPauseMonitor,
        cfg: Dict,
        notifier: Callable[[List[str], str], bool] = desktop_notify,
    ) -> None:
        self._host = host
        self._target = target
        self._demuxer = demuxer
        self._pause = pause
        self._notifier = notifier
        self._notify_enabled = bool(cfg.get("notify"))
        self._notify_command = list(cfg.get("notify_command") or [])
        self._osd = bool(cfg.get("osd", True))
        self._non_resumable = {str(f).lower() for f in cfg.get("non_resumable_formats") or []}
        self.last_position: Optional[float] = None
        self.last_format: Optional[str] = None
        self.last_seekable = False
        self.reload_count = 0

    def refresh_playback(self) -> None:
        position = self._host.get_playback_position()
        if position is not None:
            self.last_position = position
        fmt = self._host.get_format()
        if fmt is not None:
            self.last_format = fmt
            self.last_seekable = bool(self._host.is_seekable())

    def resume_position(self) -> Optional[float]:
        self.refresh_playback()
        if self.last_position is None:
            return None
        if self.last_format is not None and self.last_format.lower() in self._non_resumable:
            return None
        if not self.last_seekable:
            return None
        return self.last_position

    def reload(self) -> None:
        self._demuxer.reset()
        self._pause.reset()
        self.reload_count += 1

        if self._notify_enabled:
            # result discarded; a missing notifier must not hold up the reload
            if not self._notifier(self._notify_command, NOTIFY_TEXT):
                logging.warning("Desktop notification failed; reloading anyway")

        url = self._target.url
        if not url:
            logging.warning("Reload requested before the stream path was captured; skipped")
            return

        position = self.resume_position()
        if position is not None:
            logging.info("Reload #%d %s at %.2f", self.reload_count, url, position)
            message = f"Reload: {url} {position:.2f}"
        else:
            logging.info("Reload #%d %s", self.reload_count, url)
            message = f"Reload: {url}"
        if self._osd:
            self._host.show_message(message)
        if not self._host.issue_load(url, resume_offset=position, start_paused=False):
            logging.warning("Reload command for %s could not be sent to mpv", url)


class RedirectResolver:
    def __init__(self, url_pattern: str, extract_pattern: str, timeout: float, user_agent: str) -> None:
        try:
            self._url_re = re.compile(url_pattern)
            self._extract_re = re.compile(extract_pattern)
        except re.error as exc:
            raise ConfigError(f"Invalid redirect pattern: {exc}") from exc
        self._timeout = timeout
        self._user_agent = user_agent

    def resolve(self, url: str) -> Optional[str]:
        if not self._url_re.search(url):
            return None
        try:
            resp = requests.get(url, headers={"User-Agent": self._user_agent}, timeout=self._timeout)
            resp.raise_for_status()
        except requests.RequestException as exc:
            logging.warning("Redirect lookup for %s failed: %s", url, exc)
            return None
        match = self._extract_re.search(resp.text)
        if not match:
            logging.warning("Redirect lookup for %s found no playable URL", url)
            return None
        found = match.group(1) if match.groups() else match.group(0)
        resolved = urljoin(url, found.strip())
        logging.info("Redirect %s -> %s", url, resolved)
        return resolved


def build_redirect_resolver(cfg: Dict) -> Optional[RedirectResolver]:
    url_pattern = str(cfg.get("redirect_url_pattern") or "")
    extract_pattern = str(cfg.get("redirect_extract_pattern") or "")
    if not url_pattern or not extract_pattern:
        return None
    return RedirectResolver(
        url_pattern,
        extract_pattern,
        timeout=float(cfg.get("redirect_timeout_sec") or 15),
        user_agent=str(cfg.get("redirect_user_agent") or "Mozilla/5.0"),
    )


class PathTracker:
    def __init__(self, host, target: StreamTarget, resolver: Optional[RedirectResolver] = None) -> None:
        self._host = host
        self._resolver = resolver
        self.target = target

    def on_load(self) -> None:
        if self.target.captured_at_load:
            return
        url = self._host.get_stream_url()
        if not url:
            logging.warning("on_load without stream-open-filename; path not captured")
            return
        if self._resolver is not None:
            resolved = self._resolver.resolve(url)
            if resolved and resolved != url:
                self._host.set_stream_url(resolved)
                url = resolved
        self.target.url = url
        self.target.captured_at_load = True
        logging.info("Stream path: %s", url)


def build_mpv_args(cfg: Dict) -> List[str]:
    args = [
        cfg["mpv_path"],
        "--idle=yes",
        "--force-window=yes",
        "--no-terminal",
        f"--input-ipc-server={cfg['ipc_path']}",
    ]
    args += [str(arg) for arg in cfg.get("mpv_args") or []]
    return args


class MPVController:
    def __init__(self, cfg: Dict) -> None:
        self._cfg = cfg
        self._proc: Optional[subprocess.Popen] = None
        self._ipc: Optional[socket.socket] = None
        self._lock = threading.RLock()
        self._ipc_lock = threading.Lock()
        self._request_id = 0
        self._recv_buffer = b""
        self._pending_events: Deque[Dict] = deque()

    def _cleanup_ipc_path(self) -> None:
        ipc_path = self._cfg["ipc_path"]
        if os.path.exists(ipc_path):
            try:
                os.remove(ipc_path)
            except OSError:
                pass

    def _open_ipc(self, timeout: float = 10.0) -> bool:
        ipc_path = self._cfg["ipc_path"]
        start = time.time()
        while time.time() - start < timeout:
            if self._proc is not None and self._proc.poll() is not None:
                return False
            try:
                if os.path.exists(ipc_path):
                    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
                    sock.settimeout(2.0)
                    sock.connect(ipc_path)
                    self._ipc = sock
                    return True
            except OSError:
                pass
            time.sleep(0.2)
        return False

    def _close_ipc(self) -> None:
        if self._ipc is None:
            return
        try:
            self._ipc.close()
        except OSError:
            pass
        finally:
            self._ipc = None
            self._recv_buffer = b""

    def _stop_locked(self) -> None:
        self._close_ipc()
        if self._proc and self._proc.poll() is None:
            try:
                os.killpg(self._proc.pid, signal.SIGTERM)
                self._proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                try:
                    os.killpg(self._proc.pid, signal.SIGKILL)
                except OSError:
                    pass
            except OSError:
                pass
        if self._proc is not None:
            self._proc = None
            self._cleanup_ipc_path()

    def start(self) -> bool:
        with self._lock:
            if self._ipc is not None:
                return True
            if not self._cfg.get("spawn_mpv", True):
                if self._open_ipc():
                    return True
                logging.error("No mpv IPC server at %s", self._cfg["ipc_path"])
                return False
            self._cleanup_ipc_path()
            args = build_mpv_args(self._cfg)
            try:
                self._proc = subprocess.Popen(
                    args,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    start_new_session=True,
                )
            except OSError as exc:
                self._proc = None
                logging.error("Failed to start mpv: %s", exc)
                return False
            if self._open_ipc():
                return True
            logging.error("mpv IPC not available after launch")
            self._stop_locked()
            return False

    def stop(self) -> None:
        with self._lock:
            self._stop_locked()

    def is_connected(self) -> bool:
        return self._ipc is not None

    def _send(self, payload: Dict) -> bool:
        if self._ipc is None:
            return False
        data = (json.dumps(payload) + "\n").encode("utf-8")
        with self._ipc_lock:
            try:
                self._ipc.sendall(data)
            except OSError as exc:
                logging.warning("mpv IPC send failed: %s", exc)
                return False
        return True

    def _next_message(self, deadline: float) -> Optional[Dict]:
        while True:
            if b"\n" in self._recv_buffer:
                line, self._recv_buffer = self._recv_buffer.split(b"\n", 1)
                if not line.strip():
                    continue
                try:
                    payload = json.loads(line.decode("utf-8", errors="replace"))
                except ValueError:
                    logging.debug("Ignoring malformed IPC line: %r", line)
                    continue
                if isinstance(payload, dict):
                    return payload
                continue
            if self._ipc is None:
                return None
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            try:
                self._ipc.settimeout(remaining)
                chunk = self._ipc.recv(4096)
            except socket.timeout:
                return None
            except OSError as exc:
                logging.warning("mpv IPC read failed: %s", exc)
                self._close_ipc()
                return None
            if not chunk:
                logging.info("mpv closed the IPC connection")
                self._close_ipc()
                return None
            self._recv_buffer += chunk

    def read_events(self, timeout: float) -> List[Dict]:
        events = list(self._pending_events)
        self._pending_events.clear()
        deadline = time.monotonic() + (0.0 if events else max(timeout, 0.0))
        while True:
            message = self._next_message(deadline)
            if message is None:
                return events
            if "event" in message:
                events.append(message)
                deadline = time.monotonic()
            elif message.get("error") not in (None, "success"):
                logging.debug("mpv command failed: %s", message.get("error"))

    def request(self, command: List, timeout: Optional[float] = None) -> Optional[Dict]:
        with self._ipc_lock:
            self._request_id += 1
            request_id = self._request_id
        if not self._send({"command": command, "request_id": request_id}):
            return None
        if timeout is None:
            timeout = float(self._cfg.get("ipc_timeout_sec") or 2)
        deadline = time.monotonic() + max(timeout, 0.1)
        while True:
            message = self._next_message(deadline)
            if message is None:
                return None
            if message.get("request_id") == request_id and "event" not in message:
                return message
            if "event" in message:
                self._pending_events.append(message)

    def command(self, args: List) -> bool:
        return self._send({"command": args})

    def command_named(self, name: str, **kwargs: object) -> bool:
        return self._send({"command": dict(kwargs, name=name)})

    def get_property(self, name: str) -> Optional[object]:
        payload = self.request(["get_property", name])
        if isinstance(payload, dict) and payload.get("error") == "success":
            return payload.get("data")
        return None

    def set_property(self, name: str, value: object) -> bool:
        return self.command(["set_property", name, value])

    def observe_property(self, observer_id: int, name: str) -> bool:
        return self.command(["observe_property", observer_id, name])


def as_number(value: object) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


class MPVHost:
    def __init__(self, mpv: MPVController) -> None:
        self._mpv = mpv

    def get_buffered_amount(self) -> Optional[float]:
        return as_number(self._mpv.get_property("demuxer-cache-time"))

    def get_buffered_duration(self) -> Optional[float]:
        return as_number(self._mpv.get_property("demuxer-cache-duration"))

    def is_seekable(self) -> bool:
        return self._mpv.get_property("seekable") is True

    def is_idle(self) -> bool:
        return self._mpv.get_property("idle-active") is True

    def get_playback_position(self) -> Optional[float]:
        return as_number(self._mpv.get_property("time-pos"))

    def get_format(self) -> Optional[str]:
        value = self._mpv.get_property("file-format")
        return value if isinstance(value, str) and value else None

    def get_stream_url(self) -> Optional[str]:
        value = self._mpv.get_property("stream-open-filename")
        return value if isinstance(value, str) and value else None

    def set_stream_url(self, url: str) -> bool:
        return self._mpv.set_property("stream-open-filename", url)

    def issue_load(self, url: str, resume_offset: Optional[float] = None, start_paused: bool = False) -> bool:
        options = []
        if resume_offset is not None:
            options.append(f"start=+{resume_offset:.3f}")
        options.append("pause=yes" if start_paused else "pause=no")
        return self._mpv.command_named("loadfile", url=url, flags="replace", options=",".join(options))

    def set_idle_behavior(self, stay_open: bool) -> None:
        value = "yes" if stay_open else "no"
        self._mpv.set_property("idle", value)
        self._mpv.set_property("force-window", value)

    def show_message(self, text: str) -> bool:
        return self._mpv.command(["show-text", text])


class Watcher:
    def __init__(self, cfg: Dict, mpv: MPVController, host=None, timers: Optional[TimerService] = None) -> None:
        self._cfg = cfg
        self._mpv = mpv
        self.host = host if host is not None else MPVHost(mpv)
        self.timers = timers if timers is not None else TimerService()
        self.target = StreamTarget()
        thresholds = thresholds_from_config(cfg)
        self.demuxer = DemuxerCacheMonitor(self.host, self.timers, thresholds)
        self.pause = StreamPauseMonitor(self.host, self.timers, thresholds, self.demuxer)
        self.coordinator = ReloadCoordinator(self.host, self.target, self.demuxer, self.pause, cfg)
        self.demuxer.pause_monitor = self.pause
        self.demuxer.on_reload = self.coordinator.reload
        self.pause.on_reload = self.coordinator.reload
        self.paths = PathTracker(self.host, self.target, build_redirect_resolver(cfg))
        self._position_timer: Optional[PeriodicTimer] = None

    def setup(self, url: Optional[str] = None) -> None:
        # stay open when a reload comes back empty so the fallback can retry
        self.host.set_idle_behavior(True)
        self._mpv.observe_property(PAUSED_FOR_CACHE_OBSERVER_ID, "paused-for-cache")
        self._mpv.command(["hook-add", "on_load", ON_LOAD_HOOK_ID, 10])
        self.demuxer.start()
        poll_sec = float(self._cfg.get("position_poll_sec") or 0)
        if poll_sec > 0:
            self._position_timer = self.timers.create_periodic_timer(poll_sec, self.coordinator.refresh_playback)
        if url:
            logging.info("Loading %s", url)
            self._mpv.command(["loadfile", url, "replace"])
        elif self.host.get_stream_url():
            self.paths.on_load()

    def dispatch(self, event: Dict) -> bool:
        name = event.get("event")
        if name == "property-change":
            if event.get("name") == "paused-for-cache":
                self.pause.on_pause_changed(event.get("data") is True)
        elif name == "hook":
            try:
                if event.get("id") == ON_LOAD_HOOK_ID:
                    self.paths.on_load()
            finally:
                self._mpv.command(["hook-ack", event.get("hook_id")])
        elif name == "shutdown":
            logging.info("mpv is shutting down")
            return False
        return True

    def run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set() and self._mpv.is_connected():
            deadline = self.timers.next_deadline()
            timeout = 0.5
            if deadline is not None:
                timeout = min(max(deadline - self.timers.now(), 0.0), timeout)
            for event in self._mpv.read_events(timeout):
                try:
                    keep_running = self.dispatch(event)
                except Exception:
                    logging.exception("Failed to handle mpv event %s", event.get("event"))
                    continue
                if not keep_running:
                    return
            self.timers.run_due()

    def close(self) -> None:
        self.demuxer.stop()
        self.pause.reset()
        if self._position_timer is not None:
            self._position_timer.cancel()
            self._position_timer = None


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reload stalled mpv network streams")
    parser.add_argument("url", nargs="?", help="Stream URL to open")
    parser.add_argument("--config", help="Path to a JSON config file")
    parser.add_argument("--verbose", action="store_true", help="Log monitor ticks (DEBUG)")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    overrides = {"log_level": "DEBUG"} if args.verbose else None
    try:
        cfg = load_config(args.config, overrides)
    except ConfigError as exc:
        print(f"mpv-autoreload: {exc}", file=sys.stderr)
        return 2
    setup_logging(cfg)

    mpv = MPVController(cfg)
    try:
        watcher = Watcher(cfg, mpv)
    except ConfigError as exc:
        logging.error("%s", exc)
        return 2

    stop_event = threading.Event()

    def _handle(sig, _frame):
        logging.info("Signal %s received, stopping...", sig)
        if stop_event.is_set():
            mpv.stop()
            os._exit(1)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)

    if not mpv.start():
        return 1
    try:
        watcher.setup(args.url)
        watcher.run(stop_event)
    finally:
        watcher.close()
        mpv.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
