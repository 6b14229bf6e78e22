"""CoWatch local playback via mpv's JSON IPC socket."""
from __future__ import annotations
import asyncio
import json
import logging
import os
import subprocess
import tempfile
from pathlib import Path
from typing import Any, Callable, Optional

logger = logging.getLogger("cowatch.client.mpv")

# Seconds of demuxed media needed before playback counts as ready.
MIN_READY_BUFFER_S = 1.0

_OBSERVED = {1: "pause", 2: "speed", 3: "paused-for-cache"}


class MpvController:
    """
    Local media backend driven over mpv's JSON IPC socket.

    Implements the LocalMedia surface used by DriftController and reports
    user-initiated transitions through the on_* callbacks.
    """

    def __init__(self, mpv_path: str = "mpv"):
        self.mpv_path = mpv_path
        self._proc: Optional[subprocess.Popen] = None
        self._socket_path = str(Path(tempfile.gettempdir()) / f"cowatch_mpv_{os.getpid()}.sock")
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._pending: dict[int, asyncio.Future] = {}
        self._next_request_id = 0
        self._connected = False
        self._read_task: Optional[asyncio.Task] = None
        self._paused = True
        self._buffering = False
        self._loaded = False
        self.on_pause_change: Optional[Callable[[bool], Any]] = None
        self.on_seek: Optional[Callable[[float], Any]] = None
        self.on_rate_change: Optional[Callable[[float], Any]] = None
        self.on_eof: Optional[Callable[[], Any]] = None

    async def start(self) -> bool:
        """Start the mpv subprocess and attach to its IPC socket."""
        if os.path.exists(self._socket_path):
            os.unlink(self._socket_path)

        cmd = [
            self.mpv_path,
            "--no-config",
            "--idle=yes",
            "--force-window=yes",
            "--no-terminal",
            f"--input-ipc-server={self._socket_path}",
            "--keep-open=yes",
            "--pause=yes",
            "--audio-pitch-correction=no",
        ]
        try:
            self._proc = subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
            logger.info("mpv started (pid=%d)", self._proc.pid)
        except FileNotFoundError:
            logger.error("mpv not found; install mpv to use client playback")
            return False

        for _ in range(50):
            await asyncio.sleep(0.1)
            if os.path.exists(self._socket_path):
                break
        else:
            logger.error("mpv IPC socket did not appear")
            return False

        await self._connect_socket()
        if self._connected:
            for obs_id, name in _OBSERVED.items():
                await self._command("observe_property", obs_id, name)
        return self._connected

    async def _connect_socket(self) -> None:
        try:
            self._reader, self._writer = await asyncio.open_unix_connection(self._socket_path)
            self._connected = True
            self._read_task = asyncio.create_task(self._read_loop())
            logger.info("Connected to mpv IPC socket")
        except OSError as e:
            logger.error("Failed to connect to mpv socket: %s", e)
            self._connected = False

    async def _read_loop(self) -> None:
        while self._reader:
            try:
                line = await self._reader.readline()
            except asyncio.CancelledError:
                break
            if not line:
                break
            try:
                data = json.loads(line.decode().strip())
            except ValueError as e:
                logger.debug("mpv sent unparseable line: %s", e)
                continue
            if "event" in data:
                self._handle_event(data)
            elif "request_id" in data:
                fut = self._pending.pop(data["request_id"], None)
                if fut and not fut.done():
                    fut.set_result(data)
        self._connected = False

    def _handle_event(self, data: dict) -> None:
        event = data.get("event")
        if event == "property-change":
            name, value = data.get("name"), data.get("data")
            if name == "pause" and isinstance(value, bool):
                changed = value != self._paused
                self._paused = value
                if changed and self.on_pause_change:
                    self._fire(self.on_pause_change, value)
            elif name == "speed" and isinstance(value, (int, float)) and self.on_rate_change:
                self._fire(self.on_rate_change, float(value))
            elif name == "paused-for-cache":
                self._buffering = bool(value)
        elif event == "file-loaded":
            self._loaded = True
        elif event == "playback-restart" and self.on_seek:
            # Replies are read by this loop, so the position query runs as a task.
            asyncio.create_task(self._emit_seek())
        elif event == "end-file":
            self._loaded = False
            if self.on_eof:
                self._fire(self.on_eof)

    def _fire(self, callback: Callable, *args: Any) -> None:
        result = callback(*args)
        if asyncio.iscoroutine(result):
            asyncio.create_task(result)

    async def _emit_seek(self) -> None:
        position = await self.get_position()
        if position is not None and self.on_seek:
            self._fire(self.on_seek, position)

    async def _command(self, *args: Any) -> Optional[dict]:
        """Send a command to mpv and wait for response."""
        if not self._connected or not self._writer:
            return None
        self._next_request_id += 1
        req_id = self._next_request_id
        cmd = json.dumps({"command": list(args), "request_id": req_id}) + "\n"
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[req_id] = fut
        try:
            self._writer.write(cmd.encode())
            await self._writer.drain()
            return await asyncio.wait_for(fut, timeout=3.0)
        except asyncio.TimeoutError:
            self._pending.pop(req_id, None)
            logger.warning("mpv command timed out: %s", args[0] if args else "")
            return None
        except OSError as e:
            self._pending.pop(req_id, None)
            logger.error("mpv command error: %s", e)
            return None

    async def _get(self, name: str) -> Any:
        result = await self._command("get_property", name)
        if result and result.get("error") == "success":
            return result.get("data")
        return None

    # ---- LocalMedia ----

    async def load(self, src: str) -> bool:
        self._loaded = False
        result = await self._command("loadfile", src, "replace")
        return result is not None and result.get("error") == "success"

    async def play(self) -> None:
        await self._command("set_property", "pause", False)

    async def pause(self) -> None:
        await self._command("set_property", "pause", True)

    async def seek(self, position: float) -> None:
        await self._command("seek", max(0.0, position), "absolute+exact")

    async def set_rate(self, rate: float) -> None:
        await self._command("set_property", "speed", rate)

    async def get_position(self) -> Optional[float]:
        value = await self._get("time-pos")
        return float(value) if value is not None else None

    async def is_paused(self) -> bool:
        value = await self._get("pause")
        if isinstance(value, bool):
            self._paused = value
        return self._paused

    async def is_ready(self) -> bool:
        """Loaded, not stalled on the cache, and enough media buffered ahead."""
        if not self._loaded or self._buffering:
            return False
        if await self._get("eof-reached"):
            return True
        buffered = await self._get("demuxer-cache-duration")
        return buffered is not None and float(buffered) >= MIN_READY_BUFFER_S

    async def stop_subprocess(self) -> None:
        """Terminate mpv."""
        self._connected = False
        if self._read_task:
            self._read_task.cancel()
        if self._writer:
            self._writer.close()
        for fut in self._pending.values():
            fut.cancel()
        self._pending.clear()
        if self._proc:
            self._proc.terminate()
            try:
                self._proc.wait(timeout=3)
            except subprocess.TimeoutExpired:
                self._proc.kill()
        if os.path.exists(self._socket_path):
            os.unlink(self._socket_path)
        logger.info("mpv stopped")

    @property
    def is_connected(self) -> bool:
        return self._connected
