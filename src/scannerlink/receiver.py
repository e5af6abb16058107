"""Raw audio stream intake: UDP datagrams, pipes, and local input devices."""

from __future__ import annotations

import logging
import socket
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .audio_utils import BYTES_PER_SAMPLE
from .clock import SystemClock
from .config import ReceiverConfig
from .models import AudioFrame

logger = logging.getLogger("scannerlink")

FrameCallback = Callable[[AudioFrame], None]


class StreamReceiver:
    """Cut an unframed byte stream into fixed-size frames.

    Frame timestamps follow a media cursor that starts at the arrival time of
    the first byte and advances by one frame duration per frame. The cursor
    re-anchors to the arrival time after a gap, or when it has fallen behind.
    """

    def __init__(
        self, config: ReceiverConfig, clock=None, min_frame_bytes: int = 0
    ) -> None:
        self.config = config
        self.clock = clock or SystemClock()
        block = config.channels * BYTES_PER_SAMPLE
        frame_bytes = config.sample_rate_hz * block * config.frame_ms // 1000
        # Never smaller than the segmenter's minimum active frame.
        frame_bytes = max(frame_bytes, -(-min_frame_bytes // block) * block)
        self.frame_bytes = max(block, frame_bytes - frame_bytes % block)
        self.frame_duration = timedelta(
            seconds=self.frame_bytes / (config.sample_rate_hz * block)
        )
        self._pending = bytearray()
        self._cursor: Optional[datetime] = None
        self.bytes_received = 0

    def _anchor(self, arrival: datetime) -> None:
        if self._cursor is None:
            self._cursor = arrival
            return
        if arrival - self._cursor > self.frame_duration:
            self._cursor = arrival

    def _make_frame(self, data: bytes) -> AudioFrame:
        frame = AudioFrame(
            data=data,
            timestamp=self._cursor,
            sample_rate=self.config.sample_rate_hz,
            channels=self.config.channels,
            channel_key=self.config.channel_key,
        )
        self._cursor = self._cursor + self.frame_duration
        return frame

    def feed(self, data: bytes, arrival: Optional[datetime] = None) -> List[AudioFrame]:
        if not data:
            return []
        arrival = arrival or self.clock.now()
        if not self._pending:
            self._anchor(arrival)
        self.bytes_received += len(data)
        self._pending.extend(data)
        frames: List[AudioFrame] = []
        while len(self._pending) >= self.frame_bytes:
            chunk = bytes(self._pending[: self.frame_bytes])
            del self._pending[: self.frame_bytes]
            frames.append(self._make_frame(chunk))
        return frames

    def flush(self) -> Optional[AudioFrame]:
        if not self._pending or self._cursor is None:
            self._pending.clear()
            return None
        frame = self._make_frame(bytes(self._pending))
        self._pending.clear()
        return frame

    def serve_udp(
        self,
        on_frame: FrameCallback,
        stop_event=None,
        host: Optional[str] = None,
        port: Optional[int] = None,
    ) -> None:
        host = host or self.config.udp_host
        port = port or self.config.udp_port
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.settimeout(0.5)
        sock.bind((host, port))
        logger.info("UDP listener bound on %s:%s", host, port)
        try:
            while stop_event is None or not stop_event.is_set():
                try:
                    data, _addr = sock.recvfrom(65535)
                except socket.timeout:
                    continue
                for frame in self.feed(data):
                    on_frame(frame)
        finally:
            sock.close()
            tail = self.flush()
            if tail is not None:
                on_frame(tail)
            logger.info("UDP listener on %s:%s closed", host, port)

    def read_pipe(self, path: str, on_frame: FrameCallback, stop_event=None) -> None:
        logger.info("Reading audio from pipe %s", path)
        with open(path, "rb") as handle:
            while stop_event is None or not stop_event.is_set():
                data = handle.read(self.config.read_size)
                if not data:
                    break
                for frame in self.feed(data):
                    on_frame(frame)
        tail = self.flush()
        if tail is not None:
            on_frame(tail)
        logger.info("Pipe %s closed", path)

    def capture_device(
        self,
        on_frame: FrameCallback,
        stop_event=None,
        device_name: Optional[str] = None,
    ) -> None:
        try:
            import sounddevice as sd
        except Exception as exc:  # pragma: no cover - environment-dependent
            raise RuntimeError("sounddevice is required for device capture.") from exc

        device = find_input_device(device_name)
        logger.info("Capturing from input device %s", device.get("name"))

        def _callback(indata, _frames, _time, status):
            if status:
                logger.warning("Input stream status: %s", status)
                return
            for frame in self.feed(bytes(indata)):
                on_frame(frame)

        with sd.RawInputStream(
            samplerate=self.config.sample_rate_hz,
            channels=self.config.channels,
            dtype="int16",
            device=device.get("index"),
            callback=_callback,
        ):
            while stop_event is None or not stop_event.is_set():
                sd.sleep(100)
        tail = self.flush()
        if tail is not None:
            on_frame(tail)


def list_input_devices() -> List[Dict[str, Any]]:
    try:
        import sounddevice as sd
    except Exception as exc:  # pragma: no cover - environment-dependent
        raise RuntimeError("sounddevice is required for device detection.") from exc

    return [d for d in sd.query_devices() if d.get("max_input_channels", 0) > 0]


def select_preferred_device(
    candidates: List[Dict[str, Any]],
    prefer_name: Optional[str] = None,
) -> Dict[str, Any]:
    if not candidates:
        raise RuntimeError("No input devices found.")
    if prefer_name:
        preferred = [
            d for d in candidates if prefer_name.lower() in d.get("name", "").lower()
        ]
        if preferred:
            return preferred[0]
    return candidates[0]


def find_input_device(prefer_name: Optional[str] = None) -> dict:
    return select_preferred_device(list_input_devices(), prefer_name=prefer_name)
