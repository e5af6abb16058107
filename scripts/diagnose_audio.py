import argparse
import os
import sys
import threading
import time

import numpy as np

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

import sounddevice as sd

from scannerlink.audio_utils import pcm16_rms
from scannerlink.config import SegmenterConfig
from scannerlink.receiver import select_preferred_device


def _describe_device(info: dict) -> None:
    print(f"Input device: {info.get('name', '')}")
    print(f"Index: {info.get('index', '')}")
    print(f"Max input channels: {info.get('max_input_channels', 0)}")
    print(f"Default sample rate: {info.get('default_samplerate', '')}")


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Show live RMS against the activity threshold."
    )
    parser.add_argument("--device", help="Device name substring.")
    parser.add_argument("--seconds", type=float, default=10.0, help="Test duration.")
    parser.add_argument("--rate", type=int, default=48000, help="Sample rate.")
    parser.add_argument("--frame-ms", type=int, default=20, help="Frame length.")
    parser.add_argument(
        "--threshold", type=float, default=SegmenterConfig().rms_threshold, help="RMS threshold."
    )
    args = parser.parse_args()

    candidates = [d for d in sd.query_devices() if d.get("max_input_channels", 0) > 0]
    info = select_preferred_device(candidates, prefer_name=args.device)
    _describe_device(info)

    levels = {"rms": 0.0, "active": 0, "frames": 0}
    lock = threading.Lock()

    def _callback(indata, _frames, _time, status):
        if status:
            return
        rms = pcm16_rms(bytes(indata))
        with lock:
            levels["rms"] = rms
            levels["frames"] += 1
            if rms > args.threshold:
                levels["active"] += 1

    stream = sd.RawInputStream(
        samplerate=args.rate,
        channels=1,
        dtype="int16",
        blocksize=args.rate * args.frame_ms // 1000,
        device=info.get("index"),
        callback=_callback,
    )
    stream.start()
    print("Streaming... press Ctrl+C to stop early.")

    end = time.time() + args.seconds
    try:
        while time.time() < end:
            with lock:
                rms = levels["rms"]
                frames = levels["frames"]
            if frames:
                label = "ACTIVE" if rms > args.threshold else "quiet"
                bar = "#" * int(np.clip(rms / args.threshold * 10, 0, 40))
                print(f"RMS {rms:8.1f} {label:6} {bar}")
            else:
                print("No samples yet...")
            time.sleep(0.5)
    except KeyboardInterrupt:
        pass
    finally:
        stream.stop()
        stream.close()

    with lock:
        frames = levels["frames"]
        active = levels["active"]
    if frames:
        print(f"Active frames: {active}/{frames} ({active / frames:.0%})")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
