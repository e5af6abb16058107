import argparse
import json
import os
import sys
import time
from dataclasses import asdict
from datetime import datetime, timedelta, timezone

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from scannerlink.audio_utils import pcm_duration_seconds, read_wav
from scannerlink.models import Segment
from scannerlink.signals import SignalDetector
from scannerlink.transcriber import load_model, transcribe_segment
from scannerlink.units import extract_unit


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Transcribe a WAV segment and score it for an SOR request."
    )
    parser.add_argument("audio_path", help="Path to a 16-bit PCM WAV file.")
    parser.add_argument("--model", default="small", help="Whisper model name.")
    parser.add_argument("--language", help="Language code (e.g., en).")
    parser.add_argument("--device", help="Device preference (cpu/cuda).")
    parser.add_argument("--compute-type", help="Compute type (int8/float16).")
    args = parser.parse_args()

    with open(args.audio_path, "rb") as handle:
        payload = handle.read()
    rate, channels, pcm = read_wav(payload)
    start = datetime.now(timezone.utc)
    segment = Segment(
        id=os.path.splitext(os.path.basename(args.audio_path))[0],
        channel_key="diagnose",
        start_time=start,
        end_time=start + timedelta(seconds=pcm_duration_seconds(len(pcm), rate, channels)),
        sample_rate=rate,
        channel_count=channels,
        payload=payload,
        sequence_number=1,
    )

    model = load_model(args.model, device=args.device, compute_type=args.compute_type)
    started = time.time()
    transcript = transcribe_segment(segment, model, args.language)
    elapsed = time.time() - started

    print(f"Duration: {segment.duration_seconds:.2f}s")
    print(f"Transcript: {transcript.text}")
    print(f"Confidence: {transcript.confidence}")
    print(f"Unit: {extract_unit(transcript.text)}")
    result = SignalDetector().evaluate_text(transcript.text, segment.id)
    print(json.dumps(asdict(result), indent=2))
    print(f"Elapsed: {elapsed:.2f}s")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
