"""CLI entry point."""

from __future__ import annotations

import argparse
import json
import logging
import os
import threading
import time
from dataclasses import asdict

from .clock import utc_now
from .config import default_config, load_config, save_config
from .distance import build_distance
from .logging_utils import setup_logging
from .pipeline import CompositeSink, Pipeline
from .receiver import StreamReceiver, list_input_devices
from .segmenter import ActivitySegmenter
from .signals import SignalDetector
from .store import DirectorySink, ensure_structure, load_record, save_segment
from .units import extract_unit


def _load(path: str | None):
    if path and os.path.exists(path):
        return load_config(path)
    return default_config()


def _parse_host_port(value: str) -> tuple[str, int]:
    host, _, port = value.rpartition(":")
    return host or "0.0.0.0", int(port)


def main() -> int:
    parser = argparse.ArgumentParser(prog="scannerlink")
    parser.add_argument("--verbose", action="store_true", help="Log to the console too.")
    sub = parser.add_subparsers(dest="command")

    listen_cmd = sub.add_parser("listen")
    listen_cmd.add_argument("--config", default="scannerlink.yml", help="Config.")
    listen_cmd.add_argument("--base-dir", help="Base output directory.")
    listen_cmd.add_argument("--channel", help="Channel key for this stream.")
    listen_cmd.add_argument(
        "--role",
        choices=["dispatch", "hospital"],
        help="Treat this channel as dispatch traffic or hospital traffic.",
    )
    source = listen_cmd.add_mutually_exclusive_group()
    source.add_argument("--udp", help="HOST:PORT to receive datagrams on.")
    source.add_argument("--pipe", help="Named pipe or raw PCM file to read.")
    source.add_argument("--device", help="Input device name substring.")
    listen_cmd.add_argument(
        "--duration", type=float, help="Seconds. Omit for manual stop."
    )
    listen_cmd.add_argument("--transcribe", action="store_true", help="Run Whisper on segments.")
    listen_cmd.add_argument("--model", default="small", help="Whisper model.")
    listen_cmd.add_argument("--language", help="Language code.")

    segment_cmd = sub.add_parser("segment")
    segment_cmd.add_argument("raw_path", help="Raw 16-bit PCM file.")
    segment_cmd.add_argument("--config", default="scannerlink.yml", help="Config.")
    segment_cmd.add_argument("--out-dir", default=".", help="Output base directory.")
    segment_cmd.add_argument("--channel", help="Channel key.")
    segment_cmd.add_argument("--rate", type=int, help="Sample rate.")
    segment_cmd.add_argument("--channels", type=int, help="Channels.")

    detect_cmd = sub.add_parser("detect")
    detect_cmd.add_argument("text", help="Transcript text to score.")
    detect_cmd.add_argument("--config", default="scannerlink.yml", help="Config.")

    sub.add_parser("devices")

    config_cmd = sub.add_parser("config")
    config_cmd.add_argument("path", help="Where to write the default config.")

    show_cmd = sub.add_parser("show")
    show_cmd.add_argument("path", help="Path to an incident or conversation JSON file.")

    args = parser.parse_args()
    level = logging.DEBUG if args.verbose else logging.INFO

    if args.command == "listen":
        cfg = _load(args.config)
        if args.channel:
            cfg.receiver.channel_key = args.channel
        if args.role == "dispatch":
            cfg.dispatch_channels.append(cfg.receiver.channel_key)
        elif args.role == "hospital":
            cfg.hospital_channels.append(cfg.receiver.channel_key)
        paths = ensure_structure(args.base_dir or cfg.base_dir or os.getcwd())
        logger, log_path = setup_logging(paths["logs"], level=level, console=args.verbose)

        sink = DirectorySink(paths["root"])
        sinks = [sink]
        pipeline = Pipeline(
            cfg,
            distance=build_distance(cfg.distance, cfg.correlator.average_speed_mph),
        )
        worker = None
        if args.transcribe:
            from .transcriber import TranscriptionWorker, load_model

            worker = TranscriptionWorker(pipeline, load_model(args.model), args.language)
            sinks.append(worker)
            worker.start()
        pipeline.sink = CompositeSink(sinks)

        receiver = StreamReceiver(cfg.receiver, min_frame_bytes=cfg.segmenter.min_frame_bytes)
        stop_event = threading.Event()
        if args.pipe:
            target = lambda: receiver.read_pipe(args.pipe, pipeline.submit_frame, stop_event)
        elif args.device:
            target = lambda: receiver.capture_device(
                pipeline.submit_frame, stop_event, device_name=args.device
            )
        else:
            host, port = (
                _parse_host_port(args.udp)
                if args.udp
                else (cfg.receiver.udp_host, cfg.receiver.udp_port)
            )
            target = lambda: receiver.serve_udp(pipeline.submit_frame, stop_event, host, port)

        pipeline.start()
        thread = threading.Thread(target=target, name="receiver", daemon=True)
        thread.start()
        role = cfg.channel_role(cfg.receiver.channel_key)
        logger.info("Listening on %s channel %s", role, cfg.receiver.channel_key)
        print(f"Listening on {role} channel {cfg.receiver.channel_key}; log at {log_path}")
        if role == "dispatch" and not args.transcribe:
            print("Dispatch traffic needs --transcribe to create incidents.")
        started = time.monotonic()
        try:
            while thread.is_alive():
                if args.duration and time.monotonic() - started >= args.duration:
                    break
                thread.join(0.5)
        except KeyboardInterrupt:
            pass
        stop_event.set()
        thread.join(5.0)
        pipeline.stop()
        if worker is not None:
            worker.stop()
        incidents = pipeline.correlator.incidents()
        print(f"Conversations: {len(pipeline.assembler.conversations())}")
        print(f"Incidents: {len(incidents)}")
        return 0

    if args.command == "segment":
        cfg = _load(args.config)
        if args.channel:
            cfg.receiver.channel_key = args.channel
        if args.rate:
            cfg.receiver.sample_rate_hz = args.rate
        if args.channels:
            cfg.receiver.channels = args.channels
        paths = ensure_structure(args.out_dir)
        receiver = StreamReceiver(cfg.receiver, min_frame_bytes=cfg.segmenter.min_frame_bytes)
        segmenter = ActivitySegmenter(cfg.receiver.channel_key, cfg.segmenter)
        start = utc_now()
        written = []
        with open(args.raw_path, "rb") as handle:
            while True:
                data = handle.read(cfg.receiver.read_size)
                if not data:
                    break
                for frame in receiver.feed(data, arrival=start):
                    segment = segmenter.process_frame(frame)
                    if segment is not None:
                        written.append(save_segment(paths, segment))
        tail = receiver.flush()
        if tail is not None:
            segment = segmenter.process_frame(tail)
            if segment is not None:
                written.append(save_segment(paths, segment))
        segment = segmenter.flush()
        if segment is not None:
            written.append(save_segment(paths, segment))
        for path in written:
            print(f"Wrote {path}")
        print(f"Segments: {len(written)}")
        return 0

    if args.command == "detect":
        cfg = _load(args.config)
        result = SignalDetector(cfg.signals).evaluate_text(args.text)
        payload = asdict(result)
        payload["unit_id"] = extract_unit(args.text)
        print(json.dumps(payload, indent=2))
        return 0

    if args.command == "devices":
        for device in list_input_devices():
            name = device.get("name", "Unknown")
            index = device.get("index", "?")
            channels = device.get("max_input_channels", 0)
            print(f"[{index}] {name} (inputs: {channels})")
        return 0

    if args.command == "config":
        save_config(args.path, default_config())
        print(f"Wrote {args.path}")
        return 0

    if args.command == "show":
        record = load_record(args.path)
        if "unit_id" in record:
            print(f"Incident: {record['id']} ({record['unit_id']})")
            print(f"Status: {record['status']}")
            print(f"Facility: {record.get('facility_name')}")
            print(f"ETA: {record.get('eta_minutes')} min")
            for entry in record.get("status_history", []):
                print(f"  {entry['at']} {entry['status']}")
        elif "segment_ids" in record:
            print(f"Conversation: {record['id']}")
            print(f"Status: {record['status']}")
            print(f"Segments: {len(record['segment_ids'])}")
            signal = record.get("signal") or {}
            if signal:
                print(f"SOR requested: {signal.get('is_requested')} ({signal.get('confidence')})")
                print(f"Physician: {signal.get('physician_name')}")
        else:
            print("Unsupported file. Use an incident or conversation JSON file.")
        return 0

    parser.print_help()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
