import json
import os
import sys

import pytest

from scannerlink import cli
from scannerlink.config import load_config


def test_detect_prints_result(monkeypatch, capsys, tmp_path):
    monkeypatch.setattr(
        sys,
        "argv",
        [
            "scannerlink",
            "detect",
            "Medic 12 requesting orders, this is Dr. Alvarez",
            "--config",
            str(tmp_path / "missing.yml"),
        ],
    )
    assert cli.main() == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["is_requested"] is True
    assert payload["physician_name"] == "Alvarez"
    assert payload["unit_id"] == "Medic 12"


def test_config_writes_defaults(monkeypatch, tmp_path):
    path = str(tmp_path / "scannerlink.yml")
    monkeypatch.setattr(sys, "argv", ["scannerlink", "config", path])
    assert cli.main() == 0
    assert os.path.exists(path)
    assert load_config(path).segmenter.rms_threshold == 1000.0


@pytest.mark.parametrize("rate", [8000, 16000])
def test_segment_command_writes_wavs(monkeypatch, capsys, tmp_path, rate):
    import numpy as np

    tone = (5000 * np.sin(2 * np.pi * 440 * np.arange(rate * 2) / rate)).astype("<i2")
    raw = tone.tobytes() + bytes(rate * 2 * 6)
    raw_path = tmp_path / "capture.raw"
    raw_path.write_bytes(raw)

    monkeypatch.setattr(
        sys,
        "argv",
        [
            "scannerlink",
            "segment",
            str(raw_path),
            "--config",
            str(tmp_path / "missing.yml"),
            "--out-dir",
            str(tmp_path / "out"),
            "--rate",
            str(rate),
        ],
    )
    assert cli.main() == 0
    assert "Segments: 1" in capsys.readouterr().out
    wavs = [n for n in os.listdir(tmp_path / "out" / "Segments") if n.endswith(".wav")]
    assert len(wavs) == 1
