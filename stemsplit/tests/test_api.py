import io
import json
import zipfile

import pytest
import soundfile as sf
from fastapi.testclient import TestClient

from stemsplit import main
from stemsplit.tests.audio_utils import generate_stereo_mix


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(main, "USE_MOCK", True)
    return TestClient(main.app)


def _wav_upload(duration_sec=0.5, sr=8000):
    buf = io.BytesIO()
    sf.write(buf, generate_stereo_mix(duration_sec, sr), sr, format="WAV")
    return buf.getvalue()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "mock_mode": True}


def test_models(client):
    response = client.get("/api/models")
    assert response.status_code == 200
    keys = {m["key"]: m["stems"] for m in response.json()}
    assert keys["2stems"] == ["vocals", "accompaniment"]
    assert len(keys["5stems"]) == 5


def test_separate_returns_zip_of_stems(client):
    response = client.post(
        "/api/separate",
        files={"file": ("take1.wav", _wav_upload(), "audio/wav")},
        data={"model": "4stems", "output_format": "wav"},
    )

    assert response.status_code == 200, response.text
    assert response.headers["content-type"] == "application/zip"
    assert 'filename="take1_stems.zip"' in response.headers["content-disposition"]

    with zipfile.ZipFile(io.BytesIO(response.content)) as zf:
        names = set(zf.namelist())
        assert names == {"vocals.wav", "drums.wav", "bass.wav", "other.wav", "meta.json"}
        meta = json.loads(zf.read("meta.json"))
    assert meta["backend"] == "filterbank"
    assert meta["complete"] is True


def test_separate_rejects_unknown_model(client):
    response = client.post(
        "/api/separate",
        files={"file": ("take1.wav", _wav_upload(), "audio/wav")},
        data={"model": "9stems"},
    )
    assert response.status_code == 400
    assert "9stems" in response.json()["detail"]


def test_separate_rejects_unknown_format(client):
    response = client.post(
        "/api/separate",
        files={"file": ("take1.wav", _wav_upload(), "audio/wav")},
        data={"output_format": "xyz"},
    )
    assert response.status_code == 400


def test_separate_reports_undecodable_upload(client):
    response = client.post(
        "/api/separate",
        files={"file": ("noise.wav", b"definitely not audio", "audio/wav")},
    )
    assert response.status_code == 500


def test_parse_bool_env():
    assert main.parse_bool_env("Yes")
    assert main.parse_bool_env(" on ")
    assert not main.parse_bool_env("0")
    assert main.parse_bool_env(None, default=True)
