import inspect

import cv2
import numpy as np
import pytest
from fastapi.testclient import TestClient

import classifier
import main


def _png(img_rgb: np.ndarray) -> bytes:
    ok, buf = cv2.imencode(".png", cv2.cvtColor(img_rgb, cv2.COLOR_RGB2BGR))
    assert ok
    return buf.tobytes()


def _photo(with_coin: bool = True) -> bytes:
    img = np.full((300, 400, 3), 255, dtype=np.uint8)
    if with_coin:
        yy, xx = np.ogrid[:300, :400]
        img[(xx - 80) ** 2 + (yy - 150) ** 2 <= 30 * 30] = (80, 80, 80)
    img[130:170, 160:360] = (200, 170, 30)
    return _png(img)


@pytest.fixture
def client():
    with TestClient(main.app) as c:
        yield c


def test_health(client):
    r = client.get("/api/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert body["classifier_enabled"] is False
    assert body["config"]["coin_diameter_cm"] == pytest.approx(2.4)


def test_coins(client):
    assert client.get("/api/coins").json() == {"1000": 2.4, "500": 2.7}


def test_measure_photo(client):
    r = client.post("/api/measure", files={"image": ("corn.png", _photo(), "image/png")})
    assert r.status_code == 200
    body = r.json()
    assert body["measured"] is True
    assert body["length_cm"] == pytest.approx(7.92, abs=0.01)
    assert body["debug_image"]


def test_measure_named_coin(client):
    r = client.post("/api/measure", files={"image": ("corn.png", _photo(), "image/png")},
                    data={"coin": "500"})
    assert r.json()["length_cm"] == pytest.approx(198 / (60 / 2.7), abs=0.01)


def test_measure_unknown_coin(client):
    r = client.post("/api/measure", files={"image": ("corn.png", _photo(), "image/png")},
                    data={"coin": "42"})
    assert r.status_code == 400


@pytest.mark.parametrize("diameter", ["0", "-2.4"])
def test_measure_non_positive_coin_diameter(client, diameter):
    r = client.post("/api/measure", files={"image": ("corn.png", _photo(), "image/png")},
                    data={"coin_diameter_cm": diameter})
    assert r.status_code == 400
    assert "coin_diameter_cm" in r.json()["error"]


def test_measure_without_resolution_cap(client, monkeypatch):
    monkeypatch.setattr(main, "MAX_IMAGE_SIDE", 0)
    r = client.post("/api/measure", files={"image": ("corn.png", _photo(), "image/png")})
    body = r.json()
    assert body["measured"] is True
    assert body["length_cm"] == pytest.approx(7.92, abs=0.01)


def test_image_handlers_run_in_threadpool():
    # Flood fill and the classifier call block; sync handlers keep the event loop free
    assert not inspect.iscoroutinefunction(main.api_measure)
    assert not inspect.iscoroutinefunction(main.api_analyze)


def test_measure_invalid_image(client):
    r = client.post("/api/measure", files={"image": ("x.png", b"garbage", "image/png")})
    assert r.status_code == 400
    assert "error" in r.json()


def test_measure_single_object_is_soft_failure(client):
    r = client.post("/api/measure", files={"image": ("corn.png", _photo(with_coin=False), "image/png")})
    assert r.status_code == 200
    body = r.json()
    assert body["measured"] is False
    assert body["failure"] == "insufficient_objects"
    assert body["length_cm"] == 0.0


def test_quality(client):
    r = client.post("/api/quality", json={
        "label": "Corn_Healthy",
        "length_cm": 18.0,
        "seed_resistance": "medium",
        "soil_condition": "dry",
    })
    assert r.status_code == 200
    assert r.json()["final_score"] == pytest.approx(72.5)


def test_quality_rejects_unknown_soil(client):
    r = client.post("/api/quality", json={"label": "x", "length_cm": 1.0, "soil_condition": "swamp"})
    assert r.status_code == 422


def test_analyze_with_label(client):
    r = client.post("/api/analyze", files={"image": ("corn.png", _photo(), "image/png")},
                    data={"label": "Corn_Healthy"})
    body = r.json()
    assert body["length_source"] == "measured"
    assert body["quality"]["length_score"] == 25
    assert body["quality"]["final_score"] == pytest.approx(100 * 0.3 + 25 * 0.3 + 100 * 0.2 + 100 * 0.2)


def test_analyze_falls_back_to_default_length(client):
    r = client.post("/api/analyze", files={"image": ("corn.png", _photo(with_coin=False), "image/png")},
                    data={"label": "Corn_Damaged"})
    body = r.json()
    assert body["length_source"] == "default"
    assert body["length_cm"] == pytest.approx(main.DEFAULT_CORN_LENGTH_CM)
    assert body["quality"]["condition_score"] == 50


def test_analyze_uses_classifier(client, monkeypatch):
    monkeypatch.setattr(classifier, "identify",
                        lambda pixels: classifier.ClassificationResult("Corn_Fungus", 0.95, 2))
    r = client.post("/api/analyze", files={"image": ("corn.png", _photo(), "image/png")})
    body = r.json()
    assert body["classification"]["label"] == "Corn_Fungus"
    assert body["quality"]["condition_score"] == 0


def test_analyze_without_classifier_labels_unknown(client):
    r = client.post("/api/analyze", files={"image": ("corn.png", _photo(), "image/png")})
    body = r.json()
    assert body["classification"] is None
    assert body["quality"]["label"] == "unknown"
