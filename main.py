"""
main.py – FastAPI application for the Corn Sizer service.

Measures a corn cob photographed next to a coin of known diameter,
optionally classifies its condition and combines both into a quality score.
"""

import os
import base64
import logging
from contextlib import asynccontextmanager
from typing import Optional

import cv2
from fastapi import FastAPI, UploadFile, File, Form
from fastapi.responses import JSONResponse
from pydantic import BaseModel

import classifier
import measure
import quality

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="[%(asctime)s] %(name)s %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger("cornsizer")

# ---------------------------------------------------------------------------
# Config from env
# ---------------------------------------------------------------------------

COIN_DIAMETER_CM = float(os.environ.get("COIN_DIAMETER_CM", str(measure.DEFAULT_COIN_DIAMETER_CM)))
SENSITIVITY = float(os.environ.get("SENSITIVITY", str(measure.DEFAULT_SENSITIVITY)))
MIN_PIXEL_AREA = int(os.environ.get("MIN_PIXEL_AREA", str(measure.DEFAULT_MIN_PIXEL_AREA)))
SCAN_STRIDE = int(os.environ.get("SCAN_STRIDE", str(measure.DEFAULT_SCAN_STRIDE)))
GROWTH_STEP = int(os.environ.get("GROWTH_STEP", str(measure.DEFAULT_GROWTH_STEP)))
MAX_IMAGE_SIDE = int(os.environ.get("MAX_IMAGE_SIDE", "1280"))
DEFAULT_CORN_LENGTH_CM = float(os.environ.get("DEFAULT_CORN_LENGTH_CM", str(quality.DEFAULT_CORN_LENGTH_CM)))
CLASSIFIER_URL = os.environ.get("CLASSIFIER_URL", "")
CLASSIFIER_ENABLED = os.environ.get("CLASSIFIER_ENABLED", "false").lower() in ("true", "1", "yes")
DETECTION_THRESHOLD = float(os.environ.get("DETECTION_THRESHOLD", str(classifier.DEFAULT_THRESHOLD)))
CLASSIFIER_LABELS = os.environ.get("CLASSIFIER_LABELS", "")


def build_config(coin_diameter_cm: Optional[float] = None) -> measure.MeasureConfig:
    return measure.MeasureConfig(
        coin_diameter_cm=COIN_DIAMETER_CM if coin_diameter_cm is None else coin_diameter_cm,
        sensitivity=SENSITIVITY,
        min_pixel_area=MIN_PIXEL_AREA,
        scan_stride=SCAN_STRIDE,
        growth_step=GROWTH_STEP,
    )


def _load_labels(path: str) -> Optional[list]:
    if not path:
        return None
    try:
        with open(path, encoding="utf-8") as f:
            return classifier.load_labels(f.read())
    except OSError as e:
        log.error("Could not read classifier labels from %s: %s", path, e)
        return None


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("Starting Corn Sizer service …")

    # 1. Fail fast on bad measurement config
    config = build_config()
    log.info("Measurement config: %s", config.to_dict())

    # 2. Init classifier (optional)
    classifier.init(
        url=CLASSIFIER_URL,
        enabled=CLASSIFIER_ENABLED,
        threshold=DETECTION_THRESHOLD,
        labels=_load_labels(CLASSIFIER_LABELS),
    )

    yield

    log.info("Corn Sizer shutdown.")


app = FastAPI(title="Corn Sizer", lifespan=lifespan)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _resolve_coin(coin: Optional[str], coin_diameter_cm: Optional[float]) -> Optional[float]:
    """Explicit diameter wins over a named coin."""
    if coin_diameter_cm is not None:
        return coin_diameter_cm
    if coin:
        if coin not in measure.COIN_DIAMETERS_CM:
            raise ValueError(f"Unknown coin '{coin}'. Known: {sorted(measure.COIN_DIAMETERS_CM)}")
        return measure.COIN_DIAMETERS_CM[coin]
    return None


def _encode_debug_image(result: measure.MeasurementResult) -> Optional[str]:
    debug = measure.annotate_debug_image(result)
    if debug is None:
        return None
    ok, buf = cv2.imencode(".png", debug)
    if not ok:
        log.warning("Debug image encoding failed")
        return None
    return base64.b64encode(buf).decode("utf-8")


def _measure_upload(image_bytes: bytes, coin: Optional[str], coin_diameter_cm: Optional[float]):
    config = build_config(_resolve_coin(coin, coin_diameter_cm))
    image = measure.load_image(image_bytes, MAX_IMAGE_SIDE)
    return image, measure.measure_length(image, config)


# ---------------------------------------------------------------------------
# API: Measure
# ---------------------------------------------------------------------------

@app.post("/api/measure")
def api_measure(
    image: UploadFile = File(...),
    coin: Optional[str] = Form(None),
    coin_diameter_cm: Optional[float] = Form(None),
):
    """Upload photo of corn + coin → length in cm + debug visualisation."""
    image_bytes = image.file.read()

    try:
        _, result = _measure_upload(image_bytes, coin, coin_diameter_cm)
    except (measure.MeasurementError, ValueError) as e:
        log.warning("Measurement rejected: %s", str(e))
        return JSONResponse({"error": str(e)}, status_code=400)

    response = result.to_dict()
    response["debug_image"] = _encode_debug_image(result)
    return response


# ---------------------------------------------------------------------------
# API: Quality
# ---------------------------------------------------------------------------

class QualityRequest(BaseModel):
    label: str
    length_cm: float
    seed_resistance: quality.SeedResistance = quality.SeedResistance.STRONG
    soil_condition: quality.SoilCondition = quality.SoilCondition.MOIST


@app.post("/api/quality")
async def api_quality(body: QualityRequest):
    result = quality.calculate_quality(body.label, body.length_cm, body.seed_resistance, body.soil_condition)
    return result.to_dict()


# ---------------------------------------------------------------------------
# API: Full analysis
# ---------------------------------------------------------------------------

@app.post("/api/analyze")
def api_analyze(
    image: UploadFile = File(...),
    label: Optional[str] = Form(None),
    seed_resistance: quality.SeedResistance = Form(quality.SeedResistance.STRONG),
    soil_condition: quality.SoilCondition = Form(quality.SoilCondition.MOIST),
    coin: Optional[str] = Form(None),
    coin_diameter_cm: Optional[float] = Form(None),
):
    """Photo → classification (optional) + length (or default) → quality score."""
    image_bytes = image.file.read()

    try:
        decoded, result = _measure_upload(image_bytes, coin, coin_diameter_cm)
    except (measure.MeasurementError, ValueError) as e:
        log.warning("Analysis rejected: %s", str(e))
        return JSONResponse({"error": str(e)}, status_code=400)

    length_cm = result.length_cm
    length_source = "measured"
    if not result.measured:
        length_cm = DEFAULT_CORN_LENGTH_CM
        length_source = "default"
        log.info("Using default length %.1f cm (%s)", length_cm, result.failure)

    classification = None
    if label is None:
        classification = classifier.identify(decoded.pixels)
        if classification is not None and classifier.is_confident(classification):
            label = classification.label
        else:
            label = "unknown"

    score = quality.calculate_quality(label, length_cm, seed_resistance, soil_condition)

    return {
        "measurement": result.to_dict(),
        "length_cm": length_cm,
        "length_source": length_source,
        "classification": classification.to_dict() if classification else None,
        "quality": score.to_dict(),
        "debug_image": _encode_debug_image(result),
    }


# ---------------------------------------------------------------------------
# API: Coins & Health
# ---------------------------------------------------------------------------

@app.get("/api/coins")
async def api_coins():
    return measure.COIN_DIAMETERS_CM


@app.get("/api/health")
async def api_health():
    return {
        "status": "ok",
        "classifier_enabled": classifier.is_enabled(),
        "config": build_config().to_dict(),
        "max_image_side": MAX_IMAGE_SIDE,
    }
