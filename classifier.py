"""
classifier.py – Corn condition classifier interface.

The model itself runs elsewhere: this module prepares the 224x224 input
tensor, posts it to an inference endpoint and decodes the class scores.
Behind CLASSIFIER_ENABLED flag. Length measurement works 100% without it.
"""

import base64
import logging
from typing import List, Optional, Sequence

import cv2
import httpx
import numpy as np

log = logging.getLogger("cornsizer.classifier")

INPUT_SIZE = 224
DEFAULT_THRESHOLD = 0.6
DEFAULT_LABELS = ["Corn_Healthy", "Corn_Damaged", "Corn_Fungus"]

_enabled: bool = False
_url: str = ""
_threshold: float = DEFAULT_THRESHOLD
_labels: List[str] = list(DEFAULT_LABELS)


def init(url: str = "", enabled: bool = False, threshold: float = DEFAULT_THRESHOLD,
         labels: Optional[List[str]] = None) -> None:
    global _enabled, _url, _threshold, _labels
    _url = url.rstrip("/")
    _enabled = enabled and bool(url)
    _threshold = threshold
    _labels = list(labels) if labels else list(DEFAULT_LABELS)
    if _enabled:
        log.info("Classifier enabled at %s (%d labels)", _url, len(_labels))
    else:
        log.info("Classifier disabled")


def is_enabled() -> bool:
    return _enabled


class ClassificationResult:
    def __init__(self, label: str, confidence: float, class_index: int):
        self.label = label
        self.confidence = confidence
        self.class_index = class_index

    def to_dict(self) -> dict:
        return {
            "label": self.label,
            "confidence": round(self.confidence, 4),
            "class_index": self.class_index,
        }


def load_labels(text: str) -> List[str]:
    """One label per line, blank lines ignored."""
    return [line.strip() for line in text.splitlines() if line.strip()]


def prepare_input(pixels: np.ndarray) -> np.ndarray:
    """(h, w, 3) uint8 RGB → (224, 224, 3) float32 in [0, 1]."""
    resized = cv2.resize(np.asarray(pixels, dtype=np.uint8), (INPUT_SIZE, INPUT_SIZE),
                         interpolation=cv2.INTER_AREA)
    return resized.astype(np.float32) / 255.0


def decode_scores(scores: Sequence[float], labels: Optional[Sequence[str]] = None) -> ClassificationResult:
    """Argmax over the output scores. Unknown indices become 'Class N'."""
    if len(scores) == 0:
        raise ValueError("Classifier returned no scores.")
    arr = np.asarray(scores, dtype=np.float32)
    best = int(np.argmax(arr))
    labels = _labels if labels is None else labels
    name = labels[best] if best < len(labels) else f"Class {best}"
    return ClassificationResult(label=name, confidence=float(arr[best]), class_index=best)


def is_confident(result: ClassificationResult, threshold: Optional[float] = None) -> bool:
    return result.confidence >= (_threshold if threshold is None else threshold)


def identify(pixels: np.ndarray) -> Optional[ClassificationResult]:
    """
    Send the prepared tensor to the inference endpoint.
    Returns ClassificationResult, or None if disabled or on error (never blocks workflow).
    """
    if not _enabled:
        return None

    try:
        tensor = prepare_input(pixels)

        response = httpx.post(
            f"{_url}/predict",
            json={
                "shape": list(tensor.shape),
                "dtype": "float32",
                "data": base64.b64encode(tensor.tobytes()).decode("utf-8"),
            },
            timeout=30,
        )
        response.raise_for_status()
        data = response.json()

        result = decode_scores(data["scores"])
        log.info("Classified as %s (%.2f)", result.label, result.confidence)
        return result

    except Exception as e:
        log.warning("Classification failed (non-fatal): %s", e)
        return None
