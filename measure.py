"""
measure.py – Coin-referenced length measurement.

Pipeline:
  1. Estimate background color from the four image corners
  2. Scan a coarse grid for foreground seeds
  3. Flood fill each seed into a region (bounding box + pixel count)
  4. Pick the coin (most square, plausible size) and the corn (largest rest)
  5. Coin diameter in px → px per cm → corn length in cm

Invalid images are REFUSED with MeasurementError. Everything else degrades to
an unmeasured result (length 0) so the caller can fall back to a default.
"""

import logging
from collections import deque
from typing import List, Optional, Tuple

import cv2
import numpy as np

log = logging.getLogger("cornsizer.measure")

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

# Known coin diameters in cm
COIN_DIAMETERS_CM = {
    "1000": 2.4,
    "500": 2.7,
}

DEFAULT_COIN_DIAMETER_CM = COIN_DIAMETERS_CM["1000"]

# Normalised color distance above which a pixel counts as foreground
DEFAULT_SENSITIVITY = 0.15

# Regions with fewer visited pixels are noise
DEFAULT_MIN_PIXEL_AREA = 400

# Coarse seed scan step and finer flood-fill neighbour step (px)
DEFAULT_SCAN_STRIDE = 4
DEFAULT_GROWTH_STEP = 2

# The coin must cover less than this fraction of the frame
REFERENCE_MAX_AREA_FRAC = 0.3

# Failure codes
INSUFFICIENT_OBJECTS = "insufficient_objects"
NO_REFERENCE_CANDIDATE = "no_reference_candidate"
NO_MEASURED_CANDIDATE = "no_measured_candidate"
DEGENERATE_CALIBRATION = "degenerate_calibration"

FAILURE_MESSAGES = {
    INSUFFICIENT_OBJECTS: "Fewer than 2 objects detected. Check lighting and background.",
    NO_REFERENCE_CANDIDATE: "No coin-like object found.",
    NO_MEASURED_CANDIDATE: "No corn object found.",
    DEGENERATE_CALIBRATION: "Coin has zero pixel size, cannot calibrate.",
}


class MeasurementError(Exception):
    pass


class InvalidImageError(MeasurementError):
    pass


class MeasureConfig:
    def __init__(
        self,
        coin_diameter_cm: float = DEFAULT_COIN_DIAMETER_CM,
        sensitivity: float = DEFAULT_SENSITIVITY,
        min_pixel_area: int = DEFAULT_MIN_PIXEL_AREA,
        scan_stride: int = DEFAULT_SCAN_STRIDE,
        growth_step: int = DEFAULT_GROWTH_STEP,
        reference_max_area_frac: float = REFERENCE_MAX_AREA_FRAC,
        debug_seed: Optional[int] = None,
    ):
        if coin_diameter_cm <= 0:
            raise ValueError(f"coin_diameter_cm must be > 0, got {coin_diameter_cm}")
        if not 0 < sensitivity < 1:
            raise ValueError(f"sensitivity must be in (0, 1), got {sensitivity}")
        if min_pixel_area < 1:
            raise ValueError(f"min_pixel_area must be >= 1, got {min_pixel_area}")
        if scan_stride < 1 or growth_step < 1:
            raise ValueError(f"scan_stride and growth_step must be >= 1, got {scan_stride}/{growth_step}")
        if not 0 < reference_max_area_frac <= 1:
            raise ValueError(f"reference_max_area_frac must be in (0, 1], got {reference_max_area_frac}")

        if scan_stride % growth_step != 0:
            # Scan points off the fill lattice of an earlier seed re-seed the same object
            log.warning(
                "scan_stride=%d is not a multiple of growth_step=%d; one object may be split into overlapping regions",
                scan_stride, growth_step,
            )

        self.coin_diameter_cm = float(coin_diameter_cm)
        self.sensitivity = float(sensitivity)
        self.min_pixel_area = int(min_pixel_area)
        self.scan_stride = int(scan_stride)
        self.growth_step = int(growth_step)
        self.reference_max_area_frac = float(reference_max_area_frac)
        self.debug_seed = debug_seed

    def to_dict(self) -> dict:
        return {
            "coin_diameter_cm": self.coin_diameter_cm,
            "sensitivity": self.sensitivity,
            "min_pixel_area": self.min_pixel_area,
            "scan_stride": self.scan_stride,
            "growth_step": self.growth_step,
            "reference_max_area_frac": self.reference_max_area_frac,
        }


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

class ImageBuffer:
    """Read-only RGB image, stored as a (height, width, 3) uint8 array."""

    def __init__(self, width: int, height: int, pixels):
        if width <= 0 or height <= 0:
            raise InvalidImageError(f"Image must be at least 1x1, got {width}x{height}.")

        arr = np.asarray(pixels)
        expected = width * height * 3
        if arr.size != expected:
            raise InvalidImageError(
                f"Pixel buffer holds {arr.size} values, expected {expected} "
                f"({width}x{height} RGB)."
            )

        if arr.dtype != np.uint8:
            if arr.dtype.kind not in "iu":
                raise InvalidImageError(f"Pixel values must be 8-bit integers, got dtype {arr.dtype}.")
            if arr.min() < 0 or arr.max() > 255:
                raise InvalidImageError(
                    f"Pixel values must be in 0..255, got range {arr.min()}..{arr.max()}."
                )

        arr = np.ascontiguousarray(arr, dtype=np.uint8).reshape(height, width, 3)
        arr.setflags(write=False)

        self.width = width
        self.height = height
        self.pixels = arr

    @classmethod
    def from_array(cls, arr: np.ndarray) -> "ImageBuffer":
        if arr.ndim != 3 or arr.shape[2] != 3:
            raise InvalidImageError(f"Expected an (h, w, 3) array, got shape {arr.shape}.")
        h, w = arr.shape[:2]
        return cls(w, h, arr)

    @property
    def area(self) -> int:
        return self.width * self.height


class Region:
    def __init__(self, x: int, y: int, width: int, height: int, pixel_count: int, members: np.ndarray):
        self.x = x
        self.y = y
        self.width = width
        self.height = height
        self.pixel_count = pixel_count
        self.aspect_ratio = width / height if height > 0 else 0.0
        # Flat indices (y * image_width + x) of every visited pixel
        self.members = members

    @property
    def bounds(self) -> Tuple[int, int, int, int]:
        return self.x, self.y, self.width, self.height

    def to_dict(self) -> dict:
        return {
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "pixel_count": self.pixel_count,
            "aspect_ratio": round(self.aspect_ratio, 3),
        }

    def __repr__(self) -> str:
        return f"Region(bounds={self.bounds}, pixel_count={self.pixel_count})"


class Segmentation:
    def __init__(self, regions: list, noise: list, visited: np.ndarray, samples_scanned: int):
        self.regions: List[Region] = regions   # pixel_count >= min_pixel_area
        self.noise: List[Region] = noise       # everything smaller
        self.visited = visited
        self.samples_scanned = samples_scanned


class CalibrationResult:
    def __init__(self, pixels_per_unit: float, measured_length_units: float, reference_px: float, measured_px: float):
        self.pixels_per_unit = pixels_per_unit
        self.measured_length_units = measured_length_units
        self.reference_px = reference_px
        self.measured_px = measured_px


class MeasurementResult:
    def __init__(
        self,
        length_cm: float,
        failure: Optional[str] = None,
        pixels_per_cm: float = 0.0,
        reference: Optional[Region] = None,
        measured_region: Optional[Region] = None,
        regions: Optional[list] = None,
        debug_image: Optional[np.ndarray] = None,
    ):
        self.length_cm = round(length_cm, 2)
        self.failure = failure
        self.measured = failure is None
        self.pixels_per_cm = pixels_per_cm
        self.reference = reference
        self.measured_region = measured_region
        self.regions = regions or []
        self.debug_image = debug_image

    @property
    def message(self) -> str:
        return FAILURE_MESSAGES.get(self.failure, "")

    def to_dict(self) -> dict:
        return {
            "measured": self.measured,
            "length_cm": self.length_cm,
            "pixels_per_cm": round(self.pixels_per_cm, 3),
            "failure": self.failure,
            "message": self.message,
            "reference": self.reference.to_dict() if self.reference else None,
            "corn": self.measured_region.to_dict() if self.measured_region else None,
            "regions": [r.to_dict() for r in self.regions],
        }


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

def measure_length(image: ImageBuffer, config: Optional[MeasureConfig] = None) -> MeasurementResult:
    """
    Measure the corn cob next to a coin of known diameter.

    Args:
        image: validated RGB image
        config: thresholds and coin diameter (defaults if omitted)

    Returns:
        MeasurementResult; `measured` is False and `length_cm` 0 when no
        length could be derived.
    """
    config = config or MeasureConfig()

    # Step 1: Background
    background = estimate_background(image)

    # Step 2+3: Seeds and flood fill
    segmentation = segment_foreground(image, background, config)
    debug = render_debug_image(segmentation, image.width, image.height, seed=config.debug_seed)

    log.debug("Found %d candidate object(s), %d noise region(s) from %d samples",
              len(segmentation.regions), len(segmentation.noise), segmentation.samples_scanned)

    # Step 4: Coin vs corn
    reference, measured, failure = classify_regions(
        segmentation.regions,
        image.area,
        config.min_pixel_area,
        config.reference_max_area_frac,
    )
    if failure:
        log.warning("Measurement failed: %s (%d candidate(s))", FAILURE_MESSAGES[failure], len(segmentation.regions))
        return MeasurementResult(0.0, failure=failure, reference=reference,
                                 regions=segmentation.regions, debug_image=debug)

    # Step 5: Scale
    calibration = calibrate(reference, measured, config.coin_diameter_cm)
    if calibration is None:
        log.warning("Measurement failed: %s", FAILURE_MESSAGES[DEGENERATE_CALIBRATION])
        return MeasurementResult(0.0, failure=DEGENERATE_CALIBRATION, reference=reference,
                                 measured_region=measured, regions=segmentation.regions, debug_image=debug)

    log.info("Measured: coin=%.1fpx corn=%.1fpx px_per_cm=%.2f length=%.2f cm",
             calibration.reference_px, calibration.measured_px,
             calibration.pixels_per_unit, calibration.measured_length_units)

    return MeasurementResult(
        length_cm=calibration.measured_length_units,
        pixels_per_cm=calibration.pixels_per_unit,
        reference=reference,
        measured_region=measured,
        regions=segmentation.regions,
        debug_image=debug,
    )


def measure_image_bytes(
    image_bytes: bytes,
    config: Optional[MeasureConfig] = None,
    max_side: int = 0,
) -> MeasurementResult:
    """Decode JPEG/PNG data, cap its resolution, then measure."""
    return measure_length(load_image(image_bytes, max_side), config)


def load_image(image_bytes: bytes, max_side: int = 0) -> ImageBuffer:
    """Decode JPEG/PNG data; max_side <= 0 keeps the full resolution."""
    image = decode_image(image_bytes)
    if max_side > 0:
        image = downscale_image(image, max_side)
    return image


def decode_image(image_bytes: bytes) -> ImageBuffer:
    arr = np.frombuffer(image_bytes, np.uint8)
    img = cv2.imdecode(arr, cv2.IMREAD_COLOR) if arr.size else None
    if img is None:
        raise InvalidImageError("Could not decode image.")
    return ImageBuffer.from_array(cv2.cvtColor(img, cv2.COLOR_BGR2RGB))


def downscale_image(image: ImageBuffer, max_side: int) -> ImageBuffer:
    """Shrink so the longer side is at most max_side px. Smaller images pass through."""
    longest = max(image.width, image.height)
    if longest <= max_side:
        return image

    scale = max_side / longest
    w = max(1, int(round(image.width * scale)))
    h = max(1, int(round(image.height * scale)))
    resized = cv2.resize(np.asarray(image.pixels), (w, h), interpolation=cv2.INTER_AREA)
    log.debug("Downscaled image %dx%d → %dx%d", image.width, image.height, w, h)
    return ImageBuffer.from_array(resized)


# ---------------------------------------------------------------------------
# Step 1: Background estimation
# ---------------------------------------------------------------------------

def estimate_background(image: ImageBuffer) -> Tuple[float, float, float]:
    """Average of the four corner pixels, as floats."""
    px = image.pixels
    corners = np.stack([px[0, 0], px[0, -1], px[-1, 0], px[-1, -1]]).astype(np.float64)
    r, g, b = corners.mean(axis=0)
    return float(r), float(g), float(b)


def background_distance(pixels: np.ndarray, background: Tuple[float, float, float]) -> np.ndarray:
    """Mean absolute per-channel difference to the background, in [0, 1]."""
    diff = np.abs(pixels.astype(np.float32) - np.asarray(background, dtype=np.float32))
    return diff.sum(axis=-1) / (3 * 255.0)


# ---------------------------------------------------------------------------
# Step 2: Foreground segmentation
# ---------------------------------------------------------------------------

def segment_foreground(
    image: ImageBuffer,
    background: Tuple[float, float, float],
    config: MeasureConfig,
) -> Segmentation:
    """
    Scan a stride-aligned grid (skipping a stride-wide border) and flood fill
    from every unvisited foreground sample.
    """
    w, h = image.width, image.height
    stride = config.scan_stride

    foreground = (background_distance(image.pixels, background) > config.sensitivity).ravel()
    visited = np.zeros(w * h, dtype=bool)

    regions = []
    noise = []
    samples = 0

    for y in range(stride, h - stride, stride):
        for x in range(stride, w - stride, stride):
            samples += 1
            idx = y * w + x
            if visited[idx] or not foreground[idx]:
                continue

            region = grow_region(foreground, visited, w, h, x, y, config.growth_step)
            if region.pixel_count >= config.min_pixel_area:
                regions.append(region)
            else:
                noise.append(region)

    return Segmentation(regions, noise, visited, samples)


# ---------------------------------------------------------------------------
# Step 3: Region growing
# ---------------------------------------------------------------------------

def grow_region(
    foreground: np.ndarray,
    visited: np.ndarray,
    width: int,
    height: int,
    seed_x: int,
    seed_y: int,
    step: int = DEFAULT_GROWTH_STEP,
) -> Region:
    """
    Breadth-first fill from the seed over foreground pixels `step` px apart.

    `foreground` and `visited` are flat arrays of width * height entries;
    `visited` is updated in place and shared by the whole segmentation pass.
    """
    total = width * height
    start = seed_y * width + seed_x

    min_x = max_x = seed_x
    min_y = max_y = seed_y
    members = []

    queue = deque([start])
    visited[start] = True
    offsets = (-step, step, -step * width, step * width)

    while queue:
        idx = queue.popleft()
        cx = idx % width
        cy = idx // width
        members.append(idx)

        if cx < min_x:
            min_x = cx
        elif cx > max_x:
            max_x = cx
        if cy < min_y:
            min_y = cy
        elif cy > max_y:
            max_y = cy

        for offset in offsets:
            n_idx = idx + offset
            if n_idx < 0 or n_idx >= total:
                continue
            # Row wrap: a horizontal step landed on the neighbouring row
            if abs(n_idx % width - cx) > step * 2:
                continue
            if visited[n_idx] or not foreground[n_idx]:
                continue
            visited[n_idx] = True
            queue.append(n_idx)

    return Region(
        x=min_x,
        y=min_y,
        width=max_x - min_x,
        height=max_y - min_y,
        pixel_count=len(members),
        members=np.asarray(members, dtype=np.int64),
    )


# ---------------------------------------------------------------------------
# Debug visualisation
# ---------------------------------------------------------------------------

def render_debug_image(
    segmentation: Segmentation,
    width: int,
    height: int,
    seed: Optional[int] = None,
) -> np.ndarray:
    """Black canvas with every discovered region painted in its own random color."""
    rng = np.random.default_rng(seed)
    canvas = np.zeros((height * width, 3), dtype=np.uint8)

    for region in segmentation.regions + segmentation.noise:
        color = rng.integers(50, 255, size=3, dtype=np.uint8)
        canvas[region.members] = color

    return canvas.reshape(height, width, 3)


def annotate_debug_image(result: MeasurementResult) -> Optional[np.ndarray]:
    """
    Draw coin and corn boxes plus the length label onto a copy of the debug image.
    Returned in BGR order, ready for cv2.imencode.
    """
    if result.debug_image is None:
        return None

    img = cv2.cvtColor(result.debug_image, cv2.COLOR_RGB2BGR)
    font = cv2.FONT_HERSHEY_SIMPLEX
    color_coin = (0, 255, 255)  # Yellow
    color_corn = (0, 255, 0)  # Green

    if result.reference is not None:
        x, y, w, h = result.reference.bounds
        cv2.rectangle(img, (x, y), (x + w, y + h), color_coin, 2)
        cv2.putText(img, "coin", (x, max(12, y - 6)), font, 0.5, color_coin, 1)

    if result.measured_region is not None:
        x, y, w, h = result.measured_region.bounds
        cv2.rectangle(img, (x, y), (x + w, y + h), color_corn, 2)
        label = f"L={result.length_cm:.2f}cm" if result.measured else "corn"
        cv2.putText(img, label, (x, max(12, y - 6)), font, 0.6, color_corn, 2)

    return img


# ---------------------------------------------------------------------------
# Step 4: Coin / corn classification
# ---------------------------------------------------------------------------

def classify_regions(
    regions: List[Region],
    image_area: int,
    min_pixel_area: int = DEFAULT_MIN_PIXEL_AREA,
    max_area_frac: float = REFERENCE_MAX_AREA_FRAC,
) -> Tuple[Optional[Region], Optional[Region], Optional[str]]:
    """
    Coin = most square region (aspect ratio nearest 1.0) that covers less than
    max_area_frac of the frame. Corn = largest remaining region.

    Returns (reference, measured, failure_code).
    """
    candidates = [r for r in regions if r.pixel_count >= min_pixel_area]
    if len(candidates) < 2:
        return None, None, INSUFFICIENT_OBJECTS

    # sorted() is stable: ties keep scan order
    by_squareness = sorted(candidates, key=lambda r: abs(1.0 - r.aspect_ratio))

    max_area = image_area * max_area_frac
    reference = next((r for r in by_squareness if r.pixel_count < max_area), None)
    if reference is None:
        return None, None, NO_REFERENCE_CANDIDATE

    rest = [r for r in candidates if r is not reference]
    if not rest:
        return reference, None, NO_MEASURED_CANDIDATE
    measured = max(rest, key=lambda r: r.pixel_count)

    log.debug("Coin: %r (ratio=%.2f), corn: %r", reference, reference.aspect_ratio, measured)
    return reference, measured, None


# ---------------------------------------------------------------------------
# Step 5: Scale calibration
# ---------------------------------------------------------------------------

def calibrate(reference: Region, measured: Region, known_diameter: float) -> Optional[CalibrationResult]:
    """
    Average coin side → px per unit; longer corn side → length in units.
    Returns None for a zero-size coin.
    """
    # Averaging both sides softens a coin photographed at a slight angle
    reference_px = (reference.width + reference.height) / 2
    if reference_px <= 0 or known_diameter <= 0:
        return None

    pixels_per_unit = reference_px / known_diameter
    measured_px = max(measured.width, measured.height)

    return CalibrationResult(
        pixels_per_unit=pixels_per_unit,
        measured_length_units=measured_px / pixels_per_unit,
        reference_px=reference_px,
        measured_px=float(measured_px),
    )
