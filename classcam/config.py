# classcam/config.py
# ------------------------------------------------------------
# Knobs for the scan loop, detector, tracker and enrollment flow.
# Every module constant can be overridden from the environment;
# the dataclasses below take them as defaults so a single session
# can still be tuned without touching the process env.
# ------------------------------------------------------------

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


# ======= Recognition =======
MATCH_THRESHOLD = _env_float("CLASSCAM_MATCH_THRESHOLD", 0.5)   # euclidean, inclusive
DESCRIPTOR_DIM = 128

# ======= Detector filtering (lenient: distant/angled classroom faces) =======
MIN_ASPECT = _env_float("CLASSCAM_MIN_ASPECT", 0.2)
MAX_ASPECT = _env_float("CLASSCAM_MAX_ASPECT", 5.0)
MIN_AREA = _env_float("CLASSCAM_MIN_AREA", 200.0)
MAX_AREA = _env_float("CLASSCAM_MAX_AREA", 200000.0)
MIN_SCORE = _env_float("CLASSCAM_MIN_SCORE", 0.05)
MIN_SIDE_PX = _env_float("CLASSCAM_MIN_SIDE_PX", 20.0)
DETECT_TIMEOUT_S = _env_float("CLASSCAM_DETECT_TIMEOUT_S", 1.0)
SINGLE_TIMEOUT_S = _env_float("CLASSCAM_SINGLE_TIMEOUT_S", 5.0)

# ======= Tracker =======
ASSOC_RATIO = _env_float("CLASSCAM_ASSOC_RATIO", 0.5)   # radius = ratio * min(w, h)
HISTORY_LEN = _env_int("CLASSCAM_HISTORY_LEN", 5)
BOX_SCALE = 0.9        # output box = 90% of raw w/h
NOSE_FROM_TOP = 0.3    # nose sits 30% down the output box
NOSE_FALLBACK_Y = 0.4  # estimated nose: 40% down the raw box

# ======= Scan loop cadence =======
DETECT_EVERY_N_FRAMES = _env_int("CLASSCAM_DETECT_EVERY", 2)
RECOGNIZE_EVERY_N_DETECTIONS = _env_int("CLASSCAM_RECOGNIZE_EVERY", 4)
RECOGNIZE_TIMEOUT_S = _env_float("CLASSCAM_RECOGNIZE_TIMEOUT_S", 2.0)
MAX_CONSECUTIVE_ERRORS = _env_int("CLASSCAM_MAX_ERRORS", 5)
SUCCESS_STATUS_S = 2.0
TARGET_FPS = _env_int("CLASSCAM_TARGET_FPS", 30)

# ======= Enrollment =======
POSITION_INTERVAL_S = _env_float("CLASSCAM_POSITION_INTERVAL_S", 1.0)
POSITION_STABLE_HITS = _env_int("CLASSCAM_POSITION_STABLE_HITS", 3)
POSITION_MAX_GAP_MS = _env_int("CLASSCAM_POSITION_MAX_GAP_MS", 2500)

# ======= Camera =======
CAM_INDEX = _env_int("CAM_INDEX", 0)
CAP_WIDTH = _env_int("CLASSCAM_CAP_WIDTH", 1280)
CAP_HEIGHT = _env_int("CLASSCAM_CAP_HEIGHT", 720)

# ======= Models / storage =======
MODELS_DIR = Path(os.getenv("CLASSCAM_MODELS_DIR", Path(__file__).resolve().parent / "models"))
DETECTOR_WEIGHTS = os.getenv("CLASSCAM_DETECTOR_WEIGHTS", "face_detection_yunet_2023mar.onnx")
DESCRIPTOR_WEIGHTS = os.getenv("CLASSCAM_DESCRIPTOR_WEIGHTS", "face_recognition_sface_2021dec.onnx")
MODEL_BASE_URL = os.getenv(
    "CLASSCAM_MODEL_BASE_URL",
    "https://github.com/opencv/opencv_zoo/raw/main/models",
)
DB_URI = os.getenv("DB_URI", "")
LOG_LEVEL = os.getenv("CLASSCAM_LOG_LEVEL", "INFO")
# =====================================


@dataclass(frozen=True)
class DetectorConfig:
    min_aspect: float = MIN_ASPECT
    max_aspect: float = MAX_ASPECT
    min_area: float = MIN_AREA
    max_area: float = MAX_AREA
    min_score: float = MIN_SCORE
    min_side_px: float = MIN_SIDE_PX
    timeout_s: float = DETECT_TIMEOUT_S
    single_timeout_s: float = SINGLE_TIMEOUT_S


@dataclass(frozen=True)
class TrackerConfig:
    assoc_ratio: float = ASSOC_RATIO
    history_len: int = HISTORY_LEN
    box_scale: float = BOX_SCALE
    nose_from_top: float = NOSE_FROM_TOP
    nose_fallback_y: float = NOSE_FALLBACK_Y


@dataclass(frozen=True)
class ScanConfig:
    match_threshold: float = MATCH_THRESHOLD
    detect_every: int = DETECT_EVERY_N_FRAMES
    recognize_every: int = RECOGNIZE_EVERY_N_DETECTIONS
    recognize_timeout_s: float = RECOGNIZE_TIMEOUT_S
    max_consecutive_errors: int = MAX_CONSECUTIVE_ERRORS
    success_status_s: float = SUCCESS_STATUS_S
    target_fps: int = TARGET_FPS

    def __post_init__(self):
        if self.detect_every < 1 or self.recognize_every < 1:
            raise ValueError("cadences must be >= 1")


@dataclass(frozen=True)
class EnrolConfig:
    position_interval_s: float = POSITION_INTERVAL_S
    stable_hits: int = POSITION_STABLE_HITS
    max_gap_ms: int = POSITION_MAX_GAP_MS
    descriptor_dim: int = DESCRIPTOR_DIM


@dataclass(frozen=True)
class CameraConfig:
    index: int = CAM_INDEX
    width: int = CAP_WIDTH
    height: int = CAP_HEIGHT
    fps: int = TARGET_FPS
