# classcam/model.py
# ------------------------------------------------------------
# Face model capability:
#   - YuNet (cv2.FaceDetectorYN) for boxes, scores, 5-pt landmarks
#   - 128-D descriptor network on onnxruntime (NHWC/NCHW auto-detect)
#   - ModelResource: shared, lazily loaded, ref-counted handle
# ------------------------------------------------------------

from __future__ import annotations

import asyncio
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import cv2
import numpy as np
import onnxruntime as ort
import requests

from . import config
from .errors import ModelLoadError

log = logging.getLogger(__name__)

Point = Tuple[float, float]

# ArcFace/SFace 112x112 alignment template (eye, eye, nose, mouth, mouth)
REFERENCE_5PTS = np.array(
    [
        [38.2946, 51.6963],
        [73.5318, 51.5014],
        [56.0252, 71.7366],
        [41.5493, 92.3655],
        [70.7299, 92.2041],
    ],
    dtype=np.float32,
)


# ---------- types ----------

@dataclass(frozen=True)
class Box:
    x: float
    y: float
    width: float
    height: float

    @property
    def center(self) -> Point:
        return (self.x + self.width / 2.0, self.y + self.height / 2.0)

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def aspect(self) -> float:
        return self.width / self.height if self.height else float("inf")

    def as_xyxy(self) -> Tuple[int, int, int, int]:
        return (int(self.x), int(self.y), int(self.x + self.width), int(self.y + self.height))


@dataclass(frozen=True)
class Landmarks:
    nose: Point
    left_eye: Point
    right_eye: Point


@dataclass(frozen=True)
class DetectedFace:
    box: Box
    score: float
    descriptor: np.ndarray
    landmarks: Optional[Landmarks] = None


# ---------- capability ----------

class FaceModel:
    """What the core needs from a face model. Calls must not touch caller state."""
    name: str = "base"

    def load(self) -> None:
        raise NotImplementedError

    def unload(self) -> None:
        pass

    def detect_faces(self, frame) -> List[DetectedFace]:
        raise NotImplementedError

    def detect_single(self, frame) -> Optional[Tuple[np.ndarray, Optional[Landmarks]]]:
        faces = self.detect_faces(frame)
        if not faces:
            return None
        best = max(faces, key=lambda f: f.score)
        return best.descriptor, best.landmarks


def l2_normalize(v: np.ndarray, eps: float = 1e-9) -> np.ndarray:
    v = np.asarray(v, dtype=np.float32)
    n = np.linalg.norm(v) + eps
    return (v / n).astype(np.float32)


class DescriptorNet:
    """
    Descriptor network on onnxruntime.
    Automatically detects input layout:
      - NCHW: (1, 3, 112, 112)
      - NHWC: (1, 112, 112, 3)
    """

    def __init__(self, model_path: str, providers: Optional[List[str]] = None,
                 mean: float = 0.0, scale: float = 1.0) -> None:
        if not os.path.isfile(model_path):
            raise FileNotFoundError(f"descriptor model not found at: {model_path}")

        self.model_path = model_path
        self.providers = providers or ["CPUExecutionProvider"]
        self.mean = mean
        self.scale = scale

        sess_opt = ort.SessionOptions()
        sess_opt.log_severity_level = 3
        self.sess = ort.InferenceSession(self.model_path, sess_options=sess_opt, providers=self.providers)

        inp = self.sess.get_inputs()[0]
        out = self.sess.get_outputs()[0]
        self.inp_name = inp.name
        self.out_name = out.name

        shape = list(inp.shape)  # could include None / symbolic dims
        self.expects_nhwc = False

        def _as_int(x):
            try:
                return int(x)
            except (TypeError, ValueError):
                return None

        if len(shape) == 4 and _as_int(shape[1]) == 112 and _as_int(shape[3]) == 3:
            self.expects_nhwc = True

        dummy = np.zeros((112, 112, 3), np.float32)
        probe = self.sess.run([self.out_name], {self.inp_name: self._pack_input(dummy)})[0]
        self.dim = int(np.asarray(probe).size)
        log.info("[model] descriptor net input=%s nhwc=%s dim=%d", shape, self.expects_nhwc, self.dim)

    def _preprocess(self, face_bgr_112: np.ndarray) -> np.ndarray:
        rgb = cv2.cvtColor(face_bgr_112, cv2.COLOR_BGR2RGB).astype(np.float32)
        return (rgb - self.mean) * self.scale

    def _pack_input(self, img: np.ndarray) -> np.ndarray:
        if self.expects_nhwc:
            return img[None, ...]
        return np.transpose(img, (2, 0, 1))[None, ...]

    def embed(self, face_bgr_112: np.ndarray) -> np.ndarray:
        blob = self._pack_input(self._preprocess(face_bgr_112))
        emb = self.sess.run([self.out_name], {self.inp_name: blob})[0]
        return l2_normalize(emb.reshape(-1).astype(np.float32))


def align_face(frame: np.ndarray, five_pts: np.ndarray) -> np.ndarray:
    """Similarity-warp the face onto the 112x112 template."""
    M, _ = cv2.estimateAffinePartial2D(five_pts.astype(np.float32), REFERENCE_5PTS, method=cv2.LMEDS)
    if M is None:
        raise ValueError("could not estimate alignment")
    return cv2.warpAffine(frame, M, (112, 112), borderValue=0)


class OnnxFaceModel(FaceModel):
    name = "YuNet+SFace"

    def __init__(self, models_dir: Optional[Path] = None,
                 detector_weights: str = config.DETECTOR_WEIGHTS,
                 descriptor_weights: str = config.DESCRIPTOR_WEIGHTS,
                 providers: Optional[List[str]] = None,
                 score_floor: float = 0.05,
                 single_score: float = 0.5):
        self.models_dir = Path(models_dir or config.MODELS_DIR)
        self.detector_path = self.models_dir / detector_weights
        self.descriptor_path = self.models_dir / descriptor_weights
        self.providers = providers
        self.score_floor = score_floor
        self.single_score = single_score
        self._yunet = None
        self._net: Optional[DescriptorNet] = None
        self._lock = threading.Lock()  # YuNet holds per-call state

    def load(self) -> None:
        if not self.detector_path.is_file():
            raise FileNotFoundError(
                f"face detector NOT FOUND at: {self.detector_path}. Run `classcam fetch-models`."
            )
        with self._lock:
            self._yunet = cv2.FaceDetectorYN.create(
                str(self.detector_path), "", (320, 320), self.score_floor, 0.3, 5000
            )
            self._net = DescriptorNet(str(self.descriptor_path), providers=self.providers)
        log.info("[model] %s loaded from %s", self.name, self.models_dir)

    def unload(self) -> None:
        with self._lock:
            self._yunet = None
            self._net = None

    def detect_faces(self, frame) -> List[DetectedFace]:
        if self._yunet is None or self._net is None:
            raise ModelLoadError("face model not loaded")
        h, w = frame.shape[:2]
        with self._lock:
            self._yunet.setInputSize((w, h))
            _, rows = self._yunet.detect(frame)
            if rows is None:
                return []
            out = []
            for r in rows:
                # x, y, w, h, r_eye(2), l_eye(2), nose(2), r_mouth(2), l_mouth(2), score
                pts = np.asarray(r[4:14], dtype=np.float32).reshape(5, 2)
                try:
                    desc = self._net.embed(align_face(frame, pts))
                except ValueError:
                    continue
                out.append(DetectedFace(
                    box=Box(float(r[0]), float(r[1]), float(r[2]), float(r[3])),
                    score=float(r[14]),
                    descriptor=desc,
                    landmarks=Landmarks(
                        nose=(float(pts[2, 0]), float(pts[2, 1])),
                        left_eye=(float(pts[1, 0]), float(pts[1, 1])),
                        right_eye=(float(pts[0, 0]), float(pts[0, 1])),
                    ),
                ))
            return out

    def detect_single(self, frame):
        faces = [f for f in self.detect_faces(frame) if f.score >= self.single_score]
        if not faces:
            return None
        best = max(faces, key=lambda f: f.score)
        return best.descriptor, best.landmarks


# ---------- shared resource ----------

class ModelResource:
    """
    One face model per process, loaded on first demand.
    Concurrent ensure_loaded() calls share a single in-flight load; a
    failed load is forgotten so the next call retries. acquire()/release()
    count users and unload the model when the last one leaves.
    """

    def __init__(self, factory: Callable[[], FaceModel]):
        self._factory = factory
        self._model: Optional[FaceModel] = None
        self._loaded = False
        self._loading: Optional[asyncio.Future] = None
        self._unload_pending = False
        self._refs = 0
        self.load_count = 0

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def refs(self) -> int:
        return self._refs

    @property
    def model(self) -> FaceModel:
        if not self._loaded or self._model is None:
            raise ModelLoadError("face model not loaded; await ensure_loaded() first")
        return self._model

    async def _load(self) -> None:
        try:
            model = self._model or self._factory()
            self._model = model
            self.load_count += 1
            log.info("[model] loading %s", model.name)
            await asyncio.to_thread(model.load)
            self._loaded = True
            if self._unload_pending and self._refs == 0:
                model.unload()
                self._loaded = False
                log.info("[model] unloaded (last user left during load)")
        except Exception as e:
            log.error("[model] load failed: %s", e)
            raise ModelLoadError(
                "Failed to load face recognition models. Please check if model files are available."
            ) from e
        finally:
            self._loading = None
            self._unload_pending = False

    async def ensure_loaded(self) -> FaceModel:
        if self._loaded:
            return self._model
        if self._loading is None:
            self._loading = asyncio.ensure_future(self._load())
        await asyncio.shield(self._loading)
        return self._model

    def preload(self) -> Optional[asyncio.Future]:
        """Start loading in the background; errors are logged, not raised."""
        if self._loaded or self._loading is not None:
            return self._loading
        fut = asyncio.ensure_future(self.ensure_loaded())

        def _done(f: asyncio.Future):
            if not f.cancelled() and f.exception() is not None:
                log.warning("[model] preload failed: %s", f.exception())

        fut.add_done_callback(_done)
        return fut

    async def acquire(self) -> FaceModel:
        self._refs += 1
        try:
            return await self.ensure_loaded()
        except BaseException:
            self._refs -= 1
            raise

    def release(self) -> None:
        if self._refs <= 0:
            return
        self._refs -= 1
        if self._refs == 0 and self._loading is not None:
            self._unload_pending = True
        elif self._refs == 0 and self._loaded:
            self._model.unload()
            self._loaded = False
            log.info("[model] unloaded (no users left)")


_resource: Optional[ModelResource] = None
_resource_lock = threading.Lock()


def get_model_resource(factory: Optional[Callable[[], FaceModel]] = None) -> ModelResource:
    global _resource
    with _resource_lock:
        if _resource is None:
            _resource = ModelResource(factory or OnnxFaceModel)
        return _resource


# ---------- weights download ----------

WEIGHT_SUBDIRS = {
    "face_detection_yunet_2023mar.onnx": "face_detection_yunet",
    "face_recognition_sface_2021dec.onnx": "face_recognition_sface",
}


def download_weights(models_dir: Optional[Path] = None, base_url: str = config.MODEL_BASE_URL,
                     names: Optional[List[str]] = None, timeout: float = 30.0) -> List[Path]:
    """Fetch any missing weight files. Returns the paths that were written."""
    models_dir = Path(models_dir or config.MODELS_DIR)
    models_dir.mkdir(parents=True, exist_ok=True)
    written = []
    for name in names or [config.DETECTOR_WEIGHTS, config.DESCRIPTOR_WEIGHTS]:
        dst = models_dir / name
        if dst.is_file():
            log.info("[fetch] %s already present", name)
            continue
        sub = WEIGHT_SUBDIRS.get(name, "")
        url = f"{base_url.rstrip('/')}/{sub}/{name}" if sub else f"{base_url.rstrip('/')}/{name}"
        log.info("[fetch] %s -> %s", url, dst)
        r = requests.get(url, stream=True, timeout=timeout)
        r.raise_for_status()
        tmp = dst.with_suffix(dst.suffix + ".part")
        with open(tmp, "wb") as f:
            for chunk in r.iter_content(chunk_size=1 << 16):
                f.write(chunk)
        tmp.replace(dst)
        written.append(dst)
    return written
