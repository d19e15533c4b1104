# verification/services/descriptor_extractor.py
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2
import numpy as np
import onnxruntime as ort
import torch
from ultralytics import YOLO

from .errors import ProbeInvalid

logger = logging.getLogger("app")


@dataclass
class ExtractorConfig:
    detector_weights: str
    embedder_onnx: str
    device: str = "auto"  # "cuda", "cpu"
    det_conf: float = 0.25
    input_size: int = 112
    descriptor_dim: int = 128
    l2_normalize: bool = True


@dataclass
class DetectedFace:
    bbox: Tuple[int, int, int, int]
    conf: float


@dataclass
class Extraction:
    descriptor: List[float]
    det_score: float
    bbox: Tuple[int, int, int, int]

    @property
    def confidence(self) -> int:
        return int(round(self.det_score * 100))


def _preprocess(face_bgr: np.ndarray, size: int) -> np.ndarray:
    """BGR->RGB, resize, CHW, нормализация в [-1, 1]."""
    img = cv2.cvtColor(face_bgr, cv2.COLOR_BGR2RGB)
    img = cv2.resize(img, (size, size), interpolation=cv2.INTER_LINEAR)
    img = img.astype(np.float32)
    img = (img - 127.5) / 128.0
    img = np.transpose(img, (2, 0, 1))  # CHW
    return np.expand_dims(img, 0)       # NCHW


def _onnx_providers(device: str) -> List[str]:
    avail = set(ort.get_available_providers())
    if device in ("cuda", "auto") and "CUDAExecutionProvider" in avail:
        return ["CUDAExecutionProvider", "CPUExecutionProvider"]
    return ["CPUExecutionProvider"]


class DescriptorExtractor:
    """
    Детектор лица (YOLO) + ONNX-модель дескриптора фиксированной длины.
    Модели грузятся не при создании, а в ensure_ready(): один раз на процесс,
    под замком, с повторной инициализацией, если ресурс "протух".
    """

    def __init__(self, cfg: ExtractorConfig):
        self.cfg = cfg
        self._lock = threading.Lock()
        self._detector: Optional[YOLO] = None
        self._session: Optional[ort.InferenceSession] = None
        self._input_name: Optional[str] = None
        self._output_name: Optional[str] = None
        self.loads = 0

    # ---- жизненный цикл ----
    def is_healthy(self) -> bool:
        if self._detector is None or self._session is None:
            return False
        try:
            inputs = self._session.get_inputs()
            return bool(inputs) and getattr(self._detector, "model", None) is not None
        except Exception as e:
            logger.warning("extractor health check failed: %s", e)
            return False

    def ensure_ready(self) -> None:
        if self.is_healthy():
            return
        with self._lock:
            if self.is_healthy():
                return
            self._load()

    def _load(self) -> None:
        t0 = time.perf_counter()
        device = self.cfg.device
        if device == "auto":
            device = "cuda" if torch.cuda.is_available() else "cpu"
        detector = YOLO(self.cfg.detector_weights)
        try:
            detector.to(device)
            detector.predict(np.zeros((64, 64, 3), dtype=np.uint8), conf=0.9, verbose=False)
        except Exception as e:
            logger.error("YOLO warmup failed on %s: %s; falling back to CPU", device, e)
            detector.to("cpu")
            device = "cpu"

        providers = _onnx_providers(self.cfg.device)
        session = ort.InferenceSession(self.cfg.embedder_onnx, providers=providers)

        self._detector = detector
        self._session = session
        self._input_name = session.get_inputs()[0].name
        self._output_name = session.get_outputs()[0].name
        self.loads += 1
        logger.info(
            "DescriptorExtractor ready: detector=%s on %s, embedder=%s with %s (%.1f ms)",
            self.cfg.detector_weights, device, self.cfg.embedder_onnx,
            session.get_providers(), (time.perf_counter() - t0) * 1000.0,
        )

    # ---- инференс ----
    def detect_best_face(self, img_bgr: np.ndarray) -> Optional[DetectedFace]:
        h, w = img_bgr.shape[:2]
        res = self._detector.predict(img_bgr, conf=self.cfg.det_conf, verbose=False)[0]
        if not res.boxes or len(res.boxes) == 0:
            return None
        xyxy = res.boxes.xyxy.cpu().numpy().astype(int)
        confs = res.boxes.conf.cpu().numpy().tolist()
        best, best_score = None, -1.0
        for (x1, y1, x2, y2), c in zip(xyxy, confs):
            # уверенность + лёгкий бонус за площадь
            score = float(c) + 1e-6 * (x2 - x1) * (y2 - y1)
            if score > best_score:
                best_score, best = score, (x1, y1, x2, y2, float(c))
        x1, y1, x2, y2, conf = best
        return DetectedFace((max(0, x1), max(0, y1), min(w - 1, x2), min(h - 1, y2)), conf)

    def embed(self, face_bgr: np.ndarray) -> np.ndarray:
        x = _preprocess(face_bgr, self.cfg.input_size)
        y = self._session.run([self._output_name], {self._input_name: x})[0]
        vec = y[0].astype(np.float32).reshape(-1)
        if vec.shape[0] != self.cfg.descriptor_dim:
            raise RuntimeError(
                f"embedder returned {vec.shape[0]} values, expected {self.cfg.descriptor_dim}"
            )
        if self.cfg.l2_normalize:
            vec = vec / (np.linalg.norm(vec) + 1e-12)
        return vec

    def extract(self, img_bgr: np.ndarray) -> Extraction:
        self.ensure_ready()
        det = self.detect_best_face(img_bgr)
        if det is None:
            raise ProbeInvalid("No face detected in image")
        x1, y1, x2, y2 = det.bbox
        crop = img_bgr[y1:y2, x1:x2]
        if crop.size == 0:
            raise ProbeInvalid("Detected face region is empty")
        vec = self.embed(crop.copy())
        return Extraction(descriptor=vec.tolist(), det_score=det.conf, bbox=det.bbox)
