"""Camera-side emotion detection for the AI Mood Tracker.

This module wraps the emotion inference backends (DeepFace or FER), maps
their labels onto the tracker's seven emotions, and provides the polling
helpers that sample frames at a fixed interval and keep the most confident
label. Nothing here writes to the observation log; callers confirm a
detection and record it through the stats engine.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
import logging
import threading
import time
from typing import Callable, Dict, Iterator, Optional, Sequence, Union

import cv2
import numpy as np

from emotion_stats import Emotion, EmotionObservation, now_ms, parse_emotion


try:  # pragma: no cover - optional dependency
	from deepface import DeepFace  # type: ignore

	_HAS_DEEPFACE = True
	_DEEPFACE_ERROR = None
except Exception as _df_err:  # pragma: no cover - optional dependency
	DeepFace = None
	_HAS_DEEPFACE = False
	_DEEPFACE_ERROR = str(_df_err)

try:  # pragma: no cover - optional dependency
	from fer import FER  # type: ignore

	_HAS_FER = True
	_FER_ERROR = None
except ImportError as _fer_err:  # pragma: no cover - optional dependency
	FER = None
	_HAS_FER = False
	_FER_ERROR = str(_fer_err)


LOGGER = logging.getLogger(__name__)


# Backend label -> tracker label
BACKEND_LABELS = {
	"angry": Emotion.ANGRY,
	"disgust": Emotion.DISGUSTED,
	"disgusted": Emotion.DISGUSTED,
	"fear": Emotion.FEARFUL,
	"fearful": Emotion.FEARFUL,
	"happy": Emotion.HAPPY,
	"sad": Emotion.SAD,
	"surprise": Emotion.SURPRISED,
	"surprised": Emotion.SURPRISED,
	"neutral": Emotion.NEUTRAL,
}

FrameSource = Callable[[], Optional[np.ndarray]]


class CameraUnavailableError(RuntimeError):
	"""Raised when the capture device cannot be opened."""


@dataclass
class EmotionResult:
	"""Container for a single emotion prediction.

	``confidence`` and the values of ``emotions`` are fractions in [0, 1];
	``timestamp`` is in milliseconds since the epoch.
	"""

	dominant_emotion: Emotion
	confidence: float
	emotions: Dict[str, float]
	timestamp: int

	def to_observation(self, user_id: Optional[str] = None, source: str = "webcam") -> EmotionObservation:
		return EmotionObservation(
			emotion=self.dominant_emotion,
			timestamp=self.timestamp,
			confidence=self.confidence,
			user_id=user_id,
			source=source,
		)


class EmotionAnalyzer:
	"""Emotion inference wrapper with DeepFace/FER fallbacks."""

	def __init__(
		self,
		detector_backend: str = "opencv",
		enforce_detection: bool = False,
		backend_priority: Sequence[str] = ("deepface", "fer"),
	) -> None:
		self.detector_backend = detector_backend
		self.enforce_detection = enforce_detection
		self.backend = self._select_backend(backend_priority)
		self._fer_detector: Optional[object] = None

		if self.backend is None:
			raise ImportError(
				"No emotion detection backend available. Install 'deepface' or 'fer'."
			)

		LOGGER.info("Using emotion backend: %s", self.backend)

	def _select_backend(self, backend_priority: Sequence[str]) -> Optional[str]:
		for backend in backend_priority:
			if backend == "deepface" and _HAS_DEEPFACE:
				return backend
			if backend == "fer" and _HAS_FER:
				return backend
		return None

	def analyze(self, frame: Optional[np.ndarray]) -> Optional[EmotionResult]:
		"""Infer emotion for a single BGR frame.

		Returns ``None`` when no face/emotion is detected.
		"""

		if frame is None:
			LOGGER.debug("Received empty frame for analysis")
			return None

		if self.backend == "deepface":
			return self._analyze_with_deepface(frame)
		if self.backend == "fer":
			return self._analyze_with_fer(frame)
		raise RuntimeError("Unsupported backend configured")

	def _analyze_with_deepface(self, frame: np.ndarray) -> Optional[EmotionResult]:
		if DeepFace is None:  # pragma: no cover - defensive
			return None

		rgb_frame = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
		try:
			analysis = DeepFace.analyze(  # type: ignore[attr-defined]
				rgb_frame,
				actions=["emotion"],
				enforce_detection=self.enforce_detection,
				detector_backend=self.detector_backend,
				silent=True,
			)
		except Exception as exc:  # pragma: no cover - backend specific
			LOGGER.debug("DeepFace failed to analyze frame: %s", exc)
			return None

		if isinstance(analysis, list):
			# DeepFace returns one entry per detected face.
			analysis = next(iter(analysis), None)
			if analysis is None:
				return None

		return _build_result(analysis.get("emotion") or analysis.get("emotions"))

	def _analyze_with_fer(self, frame: np.ndarray) -> Optional[EmotionResult]:
		if FER is None:  # pragma: no cover - defensive
			return None

		if self._fer_detector is None:
			self._fer_detector = FER(mtcnn=True)

		rgb_frame = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
		try:
			detections = self._fer_detector.detect_emotions(rgb_frame)
		except Exception as exc:  # pragma: no cover - backend specific
			LOGGER.debug("FER failed to analyze frame: %s", exc)
			return None

		if not detections:
			return None

		return _build_result(detections[0].get("emotions"))


class DetectionLoop(threading.Thread):
	"""Background thread sampling frames at a fixed interval.

	Each tick grabs a frame, runs the analyzer and keeps the result as
	``latest``. A failing tick is logged and the next one is scheduled as
	usual.
	"""

	def __init__(
		self,
		frame_source: FrameSource,
		analyzer: EmotionAnalyzer,
		interval_ms: int = 1000,
		on_result: Optional[Callable[[EmotionResult], None]] = None,
	) -> None:
		super().__init__(daemon=True)
		self._frame_source = frame_source
		self._analyzer = analyzer
		self._interval_s = max(0.05, interval_ms / 1000.0)
		self._on_result = on_result
		self._stop_event = threading.Event()
		self._lock = threading.Lock()
		self._latest: Optional[EmotionResult] = None

	@property
	def latest(self) -> Optional[EmotionResult]:
		with self._lock:
			return self._latest

	def stop(self) -> None:
		"""Stop the polling loop."""
		self._stop_event.set()

	def run(self) -> None:
		while not self._stop_event.is_set():
			self.tick()
			self._stop_event.wait(self._interval_s)

	def tick(self) -> Optional[EmotionResult]:
		try:
			result = self._analyzer.analyze(self._frame_source())
		except Exception:
			LOGGER.exception("Error processing video frame")
			return None

		if result is None:
			LOGGER.debug("No face detected in frame")
			return None

		LOGGER.debug("Detected %s with confidence %.3f", result.dominant_emotion.value, result.confidence)
		with self._lock:
			self._latest = result
		if self._on_result is not None:
			self._on_result(result)
		return result


def capture_latest(
	frame_source: FrameSource,
	analyzer: EmotionAnalyzer,
	duration_s: float = 10.0,
	interval_ms: int = 1000,
	clock: Callable[[], float] = time.monotonic,
	sleep: Callable[[float], None] = time.sleep,
) -> Optional[EmotionResult]:
	"""Poll frames for ``duration_s`` seconds and return the last detection."""

	loop = DetectionLoop(frame_source, analyzer, interval_ms=interval_ms)
	deadline = clock() + duration_s
	while True:
		loop.tick()
		if clock() + interval_ms / 1000.0 > deadline:
			break
		sleep(interval_ms / 1000.0)
	return loop.latest


@contextmanager
def open_camera(index: int = 0) -> Iterator[FrameSource]:
	"""Open capture device ``index`` and yield a frame source reading from it.

	The source returns ``None`` for a frame the device fails to deliver.
	The device is released on exit.
	"""

	cap = cv2.VideoCapture(index)
	if not cap.isOpened():
		cap.release()
		raise CameraUnavailableError(f"Cannot access camera {index}")

	def read_frame() -> Optional[np.ndarray]:
		ret, frame = cap.read()
		return frame if ret else None

	try:
		yield read_frame
	finally:
		cap.release()


def confirm_observation(
	detected: Optional[EmotionResult],
	selected: Union[str, Emotion, None] = None,
	user_id: Optional[str] = None,
	timestamp: Optional[int] = None,
) -> Optional[EmotionObservation]:
	"""Turn the user's confirmation into an observation.

	A label picked by the user wins over the detection and is recorded with
	full confidence. Returns ``None`` when there is nothing to confirm.
	"""

	timestamp = now_ms() if timestamp is None else timestamp
	if selected:
		return EmotionObservation(
			emotion=parse_emotion(selected),
			timestamp=timestamp,
			confidence=1.0,
			user_id=user_id,
			source="manual",
		)
	if detected is None:
		return None
	return EmotionObservation(
		emotion=detected.dominant_emotion,
		timestamp=timestamp,
		confidence=detected.confidence,
		user_id=user_id,
		source="webcam",
	)


def map_backend_emotions(emotions: Dict[str, float]) -> Dict[str, float]:
	"""Rename backend scores to tracker labels, dropping unknown labels."""

	mapped: Dict[str, float] = {}
	for label, value in emotions.items():
		emotion = BACKEND_LABELS.get(str(label).strip().lower())
		if emotion is None:
			LOGGER.debug("Ignoring unknown backend label %r", label)
			continue
		mapped[emotion.value] = mapped.get(emotion.value, 0.0) + value
	return mapped


def _build_result(emotions: Optional[Dict[str, float]]) -> Optional[EmotionResult]:
	if not emotions:
		return None

	normalized = _normalize_emotions(map_backend_emotions(_finite_scores(emotions)))
	if not normalized:
		return None

	dominant = _get_dominant(normalized)
	return EmotionResult(
		dominant_emotion=Emotion(dominant),
		confidence=float(normalized[dominant]),
		emotions=normalized,
		timestamp=now_ms(),
	)


def _finite_scores(emotions: Dict[str, object]) -> Dict[str, float]:
	return {k: float(v) for k, v in emotions.items() if _is_finite_number(v)}


def _normalize_emotions(emotions: Dict[str, float]) -> Dict[str, float]:
	total = sum(emotions.values())
	if total <= 0:
		return {}
	return {emotion: value / total for emotion, value in emotions.items()}


def _get_dominant(emotions: Dict[str, float]) -> str:
	return max(emotions, key=emotions.get)


def _is_finite_number(value: object) -> bool:
	try:
		return bool(np.isfinite(float(value)))
	except (TypeError, ValueError):
		return False
