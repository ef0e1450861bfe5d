"""Windowed emotion statistics for the AI Mood Tracker.

Confirmed emotions are stored as observations (a label plus a millisecond
timestamp). This module validates them against the tracker's closed label set
and aggregates them into last-hour, last-day, last-week and all-time counts,
percentage distributions and the daily summaries shown by the dashboard.
Every result is zero-filled over the seven labels.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
import logging
import math
from pathlib import Path
import time
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import pandas as pd

if TYPE_CHECKING:  # pragma: no cover - typing only
	from emotion_store import EmotionStore


LOGGER = logging.getLogger(__name__)


HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS
WEEK_MS = 7 * DAY_MS

OBSERVATION_COLUMNS = ["timestamp", "emotion", "confidence", "user_id", "source"]


class InvalidLabelError(ValueError):
	"""Raised when an emotion label is not one of the tracker labels."""


class InvalidWindowError(ValueError):
	"""Raised for an unknown statistics window identifier."""


class InvalidConfidenceError(ValueError):
	"""Raised when a confidence is not a finite number between 0 and 1."""


class Emotion(str, Enum):
	"""The closed set of emotions the tracker records."""

	HAPPY = "happy"
	SAD = "sad"
	ANGRY = "angry"
	FEARFUL = "fearful"
	DISGUSTED = "disgusted"
	SURPRISED = "surprised"
	NEUTRAL = "neutral"


EMOTIONS: Tuple[str, ...] = tuple(emotion.value for emotion in Emotion)

EMOTION_COLORS = {
	"happy": "#4CAF50",
	"sad": "#2196F3",
	"angry": "#F44336",
	"fearful": "#9C27B0",
	"disgusted": "#795548",
	"surprised": "#FF9800",
	"neutral": "#607D8B",
}


class Window(str, Enum):
	"""Lookback periods, named as they appear on the wire."""

	LAST_HOUR = "lastHour"
	LAST_DAY = "lastDay"
	LAST_WEEK = "lastWeek"
	TOTAL = "total"

	@property
	def duration_ms(self) -> Optional[int]:
		return _WINDOW_DURATIONS[self]


_WINDOW_DURATIONS: Dict[Window, Optional[int]] = {
	Window.LAST_HOUR: HOUR_MS,
	Window.LAST_DAY: DAY_MS,
	Window.LAST_WEEK: WEEK_MS,
	Window.TOTAL: None,
}


def now_ms() -> int:
	"""Current wall-clock time in milliseconds since the epoch."""

	return int(time.time() * 1000)


def parse_emotion(value: Union[str, Emotion]) -> Emotion:
	"""Return the tracker emotion for ``value`` or raise ``InvalidLabelError``."""

	if isinstance(value, Emotion):
		return value
	label = value.strip().lower() if isinstance(value, str) else None
	if label not in EMOTIONS:
		raise InvalidLabelError(f"Unknown emotion label: {value!r}")
	return Emotion(label)


def parse_confidence(value: Any) -> float:
	"""Return ``value`` as a float in [0, 1] or raise ``InvalidConfidenceError``."""

	try:
		confidence = float(value)
	except (TypeError, ValueError):
		raise InvalidConfidenceError(f"Confidence must be a number, got {value!r}") from None
	if not math.isfinite(confidence) or not 0.0 <= confidence <= 1.0:
		raise InvalidConfidenceError(f"Confidence must be between 0 and 1, got {value!r}")
	return confidence


def parse_window(value: Union[str, Window]) -> Window:
	if isinstance(value, Window):
		return value
	for window in Window:
		if window.value == value:
			return window
	raise InvalidWindowError(
		f"Unknown window {value!r}; expected one of {', '.join(w.value for w in Window)}"
	)


@dataclass(frozen=True)
class EmotionObservation:
	"""A single confirmed emotion.

	``timestamp`` is in milliseconds since the epoch. Constructing an
	observation with a label outside the tracker set raises
	``InvalidLabelError``; a confidence outside [0, 1] raises
	``InvalidConfidenceError``.
	"""

	emotion: Emotion
	timestamp: int
	confidence: Optional[float] = None
	user_id: Optional[str] = None
	source: str = "manual"

	def __post_init__(self) -> None:
		object.__setattr__(self, "emotion", parse_emotion(self.emotion))
		object.__setattr__(self, "timestamp", int(self.timestamp))
		if self.confidence is not None:
			object.__setattr__(self, "confidence", parse_confidence(self.confidence))

	@property
	def recorded_at(self) -> datetime:
		return datetime.fromtimestamp(self.timestamp / 1000, tz=timezone.utc)

	def to_dict(self) -> Dict[str, Any]:
		return {
			"timestamp": self.timestamp,
			"emotion": self.emotion.value,
			"confidence": self.confidence,
			"user_id": self.user_id,
			"source": self.source,
		}

	@classmethod
	def from_dict(
		cls,
		data: Mapping[str, Any],
		default_timestamp: Optional[int] = None,
	) -> "EmotionObservation":
		emotion = parse_emotion(data.get("emotion"))
		timestamp = data.get("timestamp", default_timestamp)
		if timestamp is None:
			raise ValueError("Observation is missing a timestamp")
		return cls(
			emotion=emotion,
			timestamp=timestamp,
			confidence=data.get("confidence"),
			user_id=data.get("user_id"),
			source=data.get("source") or "manual",
		)


@dataclass
class TimeBasedStats:
	"""Zero-filled per-emotion counts for each window."""

	last_hour: Dict[str, int]
	last_day: Dict[str, int]
	last_week: Dict[str, int]
	total: Dict[str, int]

	def __getitem__(self, window: Union[str, Window]) -> Dict[str, int]:
		return getattr(self, _WINDOW_FIELDS[parse_window(window)])

	def to_dict(self) -> Dict[str, Dict[str, int]]:
		return {window.value: dict(self[window]) for window in Window}


_WINDOW_FIELDS = {
	Window.LAST_HOUR: "last_hour",
	Window.LAST_DAY: "last_day",
	Window.LAST_WEEK: "last_week",
	Window.TOTAL: "total",
}


@dataclass
class DailySummary:
	"""Aggregated emotion metrics for a single UTC day."""

	target_date: date
	total_scans: int
	dominant_emotion: Optional[str]
	distribution: Dict[str, float]
	average_confidence: Optional[float]


def observations_frame(observations: Iterable[EmotionObservation]) -> pd.DataFrame:
	"""Build a dataframe with one row per observation."""

	records = [observation.to_dict() for observation in observations]
	return pd.DataFrame.from_records(records, columns=OBSERVATION_COLUMNS)


def zero_filled_counts(labels: pd.Series) -> Dict[str, int]:
	counts = labels.value_counts().reindex(list(EMOTIONS), fill_value=0)
	return {label: int(counts[label]) for label in EMOTIONS}


def count_windows(observations: Iterable[EmotionObservation], now: int) -> TimeBasedStats:
	"""Count observations per emotion for every window ending at ``now``.

	A window contains the observations with ``now - timestamp <= duration``.
	Windows are evaluated independently against the whole log.
	"""

	df = observations_frame(observations)
	age = now - df["timestamp"].astype("int64")

	counts: Dict[Window, Dict[str, int]] = {}
	for window in Window:
		labels = df["emotion"]
		if window.duration_ms is not None:
			labels = labels[age <= window.duration_ms]
		counts[window] = zero_filled_counts(labels)

	return TimeBasedStats(
		last_hour=counts[Window.LAST_HOUR],
		last_day=counts[Window.LAST_DAY],
		last_week=counts[Window.LAST_WEEK],
		total=counts[Window.TOTAL],
	)


def compute_percentages(counts: Mapping[str, int]) -> Dict[str, float]:
	"""Each label's share of ``counts`` in percent; all zeros when empty."""

	total = sum(counts.get(label, 0) for label in EMOTIONS)
	if total == 0:
		return {label: 0.0 for label in EMOTIONS}
	return {label: counts.get(label, 0) / total * 100 for label in EMOTIONS}


class EmotionStatsEngine:
	"""Records observations into a store and answers windowed queries.

	The engine keeps no state of its own: every query recomputes from
	``store.read_all()``. Storage errors propagate unchanged.
	"""

	def __init__(self, store: "EmotionStore", clock: Callable[[], int] = now_ms) -> None:
		self.store = store
		self._clock = clock

	def now(self) -> int:
		return int(self._clock())

	def record(self, observation: Union[EmotionObservation, Mapping[str, Any]]) -> EmotionObservation:
		"""Validate and append a single observation.

		Mappings are accepted as well; a mapping without a timestamp is
		stamped with the engine clock.
		"""

		if not isinstance(observation, EmotionObservation):
			observation = EmotionObservation.from_dict(observation, default_timestamp=self.now())
		self.store.append(observation)
		LOGGER.debug(
			"Recorded %s (user=%s, source=%s) at %d",
			observation.emotion.value,
			observation.user_id,
			observation.source,
			observation.timestamp,
		)
		return observation

	def record_emotion(
		self,
		emotion: Union[str, Emotion],
		confidence: Optional[float] = None,
		user_id: Optional[str] = None,
		source: str = "manual",
		timestamp: Optional[int] = None,
	) -> EmotionObservation:
		observation = EmotionObservation(
			emotion=parse_emotion(emotion),
			timestamp=self.now() if timestamp is None else timestamp,
			confidence=confidence,
			user_id=user_id,
			source=source,
		)
		return self.record(observation)

	def observations(self, user_id: Optional[str] = None) -> List[EmotionObservation]:
		observations = list(self.store.read_all())
		if user_id is None:
			return observations
		return [observation for observation in observations if observation.user_id == user_id]

	def windowed_counts(self, now: Optional[int] = None, user_id: Optional[str] = None) -> TimeBasedStats:
		now = self.now() if now is None else int(now)
		return count_windows(self.observations(user_id), now)

	def percentages(
		self,
		window: Union[str, Window],
		now: Optional[int] = None,
		user_id: Optional[str] = None,
	) -> Dict[str, float]:
		window = parse_window(window)
		return compute_percentages(self.windowed_counts(now, user_id)[window])

	def ranked_percentages(
		self,
		window: Union[str, Window],
		now: Optional[int] = None,
		user_id: Optional[str] = None,
	) -> List[Tuple[str, float]]:
		"""Percentages sorted from most to least frequent emotion."""

		percentages = self.percentages(window, now, user_id)
		return sorted(percentages.items(), key=lambda item: item[1], reverse=True)

	def dominant_emotion(
		self,
		window: Union[str, Window],
		now: Optional[int] = None,
		user_id: Optional[str] = None,
	) -> Optional[str]:
		window = parse_window(window)
		counts = self.windowed_counts(now, user_id)[window]
		if not any(counts.values()):
			return None
		return max(EMOTIONS, key=counts.get)

	def daily_summary(self, target_date: Optional[date] = None, user_id: Optional[str] = None) -> DailySummary:
		"""Compute aggregated stats for the given UTC date (defaults to today)."""

		target_date = target_date or datetime.fromtimestamp(self.now() / 1000, tz=timezone.utc).date()
		empty = DailySummary(target_date, 0, None, {label: 0.0 for label in EMOTIONS}, None)

		df = observations_frame(self.observations(user_id))
		if df.empty:
			return empty

		days = pd.to_datetime(df["timestamp"].astype("int64"), unit="ms", utc=True).dt.date
		day_df = df[days == target_date]
		if day_df.empty:
			return empty

		counts = zero_filled_counts(day_df["emotion"])
		total = sum(counts.values())
		dominant = max(EMOTIONS, key=counts.get)
		distribution = {label: counts[label] / total for label in EMOTIONS}
		confidences = pd.to_numeric(day_df["confidence"], errors="coerce").dropna()
		avg_conf = float(confidences.mean()) if not confidences.empty else None

		return DailySummary(target_date, total, dominant, distribution, avg_conf)

	def recent(self, limit: Optional[int] = 10, user_id: Optional[str] = None) -> List[EmotionObservation]:
		"""Return the most recent observations, newest first."""

		ordered = sorted(self.observations(user_id), key=lambda observation: observation.timestamp, reverse=True)
		return ordered[:limit]

	def history_by_day(self, user_id: Optional[str] = None) -> Dict[date, List[EmotionObservation]]:
		"""Group observations by UTC day, newest day and newest entry first."""

		history: Dict[date, List[EmotionObservation]] = {}
		for observation in self.recent(limit=None, user_id=user_id):
			history.setdefault(observation.recorded_at.date(), []).append(observation)
		return history

	def clear(self) -> None:
		self.store.clear()
		LOGGER.info("Cleared all emotion observations")


def save_distribution_chart(
	percentages: Mapping[str, float],
	output_path: Path,
	title: str,
) -> None:
	"""Persist a bar chart for the provided percentage distribution."""

	output_path.parent.mkdir(parents=True, exist_ok=True)

	import matplotlib

	matplotlib.use("Agg")  # Use non-interactive backend for servers
	import matplotlib.pyplot as plt

	plt.figure(figsize=(6, 4))
	if any(percentages.get(label, 0.0) for label in EMOTIONS):
		values = [percentages.get(label, 0.0) for label in EMOTIONS]
		colors = [EMOTION_COLORS[label] for label in EMOTIONS]
		plt.bar(EMOTIONS, values, color=colors)
		plt.ylim(0, 100)
		plt.ylabel("Share of detections (%)")
	else:
		plt.text(0.5, 0.5, "No data", ha="center", va="center")
		plt.xticks([])
		plt.yticks([])

	plt.title(title)
	plt.tight_layout()
	plt.savefig(output_path)
	plt.close()
