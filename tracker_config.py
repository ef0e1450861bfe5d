"""Runtime configuration for the mood tracker, read from the environment."""

from __future__ import annotations

from dataclasses import dataclass, replace
import logging
import os
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv


BASE_DIR = Path(__file__).resolve().parent

STORAGE_BACKENDS = ("csv", "sqlite", "memory")

# Dashboard storage policies map onto backends
STORAGE_POLICIES = {"persistent": "csv", "session": "memory"}


@dataclass(frozen=True)
class TrackerConfig:
	"""Paths, storage selection and detection cadence."""

	data_dir: Path
	storage_backend: str = "csv"
	detection_interval_ms: int = 1000
	capture_seconds: float = 10.0
	usage_limit: int = 3
	detector_backend: str = "opencv"
	log_level: str = "INFO"

	@property
	def log_path(self) -> Path:
		return self.data_dir / "mood_log.csv"

	@property
	def db_path(self) -> Path:
		return self.data_dir / "mood_tracker.db"

	@property
	def chart_path(self) -> Path:
		return self.data_dir / "visuals" / "mood_distribution.png"

	def with_storage_policy(self, policy: str) -> "TrackerConfig":
		"""Return a copy using the backend for a dashboard storage policy."""

		if policy not in STORAGE_POLICIES:
			raise ValueError(f"Unknown storage policy: {policy!r}")
		return replace(self, storage_backend=STORAGE_POLICIES[policy])


def load_config(env: Optional[Mapping[str, str]] = None, dotenv_path: Optional[Path] = None) -> TrackerConfig:
	"""Build a ``TrackerConfig`` from ``MOOD_TRACKER_*`` variables.

	When ``env`` is omitted the process environment is used, after loading
	a ``.env`` file next to this module if one exists.
	"""

	if env is None:
		load_dotenv(dotenv_path or BASE_DIR / ".env")
		env = os.environ

	storage = env.get("MOOD_TRACKER_STORAGE", "csv").strip().lower()
	if storage not in STORAGE_BACKENDS:
		raise ValueError(
			f"MOOD_TRACKER_STORAGE must be one of {', '.join(STORAGE_BACKENDS)}, got {storage!r}"
		)

	log_level = env.get("MOOD_TRACKER_LOG_LEVEL", "INFO").strip().upper()
	if not isinstance(logging.getLevelName(log_level), int):
		raise ValueError(f"MOOD_TRACKER_LOG_LEVEL is not a logging level: {log_level!r}")

	return TrackerConfig(
		data_dir=Path(env.get("MOOD_TRACKER_DATA_DIR", str(BASE_DIR / "data"))),
		storage_backend=storage,
		detection_interval_ms=_positive(env, "MOOD_TRACKER_DETECTION_INTERVAL_MS", 1000, int),
		capture_seconds=_positive(env, "MOOD_TRACKER_CAPTURE_SECONDS", 10.0, float),
		usage_limit=_positive(env, "MOOD_TRACKER_USAGE_LIMIT", 3, int),
		detector_backend=env.get("MOOD_TRACKER_DETECTOR_BACKEND", "opencv"),
		log_level=log_level,
	)


def configure_logging(level: str = "INFO") -> None:
	logging.basicConfig(
		level=level,
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
	)


def _positive(env: Mapping[str, str], name: str, default, cast):
	raw = env.get(name)
	if raw is None or raw.strip() == "":
		return default
	try:
		value = cast(raw)
	except ValueError:
		raise ValueError(f"{name} must be a number, got {raw!r}") from None
	if value <= 0:
		raise ValueError(f"{name} must be positive, got {raw!r}")
	return value
