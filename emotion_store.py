"""Storage backends for the emotion observation log.

The stats engine only needs three operations from a store: append one
observation, read every observation back, and clear the log. Three backends
are provided: an in-memory list (session storage), a CSV log file (the
dashboard default) and a SQLite database for multi-user deployments.
Any I/O failure is raised as ``StorageError``.
"""

from __future__ import annotations

from contextlib import contextmanager
import logging
from pathlib import Path
import sqlite3
import threading
from typing import TYPE_CHECKING, Any, Iterator, List, Protocol

import pandas as pd

from emotion_stats import EMOTIONS, OBSERVATION_COLUMNS, EmotionObservation

if TYPE_CHECKING:  # pragma: no cover - typing only
	from tracker_config import TrackerConfig


LOGGER = logging.getLogger(__name__)


class StorageError(RuntimeError):
	"""Raised when the underlying log cannot be read or written."""


class EmotionStore(Protocol):
	"""Protocol for observation logs."""

	def append(self, observation: EmotionObservation) -> None:
		"""Append a single observation atomically."""
		...

	def read_all(self) -> List[EmotionObservation]:
		"""Return every stored observation, in no particular order."""
		...

	def clear(self) -> None:
		"""Remove every observation."""
		...


class InMemoryEmotionStore:
	"""Session-only log held in a list."""

	def __init__(self) -> None:
		self._observations: List[EmotionObservation] = []
		self._lock = threading.Lock()

	def append(self, observation: EmotionObservation) -> None:
		with self._lock:
			self._observations.append(observation)

	def read_all(self) -> List[EmotionObservation]:
		with self._lock:
			return list(self._observations)

	def clear(self) -> None:
		with self._lock:
			self._observations.clear()

	def __len__(self) -> int:
		with self._lock:
			return len(self._observations)


class CsvEmotionStore:
	"""Observation log kept in a CSV file, one row per observation."""

	def __init__(self, log_path: Path) -> None:
		self.log_path = Path(log_path)
		self._lock = threading.Lock()

	def ensure_log_file(self) -> None:
		"""Ensure the CSV log exists with the expected columns."""

		try:
			self.log_path.parent.mkdir(parents=True, exist_ok=True)
			if not self.log_path.exists():
				self._write_header()
		except OSError as exc:
			raise StorageError(f"Could not create emotion log {self.log_path}: {exc}") from exc

	def append(self, observation: EmotionObservation) -> None:
		row = pd.DataFrame([observation.to_dict()], columns=OBSERVATION_COLUMNS)
		with self._lock:
			self.ensure_log_file()
			try:
				with self.log_path.open("a", encoding="utf-8", newline="") as handle:
					row.to_csv(handle, header=False, index=False)
			except OSError as exc:
				raise StorageError(f"Could not append to emotion log {self.log_path}: {exc}") from exc

	def load_dataframe(self) -> pd.DataFrame:
		"""Load the valid rows of the log into a dataframe (empty when missing)."""

		try:
			if not self.log_path.exists() or self.log_path.stat().st_size == 0:
				return pd.DataFrame(columns=OBSERVATION_COLUMNS)
			with self._lock:
				# Only empty cells are missing; "NA" or "null" is a real user id
				df = pd.read_csv(
					self.log_path,
					dtype=str,
					keep_default_na=False,
					na_values={column: [""] for column in OBSERVATION_COLUMNS},
				)
		except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as exc:
			raise StorageError(f"Could not read emotion log {self.log_path}: {exc}") from exc

		for column in OBSERVATION_COLUMNS:
			if column not in df.columns:
				df[column] = None

		df["timestamp"] = pd.to_numeric(df["timestamp"], errors="coerce")
		df["confidence"] = pd.to_numeric(df["confidence"], errors="coerce")
		labels = df["emotion"].fillna("").str.strip().str.lower()
		valid = df["timestamp"].notna() & labels.isin(EMOTIONS)

		skipped = int((~valid).sum())
		if skipped:
			LOGGER.warning("Skipped %d malformed rows in %s", skipped, self.log_path)

		df = df[valid].copy()
		df["emotion"] = labels[valid]
		return df[OBSERVATION_COLUMNS]

	def read_all(self) -> List[EmotionObservation]:
		df = self.load_dataframe()
		return [
			EmotionObservation(
				emotion=row.emotion,
				timestamp=int(row.timestamp),
				confidence=_optional(row.confidence),
				user_id=_optional(row.user_id),
				source=_optional(row.source) or "manual",
			)
			for row in df.itertuples(index=False)
		]

	def clear(self) -> None:
		with self._lock:
			try:
				self.log_path.parent.mkdir(parents=True, exist_ok=True)
				self._write_header()
			except OSError as exc:
				raise StorageError(f"Could not clear emotion log {self.log_path}: {exc}") from exc

	def _write_header(self) -> None:
		self.log_path.write_text(",".join(OBSERVATION_COLUMNS) + "\n", encoding="utf-8")


class SqliteEmotionStore:
	"""Observation log in a SQLite table, indexed per user and per emotion."""

	def __init__(self, db_path: Path) -> None:
		self.db_path = Path(db_path)
		self.init_db()

	@contextmanager
	def _connection(self, action: str) -> Iterator[sqlite3.Connection]:
		try:
			self.db_path.parent.mkdir(parents=True, exist_ok=True)
			conn = sqlite3.connect(self.db_path)
		except (OSError, sqlite3.Error) as exc:
			raise StorageError(f"Could not {action}: {exc}") from exc
		try:
			with conn:
				yield conn
		except sqlite3.Error as exc:
			raise StorageError(f"Could not {action}: {exc}") from exc
		finally:
			conn.close()

	def init_db(self) -> None:
		allowed = ", ".join(f"'{label}'" for label in EMOTIONS)
		with self._connection("initialise emotion database") as conn:
			conn.execute(f"""
				CREATE TABLE IF NOT EXISTS emotion_stats (
					id INTEGER PRIMARY KEY AUTOINCREMENT,
					emotion TEXT NOT NULL CHECK (emotion IN ({allowed})),
					user_id TEXT,
					confidence REAL,
					source TEXT NOT NULL DEFAULT 'manual',
					timestamp INTEGER NOT NULL
				)
			""")
			conn.execute(
				"CREATE INDEX IF NOT EXISTS idx_emotion_stats_user ON emotion_stats (user_id, timestamp DESC)"
			)
			conn.execute(
				"CREATE INDEX IF NOT EXISTS idx_emotion_stats_emotion ON emotion_stats (emotion, timestamp DESC)"
			)

	def append(self, observation: EmotionObservation) -> None:
		with self._connection("save emotion observation") as conn:
			conn.execute(
				"INSERT INTO emotion_stats (emotion, user_id, confidence, source, timestamp) VALUES (?, ?, ?, ?, ?)",
				(
					observation.emotion.value,
					observation.user_id,
					observation.confidence,
					observation.source,
					observation.timestamp,
				),
			)

	def read_all(self) -> List[EmotionObservation]:
		with self._connection("read emotion observations") as conn:
			rows = conn.execute(
				"SELECT emotion, timestamp, confidence, user_id, source FROM emotion_stats ORDER BY id"
			).fetchall()
		return [
			EmotionObservation(
				emotion=emotion,
				timestamp=timestamp,
				confidence=confidence,
				user_id=user_id,
				source=source,
			)
			for emotion, timestamp, confidence, user_id, source in rows
		]

	def clear(self) -> None:
		with self._connection("clear emotion observations") as conn:
			conn.execute("DELETE FROM emotion_stats")


def open_store(config: "TrackerConfig") -> EmotionStore:
	"""Create the store selected by ``config.storage_backend``."""

	backend = config.storage_backend
	if backend == "memory":
		store: EmotionStore = InMemoryEmotionStore()
	elif backend == "csv":
		store = CsvEmotionStore(config.log_path)
	elif backend == "sqlite":
		store = SqliteEmotionStore(config.db_path)
	else:
		raise ValueError(f"Unsupported storage backend: {backend!r}")

	LOGGER.info("Using %s emotion store", backend)
	return store


def _optional(value: Any) -> Any:
	return None if pd.isna(value) else value
