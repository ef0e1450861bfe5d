"""Free-tier usage gate for the dashboard."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from emotion_stats import HOUR_MS


@dataclass
class UsageLimiter:
	"""Allow ``limit`` confirmed recordings, then block until a quiet period passes.

	The count resets once more than ``reset_interval_ms`` has elapsed since
	the last registered use.
	"""

	limit: int = 3
	reset_interval_ms: int = HOUR_MS
	count: int = 0
	last_used_ms: Optional[int] = None

	def _maybe_reset(self, now: int) -> None:
		if self.last_used_ms is not None and now - self.last_used_ms > self.reset_interval_ms:
			self.count = 0

	def can_use(self, now: int) -> bool:
		self._maybe_reset(now)
		return self.count < self.limit

	def remaining(self, now: int) -> int:
		self._maybe_reset(now)
		return max(0, self.limit - self.count)

	def register_use(self, now: int) -> None:
		self._maybe_reset(now)
		self.count += 1
		self.last_used_ms = now
